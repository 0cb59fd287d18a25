"""
Role store: roles bound to a scope level, each owning a set of permissions.

System roles are seeded, not created here. Their name and permission set
are fixed and they cannot be deleted; description, color, priority and
the default flag stay editable.
"""
import re
from typing import Any, Dict, Iterable, Optional
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.base import utc_now
from rbac_service.core.exceptions import ConflictError, InvalidOperationError, NotFoundError
from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.assignments import RoleAssignmentStore
from rbac_service.features.permissions.audit import AuditEntry, ChangeNotifier
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.models import Permission, Role
from rbac_service.utils import get_logger


log = get_logger(__name__)

# Fields a caller may change through update()
MUTABLE_ROLE_FIELDS = {"name", "slug", "description", "color", "priority", "is_default", "permission_ids"}
_SYSTEM_LOCKED_FIELDS = {"name", "slug"}


def slugify(name: str) -> str:
    """Lowercase a role name and turn every other character into an underscore."""
    return re.sub(r"[^a-z0-9]", "_", name.lower())


def _scope_id_clause(scope_id: Optional[str]):
    return Role.scope_id.is_(None) if scope_id is None else Role.scope_id == scope_id


class RoleStore:
    def __init__(self, db: AsyncSession, cache: PermissionCache, notifier: Optional[ChangeNotifier] = None):
        self.db = db
        self.cache = cache
        self.notifier = notifier or ChangeNotifier()
        self.assignments = RoleAssignmentStore(db, cache, notifier)

    async def _load_permissions(self, permission_ids: Iterable[str]) -> list[Permission]:
        wanted = list(dict.fromkeys(permission_ids))
        if not wanted:
            return []
        result = await self.db.execute(select(Permission).where(Permission.id.in_(wanted)))
        found = {p.id: p for p in result.scalars().all()}
        missing = [pid for pid in wanted if pid not in found]
        if missing:
            raise NotFoundError("Permission", f"Permission(s) not found: {', '.join(missing)}")
        return [found[pid] for pid in wanted]

    async def _ensure_slug_free(
        self,
        slug: str,
        scope_type: ScopeType,
        scope_id: Optional[str],
        exclude_role_id: Optional[str] = None,
    ) -> None:
        stmt = select(Role.id).where(
            Role.slug == slug,
            Role.scope_type == scope_type,
            _scope_id_clause(scope_id),
            Role.deleted_at.is_(None),
        )
        if exclude_role_id is not None:
            stmt = stmt.where(Role.id != exclude_role_id)
        if (await self.db.execute(stmt)).first() is not None:
            raise ConflictError(f"Role with slug {slug!r} already exists in this scope")

    async def _invalidate_holders(self, role_id: str) -> None:
        for user_id in await self.assignments.get_role_user_ids(role_id, include_expired=True):
            self.cache.invalidate_user(user_id)

    async def create(
        self,
        name: str,
        scope_type: ScopeType,
        scope_id: Optional[str] = None,
        slug: Optional[str] = None,
        permission_ids: Optional[Iterable[str]] = None,
        priority: int = 100,
        is_default: bool = False,
        description: Optional[str] = None,
        color: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Role:
        """
        Create a custom role.

        Raises:
            ConflictError: slug already used by a live role in the same scope
            NotFoundError: an unknown permission id was supplied
        """
        scope_type = ScopeType(scope_type)
        slug = slug or slugify(name)
        await self._ensure_slug_free(slug, scope_type, scope_id)
        permissions = await self._load_permissions(permission_ids or [])

        role = Role(
            name=name,
            slug=slug,
            description=description,
            color=color,
            scope_type=scope_type,
            scope_id=scope_id,
            is_system=False,
            is_default=is_default,
            priority=priority,
            permissions=permissions,
        )
        self.db.add(role)
        await self.db.commit()

        log.info(f"Created role {slug} ({role.id}) at {scope_type.value}:{scope_id}")
        await self.notifier.emit("role.created", AuditEntry(
            action="create",
            entity_type="role",
            entity_id=role.id,
            actor_user_id=created_by,
            scope_type=scope_type,
            scope_id=scope_id,
            details={"name": name, "slug": slug, "permissions": [p.code for p in permissions]},
        ))
        return role

    async def find_by_id(self, role_id: str) -> Role:
        result = await self.db.execute(
            select(Role)
            .where(Role.id == role_id, Role.deleted_at.is_(None))
            .execution_options(populate_existing=True)
        )
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError("Role")
        return role

    async def find_all(
        self,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
        include_global: bool = True,
    ) -> list[Role]:
        """
        Live roles, optionally narrowed to a scope.

        With a scope_id, global roles of the same scope type are included
        unless include_global is False.
        """
        stmt = select(Role).where(Role.deleted_at.is_(None)).order_by(Role.priority, Role.name)
        if scope_type is not None:
            stmt = stmt.where(Role.scope_type == ScopeType(scope_type))
        if scope_id is not None:
            if include_global:
                stmt = stmt.where(or_(Role.scope_id == scope_id, Role.scope_id.is_(None)))
            else:
                stmt = stmt.where(Role.scope_id == scope_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def update(self, role_id: str, patch: Dict[str, Any], updated_by: Optional[str] = None) -> Role:
        """
        Apply a partial update.

        Args:
            role_id: Role to change
            patch: Any of name, slug, description, color, priority,
                is_default, permission_ids

        Raises:
            NotFoundError: role missing or deleted
            InvalidOperationError: unknown field, or a system role's name or
                permission set would change
        """
        unknown = set(patch) - MUTABLE_ROLE_FIELDS
        if unknown:
            raise InvalidOperationError(f"Cannot update role fields: {', '.join(sorted(unknown))}")

        role = await self.find_by_id(role_id)
        patch = dict(patch)
        permission_ids = patch.pop("permission_ids", None)

        if role.is_system:
            for field_name in _SYSTEM_LOCKED_FIELDS:
                if field_name in patch and patch[field_name] != getattr(role, field_name):
                    raise InvalidOperationError(f"Cannot change the {field_name} of a system role")
            if permission_ids is not None and set(permission_ids) != {p.id for p in role.permissions}:
                raise InvalidOperationError("Cannot change the permissions of a system role")
            permission_ids = None

        new_slug = patch.get("slug")
        if new_slug is not None and new_slug != role.slug:
            await self._ensure_slug_free(new_slug, role.scope_type, role.scope_id, exclude_role_id=role.id)

        changes: Dict[str, Any] = {}
        for field_name, value in patch.items():
            if getattr(role, field_name) != value:
                changes[field_name] = {"from": getattr(role, field_name), "to": value}
                setattr(role, field_name, value)

        permissions_changed = False
        if permission_ids is not None:
            permissions = await self._load_permissions(permission_ids)
            if {p.id for p in permissions} != {p.id for p in role.permissions}:
                changes["permissions"] = {
                    "from": role.permission_codes,
                    "to": sorted(p.code for p in permissions),
                }
                role.permissions = permissions
                permissions_changed = True

        await self.db.commit()
        if permissions_changed:
            await self._invalidate_holders(role.id)

        if changes:
            log.info(f"Updated role {role.slug} ({role.id}): {', '.join(changes)}")
            await self.notifier.emit("role.updated", AuditEntry(
                action="update",
                entity_type="role",
                entity_id=role.id,
                actor_user_id=updated_by,
                scope_type=role.scope_type,
                scope_id=role.scope_id,
                details={"changes": changes},
            ))
        return role

    async def delete(self, role_id: str, deleted_by: Optional[str] = None) -> None:
        """Soft-delete a role. Holders lose its permissions immediately."""
        role = await self.find_by_id(role_id)
        if role.is_system:
            raise InvalidOperationError("Cannot delete a system role")

        role.deleted_at = utc_now()
        role.deleted_by = deleted_by
        await self.db.commit()
        await self._invalidate_holders(role.id)

        log.info(f"Deleted role {role.slug} ({role.id})")
        await self.notifier.emit("role.deleted", AuditEntry(
            action="delete",
            entity_type="role",
            entity_id=role.id,
            actor_user_id=deleted_by,
            scope_type=role.scope_type,
            scope_id=role.scope_id,
            details={"name": role.name, "slug": role.slug},
        ))

    async def set_role_permissions(
        self,
        role_id: str,
        permission_ids: Iterable[str],
        updated_by: Optional[str] = None,
    ) -> Role:
        """Replace a role's permission set in one transaction."""
        role = await self.find_by_id(role_id)
        if role.is_system:
            raise InvalidOperationError("Cannot change the permissions of a system role")

        permissions = await self._load_permissions(permission_ids)
        previous = role.permission_codes
        role.permissions = permissions
        await self.db.commit()
        await self._invalidate_holders(role.id)

        log.info(f"Set {len(permissions)} permissions on role {role.slug} ({role.id})")
        await self.notifier.emit("role.permissions_set", AuditEntry(
            action="set_permissions",
            entity_type="role",
            entity_id=role.id,
            actor_user_id=updated_by,
            scope_type=role.scope_type,
            scope_id=role.scope_id,
            details={"from": previous, "to": role.permission_codes},
        ))
        return role
