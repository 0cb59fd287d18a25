"""
Permission catalog: CRUD over permission definitions.
"""
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.exceptions import ConflictError, InvalidOperationError, NotFoundError
from rbac_service.features.permissions.audit import AuditEntry, ChangeNotifier
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.matching import is_valid_permission_code, permission_category
from rbac_service.features.permissions.models import Permission
from rbac_service.utils import get_logger


log = get_logger(__name__)


class PermissionCatalog:
    def __init__(self, db: AsyncSession, cache: PermissionCache, notifier: Optional[ChangeNotifier] = None):
        self.db = db
        self.cache = cache
        self.notifier = notifier or ChangeNotifier()

    async def create(
        self,
        code: str,
        name: str,
        category: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Permission:
        """
        Add a permission to the catalog.

        Raises:
            InvalidOperationError: code is not resource:action, resource:* or *
            ConflictError: code already exists
        """
        if not is_valid_permission_code(code):
            raise InvalidOperationError(f"Invalid permission code: {code!r}")

        existing = await self.db.execute(select(Permission.id).where(Permission.code == code))
        if existing.first() is not None:
            raise ConflictError(f"Permission with code {code!r} already exists")

        permission = Permission(
            code=code,
            name=name,
            category=category or permission_category(code),
            description=description,
        )
        self.db.add(permission)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Permission with code {code!r} already exists")

        log.info(f"Created permission {code} ({permission.id})")
        await self.notifier.emit("permission.created", AuditEntry(
            action="create",
            entity_type="permission",
            entity_id=permission.id,
            actor_user_id=created_by,
            details={"code": code, "category": permission.category},
        ))
        return permission

    async def find_all(self, category: Optional[str] = None) -> list[Permission]:
        stmt = select(Permission).order_by(Permission.category, Permission.code)
        if category:
            stmt = stmt.where(Permission.category == category)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def find_by_id(self, permission_id: str) -> Permission:
        permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError("Permission")
        return permission

    async def find_by_code(self, code: str) -> Permission:
        result = await self.db.execute(select(Permission).where(Permission.code == code))
        permission = result.scalar_one_or_none()
        if permission is None:
            raise NotFoundError("Permission", f"Permission {code!r} not found")
        return permission

    async def delete(self, permission_id: str, deleted_by: Optional[str] = None) -> None:
        """
        Remove a permission.

        Roles and grants referencing it simply stop yielding it. Any user's
        resolved set may contain the code, so the whole cache is cleared.
        """
        permission = await self.find_by_id(permission_id)
        code = permission.code
        await self.db.delete(permission)
        await self.db.commit()
        self.cache.invalidate_all()

        log.info(f"Deleted permission {code} ({permission_id})")
        await self.notifier.emit("permission.deleted", AuditEntry(
            action="delete",
            entity_type="permission",
            entity_id=permission_id,
            actor_user_id=deleted_by,
            details={"code": code},
        ))
