"""
Role assignment store: which user holds which role at which scope instance.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.base import as_utc, utc_now
from rbac_service.core.exceptions import NotFoundError
from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.audit import AuditEntry, ChangeNotifier
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.models import Role, UserRoleAssignment
from rbac_service.utils import get_logger


log = get_logger(__name__)


def active_assignment_clause(now: datetime):
    """SQL condition for assignments that have not expired."""
    return or_(UserRoleAssignment.expires_at.is_(None), UserRoleAssignment.expires_at > now)


class RoleAssignmentStore:
    def __init__(self, db: AsyncSession, cache: PermissionCache, notifier: Optional[ChangeNotifier] = None):
        self.db = db
        self.cache = cache
        self.notifier = notifier or ChangeNotifier()

    async def find_by_key(
        self,
        user_id: str,
        role_id: str,
        scope_type: ScopeType,
        scope_id: str,
    ) -> Optional[UserRoleAssignment]:
        result = await self.db.execute(
            select(UserRoleAssignment).where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.role_id == role_id,
                UserRoleAssignment.scope_type == ScopeType(scope_type),
                UserRoleAssignment.scope_id == scope_id,
            )
        )
        return result.scalar_one_or_none()

    async def assign(
        self,
        user_id: str,
        role_id: str,
        scope_type: ScopeType,
        scope_id: str,
        expires_at: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
    ) -> UserRoleAssignment:
        """
        Give a user a role at a scope instance.

        Assigning the same key twice is a no-op, except that a supplied
        expires_at replaces the stored one.

        Raises:
            NotFoundError: role missing or deleted
        """
        scope_type = ScopeType(scope_type)
        expires_at = as_utc(expires_at)

        result = await self.db.execute(
            select(Role).where(Role.id == role_id, Role.deleted_at.is_(None))
        )
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError("Role")

        existing = await self.find_by_key(user_id, role_id, scope_type, scope_id)
        if existing is not None:
            if expires_at is not None:
                existing.expires_at = expires_at
                await self.db.commit()
                self.cache.invalidate_user(user_id)
                log.info(f"Updated expiry of role {role_id} for user {user_id} at {scope_type.value}:{scope_id}")
            return existing

        assignment = UserRoleAssignment(
            user_id=user_id,
            role_id=role_id,
            role=role,
            scope_type=scope_type,
            scope_id=scope_id,
            assigned_by=assigned_by,
            assigned_at=utc_now(),
            expires_at=expires_at,
        )
        self.db.add(assignment)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with an identical assignment
            await self.db.rollback()
            existing = await self.find_by_key(user_id, role_id, scope_type, scope_id)
            if existing is None:
                raise
            return existing

        self.cache.invalidate_user(user_id)
        log.info(f"Assigned role {role_id} to user {user_id} at {scope_type.value}:{scope_id}")
        await self.notifier.emit("assignment.created", AuditEntry(
            action="assign",
            entity_type="role_assignment",
            entity_id=assignment.id,
            actor_user_id=assigned_by,
            scope_type=scope_type,
            scope_id=scope_id,
            details={
                "user_id": user_id,
                "role_id": role_id,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        ))
        return assignment

    async def unassign(
        self,
        user_id: str,
        role_id: str,
        scope_type: ScopeType,
        scope_id: str,
        unassigned_by: Optional[str] = None,
    ) -> None:
        scope_type = ScopeType(scope_type)
        assignment = await self.find_by_key(user_id, role_id, scope_type, scope_id)
        if assignment is None:
            raise NotFoundError("Role assignment")

        assignment_id = assignment.id
        await self.db.delete(assignment)
        await self.db.commit()
        self.cache.invalidate_user(user_id)

        log.info(f"Unassigned role {role_id} from user {user_id} at {scope_type.value}:{scope_id}")
        await self.notifier.emit("assignment.deleted", AuditEntry(
            action="unassign",
            entity_type="role_assignment",
            entity_id=assignment_id,
            actor_user_id=unassigned_by,
            scope_type=scope_type,
            scope_id=scope_id,
            details={"user_id": user_id, "role_id": role_id},
        ))

    async def get_user_roles(
        self,
        user_id: str,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> list[UserRoleAssignment]:
        """Unexpired assignments of non-deleted roles, optionally narrowed to one scope."""
        stmt = (
            select(UserRoleAssignment)
            .join(Role, Role.id == UserRoleAssignment.role_id)
            .where(
                UserRoleAssignment.user_id == user_id,
                Role.deleted_at.is_(None),
                active_assignment_clause(utc_now()),
            )
            .order_by(Role.priority, UserRoleAssignment.assigned_at)
        )
        if scope_type is not None:
            stmt = stmt.where(UserRoleAssignment.scope_type == ScopeType(scope_type))
        if scope_id is not None:
            stmt = stmt.where(UserRoleAssignment.scope_id == scope_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_role_user_ids(self, role_id: str, include_expired: bool = False) -> list[str]:
        """Ids of users assigned a role."""
        stmt = select(UserRoleAssignment.user_id).where(UserRoleAssignment.role_id == role_id).distinct()
        if not include_expired:
            stmt = stmt.where(active_assignment_clause(utc_now()))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
