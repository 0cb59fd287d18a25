"""
Permission grant store: direct ALLOW/DENY overrides for one user at one scope.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import select, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.base import as_utc, utc_now
from rbac_service.core.exceptions import NotFoundError
from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.audit import AuditEntry, ChangeNotifier
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.models import GrantType, Permission, PermissionGrant
from rbac_service.utils import get_logger


log = get_logger(__name__)


def active_grant_clause(now: datetime):
    """SQL condition for grants that have not expired."""
    return or_(PermissionGrant.expires_at.is_(None), PermissionGrant.expires_at > now)


def _apply(grant: PermissionGrant, values: Dict[str, Any]) -> None:
    for field_name, value in values.items():
        setattr(grant, field_name, value)


class PermissionGrantStore:
    def __init__(self, db: AsyncSession, cache: PermissionCache, notifier: Optional[ChangeNotifier] = None):
        self.db = db
        self.cache = cache
        self.notifier = notifier or ChangeNotifier()

    async def find_by_key(
        self,
        user_id: str,
        permission_id: str,
        scope_type: ScopeType,
        scope_id: str,
    ) -> Optional[PermissionGrant]:
        result = await self.db.execute(
            select(PermissionGrant)
            .where(
                PermissionGrant.user_id == user_id,
                PermissionGrant.permission_id == permission_id,
                PermissionGrant.scope_type == ScopeType(scope_type),
                PermissionGrant.scope_id == scope_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def grant(
        self,
        user_id: str,
        permission_id: str,
        scope_type: ScopeType,
        scope_id: str,
        grant_type: GrantType = GrantType.ALLOW,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        constraints: Optional[Dict[str, Any]] = None,
        granted_by: Optional[str] = None,
    ) -> PermissionGrant:
        """
        Create or replace the grant for (user, permission, scope).

        A second grant for the same key overwrites the first, including its
        direction, and refreshes granted_at.

        Raises:
            NotFoundError: permission does not exist
        """
        scope_type = ScopeType(scope_type)
        grant_type = GrantType(grant_type)
        expires_at = as_utc(expires_at)

        permission = await self.db.get(Permission, permission_id)
        if permission is None:
            raise NotFoundError("Permission")

        values = dict(
            grant_type=grant_type,
            granted_by=granted_by,
            granted_at=utc_now(),
            expires_at=expires_at,
            reason=reason,
            constraints=constraints,
        )

        grant = await self.find_by_key(user_id, permission_id, scope_type, scope_id)
        replaced = grant is not None
        if grant is None:
            grant = PermissionGrant(
                user_id=user_id,
                permission_id=permission_id,
                permission=permission,
                scope_type=scope_type,
                scope_id=scope_id,
            )
            self.db.add(grant)
        _apply(grant, values)

        try:
            await self.db.commit()
        except IntegrityError:
            if replaced:
                raise
            # Lost a race with a grant for the same key; overwrite it instead
            await self.db.rollback()
            grant = await self.find_by_key(user_id, permission_id, scope_type, scope_id)
            if grant is None:
                raise
            permission = await self.db.get(Permission, permission_id, populate_existing=True)
            replaced = True
            _apply(grant, values)
            await self.db.commit()
        self.cache.invalidate_user(user_id)

        log.info(
            f"{grant_type.value} {permission.code} for user {user_id} at {scope_type.value}:{scope_id}"
            f"{' (replaced)' if replaced else ''}"
        )
        await self.notifier.emit("grant.created", AuditEntry(
            action="deny" if grant_type == GrantType.DENY else "grant",
            entity_type="permission_grant",
            entity_id=grant.id,
            actor_user_id=granted_by,
            scope_type=scope_type,
            scope_id=scope_id,
            details={
                "user_id": user_id,
                "permission": permission.code,
                "grant_type": grant_type.value,
                "replaced": replaced,
                "reason": reason,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        ))
        return grant

    async def deny_permission(
        self,
        user_id: str,
        permission_id: str,
        scope_type: ScopeType,
        scope_id: str,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        constraints: Optional[Dict[str, Any]] = None,
        granted_by: Optional[str] = None,
    ) -> PermissionGrant:
        return await self.grant(
            user_id,
            permission_id,
            scope_type,
            scope_id,
            grant_type=GrantType.DENY,
            expires_at=expires_at,
            reason=reason,
            constraints=constraints,
            granted_by=granted_by,
        )

    async def revoke(
        self,
        user_id: str,
        permission_id: str,
        scope_type: ScopeType,
        scope_id: str,
        revoked_by: Optional[str] = None,
    ) -> None:
        scope_type = ScopeType(scope_type)
        grant = await self.find_by_key(user_id, permission_id, scope_type, scope_id)
        if grant is None:
            raise NotFoundError("Permission grant")

        grant_id = grant.id
        grant_type = grant.grant_type
        await self.db.delete(grant)
        await self.db.commit()
        self.cache.invalidate_user(user_id)

        log.info(f"Revoked grant {grant_id} for user {user_id} at {scope_type.value}:{scope_id}")
        await self.notifier.emit("grant.deleted", AuditEntry(
            action="revoke",
            entity_type="permission_grant",
            entity_id=grant_id,
            actor_user_id=revoked_by,
            scope_type=scope_type,
            scope_id=scope_id,
            details={"user_id": user_id, "permission_id": permission_id, "grant_type": grant_type.value},
        ))

    async def get_user_grants(
        self,
        user_id: str,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> list[PermissionGrant]:
        """Unexpired grants of a user whose permission still exists."""
        stmt = (
            select(PermissionGrant)
            .join(Permission, Permission.id == PermissionGrant.permission_id)
            .where(PermissionGrant.user_id == user_id, active_grant_clause(utc_now()))
            .order_by(PermissionGrant.granted_at)
        )
        if scope_type is not None:
            stmt = stmt.where(PermissionGrant.scope_type == ScopeType(scope_type))
        if scope_id is not None:
            stmt = stmt.where(PermissionGrant.scope_id == scope_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
