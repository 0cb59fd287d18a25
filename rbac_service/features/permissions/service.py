"""
RBAC facade: every store operation performed on behalf of an actor.

The facade runs the scope escalation guard, and the user-management
check where a user is targeted, before delegating to the stores.
"""
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.exceptions import ForbiddenError
from rbac_service.features.hierarchy.guard import ScopeEscalationGuard
from rbac_service.features.hierarchy.scopes import Actor, ScopeType, scope_rank
from rbac_service.features.hierarchy.service import HierarchyService
from rbac_service.features.permissions.assignments import RoleAssignmentStore
from rbac_service.features.permissions.audit import ChangeNotifier
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.catalog import PermissionCatalog
from rbac_service.features.permissions.grants import PermissionGrantStore
from rbac_service.features.permissions.models import (
    AuditLog, GrantType, Permission, PermissionGrant, Role, UserRoleAssignment,
)
from rbac_service.features.permissions.resolver import EffectivePermissionResolver, EffectivePermissions
from rbac_service.features.permissions.roles import RoleStore


class RbacService:
    """
    Usage:
        service = RbacService(db, actor, permission_cache, notifier)
        role = await service.create_role(name="Order Viewer", scope_type=ScopeType.COMPANY, scope_id="co-1")
        await service.assign_role("u-1", role.id, ScopeType.COMPANY, "co-1")
    """

    def __init__(
        self,
        db: AsyncSession,
        actor: Actor,
        cache: PermissionCache,
        notifier: Optional[ChangeNotifier] = None,
    ):
        self.db = db
        self.actor = actor
        self.cache = cache
        self.hierarchy = HierarchyService(db)
        self.guard = ScopeEscalationGuard(self.hierarchy)
        self.catalog = PermissionCatalog(db, cache, notifier)
        self.roles = RoleStore(db, cache, notifier)
        self.assignments = RoleAssignmentStore(db, cache, notifier)
        self.grants = PermissionGrantStore(db, cache, notifier)
        self.resolver = EffectivePermissionResolver(db, self.hierarchy, cache)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def create_permission(
        self,
        code: str,
        name: str,
        category: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        return await self.catalog.create(code, name, category, description, created_by=self.actor.user_id)

    async def list_permissions(self, category: Optional[str] = None) -> list[Permission]:
        return await self.catalog.find_all(category)

    async def get_permission(self, permission_id: str) -> Permission:
        return await self.catalog.find_by_id(permission_id)

    async def delete_permission(self, permission_id: str) -> None:
        await self.catalog.delete(permission_id, deleted_by=self.actor.user_id)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def _managed_role(self, role_id: str, message: str) -> Role:
        role = await self.roles.find_by_id(role_id)
        await self.guard.ensure_can_operate_on_role(self.actor, role.scope_type, role.scope_id, message)
        return role

    async def create_role(
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
    ) -> Role:
        await self.guard.ensure_can_operate_on_role(
            self.actor, ScopeType(scope_type), scope_id, "You cannot create roles in this scope"
        )
        return await self.roles.create(
            name=name,
            scope_type=scope_type,
            scope_id=scope_id,
            slug=slug,
            permission_ids=permission_ids,
            priority=priority,
            is_default=is_default,
            description=description,
            color=color,
            created_by=self.actor.user_id,
        )

    async def get_role(self, role_id: str) -> Role:
        return await self._managed_role(role_id, "You cannot access roles in this scope")

    async def list_roles(
        self,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
        include_global: bool = True,
    ) -> list[Role]:
        """Roles matching the filters that the actor may operate on."""
        roles = await self.roles.find_all(scope_type, scope_id, include_global)
        visible = []
        for role in roles:
            if await self.guard.can_operate_on_role(self.actor, role.scope_type, role.scope_id):
                visible.append(role)
        return visible

    async def update_role(self, role_id: str, patch: Dict[str, Any]) -> Role:
        await self._managed_role(role_id, "You cannot manage roles in this scope")
        return await self.roles.update(role_id, patch, updated_by=self.actor.user_id)

    async def delete_role(self, role_id: str) -> None:
        await self._managed_role(role_id, "You cannot delete roles in this scope")
        await self.roles.delete(role_id, deleted_by=self.actor.user_id)

    async def set_role_permissions(self, role_id: str, permission_ids: Iterable[str]) -> Role:
        await self._managed_role(role_id, "You cannot manage roles in this scope")
        return await self.roles.set_role_permissions(role_id, permission_ids, updated_by=self.actor.user_id)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def assign_role(
        self,
        user_id: str,
        role_id: str,
        scope_type: ScopeType,
        scope_id: str,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        await self.guard.ensure_can_operate(self.actor, scope_type, scope_id, "You cannot assign roles in this scope")
        await self.guard.ensure_can_manage_user(self.actor, user_id)
        await self._managed_role(role_id, "You cannot assign roles from this scope")
        return await self.assignments.assign(
            user_id, role_id, scope_type, scope_id, expires_at=expires_at, assigned_by=self.actor.user_id
        )

    async def unassign_role(self, user_id: str, role_id: str, scope_type: ScopeType, scope_id: str) -> None:
        await self.guard.ensure_can_operate(self.actor, scope_type, scope_id, "You cannot manage roles in this scope")
        await self.guard.ensure_can_manage_user(self.actor, user_id)
        await self.assignments.unassign(user_id, role_id, scope_type, scope_id, unassigned_by=self.actor.user_id)

    async def get_user_roles(
        self,
        user_id: str,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> list[UserRoleAssignment]:
        await self.guard.ensure_can_manage_user(self.actor, user_id, "You do not have access to view this user's roles")
        return await self.assignments.get_user_roles(user_id, scope_type, scope_id)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    async def grant_permission(
        self,
        user_id: str,
        permission_id: str,
        scope_type: ScopeType,
        scope_id: str,
        grant_type: GrantType = GrantType.ALLOW,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        constraints: Optional[Dict[str, Any]] = None,
    ) -> PermissionGrant:
        await self.guard.ensure_can_operate(
            self.actor, scope_type, scope_id, "You cannot grant permissions in this scope"
        )
        await self.guard.ensure_can_manage_user(self.actor, user_id)
        return await self.grants.grant(
            user_id,
            permission_id,
            scope_type,
            scope_id,
            grant_type=grant_type,
            expires_at=expires_at,
            reason=reason,
            constraints=constraints,
            granted_by=self.actor.user_id,
        )

    async def deny_permission(
        self,
        user_id: str,
        permission_id: str,
        scope_type: ScopeType,
        scope_id: str,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
        constraints: Optional[Dict[str, Any]] = None,
    ) -> PermissionGrant:
        return await self.grant_permission(
            user_id,
            permission_id,
            scope_type,
            scope_id,
            grant_type=GrantType.DENY,
            expires_at=expires_at,
            reason=reason,
            constraints=constraints,
        )

    async def revoke_grant(self, user_id: str, permission_id: str, scope_type: ScopeType, scope_id: str) -> None:
        await self.guard.ensure_can_operate(
            self.actor, scope_type, scope_id, "You cannot manage permissions in this scope"
        )
        await self.guard.ensure_can_manage_user(self.actor, user_id)
        await self.grants.revoke(user_id, permission_id, scope_type, scope_id, revoked_by=self.actor.user_id)

    async def get_user_grants(
        self,
        user_id: str,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> list[PermissionGrant]:
        await self.guard.ensure_can_manage_user(self.actor, user_id, "You do not have access to view this user's grants")
        return await self.grants.get_user_grants(user_id, scope_type, scope_id)

    # ------------------------------------------------------------------
    # Effective permissions
    # ------------------------------------------------------------------

    async def get_effective_permissions(
        self,
        user_id: str,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> EffectivePermissions:
        """Resolve another user's permissions; defaults to the actor's own scope."""
        if user_id != self.actor.user_id:
            await self.guard.ensure_can_manage_user(
                self.actor, user_id, "You do not have access to view this user's permissions"
            )
        return await self.resolver.resolve(
            user_id, scope_type or self.actor.scope_type, scope_id or self.actor.scope_id
        )

    async def get_my_permissions(
        self,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> EffectivePermissions:
        return await self.resolver.resolve(
            self.actor.user_id, scope_type or self.actor.scope_type, scope_id or self.actor.scope_id
        )

    async def check_my_permission(
        self,
        code: str,
        scope_type: Optional[ScopeType] = None,
        scope_id: Optional[str] = None,
    ) -> bool:
        effective = await self.get_my_permissions(scope_type, scope_id)
        return effective.has_permission(code)

    # ------------------------------------------------------------------
    # Cache & audit
    # ------------------------------------------------------------------

    def _is_organization_level(self) -> bool:
        return self.actor.rank >= scope_rank(ScopeType.ORGANIZATION)

    async def invalidate_cache(self, user_id: Optional[str] = None) -> int:
        """
        Drop cached permission sets of one manageable user, or of everyone.

        Flushing every user requires an ORGANIZATION level actor.

        Returns:
            Number of entries dropped for the user, 0 for a full flush
        """
        if user_id is not None:
            await self.guard.ensure_can_manage_user(self.actor, user_id)
            return self.cache.invalidate_user(user_id)
        if not self._is_organization_level():
            raise ForbiddenError("Only organization level users can flush the permission cache")
        self.cache.invalidate_all()
        return 0

    async def list_audit_logs(
        self,
        page: int = 1,
        page_size: int = 50,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> Tuple[list[AuditLog], int]:
        """
        Audit records inside the actor's subtree, newest first.

        Records without a scope (catalog changes) are only visible at the
        ORGANIZATION level.

        Returns:
            The requested page and the total number of matching records
        """
        ids_by_type: Dict[ScopeType, list[str]] = defaultdict(list)
        for scope in await self.hierarchy.descendants(self.actor.scope):
            ids_by_type[scope.scope_type].append(scope.scope_id)

        visible = [
            and_(AuditLog.scope_type == scope_type, AuditLog.scope_id.in_(ids))
            for scope_type, ids in ids_by_type.items()
        ]
        if self._is_organization_level():
            visible.append(AuditLog.scope_type.is_(None))

        stmt = select(AuditLog).where(or_(*visible))
        if user_id:
            stmt = stmt.where(AuditLog.user_id == user_id)
        if action:
            stmt = stmt.where(AuditLog.action == action)
        if entity_type:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        if entity_id:
            stmt = stmt.where(AuditLog.entity_id == entity_id)

        total = (await self.db.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()

        stmt = stmt.order_by(AuditLog.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total
