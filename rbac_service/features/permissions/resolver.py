"""
Effective permission resolution.

For a user at a scope instance:
1. Collect permissions of unexpired role assignments at exactly that scope
2. Add unexpired ALLOW grants at that scope
3. Union with the resolved set of the parent scope
4. Deny every code matched by an unexpired DENY grant at that scope, or by
   a denial carried down from an ancestor that this scope does not grant
   again through its own roles or ALLOW grants

A DENY at a scope therefore wins over both local and inherited sources
in its whole subtree, including codes only reachable through an inherited
wildcard. Each scope level is cached under its own key, so resolving a
sibling reuses the parent's entry. Entries are only written if the user
was not invalidated while the resolution was running.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.base import utc_now
from rbac_service.features.hierarchy.scopes import Scope, ScopeType
from rbac_service.features.hierarchy.service import HierarchyLookup, MAX_HIERARCHY_DEPTH
from rbac_service.features.permissions import matching
from rbac_service.features.permissions.assignments import active_assignment_clause
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.grants import active_grant_clause
from rbac_service.features.permissions.models import (
    GrantType, Permission, PermissionGrant, Role, UserRoleAssignment, role_permissions,
)
from rbac_service.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class RoleSummary:
    role_id: str
    role_name: str
    role_slug: str


@dataclass(frozen=True)
class EffectivePermissions:
    """Resolved permissions of a user at one scope instance."""
    user_id: str
    scope_type: ScopeType
    scope_id: str
    permissions: frozenset[str] = frozenset()
    roles: tuple[RoleSummary, ...] = ()
    # Denied here or carried down from an ancestor
    denied: frozenset[str] = field(default_factory=frozenset)

    def has_permission(self, code: str) -> bool:
        return matching.has_permission(self.permissions, code, self.denied)

    def has_all_permissions(self, codes: Iterable[str]) -> bool:
        return matching.has_all_permissions(self.permissions, codes, self.denied)

    def has_any_permission(self, codes: Iterable[str]) -> bool:
        return matching.has_any_permission(self.permissions, codes, self.denied)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "scope_type": self.scope_type.value,
            "scope_id": self.scope_id,
            "permissions": sorted(self.permissions),
            "roles": [
                {"role_id": r.role_id, "role_name": r.role_name, "role_slug": r.role_slug}
                for r in self.roles
            ],
            "denied": sorted(self.denied),
        }


class EffectivePermissionResolver:
    """
    Computes and caches effective permissions.

    Usage:
        resolver = EffectivePermissionResolver(db, HierarchyService(db), permission_cache)
        effective = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
        effective.has_permission("orders:read")
    """

    def __init__(self, db: AsyncSession, hierarchy: HierarchyLookup, cache: PermissionCache):
        self.db = db
        self.hierarchy = hierarchy
        self.cache = cache

    async def resolve(self, user_id: str, scope_type: ScopeType | str, scope_id: str) -> EffectivePermissions:
        scope = Scope(scope_type, scope_id)
        generation = self.cache.generation(user_id)

        # Walk up until a cached level or the root, then fold back down
        pending: list[Scope] = []
        inherited: Optional[EffectivePermissions] = None
        seen: set[Scope] = set()
        current: Optional[Scope] = scope
        while current is not None:
            cached = self.cache.get(self.cache.key(user_id, current.scope_type, current.scope_id))
            if cached is not None:
                log.debug(f"Permission cache hit for {user_id} at {current}")
                inherited = cached
                break
            pending.append(current)
            seen.add(current)
            if len(pending) > MAX_HIERARCHY_DEPTH:
                log.warning(f"Scope hierarchy deeper than {MAX_HIERARCHY_DEPTH} levels above {scope}")
                break
            parent = await self.hierarchy.parent_of(current)
            if parent is not None and parent in seen:
                log.warning(f"Cycle in scope hierarchy at {parent} (from {scope})")
                break
            current = parent

        cacheable = True
        for level in reversed(pending):
            inherited = await self._resolve_level(user_id, level, inherited)
            if cacheable:
                key = self.cache.key(user_id, level.scope_type, level.scope_id)
                cacheable = self.cache.set_if_generation(key, inherited, user_id, generation)
                if not cacheable:
                    log.debug(f"Permissions of {user_id} changed during resolution at {level}; not caching")

        log.debug(f"Resolved {len(inherited.permissions)} permissions for {user_id} at {scope}")
        return inherited

    async def _resolve_level(
        self,
        user_id: str,
        scope: Scope,
        inherited: Optional[EffectivePermissions],
    ) -> EffectivePermissions:
        now = utc_now()

        role_rows = (await self.db.execute(
            select(Role.id, Role.name, Role.slug)
            .join(UserRoleAssignment, UserRoleAssignment.role_id == Role.id)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.scope_type == scope.scope_type,
                UserRoleAssignment.scope_id == scope.scope_id,
                Role.deleted_at.is_(None),
                active_assignment_clause(now),
            )
            .order_by(Role.priority, Role.name)
        )).all()
        local_roles = [RoleSummary(row.id, row.name, row.slug) for row in role_rows]

        granted: set[str] = set()
        if local_roles:
            codes = await self.db.execute(
                select(Permission.code)
                .join(role_permissions, role_permissions.c.permission_id == Permission.id)
                .where(role_permissions.c.role_id.in_([r.role_id for r in local_roles]))
            )
            granted.update(codes.scalars().all())

        denied: set[str] = set()
        grant_rows = (await self.db.execute(
            select(Permission.code, PermissionGrant.grant_type)
            .join(Permission, Permission.id == PermissionGrant.permission_id)
            .where(
                PermissionGrant.user_id == user_id,
                PermissionGrant.scope_type == scope.scope_type,
                PermissionGrant.scope_id == scope.scope_id,
                active_grant_clause(now),
            )
        )).all()
        for code, grant_type in grant_rows:
            if grant_type == GrantType.DENY:
                denied.add(code)
            else:
                granted.add(code)

        roles = list(local_roles)
        if inherited is not None:
            # Ancestor denials hold unless this level grants the code again
            denied.update(
                code for code in inherited.denied
                if not any(matching.permission_matches(g, code) for g in granted)
            )
            granted.update(inherited.permissions)
            local_ids = {r.role_id for r in local_roles}
            roles.extend(r for r in inherited.roles if r.role_id not in local_ids)

        permissions = {
            code for code in granted
            if not any(matching.permission_matches(d, code) for d in denied)
        }

        return EffectivePermissions(
            user_id=user_id,
            scope_type=scope.scope_type,
            scope_id=scope.scope_id,
            permissions=frozenset(permissions),
            roles=tuple(roles),
            denied=frozenset(denied),
        )

    async def has_permission(self, user_id: str, scope_type: ScopeType | str, scope_id: str, code: str) -> bool:
        effective = await self.resolve(user_id, scope_type, scope_id)
        allowed = effective.has_permission(code)
        log.debug(f"Permission {code} for {user_id} at {Scope(scope_type, scope_id)}: {'granted' if allowed else 'denied'}")
        return allowed

    async def has_all_permissions(
        self, user_id: str, scope_type: ScopeType | str, scope_id: str, codes: Iterable[str]
    ) -> bool:
        effective = await self.resolve(user_id, scope_type, scope_id)
        return effective.has_all_permissions(codes)

    async def has_any_permission(
        self, user_id: str, scope_type: ScopeType | str, scope_id: str, codes: Iterable[str]
    ) -> bool:
        effective = await self.resolve(user_id, scope_type, scope_id)
        return effective.has_any_permission(codes)

    def invalidate_user_cache(self, user_id: str) -> None:
        self.cache.invalidate_user(user_id)

    def invalidate_all_cache(self) -> None:
        self.cache.invalidate_all()
