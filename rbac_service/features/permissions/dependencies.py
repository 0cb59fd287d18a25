"""
Permission checking dependencies for route protection.

Implements:
- Shared permission cache, audit sink and event bus for the process
- FastAPI dependencies requiring permissions at the actor's own scope
- RbacService construction for route handlers
"""
from typing import Annotated
from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core import config
from rbac_service.core.database.engine import AsyncSessionLocal, get_db
from rbac_service.features.hierarchy.scopes import Actor
from rbac_service.features.hierarchy.service import HierarchyService
from rbac_service.features.permissions.audit import ChangeNotifier, DatabaseAuditSink, EventBus
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.resolver import EffectivePermissionResolver
from rbac_service.features.users.dependencies import get_current_actor
from rbac_service.utils import get_logger


log = get_logger(__name__)

permission_cache: PermissionCache = PermissionCache(ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS)
event_bus = EventBus()
audit_sink = DatabaseAuditSink(AsyncSessionLocal)


def get_permission_cache() -> PermissionCache:
    return permission_cache


def get_change_notifier() -> ChangeNotifier:
    return ChangeNotifier(audit_sink, event_bus)


def get_resolver(
    db: Annotated[AsyncSession, Depends(get_db)],
    cache: Annotated[PermissionCache, Depends(get_permission_cache)],
) -> EffectivePermissionResolver:
    return EffectivePermissionResolver(db, HierarchyService(db), cache)


def require_permission(*codes: str):
    """
    FastAPI dependency to require every listed permission at the actor's scope.

    Usage:
        @router.post("/roles")
        async def create_role(
            actor: Actor = Depends(require_permission("roles:manage"))
        ):
            # Actor holds roles:manage at their own scope
            pass

    Returns:
        Dependency function that returns the current actor if they have permission

    Raises:
        HTTPException: 403 if the actor lacks any of the permissions
    """
    async def permission_dependency(
        actor: Annotated[Actor, Depends(get_current_actor)],
        resolver: Annotated[EffectivePermissionResolver, Depends(get_resolver)],
    ) -> Actor:
        if not await resolver.has_all_permissions(actor.user_id, actor.scope_type, actor.scope_id, codes):
            log.debug(f"User {actor.user_id} denied {codes} at {actor.scope}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires {', '.join(codes)}"
            )
        return actor

    return permission_dependency


def require_any_permission(*codes: str):
    """
    FastAPI dependency to require ANY of the listed permissions.

    Usage:
        @router.get("/roles")
        async def list_roles(
            actor: Actor = Depends(require_any_permission("roles:read", "roles:manage"))
        ):
            pass
    """
    async def permission_dependency(
        actor: Annotated[Actor, Depends(get_current_actor)],
        resolver: Annotated[EffectivePermissionResolver, Depends(get_resolver)],
    ) -> Actor:
        if not await resolver.has_any_permission(actor.user_id, actor.scope_type, actor.scope_id, codes):
            log.debug(f"User {actor.user_id} denied any of {codes} at {actor.scope}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: requires one of {', '.join(codes)}"
            )
        return actor

    return permission_dependency

