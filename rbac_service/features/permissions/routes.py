"""
RBAC API routes.

Provides endpoints for the permission catalog, roles, role assignments,
direct grants, effective permissions and audit logs.
"""
import math
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.core.database.engine import get_db
from rbac_service.features.hierarchy.scopes import Actor, ScopeType
from rbac_service.features.users.dependencies import get_current_actor
from rbac_service.features.permissions.audit import ChangeNotifier
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.resolver import EffectivePermissions
from rbac_service.features.permissions.schemas import (
    PermissionCreate,
    PermissionResponse,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    SetRolePermissions,
    AssignRoleRequest,
    AssignmentResponse,
    GrantPermissionRequest,
    GrantResponse,
    EffectivePermissionsResponse,
    PermissionCheckResponse,
    CacheInvalidateRequest,
    AuditLogResponse,
    AuditLogListResponse,
)
from rbac_service.features.permissions.dependencies import (
    get_change_notifier,
    get_permission_cache,
    require_permission,
    require_any_permission,
)
from rbac_service.features.permissions.service import RbacService
from rbac_service.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

DbSession = Annotated[AsyncSession, Depends(get_db)]
Cache = Annotated[PermissionCache, Depends(get_permission_cache)]
Notifier = Annotated[ChangeNotifier, Depends(get_change_notifier)]


def _effective_response(effective: EffectivePermissions) -> EffectivePermissionsResponse:
    return EffectivePermissionsResponse(**effective.to_dict())


# ============================================================================
# Permission Routes
# ============================================================================

@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    category: Optional[str] = None,
    actor: Actor = Depends(require_any_permission("roles:read", "roles:manage")),
):
    """List the permission catalog, optionally by category."""
    return await RbacService(db, actor, cache, notifier).list_permissions(category)


@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Add a permission to the catalog."""
    return await RbacService(db, actor, cache, notifier).create_permission(
        code=permission.code,
        name=permission.name,
        category=permission.category,
        description=permission.description,
    )


@router.get("/permissions/{permission_id}", response_model=PermissionResponse)
async def get_permission(
    permission_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_any_permission("roles:read", "roles:manage")),
):
    return await RbacService(db, actor, cache, notifier).get_permission(permission_id)


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Remove a permission from the catalog and from every role holding it."""
    await RbacService(db, actor, cache, notifier).delete_permission(permission_id)


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    scope_type: Optional[ScopeType] = None,
    scope_id: Optional[str] = None,
    include_global: bool = True,
    actor: Actor = Depends(require_any_permission("roles:read", "roles:manage")),
):
    """List roles the caller may operate on."""
    return await RbacService(db, actor, cache, notifier).list_roles(scope_type, scope_id, include_global)


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Create a custom role at a scope the caller may operate in."""
    return await RbacService(db, actor, cache, notifier).create_role(**role.model_dump())


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_any_permission("roles:read", "roles:manage")),
):
    return await RbacService(db, actor, cache, notifier).get_role(role_id)


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Update a role. System roles keep their name and permissions."""
    return await RbacService(db, actor, cache, notifier).update_role(
        role_id, role_update.model_dump(exclude_unset=True)
    )


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Soft-delete a custom role."""
    await RbacService(db, actor, cache, notifier).delete_role(role_id)


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse)
async def set_role_permissions(
    role_id: str,
    body: SetRolePermissions,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Replace a role's permission set."""
    return await RbacService(db, actor, cache, notifier).set_role_permissions(role_id, body.permission_ids)


# ============================================================================
# Assignment Routes
# ============================================================================

@router.post("/assignments", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def assign_role(
    assignment: AssignRoleRequest,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("users:manage")),
):
    """Assign a role to a user at a scope."""
    return await RbacService(db, actor, cache, notifier).assign_role(
        assignment.user_id,
        assignment.role_id,
        assignment.scope_type,
        assignment.scope_id,
        expires_at=assignment.expires_at,
    )


@router.delete("/assignments", status_code=status.HTTP_204_NO_CONTENT)
async def unassign_role(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    user_id: str = Query(...),
    role_id: str = Query(...),
    scope_type: ScopeType = Query(...),
    scope_id: str = Query(...),
    actor: Actor = Depends(require_permission("users:manage")),
):
    await RbacService(db, actor, cache, notifier).unassign_role(user_id, role_id, scope_type, scope_id)


@router.get("/users/{user_id}/roles", response_model=List[AssignmentResponse])
async def get_user_roles(
    user_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    scope_type: Optional[ScopeType] = None,
    scope_id: Optional[str] = None,
    actor: Actor = Depends(require_any_permission("users:read", "users:manage")),
):
    """Active role assignments of a user."""
    return await RbacService(db, actor, cache, notifier).get_user_roles(user_id, scope_type, scope_id)


# ============================================================================
# Grant Routes
# ============================================================================

@router.post("/grants", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_permission(
    grant: GrantPermissionRequest,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("users:manage")),
):
    """Create or replace a direct ALLOW/DENY grant."""
    return await RbacService(db, actor, cache, notifier).grant_permission(
        grant.user_id,
        grant.permission_id,
        grant.scope_type,
        grant.scope_id,
        grant_type=grant.grant_type,
        expires_at=grant.expires_at,
        reason=grant.reason,
        constraints=grant.constraints,
    )


@router.delete("/grants", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_grant(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    user_id: str = Query(...),
    permission_id: str = Query(...),
    scope_type: ScopeType = Query(...),
    scope_id: str = Query(...),
    actor: Actor = Depends(require_permission("users:manage")),
):
    await RbacService(db, actor, cache, notifier).revoke_grant(user_id, permission_id, scope_type, scope_id)


@router.get("/users/{user_id}/grants", response_model=List[GrantResponse])
async def get_user_grants(
    user_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    scope_type: Optional[ScopeType] = None,
    scope_id: Optional[str] = None,
    actor: Actor = Depends(require_any_permission("users:read", "users:manage")),
):
    return await RbacService(db, actor, cache, notifier).get_user_grants(user_id, scope_type, scope_id)


# ============================================================================
# Effective Permission Routes
# ============================================================================

@router.get("/users/{user_id}/effective-permissions", response_model=EffectivePermissionsResponse)
async def get_effective_permissions(
    user_id: str,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    scope_type: Optional[ScopeType] = None,
    scope_id: Optional[str] = None,
    actor: Actor = Depends(require_any_permission("users:read", "users:manage")),
):
    """Resolved permissions of a user at a scope."""
    effective = await RbacService(db, actor, cache, notifier).get_effective_permissions(user_id, scope_type, scope_id)
    return _effective_response(effective)


@router.get("/me/permissions", response_model=EffectivePermissionsResponse)
async def get_my_permissions(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    scope_type: Optional[ScopeType] = None,
    scope_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
):
    """Resolved permissions of the caller, at their own scope by default."""
    effective = await RbacService(db, actor, cache, notifier).get_my_permissions(scope_type, scope_id)
    return _effective_response(effective)


@router.get("/me/check", response_model=PermissionCheckResponse)
async def check_my_permission(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    permission: str = Query(..., min_length=1),
    scope_type: Optional[ScopeType] = None,
    scope_id: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
):
    allowed = await RbacService(db, actor, cache, notifier).check_my_permission(permission, scope_type, scope_id)
    return PermissionCheckResponse(
        permission=permission,
        scope_type=scope_type or actor.scope_type,
        scope_id=scope_id or actor.scope_id,
        has_permission=allowed,
    )


# ============================================================================
# Cache & Audit Routes
# ============================================================================

@router.post("/cache/invalidate", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_cache(
    body: CacheInvalidateRequest,
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    actor: Actor = Depends(require_permission("roles:manage")),
):
    """Drop cached permission sets for one manageable user, or for everyone at organization level."""
    await RbacService(db, actor, cache, notifier).invalidate_cache(body.user_id)
    log.info(f"Permission cache invalidated by {actor.user_id} (user={body.user_id or 'all'})")


@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    db: DbSession,
    cache: Cache,
    notifier: Notifier,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: Actor = Depends(require_any_permission("audit:read", "roles:manage")),
):
    """List RBAC audit logs within the caller's subtree, newest first."""
    items, total = await RbacService(db, actor, cache, notifier).list_audit_logs(
        page=page,
        page_size=page_size,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
    )
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size) if total else 0,
    )
