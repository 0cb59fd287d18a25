"""
Pydantic schemas for permission management.

Request and response models for permissions, roles, assignments, grants,
effective permissions and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.matching import is_valid_permission_code
from rbac_service.features.permissions.models import GrantType


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Permission code (e.g., 'orders:read', 'orders:*')")
    name: str = Field(..., min_length=1, max_length=255, description="Display name")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""
    category: Optional[str] = Field(None, max_length=100, description="Grouping category (defaults to the resource part)")

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Validate permission code format."""
        if not is_valid_permission_code(v):
            raise ValueError("Permission code must look like 'resource:action', 'resource:*' or '*'")
        return v


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    id: str
    category: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionBrief(BaseModel):
    id: str
    code: str
    name: str

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")
    color: Optional[str] = Field(None, max_length=20, description="Display color (e.g., '#3b82f6')")


class RoleCreate(RoleBase):
    """Schema for creating a new role."""
    slug: Optional[str] = Field(None, max_length=100, description="Defaults to the normalized name")
    scope_type: ScopeType
    scope_id: Optional[str] = Field(None, max_length=64, description="Scope instance (null for a global role)")
    permission_ids: List[str] = Field(default_factory=list)
    priority: int = Field(100, ge=0, description="Lower sorts first")
    is_default: bool = False


class RoleUpdate(BaseModel):
    """Schema for updating a role. Only supplied fields change."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    color: Optional[str] = Field(None, max_length=20)
    priority: Optional[int] = Field(None, ge=0)
    is_default: Optional[bool] = None
    permission_ids: Optional[List[str]] = None


class SetRolePermissions(BaseModel):
    """Full replacement of a role's permission set."""
    permission_ids: List[str]


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    slug: str
    scope_type: ScopeType
    scope_id: Optional[str]
    is_system: bool
    is_default: bool
    priority: int
    permissions: List[PermissionBrief] = []
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleBrief(BaseModel):
    id: str
    name: str
    slug: str
    scope_type: ScopeType
    scope_id: Optional[str]

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignRoleRequest(BaseModel):
    """Schema for assigning a role to a user at a scope."""
    user_id: str = Field(..., min_length=1, max_length=64)
    role_id: str = Field(..., min_length=1)
    scope_type: ScopeType
    scope_id: str = Field(..., min_length=1, max_length=64)
    expires_at: Optional[datetime] = Field(None, description="Assignment inactive after this time")


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    scope_type: ScopeType
    scope_id: str
    assigned_by: Optional[str]
    assigned_at: datetime
    expires_at: Optional[datetime]
    role: RoleBrief

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Grant Schemas
# ============================================================================

class GrantPermissionRequest(BaseModel):
    """Schema for a direct ALLOW/DENY grant."""
    user_id: str = Field(..., min_length=1, max_length=64)
    permission_id: str = Field(..., min_length=1)
    scope_type: ScopeType
    scope_id: str = Field(..., min_length=1, max_length=64)
    grant_type: GrantType = GrantType.ALLOW
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=1000, description="Justification")
    constraints: Optional[Dict[str, Any]] = None


class GrantResponse(BaseModel):
    id: str
    user_id: str
    permission_id: str
    scope_type: ScopeType
    scope_id: str
    grant_type: GrantType
    granted_by: Optional[str]
    granted_at: datetime
    expires_at: Optional[datetime]
    reason: Optional[str]
    constraints: Optional[Dict[str, Any]]
    permission: PermissionBrief

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Effective Permission Schemas
# ============================================================================

class RoleSummaryResponse(BaseModel):
    role_id: str
    role_name: str
    role_slug: str

    model_config = ConfigDict(from_attributes=True)


class EffectivePermissionsResponse(BaseModel):
    """Resolved permissions of a user at one scope instance."""
    user_id: str
    scope_type: ScopeType
    scope_id: str
    permissions: List[str]
    roles: List[RoleSummaryResponse]
    denied: List[str] = []


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    permission: str
    scope_type: ScopeType
    scope_id: str
    has_permission: bool


class CacheInvalidateRequest(BaseModel):
    """Drop one user's cached sets, or everything when user_id is omitted."""
    user_id: Optional[str] = None


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    entity_type: str
    entity_id: Optional[str]
    scope_type: Optional[ScopeType]
    scope_id: Optional[str]
    details: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
