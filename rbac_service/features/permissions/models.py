"""
Permission, Role, assignment and grant models for scope-based RBAC.

This module implements:
- A global permission catalog (codes of the form resource:action)
- Roles bound to a scope type and optionally one scope instance
- User role assignments at a concrete scope instance, with optional expiry
- Direct per-user ALLOW/DENY grants at a scope instance, with optional expiry
- An audit log of RBAC mutations
"""
import enum
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Boolean, Integer,
    Enum as SQLEnum, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rbac_service.core.database.base import Base, TimestampMixin, generate_ulid, utc_now
from rbac_service.features.hierarchy.scopes import ScopeType


class GrantType(str, enum.Enum):
    """Direction of a direct permission grant."""
    ALLOW = "ALLOW"
    DENY = "DENY"


# ============================================================================
# Association Tables
# ============================================================================

# Role-Permission relationship
role_permissions = Table(
    "role_permissions",
    Base.metadata,
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", String(26), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utc_now),
)


# ============================================================================
# Core Models
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission definition.

    Examples:
    - code="orders:read", category="orders"
    - code="orders:*" (every orders action)
    - code="*" (super admin)
    """
    __tablename__ = "permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    roles: Mapped[list["Role"]] = relationship(
        "Role",
        secondary=role_permissions,
        back_populates="permissions",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r})>"


class Role(Base, TimestampMixin):
    """
    Role grouping permissions at a scope level.

    scope_id is null for global roles that apply to every instance of the
    scope type (the seeded system roles). Deleted roles keep their row with
    deleted_at set.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(20), nullable=True)

    scope_type: Mapped[ScopeType] = mapped_column(SQLEnum(ScopeType), nullable=False)
    scope_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        secondary=role_permissions,
        back_populates="roles",
        lazy="selectin"
    )

    __table_args__ = (
        Index("ix_roles_scope", "scope_type", "scope_id"),
    )

    @property
    def permission_codes(self) -> list[str]:
        return sorted(p.code for p in self.permissions)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, slug={self.slug!r}, scope={self.scope_type.value}:{self.scope_id})>"


class UserRoleAssignment(Base):
    """A user holding a role at one scope instance."""
    __tablename__ = "user_role_assignments"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    scope_type: Mapped[ScopeType] = mapped_column(SQLEnum(ScopeType), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    assigned_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    role: Mapped["Role"] = relationship("Role", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("user_id", "role_id", "scope_type", "scope_id", name="uq_user_role_assignment"),
        Index("ix_user_role_assignments_scope", "scope_type", "scope_id"),
    )

    def __repr__(self) -> str:
        return f"<UserRoleAssignment(user_id={self.user_id}, role_id={self.role_id}, scope={self.scope_type.value}:{self.scope_id})>"


class PermissionGrant(Base):
    """
    Direct permission override for one user at one scope instance.

    ALLOW adds the permission on top of role permissions, DENY removes it.
    """
    __tablename__ = "permission_grants"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("permissions.id", ondelete="CASCADE"),
        nullable=False
    )
    scope_type: Mapped[ScopeType] = mapped_column(SQLEnum(ScopeType), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    grant_type: Mapped[GrantType] = mapped_column(SQLEnum(GrantType), nullable=False, default=GrantType.ALLOW)
    granted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Justification and free-form constraints
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    constraints: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    permission: Mapped["Permission"] = relationship("Permission", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("user_id", "permission_id", "scope_type", "scope_id", name="uq_permission_grant"),
        Index("ix_permission_grants_scope", "scope_type", "scope_id"),
    )

    def __repr__(self) -> str:
        return f"<PermissionGrant(user_id={self.user_id}, permission_id={self.permission_id}, type={self.grant_type.value})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for RBAC mutations.

    Tracks who changed what, and at which scope.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Context
    scope_type: Mapped[ScopeType | None] = mapped_column(SQLEnum(ScopeType), nullable=True)
    scope_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, entity={self.entity_type})>"
