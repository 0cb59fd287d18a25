"""
User model holding each user's home position in the scope hierarchy.
"""
from sqlalchemy import String, Boolean, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column

from rbac_service.core.database.base import Base, TimestampMixin, generate_ulid
from rbac_service.features.hierarchy.scopes import ScopeType, Scope


class User(Base, TimestampMixin):
    """
    User known to the authorization engine.

    The home scope decides who may manage this user. The denormalized
    organization/client/company/department ids mirror the hierarchy so the
    management check does not need to walk the tree for same-company rules.
    """
    __tablename__ = "users"

    # Primary key using ULID (Universally Unique Lexicographically Sortable Identifier)
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_ulid)

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Home scope
    scope_type: Mapped[ScopeType] = mapped_column(SQLEnum(ScopeType), nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    company_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    department_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_users_scope", "scope_type", "scope_id"),
    )

    @property
    def home_scope(self) -> Scope:
        return Scope(self.scope_type, self.scope_id)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email!r}, scope={self.scope_type.value}:{self.scope_id})>"
