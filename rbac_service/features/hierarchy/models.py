"""
Scope hierarchy model.

Each row links one scope instance to its parent. The tree is maintained
outside this service; the engine only reads it.
"""
from sqlalchemy import String, Enum as SQLEnum, Index
from sqlalchemy.orm import Mapped, mapped_column

from rbac_service.core.database.base import Base, TimestampMixin
from rbac_service.features.hierarchy.scopes import ScopeType, Scope


class ScopeNode(Base, TimestampMixin):
    """
    A scope instance and its parent.

    ORGANIZATION nodes have no parent. Scope ids are owned by the systems
    that create the entities, so they are plain strings rather than ULIDs.
    """
    __tablename__ = "scope_nodes"

    scope_type: Mapped[ScopeType] = mapped_column(SQLEnum(ScopeType), primary_key=True)
    scope_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    parent_type: Mapped[ScopeType | None] = mapped_column(SQLEnum(ScopeType), nullable=True)
    parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_scope_nodes_parent", "parent_type", "parent_id"),
    )

    @property
    def scope(self) -> Scope:
        return Scope(self.scope_type, self.scope_id)

    @property
    def parent(self) -> Scope | None:
        if self.parent_type is None or self.parent_id is None:
            return None
        return Scope(self.parent_type, self.parent_id)

    def __repr__(self) -> str:
        return f"<ScopeNode({self.scope_type.value}:{self.scope_id} -> {self.parent_type}:{self.parent_id})>"
