"""
Hierarchy lookups used by the resolver and the escalation guard.
"""
from typing import Optional, Protocol
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_service.features.hierarchy.models import ScopeNode
from rbac_service.features.hierarchy.scopes import Actor, Scope, ScopeContext, ScopeType
from rbac_service.features.users.models import User
from rbac_service.utils import get_logger


log = get_logger(__name__)

# Deepest real chain is TEAM > DEPARTMENT > COMPANY > CLIENT > ORGANIZATION
MAX_HIERARCHY_DEPTH = 10

# Levels below company manage users of their own company
_COMPANY_BOUND_SCOPES = {
    ScopeType.DEPARTMENT,
    ScopeType.TEAM,
    ScopeType.VENDOR_DEPARTMENT,
    ScopeType.VENDOR_TEAM,
}

_CONTEXT_FIELDS = {
    ScopeType.ORGANIZATION: "organization_id",
    ScopeType.CLIENT: "client_id",
    ScopeType.VENDOR: "client_id",
    ScopeType.COMPANY: "company_id",
    ScopeType.VENDOR_COMPANY: "company_id",
    ScopeType.DEPARTMENT: "department_id",
    ScopeType.VENDOR_DEPARTMENT: "department_id",
}


class HierarchyLookup(Protocol):
    async def parent_of(self, scope: Scope) -> Optional[Scope]:
        ...


class HierarchyService:
    """Database-backed hierarchy lookup."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def parent_of(self, scope: Scope) -> Optional[Scope]:
        """Parent scope instance, or None for the root or an unknown node."""
        if scope.is_root:
            return None
        result = await self.db.execute(
            select(ScopeNode.parent_type, ScopeNode.parent_id).where(
                ScopeNode.scope_type == scope.scope_type,
                ScopeNode.scope_id == scope.scope_id,
            )
        )
        row = result.first()
        if row is None or row.parent_type is None or row.parent_id is None:
            return None
        return Scope(row.parent_type, row.parent_id)

    async def ancestors(self, scope: Scope) -> list[Scope]:
        """
        Ancestors of a scope, nearest first.

        Stops at the root, at a repeated node, or after MAX_HIERARCHY_DEPTH hops.
        """
        chain: list[Scope] = []
        seen = {scope}
        current = scope
        for _ in range(MAX_HIERARCHY_DEPTH):
            parent = await self.parent_of(current)
            if parent is None:
                return chain
            if parent in seen:
                log.warning(f"Cycle in scope hierarchy at {parent} (from {scope})")
                return chain
            chain.append(parent)
            seen.add(parent)
            current = parent
        log.warning(f"Scope hierarchy deeper than {MAX_HIERARCHY_DEPTH} levels above {scope}")
        return chain

    async def descendants(self, scope: Scope) -> list[Scope]:
        """
        The scope and every scope below it, breadth first.

        Stops after MAX_HIERARCHY_DEPTH levels and skips nodes already seen.
        """
        found = [scope]
        seen = {scope}
        frontier = [scope]
        for _ in range(MAX_HIERARCHY_DEPTH):
            if not frontier:
                break
            result = await self.db.execute(
                select(ScopeNode.scope_type, ScopeNode.scope_id).where(
                    or_(*(
                        and_(ScopeNode.parent_type == node.scope_type, ScopeNode.parent_id == node.scope_id)
                        for node in frontier
                    ))
                )
            )
            frontier = []
            for row in result.all():
                child = Scope(row.scope_type, row.scope_id)
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    frontier.append(child)
        return found

    async def is_within(self, scope: Scope, ancestor: Scope) -> bool:
        """True if scope equals ancestor or descends from it."""
        if scope == ancestor:
            return True
        return ancestor in await self.ancestors(scope)

    async def get_scope_context(self, scope: Scope) -> ScopeContext:
        """Organization/client/company/department ids along the chain above a scope."""
        values: dict[str, str] = {}
        for node in [scope, *await self.ancestors(scope)]:
            field = _CONTEXT_FIELDS.get(node.scope_type)
            if field and field not in values:
                values[field] = node.scope_id
        return ScopeContext(**values)

    async def can_manage_user(self, actor: Actor, target_user_id: str) -> bool:
        """
        Check whether the actor may manage the target user.

        Rules:
        - Target must exist and share the actor's organization when both are known
        - DEPARTMENT/TEAM level actors manage users of their own company
        - Everyone else manages users whose home scope lies within their own scope
        """
        target = await self.db.get(User, target_user_id)
        if target is None:
            log.debug(f"can_manage_user: target user {target_user_id} not found")
            return False

        if actor.organization_id and target.organization_id and actor.organization_id != target.organization_id:
            return False

        if actor.scope_type in _COMPANY_BOUND_SCOPES:
            return target.company_id is not None and target.company_id == actor.company_id

        return await self.is_within(target.home_scope, actor.scope)
