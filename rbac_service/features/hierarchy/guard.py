"""
Scope escalation guard.

Every mutating RBAC operation runs through this guard before touching a
store: an actor may never act at a scope ranked above their own, and may
only act on scope instances inside their own subtree.
"""
from rbac_service.core.exceptions import ForbiddenError
from rbac_service.features.hierarchy.scopes import Actor, Scope, ScopeType, scope_rank
from rbac_service.features.hierarchy.service import HierarchyService
from rbac_service.utils import get_logger


log = get_logger(__name__)


class ScopeEscalationGuard:
    def __init__(self, hierarchy: HierarchyService):
        self.hierarchy = hierarchy

    async def can_operate_in_scope(
        self,
        actor: Actor,
        target_scope_type: ScopeType | str,
        target_scope_id: str,
    ) -> bool:
        # Cannot operate in a higher scope than your own
        if scope_rank(target_scope_type) > actor.rank:
            log.debug(
                f"Scope escalation blocked: {actor.user_id} at {actor.scope} -> "
                f"{ScopeType(target_scope_type).value}:{target_scope_id}"
            )
            return False
        return await self.hierarchy.is_within(Scope(target_scope_type, target_scope_id), actor.scope)

    async def can_operate_on_role(self, actor: Actor, scope_type: ScopeType, scope_id: str | None) -> bool:
        """
        Scope check for an existing or proposed role.

        Global roles (no scope id) are templates shared by every instance of
        their level, so only the rank comparison applies to them.
        """
        if scope_id is None:
            return scope_rank(scope_type) <= actor.rank
        return await self.can_operate_in_scope(actor, scope_type, scope_id)

    async def ensure_can_operate(
        self,
        actor: Actor,
        target_scope_type: ScopeType | str,
        target_scope_id: str,
        message: str = "You cannot operate in this scope",
    ) -> None:
        if not await self.can_operate_in_scope(actor, target_scope_type, target_scope_id):
            raise ForbiddenError(message)

    async def ensure_can_operate_on_role(
        self,
        actor: Actor,
        scope_type: ScopeType,
        scope_id: str | None,
        message: str = "You cannot manage roles in this scope",
    ) -> None:
        if not await self.can_operate_on_role(actor, scope_type, scope_id):
            raise ForbiddenError(message)

    async def ensure_can_manage_user(
        self,
        actor: Actor,
        target_user_id: str,
        message: str = "You do not have access to manage this user",
    ) -> None:
        if not await self.hierarchy.can_manage_user(actor, target_user_id):
            raise ForbiddenError(message)
