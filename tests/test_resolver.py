from datetime import datetime, timedelta, timezone

import pytest

from rbac_service.features.hierarchy.scopes import Scope, ScopeType
from rbac_service.features.hierarchy.service import HierarchyService
from rbac_service.features.permissions.assignments import RoleAssignmentStore
from rbac_service.features.permissions.models import UserRoleAssignment
from rbac_service.features.permissions.resolver import EffectivePermissionResolver

pytestmark = pytest.mark.asyncio


class LoopingHierarchy:
    """Hierarchy whose DEPARTMENT and TEAM point at each other."""

    def __init__(self) -> None:
        self.calls = 0
        self.parents = {
            Scope(ScopeType.TEAM, "t-x"): Scope(ScopeType.DEPARTMENT, "d-x"),
            Scope(ScopeType.DEPARTMENT, "d-x"): Scope(ScopeType.TEAM, "t-x"),
        }

    async def parent_of(self, scope):
        self.calls += 1
        return self.parents.get(scope)


async def test_user_without_roles_or_grants_gets_empty_set(resolver):
    effective = await resolver.resolve("nobody", ScopeType.COMPANY, "co-1")

    assert effective.permissions == frozenset()
    assert effective.roles == ()
    assert not effective.has_permission("orders:read")


async def test_role_grants_its_permissions(resolver, roles, assignments, perms):
    role = await roles.create("Order Viewer", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("u-1", role.id, ScopeType.COMPANY, "co-1")

    effective = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")

    assert "orders:read" in effective.permissions
    assert [r.role_slug for r in effective.roles] == ["order_viewer"]
    assert await resolver.has_permission("u-1", ScopeType.COMPANY, "co-1", "orders:read")


async def test_local_deny_removes_role_permission_at_root(resolver, roles, assignments, grants, perms):
    role = await roles.create(
        "Org Reader", ScopeType.ORGANIZATION, "org-1",
        permission_ids=[perms["orders:read"].id, perms["customers:read"].id],
    )
    await assignments.assign("admin", role.id, ScopeType.ORGANIZATION, "org-1")
    await grants.deny_permission("admin", perms["orders:read"].id, ScopeType.ORGANIZATION, "org-1")

    effective = await resolver.resolve("admin", ScopeType.ORGANIZATION, "org-1")

    assert "orders:read" not in effective.permissions
    assert "customers:read" in effective.permissions
    assert effective.denied == frozenset({"orders:read"})
    assert not effective.has_permission("orders:read")


async def test_allow_grant_adds_to_role_permissions(resolver, roles, assignments, grants, perms):
    role = await roles.create("Clerk", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("u-1", role.id, ScopeType.COMPANY, "co-1")
    await grants.grant("u-1", perms["orders:refund"].id, ScopeType.COMPANY, "co-1")

    effective = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")

    assert effective.permissions == frozenset({"orders:read", "orders:refund"})


async def test_wildcards(resolver, roles, assignments, perms):
    orders_all = await roles.create("Orders", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:*"].id])
    super_admin = await roles.create("Root", ScopeType.COMPANY, "co-2", permission_ids=[perms["*"].id])
    await assignments.assign("u-1", orders_all.id, ScopeType.COMPANY, "co-1")
    await assignments.assign("u-2", super_admin.id, ScopeType.COMPANY, "co-2")

    u1 = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    assert u1.has_permission("orders:refund")
    assert not u1.has_permission("customers:read")
    assert u1.has_all_permissions(["orders:read", "orders:write"])
    assert u1.has_any_permission(["customers:read", "orders:export"])

    u2 = await resolver.resolve("u-2", ScopeType.COMPANY, "co-2")
    assert u2.has_permission("billing:manage")


async def test_permissions_inherit_down_from_organization(resolver, roles, assignments, perms):
    role = await roles.create("Org Orders", ScopeType.ORGANIZATION, "org-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("team-member", role.id, ScopeType.ORGANIZATION, "org-1")

    at_team = await resolver.resolve("team-member", ScopeType.TEAM, "team-1")
    at_company = await resolver.resolve("team-member", ScopeType.COMPANY, "co-2")

    assert "orders:read" in at_team.permissions
    assert "orders:read" in at_company.permissions
    assert [r.role_slug for r in at_team.roles] == ["org_orders"]


async def test_permissions_do_not_flow_upward_or_sideways(resolver, roles, assignments, perms):
    role = await roles.create("Team Orders", ScopeType.TEAM, "team-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("team-member", role.id, ScopeType.TEAM, "team-1")

    assert not (await resolver.resolve("team-member", ScopeType.DEPARTMENT, "dep-1")).has_permission("orders:read")
    assert not (await resolver.resolve("team-member", ScopeType.COMPANY, "co-2")).has_permission("orders:read")


async def test_expired_assignment_and_grant_are_ignored(resolver, roles, assignments, grants, perms):
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    future = datetime.now(timezone.utc) + timedelta(hours=1)
    expired_role = await roles.create("Expired", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])
    live_role = await roles.create("Live", ScopeType.COMPANY, "co-1", permission_ids=[perms["customers:read"].id])
    await assignments.assign("u-1", expired_role.id, ScopeType.COMPANY, "co-1", expires_at=past)
    await assignments.assign("u-1", live_role.id, ScopeType.COMPANY, "co-1", expires_at=future)
    await grants.grant("u-1", perms["orders:write"].id, ScopeType.COMPANY, "co-1", expires_at=past)
    await grants.deny_permission("u-1", perms["customers:read"].id, ScopeType.COMPANY, "co-1", expires_at=past)

    effective = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")

    assert effective.permissions == frozenset({"customers:read"})
    assert [r.role_name for r in effective.roles] == ["Live"]
    assert effective.denied == frozenset()


async def test_results_are_cached_until_invalidated(db, resolver, roles, assignments, perms, cache):
    role = await roles.create("Clerk", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])
    first = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    assert first.permissions == frozenset()

    # Written behind the stores' back, so nothing invalidates the cache
    db.add(UserRoleAssignment(user_id="u-1", role_id=role.id, scope_type=ScopeType.COMPANY, scope_id="co-1"))
    await db.commit()

    cached = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    assert cached is first

    resolver.invalidate_user_cache("u-1")
    fresh = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    assert fresh.permissions == frozenset({"orders:read"})


async def test_each_level_is_cached_under_its_own_key(resolver, cache):
    await resolver.resolve("u-1", ScopeType.TEAM, "team-1")

    for key in (
        "u-1:TEAM:team-1",
        "u-1:DEPARTMENT:dep-1",
        "u-1:COMPANY:co-1",
        "u-1:CLIENT:cl-1",
        "u-1:ORGANIZATION:org-1",
    ):
        assert cache.get(key) is not None

    resolver.invalidate_all_cache()
    assert len(cache) == 0


async def test_store_mutations_keep_cache_coherent(resolver, roles, assignments, grants, perms):
    role = await roles.create("Clerk", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])

    await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    await assignments.assign("u-1", role.id, ScopeType.COMPANY, "co-1")
    assert (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).has_permission("orders:read")

    await roles.set_role_permissions(role.id, [perms["orders:write"].id])
    effective = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    assert effective.permissions == frozenset({"orders:write"})

    await grants.deny_permission("u-1", perms["orders:write"].id, ScopeType.COMPANY, "co-1")
    assert not (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).has_permission("orders:write")

    await grants.revoke("u-1", perms["orders:write"].id, ScopeType.COMPANY, "co-1")
    assert (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).has_permission("orders:write")

    await roles.delete(role.id)
    assert (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).permissions == frozenset()

    await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    other = await roles.create("Other", ScopeType.COMPANY, "co-1", permission_ids=[perms["customers:read"].id])
    await assignments.assign("u-1", other.id, ScopeType.COMPANY, "co-1")
    await assignments.unassign("u-1", other.id, ScopeType.COMPANY, "co-1")
    assert (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).permissions == frozenset()


async def test_local_deny_overrides_inherited_permission(resolver, roles, assignments, grants, perms):
    role = await roles.create("Org Orders", ScopeType.ORGANIZATION, "org-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("u-1", role.id, ScopeType.ORGANIZATION, "org-1")
    await grants.deny_permission("u-1", perms["orders:read"].id, ScopeType.COMPANY, "co-1")

    at_company = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    at_department = await resolver.resolve("u-1", ScopeType.DEPARTMENT, "dep-1")
    at_sibling = await resolver.resolve("u-1", ScopeType.COMPANY, "co-2")

    assert not at_company.has_permission("orders:read")
    assert "orders:read" not in at_company.permissions
    assert not at_department.has_permission("orders:read")
    assert at_sibling.has_permission("orders:read")


async def test_local_deny_blocks_code_covered_by_inherited_wildcard(resolver, roles, assignments, grants, perms):
    role = await roles.create("Org Orders", ScopeType.ORGANIZATION, "org-1", permission_ids=[perms["orders:*"].id])
    await assignments.assign("u-1", role.id, ScopeType.ORGANIZATION, "org-1")
    await grants.deny_permission("u-1", perms["orders:refund"].id, ScopeType.COMPANY, "co-1")

    at_company = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")

    assert "orders:*" in at_company.permissions
    assert at_company.has_permission("orders:read")
    assert not at_company.has_permission("orders:refund")


async def test_descendant_can_grant_denied_permission_again(resolver, roles, assignments, grants, perms):
    role = await roles.create("Org Orders", ScopeType.ORGANIZATION, "org-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("u-1", role.id, ScopeType.ORGANIZATION, "org-1")
    await grants.deny_permission("u-1", perms["orders:read"].id, ScopeType.COMPANY, "co-1")
    await grants.grant("u-1", perms["orders:read"].id, ScopeType.DEPARTMENT, "dep-1")

    assert not (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).has_permission("orders:read")
    assert (await resolver.resolve("u-1", ScopeType.DEPARTMENT, "dep-1")).has_permission("orders:read")
    assert (await resolver.resolve("u-1", ScopeType.TEAM, "team-1")).has_permission("orders:read")


async def test_hierarchy_cycle_terminates(db, roles, assignments, perms, cache):
    role = await roles.create("Dept", ScopeType.DEPARTMENT, "d-x", permission_ids=[perms["orders:read"].id])
    await assignments.assign("u-1", role.id, ScopeType.DEPARTMENT, "d-x")
    hierarchy = LoopingHierarchy()
    resolver = EffectivePermissionResolver(db, hierarchy, cache)

    effective = await resolver.resolve("u-1", ScopeType.TEAM, "t-x")

    assert effective.has_permission("orders:read")
    assert hierarchy.calls <= 3


async def test_to_dict(resolver, roles, assignments, perms):
    role = await roles.create("Clerk", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])
    await assignments.assign("u-1", role.id, ScopeType.COMPANY, "co-1")

    data = (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).to_dict()

    assert data == {
        "user_id": "u-1",
        "scope_type": "COMPANY",
        "scope_id": "co-1",
        "permissions": ["orders:read"],
        "roles": [{"role_id": role.id, "role_name": "Clerk", "role_slug": "clerk"}],
        "denied": [],
    }


async def test_deny_below_inherited_wildcard_holds_in_whole_subtree(resolver, roles, assignments, grants, perms):
    role = await roles.create("Org Orders", ScopeType.ORGANIZATION, "org-1", permission_ids=[perms["orders:*"].id])
    await assignments.assign("u-1", role.id, ScopeType.ORGANIZATION, "org-1")
    await grants.deny_permission("u-1", perms["orders:refund"].id, ScopeType.COMPANY, "co-1")

    at_department = await resolver.resolve("u-1", ScopeType.DEPARTMENT, "dep-1")
    at_team = await resolver.resolve("u-1", ScopeType.TEAM, "team-1")

    for effective in (at_department, at_team):
        assert effective.has_permission("orders:read")
        assert not effective.has_permission("orders:refund")
        assert effective.denied == frozenset({"orders:refund"})
    assert (await resolver.resolve("u-1", ScopeType.COMPANY, "co-2")).has_permission("orders:refund")


async def test_descendant_role_lifts_carried_deny_under_wildcard(resolver, roles, assignments, grants, perms):
    org_role = await roles.create("Org Orders", ScopeType.ORGANIZATION, "org-1", permission_ids=[perms["orders:*"].id])
    refunds = await roles.create("Refunds", ScopeType.DEPARTMENT, "dep-1", permission_ids=[perms["orders:refund"].id])
    await assignments.assign("u-1", org_role.id, ScopeType.ORGANIZATION, "org-1")
    await assignments.assign("u-1", refunds.id, ScopeType.DEPARTMENT, "dep-1")
    await grants.deny_permission("u-1", perms["orders:refund"].id, ScopeType.COMPANY, "co-1")

    assert not (await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")).has_permission("orders:refund")
    at_department = await resolver.resolve("u-1", ScopeType.DEPARTMENT, "dep-1")
    assert at_department.has_permission("orders:refund")
    assert at_department.denied == frozenset()


async def test_mutation_during_resolution_is_not_cached_over(db, session_factory, roles, perms, cache):
    role = await roles.create("Clerk", ScopeType.COMPANY, "co-1", permission_ids=[perms["orders:read"].id])
    target = Scope(ScopeType.COMPANY, "co-1")

    class InterleavingResolver(EffectivePermissionResolver):
        """Commits an assignment from another session once the target level is loaded."""

        interleaved = False

        async def _resolve_level(self, user_id, scope, inherited):
            effective = await super()._resolve_level(user_id, scope, inherited)
            if scope == target and not self.interleaved:
                self.interleaved = True
                async with session_factory() as other:
                    await RoleAssignmentStore(other, cache).assign("u-1", role.id, ScopeType.COMPANY, "co-1")
            return effective

    resolver = InterleavingResolver(db, HierarchyService(db), cache)

    during = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")
    after = await resolver.resolve("u-1", ScopeType.COMPANY, "co-1")

    assert not during.has_permission("orders:read")
    assert after.has_permission("orders:read")
