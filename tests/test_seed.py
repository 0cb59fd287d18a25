import pytest
from sqlalchemy import func, select

from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.models import Permission, Role
from scripts.seed_rbac import DEFAULT_PERMISSIONS, DEFAULT_ROLES, seed_permissions, seed_roles

pytestmark = pytest.mark.asyncio


async def test_seed_is_idempotent(db):
    for _ in range(2):
        permissions_map = await seed_permissions(db)
        await seed_roles(db, permissions_map)

    permission_count = (await db.execute(select(func.count()).select_from(Permission))).scalar_one()
    assert permission_count == len(DEFAULT_PERMISSIONS)

    result = await db.execute(select(Role).where(Role.is_system.is_(True)))
    system_roles = {role.slug: role for role in result.scalars().all()}
    assert set(system_roles) == set(DEFAULT_ROLES)
    assert all(role.scope_id is None for role in system_roles.values())


async def test_seeded_roles_carry_their_permissions(db):
    roles_map = await seed_roles(db, await seed_permissions(db))

    assert roles_map["platform_admin"].permission_codes == ["*"]
    assert roles_map["platform_admin"].scope_type == ScopeType.ORGANIZATION
    assert roles_map["staff"].is_default
    assert "orders:read" in roles_map["viewer"].permission_codes
    assert "users:manage" not in roles_map["manager"].permission_codes


async def test_wildcard_permission_gets_admin_category(db):
    permissions_map = await seed_permissions(db)

    assert permissions_map["*"].category == "admin"
    assert permissions_map["orders:read"].category == "orders"
