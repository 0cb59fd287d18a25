"""Shared pytest fixtures for RBAC tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from rbac_service.core.database.engine import build_engine, build_session_factory, init_db
from rbac_service.features.hierarchy.models import ScopeNode
from rbac_service.features.hierarchy.scopes import Actor, ScopeType
from rbac_service.features.hierarchy.service import HierarchyService
from rbac_service.features.permissions.assignments import RoleAssignmentStore
from rbac_service.features.permissions.audit import AuditEntry, ChangeNotifier, EventBus
from rbac_service.features.permissions.cache import PermissionCache
from rbac_service.features.permissions.catalog import PermissionCatalog
from rbac_service.features.permissions.grants import PermissionGrantStore
from rbac_service.features.permissions.models import Permission
from rbac_service.features.permissions.resolver import EffectivePermissionResolver
from rbac_service.features.permissions.roles import RoleStore
from rbac_service.features.users.models import User

# org-1
# ├── cl-1
# │   └── co-1
# │       └── dep-1
# │           └── team-1
# └── cl-2
#     └── co-2
SCOPE_TREE = [
    (ScopeType.ORGANIZATION, "org-1", None, None),
    (ScopeType.CLIENT, "cl-1", ScopeType.ORGANIZATION, "org-1"),
    (ScopeType.CLIENT, "cl-2", ScopeType.ORGANIZATION, "org-1"),
    (ScopeType.COMPANY, "co-1", ScopeType.CLIENT, "cl-1"),
    (ScopeType.COMPANY, "co-2", ScopeType.CLIENT, "cl-2"),
    (ScopeType.DEPARTMENT, "dep-1", ScopeType.COMPANY, "co-1"),
    (ScopeType.TEAM, "team-1", ScopeType.DEPARTMENT, "dep-1"),
]

USERS = [
    # id, scope_type, scope_id, client_id, company_id, department_id
    ("admin", ScopeType.ORGANIZATION, "org-1", None, None, None),
    ("client-admin", ScopeType.CLIENT, "cl-1", "cl-1", None, None),
    ("co-admin", ScopeType.COMPANY, "co-1", "cl-1", "co-1", None),
    ("u-1", ScopeType.COMPANY, "co-1", "cl-1", "co-1", None),
    ("u-2", ScopeType.COMPANY, "co-2", "cl-2", "co-2", None),
    ("dept-lead", ScopeType.DEPARTMENT, "dep-1", "cl-1", "co-1", "dep-1"),
    ("team-member", ScopeType.TEAM, "team-1", "cl-1", "co-1", "dep-1"),
]


class RecordingSink:
    """Audit sink keeping entries in memory."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class RecordingBus(EventBus):
    """Event bus remembering every published event."""

    def __init__(self) -> None:
        super().__init__()
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.published.append((event, payload))
        await super().publish(event, payload)

    def names(self) -> list[str]:
        return [name for name, _ in self.published]


async def seed_hierarchy(session: AsyncSession) -> None:
    for scope_type, scope_id, parent_type, parent_id in SCOPE_TREE:
        session.add(ScopeNode(
            scope_type=scope_type,
            scope_id=scope_id,
            parent_type=parent_type,
            parent_id=parent_id,
            name=scope_id,
        ))
    for user_id, scope_type, scope_id, client_id, company_id, department_id in USERS:
        session.add(User(
            id=user_id,
            email=f"{user_id}@example.com",
            name=user_id,
            scope_type=scope_type,
            scope_id=scope_id,
            organization_id="org-1",
            client_id=client_id,
            company_id=company_id,
            department_id=department_id,
        ))
    await session.commit()


def make_actor(user_id: str) -> Actor:
    """Actor positioned at the seeded user's home scope."""
    for uid, scope_type, scope_id, client_id, company_id, department_id in USERS:
        if uid == user_id:
            return Actor(
                user_id=uid,
                scope_type=scope_type,
                scope_id=scope_id,
                organization_id="org-1",
                client_id=client_id,
                company_id=company_id,
                department_id=department_id,
            )
    raise KeyError(user_id)


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    """Provide a file-backed SQLite database per test."""

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'rbac.sqlite'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture()
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        await seed_hierarchy(session)
        yield session


@pytest.fixture()
def cache() -> PermissionCache:
    return PermissionCache(ttl_seconds=60)


@pytest.fixture()
def audit_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture()
def notifier(audit_sink: RecordingSink, bus: RecordingBus) -> ChangeNotifier:
    return ChangeNotifier(audit_sink, bus)


@pytest.fixture()
def catalog(db: AsyncSession, cache: PermissionCache, notifier: ChangeNotifier) -> PermissionCatalog:
    return PermissionCatalog(db, cache, notifier)


@pytest.fixture()
def roles(db: AsyncSession, cache: PermissionCache, notifier: ChangeNotifier) -> RoleStore:
    return RoleStore(db, cache, notifier)


@pytest.fixture()
def assignments(db: AsyncSession, cache: PermissionCache, notifier: ChangeNotifier) -> RoleAssignmentStore:
    return RoleAssignmentStore(db, cache, notifier)


@pytest.fixture()
def grants(db: AsyncSession, cache: PermissionCache, notifier: ChangeNotifier) -> PermissionGrantStore:
    return PermissionGrantStore(db, cache, notifier)


@pytest.fixture()
def hierarchy(db: AsyncSession) -> HierarchyService:
    return HierarchyService(db)


@pytest.fixture()
def resolver(db: AsyncSession, hierarchy: HierarchyService, cache: PermissionCache) -> EffectivePermissionResolver:
    return EffectivePermissionResolver(db, hierarchy, cache)


@pytest_asyncio.fixture()
async def perms(catalog: PermissionCatalog) -> dict[str, Permission]:
    """A small permission catalog keyed by code."""

    codes = [
        "orders:read",
        "orders:write",
        "orders:refund",
        "orders:*",
        "customers:read",
        "roles:read",
        "roles:manage",
        "users:read",
        "users:manage",
        "*",
    ]
    return {code: await catalog.create(code, code) for code in codes}


@pytest.fixture()
def actor_for():
    """Build an Actor for one of the seeded users."""

    return make_actor
