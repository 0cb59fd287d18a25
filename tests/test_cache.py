import threading

from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.features.permissions.cache import PermissionCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_key_format():
    assert PermissionCache.key("u-1", ScopeType.COMPANY, "co-1") == "u-1:COMPANY:co-1"
    assert PermissionCache.key("u-1", "TEAM", "t-1") == "u-1:TEAM:t-1"


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = PermissionCache(ttl_seconds=60, clock=clock)
    cache.set("u-1:COMPANY:co-1", "value")

    clock.now += 59
    assert cache.get("u-1:COMPANY:co-1") == "value"

    clock.now += 1
    assert cache.get("u-1:COMPANY:co-1") is None
    assert len(cache) == 0


def test_missing_key_returns_none():
    assert PermissionCache().get("nope") is None


def test_invalidate_user_only_drops_that_users_entries():
    cache = PermissionCache()
    cache.set("u-1:COMPANY:co-1", 1)
    cache.set("u-1:ORGANIZATION:org-1", 2)
    cache.set("u-10:COMPANY:co-1", 3)
    cache.set("u-2:COMPANY:co-1", 4)

    assert cache.invalidate_user("u-1") == 2

    assert cache.get("u-1:COMPANY:co-1") is None
    assert cache.get("u-1:ORGANIZATION:org-1") is None
    assert cache.get("u-10:COMPANY:co-1") == 3
    assert cache.get("u-2:COMPANY:co-1") == 4


def test_writes_from_before_an_invalidation_are_dropped():
    cache = PermissionCache()
    generation = cache.generation("u-1")
    other_generation = cache.generation("u-2")

    cache.invalidate_user("u-1")

    assert not cache.set_if_generation("u-1:COMPANY:co-1", "stale", "u-1", generation)
    assert cache.get("u-1:COMPANY:co-1") is None
    assert cache.set_if_generation("u-2:COMPANY:co-1", "fresh", "u-2", other_generation)
    assert cache.set_if_generation("u-1:COMPANY:co-1", "fresh", "u-1", cache.generation("u-1"))


def test_global_flush_drops_pending_writes_of_every_user():
    cache = PermissionCache()
    generation = cache.generation("u-2")

    cache.invalidate_all()

    assert not cache.set_if_generation("u-2:TEAM:t-1", "stale", "u-2", generation)
    assert len(cache) == 0


def test_invalidate_all():
    cache = PermissionCache()
    cache.set("a:COMPANY:1", 1)
    cache.set("b:COMPANY:1", 2)
    cache.invalidate_all()
    assert len(cache) == 0


def test_concurrent_writers_and_invalidation():
    cache = PermissionCache()

    def writer(user: str) -> None:
        for i in range(200):
            cache.set(f"{user}:COMPANY:{i}", i)
            cache.get(f"{user}:COMPANY:{i}")

    def invalidator() -> None:
        for _ in range(50):
            cache.invalidate_user("w0")

    threads = [threading.Thread(target=writer, args=(f"w{n}",)) for n in range(4)]
    threads.append(threading.Thread(target=invalidator))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    cache.invalidate_user("w0")
    assert len(cache) == 600
