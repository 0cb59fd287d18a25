"""
Time-bounded cache of resolved effective permissions.

Entries are keyed by user, scope type and scope id. Each entry carries its
own expiry, checked on read; there is no background eviction. A single
lock guards the map so the cache is safe to share between threads as well
as between tasks on one event loop.
"""
import threading
import time
from typing import Callable, Dict, Generic, Optional, Tuple, TypeVar

from rbac_service.features.hierarchy.scopes import ScopeType
from rbac_service.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


class PermissionCache(Generic[T]):
    """
    TTL map for effective permission sets.

    Usage:
        cache = PermissionCache(ttl_seconds=60)
        key = cache.key("u-1", ScopeType.COMPANY, "co-1")
        cache.set(key, effective)
        cache.get(key)
        cache.invalidate_user("u-1")
    """

    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, T]] = {}
        # Bumped on invalidation so in-flight resolutions cannot write back stale sets
        self._user_generations: Dict[str, int] = {}
        self._global_generation = 0
        self._lock = threading.Lock()

    @staticmethod
    def key(user_id: str, scope_type: ScopeType | str, scope_id: str) -> str:
        return f"{user_id}:{ScopeType(scope_type).value}:{scope_id}"

    def get(self, key: str) -> Optional[T]:
        """Return the cached value, or None when absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: T) -> None:
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries[key] = (expires_at, value)

    def generation(self, user_id: str) -> Tuple[int, int]:
        """Invalidation counter for a user; read it before loading what will be cached."""
        with self._lock:
            return self._global_generation, self._user_generations.get(user_id, 0)

    def set_if_generation(self, key: str, value: T, user_id: str, generation: Tuple[int, int]) -> bool:
        """
        Store value only if the user has not been invalidated since generation was read.

        Returns:
            True if the value was stored
        """
        expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            current = (self._global_generation, self._user_generations.get(user_id, 0))
            if current != generation:
                return False
            self._entries[key] = (expires_at, value)
            return True

    def invalidate_user(self, user_id: str) -> int:
        """Drop every entry belonging to a user. Returns the number removed."""
        prefix = f"{user_id}:"
        with self._lock:
            self._user_generations[user_id] = self._user_generations.get(user_id, 0) + 1
            stale = [key for key in self._entries if key.startswith(prefix)]
            for key in stale:
                del self._entries[key]
        if stale:
            log.debug(f"Invalidated {len(stale)} cached permission sets for user {user_id}")
        return len(stale)

    def invalidate_all(self) -> None:
        with self._lock:
            self._global_generation += 1
            self._entries.clear()
        log.debug("Permission cache cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
