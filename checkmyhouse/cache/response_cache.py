"""
In-memory response cache with TTL, LRU eviction and a fixed-window rate limiter.
"""
import math
import time
from dataclasses import dataclass
from typing import Optional, Any, Dict, Callable


class CacheTTL:
    """Seconds to keep responses, by how fast the underlying data changes."""
    # Static metadata
    DATABASES = 300
    TABLES = 300
    COLUMNS = 300
    CLUSTER_CONFIG = 600
    CAPABILITIES = 600

    # Dynamic statistics
    TABLE_STATS = 60
    QUERY_ANALYZER = 60
    SLOW_QUERIES = 30

    # Near real-time data
    QUERY_DRILLDOWN = 10
    MONITORING = 5


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window: int  # seconds


class RateLimits:
    DEFAULT = RateLimit(max_requests=100, window=60)
    HEAVY_QUERY = RateLimit(max_requests=20, window=60)
    METADATA = RateLimit(max_requests=200, window=60)


@dataclass
class CacheEntry:
    key: str
    data: Any
    created_at: float
    expires_at: float
    last_accessed: float
    hit_count: int = 0


@dataclass
class RateWindow:
    identifier: str
    count: int
    window_start: float


class ResponseCache:
    """
    A process-local cache for API responses.

    Entries expire on a wall-clock TTL. When the table grows past
    ``max_entries`` a cleanup pass drops expired entries and then the least
    recently accessed ones until at most ``soft_limit`` remain.

    The rate limiter uses one fixed window shared by every identifier: when
    the window elapses all counters reset together, which allows up to twice
    the nominal rate across a window boundary.
    """

    def __init__(self, max_entries: int = 1000, soft_limit: int = 500,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the cache.

        Args:
            max_entries: Size that triggers a cleanup pass after an insert.
            soft_limit: Size the LRU eviction shrinks the cache down to.
            clock: Source of the current time in seconds.
        """
        self._cache: Dict[str, CacheEntry] = {}
        self._windows: Dict[str, RateWindow] = {}
        self.max_entries = max_entries
        self.soft_limit = soft_limit
        self._clock = clock
        self._window_start = clock()

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    @staticmethod
    def generate_key(prefix: str, params: Dict[str, Any]) -> str:
        """Build a key that does not depend on parameter order."""
        sorted_params = "&".join(f"{name}={params[name]}" for name in sorted(params))
        return f"{prefix}:{sorted_params}"

    def get(self, key: str) -> Optional[Any]:
        """
        Retrieve an item from the cache.

        Args:
            key: The key of the item to retrieve.

        Returns:
            The cached item, or None if the item is not found or expired.
        """
        entry = self._cache.get(key)
        if entry is None:
            return None

        now = self._clock()
        if now > entry.expires_at:
            # Entry has expired
            del self._cache[key]
            return None

        entry.hit_count += 1
        entry.last_accessed = now
        return entry.data

    def set(self, key: str, data: Any, ttl_seconds: int = 60):
        """
        Add an item to the cache.

        Args:
            key: The key of the item to add.
            data: The JSON-compatible payload to cache.
            ttl_seconds: Time-to-live for this entry.
        """
        now = self._clock()
        self._cache[key] = CacheEntry(
            key=key,
            data=data,
            created_at=now,
            expires_at=now + ttl_seconds,
            last_accessed=now,
        )

        if len(self._cache) > self.max_entries:
            self.cleanup()

    def cleanup(self) -> int:
        """Drop expired entries, then LRU entries above the soft limit. Returns the number removed."""
        before = len(self._cache)
        now = self._clock()

        for key, entry in list(self._cache.items()):
            if now > entry.expires_at:
                del self._cache[key]

        if len(self._cache) > self.soft_limit:
            by_access = sorted(self._cache.values(), key=lambda e: e.last_accessed)
            for entry in by_access[:len(by_access) - self.soft_limit]:
                del self._cache[entry.key]

        return before - len(self._cache)

    def delete(self, key: str):
        """Delete a specific key from the cache."""
        self._cache.pop(key, None)

    def invalidate_pattern(self, pattern: str) -> int:
        """Delete every key containing ``pattern``."""
        matching = [key for key in self._cache if pattern in key]
        for key in matching:
            del self._cache[key]
        return len(matching)

    def clear(self):
        """Clear all items from the cache."""
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        valid_entries = 0
        total_hits = 0
        for entry in self._cache.values():
            if now <= entry.expires_at:
                valid_entries += 1
                total_hits += entry.hit_count

        return {
            "size": len(self._cache),
            "valid_entries": valid_entries,
            "total_hits": total_hits,
            "hit_rate": total_hits / valid_entries if valid_entries else 0,
        }

    def check_rate_limit(self, identifier: str, max_requests: int = 100,
                         window_seconds: int = 60) -> Dict[str, Any]:
        """
        Count one request for ``identifier`` and report whether it is allowed.

        Denied requests are not counted.
        """
        now = self._clock()

        if now - self._window_start > window_seconds:
            self._windows.clear()
            self._window_start = now

        window = self._windows.get(identifier)
        if window is None:
            window = RateWindow(identifier=identifier, count=0, window_start=self._window_start)
            self._windows[identifier] = window

        if window.count >= max_requests:
            reset_in = math.ceil(window_seconds - (now - self._window_start))
            return {
                "allowed": False,
                "limit": max_requests,
                "current": window.count,
                "reset_in": max(reset_in, 1),
            }

        window.count += 1
        return {
            "allowed": True,
            "limit": max_requests,
            "current": window.count,
            "remaining": max_requests - window.count,
        }

    def get_rate_limit_status(self, identifier: str, max_requests: int = 100) -> Dict[str, Any]:
        window = self._windows.get(identifier)
        count = window.count if window else 0
        return {
            "limit": max_requests,
            "current": count,
            "remaining": max(0, max_requests - count),
        }
