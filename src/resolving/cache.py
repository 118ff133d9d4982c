"""TTL cache for registry metadata (packuments)."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


class MetadataCache:
    """TTL cache for packuments.

    Keeps one document per (registry, package name) so repeated resolutions
    in the same run do not hit the network again.
    """

    def __init__(self, default_ttl: int = 300, max_entries: int = 5000):
        """Initialize the metadata cache.

        Args:
            default_ttl: Default time-to-live in seconds.
            max_entries: Entry count above which the oldest tenth is evicted.
        """
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._cache: Dict[str, CacheEntry[Dict[str, Any]]] = {}

    @staticmethod
    def _make_key(registry: str, package_name: str) -> str:
        return f"{registry}:{package_name}"

    def get(self, registry: str, package_name: str) -> Optional[Dict[str, Any]]:
        """Return the cached packument, or None when missing or expired."""
        key = self._make_key(registry, package_name)
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._cache[key]
            return None
        return entry.value

    def set(
        self,
        registry: str,
        package_name: str,
        packument: Dict[str, Any],
        ttl: Optional[int] = None,
    ) -> None:
        """Cache a packument."""
        key = self._make_key(registry, package_name)
        effective_ttl = ttl if ttl is not None else self._default_ttl
        self._cache[key] = CacheEntry(value=packument, expires_at=time.time() + effective_ttl)
        if len(self._cache) > self._max_entries:
            self._evict_oldest(max(1, self._max_entries // 10))

    def invalidate(self, registry: str, package_name: str) -> None:
        """Drop one cached packument."""
        self._cache.pop(self._make_key(registry, package_name), None)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        expired_count = sum(1 for e in self._cache.values() if e.is_expired())
        return {
            "total_entries": len(self._cache),
            "expired_entries": expired_count,
            "active_entries": len(self._cache) - expired_count,
            "max_entries": self._max_entries,
            "default_ttl": self._default_ttl,
        }

    def _evict_oldest(self, count: int) -> None:
        """Evict the oldest entries."""
        sorted_keys = sorted(self._cache.keys(), key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[:count]:
            del self._cache[key]
