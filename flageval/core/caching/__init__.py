"""Caching Module.

Bounded, TTL-aware cache for flag evaluation results:
- Namespaced keys (``{prefix}:{namespace}:{key}``)
- LRU, FIFO or LIFO eviction at capacity
- Lazy expiry, re-checked on every read
- Per-flag invalidation and hit/miss statistics
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from flageval.core.errors import CacheError
from flageval.core.feature_flags.context import ContextLike, create_context_key

if TYPE_CHECKING:
    from flageval.core.config import CacheSettings
    from flageval.core.feature_flags.types import EvaluationResult

logger = logging.getLogger(__name__)


class EvictionStrategy(str, Enum):
    """Cache eviction policies."""
    LRU = "lru"  # Least Recently Used
    FIFO = "fifo"  # First In First Out
    LIFO = "lifo"  # Last In First Out


@dataclass
class CacheEntry:
    """A cache entry with metadata."""

    key: str
    value: Any
    created_at: float
    expires_at: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "hit_rate": self.hit_rate,
            "size": self.size,
            "max_size": self.max_size,
        }


@dataclass
class CacheHealth:
    healthy: bool
    stats: CacheStats
    issues: List[str] = field(default_factory=list)


class FlagCache:
    """Thread-safe in-process cache for flag values and evaluation results."""

    def __init__(
        self,
        max_size: int = 10000,
        ttl_seconds: float = 300,
        strategy: EvictionStrategy = EvictionStrategy.LRU,
        key_prefix: str = "ff",
        namespace: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.strategy = EvictionStrategy(strategy)
        self.key_prefix = key_prefix or "ff"
        self.namespace = namespace or "default"
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._stats = CacheStats(max_size=max_size)
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: "CacheSettings", clock: Callable[[], float] = time.monotonic) -> "FlagCache":
        return cls(
            max_size=settings.max_size,
            ttl_seconds=settings.ttl_seconds,
            strategy=EvictionStrategy(settings.strategy),
            key_prefix=settings.key_prefix,
            namespace=settings.namespace,
            clock=clock,
        )

    def _full_key(self, key: str) -> str:
        return f"{self.key_prefix}:{self.namespace}:{key}"

    def _strip_key(self, full_key: str) -> str:
        return full_key[len(self.key_prefix) + len(self.namespace) + 2:]

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss or expiry."""
        full_key = self._full_key(key)
        try:
            with self._lock:
                entry = self._entries.get(full_key)
                if entry is None:
                    self._stats.misses += 1
                    return None

                if entry.is_expired(self._clock()):
                    del self._entries[full_key]
                    self._stats.expirations += 1
                    self._stats.misses += 1
                    self._stats.size = len(self._entries)
                    return None

                entry.access_count += 1
                if self.strategy == EvictionStrategy.LRU:
                    self._entries.move_to_end(full_key)
                self._stats.hits += 1
                return entry.value
        except Exception as exc:
            raise CacheError(f"Cache get failed for '{key}': {exc}", cause=exc) from exc

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        full_key = self._full_key(key)
        ttl_seconds = self.ttl_seconds if ttl is None else ttl
        try:
            with self._lock:
                now = self._clock()
                if full_key in self._entries:
                    del self._entries[full_key]
                elif len(self._entries) >= self.max_size:
                    self._evict()

                self._entries[full_key] = CacheEntry(
                    key=full_key,
                    value=value,
                    created_at=now,
                    expires_at=now + ttl_seconds,
                )
                self._stats.sets += 1
                self._stats.size = len(self._entries)
        except Exception as exc:
            raise CacheError(f"Cache set failed for '{key}': {exc}", cause=exc) from exc

    def _evict(self) -> None:
        """Drop one entry according to the eviction strategy. Caller holds the lock."""
        if not self._entries:
            return
        # LRU keeps recency order via move_to_end, FIFO keeps insertion order
        if self.strategy == EvictionStrategy.LIFO:
            evicted_key, _ = self._entries.popitem(last=True)
        else:
            evicted_key, _ = self._entries.popitem(last=False)
        self._stats.evictions += 1
        logger.debug(f"Evicted cache entry {evicted_key} ({self.strategy.value})")

    def delete(self, key: str) -> bool:
        full_key = self._full_key(key)
        with self._lock:
            if self._entries.pop(full_key, None) is None:
                return False
            self._stats.deletes += 1
            self._stats.size = len(self._entries)
            return True

    def has(self, key: str) -> bool:
        """Existence check that honours expiry without touching hit/miss stats."""
        full_key = self._full_key(key)
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[full_key]
                self._stats.expirations += 1
                self._stats.size = len(self._entries)
                return False
            return True

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._stats.deletes += count
            self._stats.size = 0
        logger.info(f"Flag cache cleared ({count} entries)")

    def keys(self) -> List[str]:
        with self._lock:
            return [self._strip_key(k) for k in self._entries]

    def invalidate_flag(self, flag_key: str) -> int:
        """Remove every entry belonging to a flag. Returns the number removed."""
        prefixes = (self._full_key(f"{flag_key}:"), self._full_key(f"eval:{flag_key}:"))
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefixes)]
            for k in doomed:
                del self._entries[k]
            self._stats.deletes += len(doomed)
            self._stats.size = len(self._entries)
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries for flag '{flag_key}'")
        return len(doomed)

    def get_stats(self) -> CacheStats:
        with self._lock:
            self._stats.size = len(self._entries)
            return replace(self._stats)

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = CacheStats(size=len(self._entries), max_size=self.max_size)

    def get_health(self) -> CacheHealth:
        stats = self.get_stats()
        issues = []
        if stats.hits + stats.misses > 0 and stats.hit_rate < 0.5:
            issues.append(f"low hit rate {stats.hit_rate:.2f}")
        if stats.size >= self.max_size * 0.9:
            issues.append(f"near capacity {stats.size}/{self.max_size}")
        return CacheHealth(healthy=not issues, stats=stats, issues=issues)

    @staticmethod
    def evaluation_key(flag_key: str, context: ContextLike) -> str:
        return f"eval:{flag_key}:{create_context_key(context)}"

    def cache_evaluation_result(
        self,
        flag_key: str,
        context: ContextLike,
        result: "EvaluationResult",
        ttl: Optional[float] = None,
    ) -> None:
        self.set(self.evaluation_key(flag_key, context), result, ttl)

    def get_cached_evaluation_result(self, flag_key: str, context: ContextLike) -> Optional["EvaluationResult"]:
        return self.get(self.evaluation_key(flag_key, context))


__all__ = [
    "CacheEntry",
    "CacheHealth",
    "CacheStats",
    "EvictionStrategy",
    "FlagCache",
]
