"""
In-memory expiring caches for provider results.

Two independent tiers share the same key scheme (hash of the normalized
address): geocoding results and AI enrichment results. Entries are never
served after expiry; expired entries are dropped lazily on read and in
periodic sweeps.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable

import structlog

from mls_geo.config import settings

logger = structlog.get_logger()


@dataclass
class CacheEntry:
    key: str
    value: Any
    created_at: float
    expires_at: float
    hit_count: int = 0


class ExpiringCache:
    """Key -> value store with a per-entry TTL in hours."""

    def __init__(
        self,
        name: str,
        cleanup_every: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock
        self._cleanup_every = cleanup_every or settings.cache_cleanup_every_n_inserts
        self._inserts = 0

    def _live(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self._live(key)
        if entry is None:
            return None
        entry.hit_count += 1
        return entry.value

    def has(self, key: str) -> bool:
        return self._live(key) is not None

    def set(self, key: str, value: Any, ttl_hours: float) -> None:
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            expires_at=now + ttl_hours * 3600,
        )
        self._inserts += 1
        if self._inserts % self._cleanup_every == 0:
            self.cleanup()

    def cleanup(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Cache sweep", cache=self.name, removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._inserts = 0

    def stats(self) -> dict[str, int]:
        return {
            "entries": len(self._entries),
            "total_hits": sum(e.hit_count for e in self._entries.values()),
        }

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class CacheTiers:
    geocoding: ExpiringCache = field(default_factory=lambda: ExpiringCache("geocoding"))
    enrichment: ExpiringCache = field(default_factory=lambda: ExpiringCache("enrichment"))

    def cleanup(self) -> int:
        return self.geocoding.cleanup() + self.enrichment.cleanup()

    def clear(self) -> None:
        self.geocoding.clear()
        self.enrichment.clear()
        logger.info("Caches cleared")

    def stats(self) -> dict[str, dict[str, int]]:
        return {
            "geocoding": self.geocoding.stats(),
            "enrichment": self.enrichment.stats(),
        }
