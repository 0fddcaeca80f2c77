"""TTL caches for live protocol state.

Each cache stores key -> (value, stored_at) and checks staleness on read;
stale entries are evicted by the read that finds them, there is no sweep.
A cached ``None`` is a real entry (e.g. "oracle has no price") and is
distinguished from a miss by ``get_entry``.

Entries are replaced whole, so concurrent readers and writers never see a
partially updated value and no lock is needed.
"""

import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Key -> value map whose entries expire ``ttl`` seconds after being stored."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, tuple[V, float]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, key: Hashable) -> tuple[bool, V | None]:
        """Return (hit, value). A stale entry is evicted and reported as a miss."""
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        value, stored_at = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return False, None
        return True, value

    def get(self, key: Hashable, default: V | None = None) -> V | None:
        hit, value = self.get_entry(key)
        return value if hit else default

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (value, self._clock())

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class SnapshotCaches:
    """Caches shared by snapshot builds.

    Volatile pool and backstop state lives 30s; token metadata and oracle
    prices live 5 minutes.
    """

    pools: TTLCache = field(default_factory=lambda: TTLCache(30.0))
    backstop_pools: TTLCache = field(default_factory=lambda: TTLCache(30.0))
    backstop_tokens: TTLCache = field(default_factory=lambda: TTLCache(30.0))
    tokens: TTLCache = field(default_factory=lambda: TTLCache(300.0))
    prices: TTLCache = field(default_factory=lambda: TTLCache(300.0))

    @classmethod
    def create(
        cls,
        pool_ttl: float = 30.0,
        metadata_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> "SnapshotCaches":
        return cls(
            pools=TTLCache(pool_ttl, clock),
            backstop_pools=TTLCache(pool_ttl, clock),
            backstop_tokens=TTLCache(pool_ttl, clock),
            tokens=TTLCache(metadata_ttl, clock),
            prices=TTLCache(metadata_ttl, clock),
        )

    def clear(self) -> None:
        for cache in (self.pools, self.backstop_pools, self.backstop_tokens, self.tokens, self.prices):
            cache.clear()
