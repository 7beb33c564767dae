"""
In-process TTL cache with single-flight population.

Lookups are plain dictionary reads. Population is exclusive per key: while a
value is being produced, every other caller asking for the same key awaits
the same in-flight task instead of starting its own. Different keys populate
independently.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


class AsyncTTLCache(Generic[K, V]):
    """Map of key to value where each value lives for ``ttl_seconds``."""

    def __init__(
        self,
        ttl_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[K, _Entry[V]] = {}
        self._inflight: dict[K, asyncio.Task] = {}

    def get(self, key: K) -> Optional[V]:
        """Return the cached value for ``key`` if present and unexpired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.value

    async def get_or_populate(
        self, key: K, factory: Callable[[], Awaitable[V]]
    ) -> V:
        """Return the cached value or produce it with ``factory``.

        Failures are not cached; all callers that joined the failed attempt
        receive its exception and the next call tries again.
        """
        value = self.get(key)
        if value is not None:
            return value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._populate(key, factory))
            self._inflight[key] = task

        # Shielded so one cancelled caller does not abort the shared attempt.
        return await asyncio.shield(task)

    async def _populate(self, key: K, factory: Callable[[], Awaitable[V]]) -> V:
        try:
            value = await factory()
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + self._ttl)
            return value
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
