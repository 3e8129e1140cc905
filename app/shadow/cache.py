from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass
class CachedValue(Generic[T]):
    value: T
    loaded_at: dt.datetime


class AsyncTimedCache(Generic[T]):
    """In-process TTL cache around an async loader.

    Used for aggregate counts (running experiments, recent decision rate) so
    that every safety check does not hit the persistence layer. A TTL of 0
    disables caching. Explicit invalidation makes a change visible on the
    next read.
    """

    def __init__(self, ttl_seconds: float, loader: Callable[[], Awaitable[T]]):
        self._ttl = dt.timedelta(seconds=ttl_seconds)
        self._loader = loader
        self._cached: CachedValue[T] | None = None
        self._invalidated = True

    def invalidate(self) -> None:
        self._invalidated = True

    async def get(self) -> T:
        now = dt.datetime.now(dt.timezone.utc)

        if self._cached is not None and not self._invalidated:
            if now - self._cached.loaded_at < self._ttl:
                return self._cached.value

        self._cached = CachedValue(await self._loader(), now)
        self._invalidated = False
        return self._cached.value
