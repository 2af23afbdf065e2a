"""Short-TTL result cache keyed by proposal.

Reconciliation reads are expensive (two stores, a diff, possibly a blob
listing). Hot read paths go through :class:`ResultCache`, and every write
path invalidates the proposal's keys before returning.
"""

import time
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

from cachetools import TLRUCache

from proposal_sync.core.config import settings
from proposal_sync.utils.logging import get_logger

LOGGER = get_logger(__name__)


class CacheKeys:
    """Cache key namespaces. Every namespace is keyed by proposal id."""

    PROPOSAL = "proposal"
    CONSISTENCY = "consistency"

    NAMESPACES = (PROPOSAL, CONSISTENCY)

    @staticmethod
    def proposal(proposal_id: str) -> str:
        return f"{CacheKeys.PROPOSAL}:{proposal_id}"

    @staticmethod
    def consistency(proposal_id: str) -> str:
        return f"{CacheKeys.CONSISTENCY}:{proposal_id}"

    @classmethod
    def for_proposal(cls, proposal_id: str) -> list[str]:
        return [f"{namespace}:{proposal_id}" for namespace in cls.NAMESPACES]


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _time_to_use(key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class ResultCache:
    """TTL cache with per-entry lifetimes and generation-checked invalidation.

    A miss that is still computing when its key gets invalidated returns its
    value to the caller but does not store it, so nothing older than the
    latest write is ever served from the cache.

    All bookkeeping runs between awaits on the event loop, so it needs no lock.
    """

    def __init__(
        self,
        maxsize: Optional[int] = None,
        default_ttl: Optional[float] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl if default_ttl is not None else settings.sync.cache_ttl
        self._cache = TLRUCache(
            maxsize=maxsize if maxsize is not None else settings.sync.cache_maxsize,
            ttu=_time_to_use,
            timer=timer,
        )
        # Generations are tracked only for keys with a computation in flight
        self._generations: Dict[str, int] = {}
        self._in_flight: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    async def get_or_compute(
        self,
        key: str,
        ttl: Optional[float],
        compute_fn: Callable[[], Awaitable[Any]],
        cache_if: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Return the cached value for ``key`` or compute, store and return it.

        Args:
            key: Cache key (see :class:`CacheKeys`)
            ttl: Lifetime in seconds for a freshly computed value
            compute_fn: Coroutine factory producing the value on a miss
            cache_if: Optional predicate; values failing it are returned but not stored

        Returns:
            The cached or freshly computed value
        """
        entry = self._cache.get(key)
        if entry is not None:
            self.hits += 1
            return entry.value
        self.misses += 1

        generation = self._generations.get(key, 0)
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        try:
            value = await compute_fn()
        finally:
            stale = self._generations.get(key, 0) != generation
            self._release(key)

        if stale:
            LOGGER.debug("Discarding result computed before invalidation", extra={"key": key})
            return value
        if cache_if is not None and not cache_if(value):
            return value
        self._cache[key] = _Entry(value, ttl if ttl is not None else self.default_ttl)
        return value

    def _release(self, key: str) -> None:
        remaining = self._in_flight[key] - 1
        if remaining:
            self._in_flight[key] = remaining
        else:
            del self._in_flight[key]
            self._generations.pop(key, None)

    async def invalidate(self, key: str) -> None:
        if key in self._in_flight:
            self._generations[key] = self._generations.get(key, 0) + 1
        self._cache.pop(key, None)

    async def invalidate_proposal(self, proposal_id: str) -> None:
        """Drop every cached value derived from one proposal."""
        for key in CacheKeys.for_proposal(proposal_id):
            await self.invalidate(key)
        LOGGER.debug("Cache invalidated", extra={"proposal_id": proposal_id})

    async def clear(self) -> None:
        for key in self._in_flight:
            self._generations[key] = self._generations.get(key, 0) + 1
        self._cache.clear()

    @property
    def tracked_generations(self) -> int:
        """Number of keys currently carrying an invalidation generation."""
        return len(self._generations)

    def __len__(self) -> int:
        return len(self._cache)


result_cache = ResultCache()
