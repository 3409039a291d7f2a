"""Tagged read cache.

Entries are keyed by ``(owner_id, key)`` and associated with logical tags
such as ``"tasks-changed"``. Invalidating a tag stamps a generation marker;
an entry is served only if it was computed after the newest marker of every
one of its tags, and only while it is younger than the TTL.

The generation for an entry is taken *before* its compute function runs, so
a compute that overlaps an invalidation is treated as stale on the next
read even though it finished afterwards.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable, Iterable, Optional
import itertools
import logging
import time

from . import config

logger = logging.getLogger(__name__)

TASKS_CHANGED = 'tasks-changed'
TAGS_CHANGED = 'tags-changed'


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    tags: tuple[str, ...]
    generation: int
    stored_at: float


class TaggedCache:
    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = config.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._generations = itertools.count(1)
        self._entries: dict[tuple[Hashable, str], CacheEntry] = {}
        # (owner_id, tag) -> generation of the latest invalidation; owner None
        # holds markers that apply to every owner.
        self._stale_since: dict[tuple[Optional[Hashable], str], int] = {}
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def _marker(self, owner_id: Hashable, tag: str) -> int:
        return max(self._stale_since.get((owner_id, tag), 0), self._stale_since.get((None, tag), 0))

    def _is_fresh(self, owner_id: Hashable, entry: CacheEntry) -> bool:
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            return False
        return all(self._marker(owner_id, tag) < entry.generation for tag in entry.tags)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug('cache evicted %d expired entries', len(expired))

    def peek(self, owner_id: Hashable, key: str) -> Any:
        """Return the fresh cached value or None, without computing."""
        entry = self._entries.get((owner_id, key))
        if entry is not None and self._is_fresh(owner_id, entry):
            return entry.value
        return None

    async def get(self, owner_id: Hashable, key: str, compute_fn: Callable[[], Awaitable[Any]], tags: Iterable[str]) -> Any:
        entry = self._entries.get((owner_id, key))
        if entry is not None and self._is_fresh(owner_id, entry):
            self._hits += 1
            return entry.value
        self._misses += 1
        self._evict_expired()
        generation = next(self._generations)
        logger.debug('cache miss owner=%s key=%s', owner_id, key)
        value = await compute_fn()
        self._entries[(owner_id, key)] = CacheEntry(value, tuple(tags), generation, self._clock())
        return value

    def invalidate(self, tag: str, owner_id: Optional[Hashable] = None) -> None:
        """Mark every entry carrying ``tag`` stale, for one owner or all."""
        self._stale_since[(owner_id, tag)] = next(self._generations)
        self._invalidations += 1
        logger.debug('cache invalidate tag=%s owner=%s', tag, owner_id)

    def clear(self) -> None:
        self._entries.clear()
        self._stale_since.clear()

    def stats(self) -> dict:
        return {
            'hits': self._hits,
            'misses': self._misses,
            'invalidations': self._invalidations,
            'entries': len(self._entries),
        }
