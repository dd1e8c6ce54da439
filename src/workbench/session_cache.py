"""
Evaluation session cache and draft registry.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. LAZY DETAIL CACHE (Feature: session-cache)
   - One EvaluationDetail per evaluation id, loaded on first access
   - Concurrent first accesses share one load (per-key asyncio.Lock)
   - Invalidation during an in-flight load keeps the stale result out

2. DRAFT REGISTRY (Feature: draft-versions)
   - Set of evaluation ids with unsaved edits
   - A dirty evaluation cannot start new runs until a new version is submitted

==============================================================================
"""

import asyncio
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Optional

from .models import EvaluationDetail
from . import config

import logging
logger = logging.getLogger(__name__)


class LockCache:
    """LRU cache for asyncio locks to prevent unbounded growth."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._locks: OrderedDict[str, asyncio.Lock] = OrderedDict()
        self._maxsize = maxsize

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is not None:
            self._locks.move_to_end(key)
            return lock
        lock = asyncio.Lock()
        self._locks[key] = lock
        if len(self._locks) > self._maxsize:
            # Never evict a lock somebody is holding or waiting on
            for old_key, old_lock in list(self._locks.items()):
                if not old_lock.locked() and old_key != key:
                    del self._locks[old_key]
                    break
        return lock

    def __len__(self) -> int:
        return len(self._locks)


DetailLoader = Callable[[], Awaitable[EvaluationDetail]]


class EvaluationSessionCache:
    """Process-wide detail cache keyed by evaluation id."""

    def __init__(self, max_locks: int = None):
        self._entries: Dict[str, EvaluationDetail] = {}
        self._generations: Dict[str, int] = {}
        self._locks = LockCache(max_locks or config.SESSION_CACHE_LOCKS)

    def peek(self, evaluation_id: str) -> Optional[EvaluationDetail]:
        return self._entries.get(evaluation_id)

    async def get(self, evaluation_id: str, loader: DetailLoader) -> EvaluationDetail:
        """Return the cached detail, loading it once if absent."""
        entry = self._entries.get(evaluation_id)
        if entry is not None:
            return entry

        async with self._locks.get(evaluation_id):
            # Another caller may have finished the load while we waited
            entry = self._entries.get(evaluation_id)
            if entry is not None:
                return entry

            generation = self._generations.get(evaluation_id, 0)
            logger.debug(f"Loading evaluation detail {evaluation_id}")
            detail = await loader()
            if self._generations.get(evaluation_id, 0) == generation:
                self._entries[evaluation_id] = detail
            else:
                logger.debug(f"Evaluation {evaluation_id} invalidated during load, not caching")
            return detail

    def set(self, evaluation_id: str, detail: EvaluationDetail) -> None:
        self._entries[evaluation_id] = detail

    def update(self, evaluation_id: str, mutate: Callable[[EvaluationDetail], None]) -> Optional[EvaluationDetail]:
        """Apply mutate to the cached entry in place. No-op when nothing is cached."""
        entry = self._entries.get(evaluation_id)
        if entry is None:
            return None
        mutate(entry)
        return entry

    def invalidate(self, evaluation_id: str) -> None:
        self._generations[evaluation_id] = self._generations.get(evaluation_id, 0) + 1
        if self._entries.pop(evaluation_id, None) is not None:
            logger.debug(f"Invalidated cached detail for evaluation {evaluation_id}")

    def __contains__(self, evaluation_id: str) -> bool:
        return evaluation_id in self._entries


class DraftRegistry:
    """Evaluation ids with unsaved draft edits."""

    def __init__(self):
        self._dirty: set = set()

    def mark_dirty(self, evaluation_id: str) -> None:
        self._dirty.add(evaluation_id)

    def is_dirty(self, evaluation_id: str) -> bool:
        return evaluation_id in self._dirty

    def clear(self, evaluation_id: str) -> None:
        self._dirty.discard(evaluation_id)
