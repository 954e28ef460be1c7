"""
TodoDB Buffer Manager
=====================
Per-connection page cache with LRU eviction and dirty tracking.

Guarantees:
  - Single-frame invariant: a (file, page_id) pair is cached at most once.
  - No-steal: dirty pages are never evicted. They leave the cache only
    through the transaction manager (commit writes them, abort discards
    them), so uncommitted bytes never reach a data file.
  - Dirty pages are reported in a deterministic order (first-dirtied first).

When every cached page is dirty the cache grows past its capacity until
the current atomic unit finishes.
"""

import logging
import threading
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from storage.page import Page

logger = logging.getLogger(__name__)

PageKey = Tuple[str, int]


class _BufferEntry:
    __slots__ = ("page", "dirty")

    def __init__(self, page: Page, dirty: bool = False):
        self.page = page
        self.dirty = dirty


class BufferManager:
    """LRU page cache keyed by (file_path, page_id)."""

    def __init__(self, capacity: int = 64):
        if capacity < 1:
            raise ValueError("Buffer capacity must be at least 1 page")
        self._capacity = capacity
        self._cache: "OrderedDict[PageKey, _BufferEntry]" = OrderedDict()
        # insertion-ordered set of dirty keys
        self._dirty: Dict[PageKey, None] = {}
        # readers share the connection, so lookups and fills are serialized here
        self._mutex = threading.RLock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._cache)

    def get_page(self, file_path: str, page_id: int) -> Optional[Page]:
        key = (file_path, page_id)
        with self._mutex:
            entry = self._cache.get(key)
            if entry is None:
                return None
            self._cache.move_to_end(key)
            return entry.page

    def put_page(self, file_path: str, page_id: int, page: Page,
                 dirty: bool = False) -> None:
        """Cache a page, replacing any existing frame for the same key."""
        key = (file_path, page_id)
        with self._mutex:
            entry = self._cache.get(key)
            if entry is not None:
                entry.page = page
                self._cache.move_to_end(key)
            else:
                if len(self._cache) >= self._capacity:
                    self._evict_one()
                self._cache[key] = _BufferEntry(page)
            if dirty:
                self.mark_dirty(file_path, page_id)

    def mark_dirty(self, file_path: str, page_id: int) -> None:
        key = (file_path, page_id)
        entry = self._cache.get(key)
        if entry is None:
            raise KeyError(f"Page {page_id} of {file_path} is not cached")
        entry.dirty = True
        self._dirty.setdefault(key, None)

    def is_dirty(self, file_path: str, page_id: int) -> bool:
        entry = self._cache.get((file_path, page_id))
        return entry.dirty if entry is not None else False

    # ─── Transaction hooks ──────────────────────────────────────────

    def dirty_pages(self) -> List[Tuple[str, int, Page]]:
        """All dirty pages as (file_path, page_id, page). Flags are left set."""
        return [(fp, pid, self._cache[(fp, pid)].page) for fp, pid in self._dirty]

    def mark_clean(self, keys: List[PageKey]) -> None:
        """Clear the dirty flag once the pages are safely on disk."""
        for key in keys:
            entry = self._cache.get(key)
            if entry is not None:
                entry.dirty = False
            self._dirty.pop(key, None)
        self._shrink()

    def discard_dirty(self) -> int:
        """Drop every dirty frame so the next read reloads the on-disk version."""
        count = len(self._dirty)
        for key in self._dirty:
            self._cache.pop(key, None)
        self._dirty.clear()
        return count

    def invalidate_file(self, file_path: str) -> None:
        """Forget all frames of a file. Dirty frames must have been handled first."""
        for key in [k for k in self._cache if k[0] == file_path]:
            if key in self._dirty:
                raise RuntimeError(
                    f"Refusing to drop dirty page {key[1]} of {file_path}")
            del self._cache[key]

    def clear(self) -> None:
        if self._dirty:
            logger.warning("Clearing buffer with %d dirty page(s)", len(self._dirty))
        self._cache.clear()
        self._dirty.clear()

    # ─── Eviction ───────────────────────────────────────────────────

    def _evict_one(self) -> bool:
        for key, entry in self._cache.items():
            if not entry.dirty:
                del self._cache[key]
                return True
        return False

    def _shrink(self) -> None:
        while len(self._cache) > self._capacity and self._evict_one():
            pass

    def stats(self) -> dict:
        return {
            "capacity": self._capacity,
            "used": len(self._cache),
            "dirty": len(self._dirty),
        }
