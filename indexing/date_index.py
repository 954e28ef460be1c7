"""
TodoDB by-date Index (Secondary Index)
======================================
Ordered, non-unique mapping created_at -> record id on top of the B+ tree.

Each entry's key is (timestamp, insertion sequence), so entries with the
same timestamp come back in the order they were added. The record id is
the entry's value. Maintenance hooks are called by IndexedTable inside
the same atomic unit as the primary-store change they mirror.
"""

from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Tuple

from indexing.btree import BTree
from indexing.key_encoding import (
    date_key, date_key_ceiling, date_key_floor, split_date_key,
)


class IndexCorruptionError(Exception):
    """The index disagrees with the primary store."""
    pass


class DateIndex:
    """Maintenance and range-query API for the by-date index."""

    def __init__(self, btree: BTree):
        self._tree = btree

    @property
    def btree(self) -> BTree:
        return self._tree

    @property
    def entry_count(self) -> int:
        return self._tree.entry_count

    # ─── Maintenance ────────────────────────────────────────────────

    def on_insert(self, record_id: int, value: datetime) -> None:
        self._tree.insert(date_key(value, self._tree.next_sequence()), record_id)

    def on_update(self, record_id: int, old_value: datetime,
                  new_value: datetime) -> None:
        if old_value == new_value:
            return
        self.on_delete(record_id, old_value)
        self.on_insert(record_id, new_value)

    def on_delete(self, record_id: int, value: datetime) -> None:
        key = self._find_key(record_id, value)
        if key is None:
            raise IndexCorruptionError(
                f"No index entry for id {record_id} at {value.isoformat()}")
        self._tree.delete(key)

    def _find_key(self, record_id: int, value: datetime) -> Optional[bytes]:
        for key, rid in self._tree.scan(date_key_floor(value), date_key_ceiling(value)):
            if rid == record_id:
                return key
        return None

    # ─── Queries ────────────────────────────────────────────────────

    def range_query(self, lower: Optional[datetime],
                    upper: Optional[datetime]) -> List[int]:
        """
        Ids with lower <= created_at <= upper, ascending, ties in insertion
        order. None leaves that side unbounded; lower > upper gives [].
        """
        if lower is not None and upper is not None and lower > upper:
            return []
        low = date_key_floor(lower) if lower is not None else None
        high = date_key_ceiling(upper) if upper is not None else None
        return [record_id for _, record_id in self._tree.scan(low, high)]

    def entries(self) -> Iterator[Tuple[datetime, int]]:
        """All (created_at, id) entries in index order."""
        for key, record_id in self._tree.scan():
            yield split_date_key(key)[0], record_id

    # ─── Maintenance of the whole index ─────────────────────────────

    def rebuild(self, records: Iterable[Tuple[int, datetime]]) -> int:
        """Replace all entries with the given (id, created_at) pairs, in order."""
        self._tree.clear()
        count = 0
        for record_id, value in records:
            self.on_insert(record_id, value)
            count += 1
        return count

    def verify(self) -> List[str]:
        return self._tree.verify_structure()
