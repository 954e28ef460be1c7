"""
TodoDB Indexed Table
====================
The records table together with its by-date index.

Every mutation is one atomic unit: the primary-store change and the index
maintenance that mirrors it commit together or not at all. On abort the
buffer drops the dirty pages and reload() re-reads the committed headers,
so in-memory state (next_id, id directory, tree root) never runs ahead of
the files.
"""

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from indexing.btree import MAX_NODE_PAYLOAD, BTree
from indexing.date_index import DateIndex, IndexCorruptionError
from records.todo import Todo
from storage.buffer import BufferManager
from storage.page import PageCorruptionError
from storage.record_file import RecordFile
from transactions.transaction import TransactionManager

logger = logging.getLogger(__name__)

TABLE_NAME = "records"
TABLE_FILE = "records.tbl"
INDEX_NAME = "by-date"
INDEX_COLUMN = "created_at"
INDEX_FILE = "by-date.idx"


class IndexedTable:
    """
    Usage:
        table = IndexedTable(store_dir, buffer_mgr, txn_manager)
        table.create()                  # or table.open_existing()
        record_id = table.insert(new_todo("write docs"))
        table.range(start, end)
    """

    def __init__(self, store_dir: str, buffer_mgr: BufferManager,
                 txn_manager: TransactionManager,
                 max_node_payload: int = MAX_NODE_PAYLOAD):
        self._store_dir = store_dir
        self._buffer = buffer_mgr
        self._txm = txn_manager
        self._max_node_payload = max_node_payload
        self._records = RecordFile(os.path.join(store_dir, TABLE_FILE), buffer_mgr)
        self._index: Optional[DateIndex] = None

    @property
    def records(self) -> RecordFile:
        return self._records

    @property
    def index(self) -> Optional[DateIndex]:
        return self._index

    @property
    def table_path(self) -> str:
        return os.path.join(self._store_dir, TABLE_FILE)

    @property
    def index_path(self) -> str:
        return os.path.join(self._store_dir, INDEX_FILE)

    def table_exists(self) -> bool:
        return os.path.exists(self.table_path)

    def index_exists(self) -> bool:
        return os.path.exists(self.index_path)

    # ─── Schema ──────────────────────────────────────────────────────────

    def create(self) -> None:
        """Create the table file and an empty index in one unit."""
        with self._unit():
            self._records.create(TABLE_NAME)
            self._index = DateIndex(BTree.create(
                self.index_path, self._buffer, INDEX_NAME, self._max_node_payload))
        logger.info("Created table '%s' with index '%s'", TABLE_NAME, INDEX_NAME)

    def open_existing(self) -> None:
        self._records.open()
        if self.index_exists():
            self._index = DateIndex(BTree.open(
                self.index_path, self._buffer, self._max_node_payload))

    def ensure_index(self) -> bool:
        """Build the by-date index from the table if it is missing. True if built."""
        if self._index is not None:
            return False
        with self._unit():
            index = DateIndex(BTree.create(
                self.index_path, self._buffer, INDEX_NAME, self._max_node_payload))
            count = index.rebuild(self._index_source())
            self._index = index
        logger.info("Built index '%s' from %d record(s)", INDEX_NAME, count)
        return True

    def rebuild_index(self) -> int:
        """Discard and rebuild every index entry from the primary store."""
        index = self._require_index()
        with self._unit():
            count = index.rebuild(self._index_source())
        logger.info("Rebuilt index '%s': %d entries", INDEX_NAME, count)
        return count

    def _index_source(self):
        return [(todo.id, todo.created_at) for todo in self._records.scan()]

    # ─── Mutations ───────────────────────────────────────────────────────

    def insert(self, todo: Todo) -> int:
        index = self._require_index()
        with self._unit():
            record_id = self._records.insert(todo)
            index.on_insert(record_id, todo.created_at)
        return record_id

    def update(self, todo: Todo) -> Todo:
        """Replace a record; returns what was stored before."""
        index = self._require_index()
        with self._unit():
            previous = self._records.update(todo)
            index.on_update(todo.id, previous.created_at, todo.created_at)
        return previous

    def delete(self, record_id: int) -> Todo:
        index = self._require_index()
        with self._unit():
            previous = self._records.delete(record_id)
            index.on_delete(record_id, previous.created_at)
        return previous

    # ─── Reads ───────────────────────────────────────────────────────────

    def get(self, record_id: int) -> Todo:
        return self._records.get(record_id)

    def scan(self) -> List[Todo]:
        return self._records.scan()

    def range(self, lower: Optional[datetime], upper: Optional[datetime]) -> List[Todo]:
        ids = self._require_index().range_query(lower, upper)
        result = []
        for record_id in ids:
            if record_id not in self._records:
                raise IndexCorruptionError(
                    f"Index '{INDEX_NAME}' points at missing id {record_id}")
            result.append(self._records.get(record_id))
        return result

    def __len__(self) -> int:
        return len(self._records)

    # ─── Integrity ───────────────────────────────────────────────────────

    def check_integrity(self) -> List[str]:
        """Cross-check the index against the primary store. Empty = healthy."""
        if self._index is None:
            return [f"Index '{INDEX_NAME}' is missing"]
        issues = [f"{INDEX_NAME}: {issue}" for issue in self._index.verify()]
        try:
            stored: Dict[int, datetime] = {
                todo.id: todo.created_at for todo in self._records.scan()}
            entries = list(self._index.entries())
        except (PageCorruptionError, ValueError) as exc:
            issues.append(f"Unreadable data: {exc}")
            return issues

        seen = set()
        for created_at, record_id in entries:
            if record_id in seen:
                issues.append(f"id {record_id} indexed more than once")
            seen.add(record_id)
            if record_id not in stored:
                issues.append(f"index entry for missing id {record_id}")
            elif stored[record_id] != created_at:
                issues.append(f"id {record_id} indexed at {created_at.isoformat()}, "
                              f"stored at {stored[record_id].isoformat()}")
        for record_id in sorted(set(stored) - seen):
            issues.append(f"id {record_id} has no index entry")
        return issues

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def reload(self) -> None:
        """Re-read committed state; called when a unit is rolled back."""
        self._records.reload()
        if self._index is not None:
            self._index.btree.reload()
            if not self._index.btree.is_open:
                self._index = None

    def close(self) -> None:
        self._records.close()
        if self._index is not None:
            self._index.btree.close()
            self._index = None

    # ─── Internal ────────────────────────────────────────────────────────

    @contextmanager
    def _unit(self) -> Iterator[int]:
        with self._txm.atomic() as txn_id:
            self._txm.register_hook(txn_id, rollback_fn=self.reload)
            yield txn_id

    def _require_index(self) -> DateIndex:
        if self._index is None:
            raise IndexCorruptionError(f"Index '{INDEX_NAME}' is not open")
        return self._index
