"""
TodoDB Engine Facade
====================
TodoDatabase is one connection to one store directory
(`<data_dir>/<name>/`). It owns the buffer, the WAL, the transaction
manager and the indexed table, and exposes the todo CRUD and range API.

State machine:

    UNOPENED --open()--> OPENING --ok--> READY --close()--> CLOSED
                            |
                            +--error--> FAILED

Only READY accepts CRUD; every other state raises NotInitialized. open()
from CLOSED or FAILED runs the whole open sequence again.

Locking: reads hold the connection lock SHARED, mutations and close() hold
it EXCLUSIVE, so a reader only ever sees committed state and close() waits
for in-flight operations.
"""

import logging
import os
import re
import struct
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Union

from catalog.catalog import CatalogError, StoreCatalog
from concurrency import registry
from concurrency.lock_manager import LockManager, LockTimeoutError
from engine.config import EngineConfig
from engine.errors import (
    InitError, NotInitialized, StorageError, TodoStoreError, ValidationError,
)
from engine.table import (
    INDEX_COLUMN, INDEX_FILE, INDEX_NAME, TABLE_FILE, TABLE_NAME, IndexedTable,
)
from indexing.btree import MAX_NODE_PAYLOAD
from indexing.date_index import IndexCorruptionError
from records.todo import Todo, new_todo, normalize_timestamp, validate_existing
from storage.buffer import BufferManager
from storage.page import PageCorruptionError
from transactions.recovery import RecoveryManager
from transactions.transaction import TransactionError, TransactionManager
from transactions.wal import LogManager, WALCorruptionError

logger = logging.getLogger(__name__)

DEFAULT_NAME = "todos"
DEFAULT_VERSION = 1

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")

# low-level failures surfaced to callers as StorageError
_STORAGE_FAILURES = (
    OSError, PageCorruptionError, IndexCorruptionError, WALCorruptionError,
    TransactionError, struct.error, ValueError, KeyError, IndexError, RuntimeError,
)

Timestamp = Union[datetime, str]


class EngineState(Enum):
    UNOPENED = "UNOPENED"
    OPENING = "OPENING"
    READY = "READY"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class TodoDatabase:
    """
    Usage:
        db = TodoDatabase("TodoApp", 1, EngineConfig(data_dir="data"))
        db.open()
        todo_id = db.add_todo("buy milk")
        db.get_todos_by_date_range(start, end)
        db.close()

    or as a context manager, which opens on entry and closes on exit.
    """

    def __init__(self, name: str = DEFAULT_NAME, version: int = DEFAULT_VERSION,
                 config: Optional[EngineConfig] = None,
                 max_node_payload: int = MAX_NODE_PAYLOAD):
        self._name = name
        self._version = version
        self._config = config or EngineConfig()
        self._max_node_payload = max_node_payload
        self._state = EngineState.UNOPENED
        self._last_error: Optional[TodoStoreError] = None
        self._lifecycle = threading.RLock()

        self._store_dir: Optional[str] = None
        self._claimed = False
        self._buffer: Optional[BufferManager] = None
        self._log: Optional[LogManager] = None
        self._txm: Optional[TransactionManager] = None
        self._table: Optional[IndexedTable] = None
        self._catalog: Optional[StoreCatalog] = None
        self._locks: Optional[LockManager] = None
        self._recovery_stats: dict = {}

    # ─── Properties ──────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> int:
        return self._version

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == EngineState.READY

    @property
    def last_error(self) -> Optional[TodoStoreError]:
        return self._last_error

    @property
    def store_path(self) -> str:
        return os.path.join(self._config.data_dir, self._name)

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def open(self, name: Optional[str] = None,
             version: Optional[int] = None) -> "TodoDatabase":
        """
        Open (creating or migrating the schema as needed) and return self.
        Calling open() again while READY with the same name and version is a
        no-op. Any failure leaves the engine FAILED and raises InitError.
        """
        with self._lifecycle:
            name = self._name if name is None else name
            version = self._version if version is None else version
            if self._state == EngineState.READY:
                if name == self._name and version == self._version:
                    return self
                raise InitError(
                    f"Already open as '{self._name}' v{self._version}; close() first")

            self._state = EngineState.OPENING
            self._last_error = None
            try:
                _check_name(name)
                _check_version(version)
                self._name, self._version = name, version
                logger.info("Opening store '%s' v%d at %s", name, version, self.store_path)
                self._open_store()
            except Exception as exc:
                self._release_resources()
                error = exc if isinstance(exc, InitError) else InitError(
                    f"Cannot open store '{name}': {exc}")
                self._state = EngineState.FAILED
                self._last_error = error
                logger.error("Open failed for store '%s': %s", name, error)
                if error is exc:
                    raise
                raise error from exc

            self._state = EngineState.READY
            logger.info("Store '%s' ready (%d record(s))", name, len(self._table))
            return self

    def close(self) -> None:
        """Release the store. Safe to call any number of times, in any state."""
        with self._lifecycle:
            if self._state != EngineState.READY:
                return
            try:
                with self._locks.exclusive():
                    self._state = EngineState.CLOSED
                    self._release_resources()
            except LockTimeoutError as exc:
                raise StorageError(f"close() timed out: {exc}") from exc
            logger.info("Store '%s' closed", self._name)

    def __enter__(self) -> "TodoDatabase":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ─── CRUD ────────────────────────────────────────────────────────────

    def add_todo(self, title: str, completed: bool = False,
                 created_at: Optional[Timestamp] = None) -> int:
        """Validate and store a new record; returns its id."""
        self._require_ready()
        todo = new_todo(title, completed, created_at)
        with self._session(exclusive=True) as table:
            record_id = table.insert(todo)
        logger.debug("add_todo -> id %d", record_id)
        return record_id

    def get_todos(self) -> List[Todo]:
        """All records in id order (a fresh list each call)."""
        with self._session() as table:
            return table.scan()

    def get_todo(self, record_id: int) -> Todo:
        self._require_ready()
        _check_id(record_id)
        with self._session() as table:
            return table.get(record_id)

    def update_todo(self, todo: Todo) -> None:
        """
        Replace the stored record with the same id. A created_at of None keeps
        the stored timestamp. Raises NotFound if the id does not exist.
        """
        self._require_ready()
        todo = validate_existing(todo)
        with self._session(exclusive=True) as table:
            if todo.created_at is None:
                todo = replace(todo, created_at=table.get(todo.id).created_at)
            table.update(todo)

    def delete_todo(self, record_id: int) -> None:
        self._require_ready()
        _check_id(record_id)
        with self._session(exclusive=True) as table:
            table.delete(record_id)

    def get_todos_by_date_range(self, start: Optional[Timestamp],
                                end: Optional[Timestamp]) -> List[Todo]:
        """
        Records with start <= created_at <= end, oldest first; equal
        timestamps in insertion order. None leaves that side open, and
        start > end yields [].
        """
        self._require_ready()
        lower = None if start is None else normalize_timestamp(start, "start")
        upper = None if end is None else normalize_timestamp(end, "end")
        with self._session() as table:
            return table.range(lower, upper)

    # ─── Maintenance ─────────────────────────────────────────────────────

    def check_integrity(self) -> List[str]:
        """Structural and cross-store checks. An empty list means healthy."""
        with self._session() as table:
            return table.check_integrity()

    def rebuild_index(self) -> int:
        """Rebuild the by-date index from the records; returns the entry count."""
        with self._session(exclusive=True) as table:
            return table.rebuild_index()

    def stats(self) -> dict:
        with self._session() as table:
            index = table.index
            return {
                "name": self._name,
                "version": self._version,
                "state": self._state.value,
                "path": self._store_dir,
                "records": len(table),
                "next_id": table.records.next_id,
                "index_entries": index.entry_count if index else 0,
                "index_height": index.btree.tree_height if index else 0,
                "buffer": self._buffer.stats(),
                "recovery": dict(self._recovery_stats),
            }

    # ─── Open sequence ───────────────────────────────────────────────────

    def _open_store(self) -> None:
        cfg = self._config
        store_dir = os.path.abspath(self.store_path)
        if not registry.claim(store_dir):
            raise InitError(
                f"Store '{self._name}' is already open in this process at {store_dir}")
        self._claimed = True
        self._store_dir = store_dir

        os.makedirs(store_dir, exist_ok=True)
        self._buffer = BufferManager(cfg.buffer_pool_size)
        self._log = LogManager(store_dir, fsync=cfg.fsync)
        self._txm = TransactionManager(self._log, self._buffer, store_dir, fsync=cfg.fsync)
        self._recovery_stats = RecoveryManager(
            self._log, self._txm, store_dir, fsync=cfg.fsync).recover()

        self._table = IndexedTable(store_dir, self._buffer, self._txm,
                                   self._max_node_payload)
        self._catalog = StoreCatalog(store_dir)
        self._ensure_schema()

        if cfg.verify_on_open:
            issues = self._table.check_integrity()
            if issues:
                raise InitError(f"Integrity check failed: {'; '.join(issues)}")
        self._locks = LockManager(timeout=cfg.lock_timeout)

    def _ensure_schema(self) -> None:
        """
        Create the schema on first open; on a version upgrade run the
        migration steps. Every step is idempotent.
        """
        catalog, table = self._catalog, self._table
        fresh = not catalog.exists()
        if not fresh:
            try:
                catalog.load()
            except CatalogError as exc:
                raise InitError(str(exc)) from exc
            if self._version < catalog.version:
                raise InitError(
                    f"Store '{self._name}' is at version {catalog.version}; "
                    f"cannot open it as version {self._version}")
            if not table.table_exists():
                raise InitError(f"Store '{self._name}' is missing {TABLE_FILE}")

        steps = []
        if table.table_exists():
            table.open_existing()
        else:
            table.create()
            steps.append(f"create table {TABLE_NAME}")
        if table.ensure_index():
            steps.append(f"build index {INDEX_NAME}")

        previous = catalog.version
        if not (fresh or steps or self._version > previous):
            return
        if not fresh and steps:
            logger.warning("Store '%s': repaired schema (%s)", self._name, ", ".join(steps))
        catalog.name = self._name
        catalog.version = self._version
        catalog.add_table(TABLE_NAME, TABLE_FILE)
        catalog.add_index(INDEX_NAME, TABLE_NAME, INDEX_COLUMN, INDEX_FILE)
        if self._version != previous:
            catalog.record_migration(previous, self._version, steps or ["ensure schema"])
            logger.info("Store '%s': schema v%d -> v%d", self._name, previous, self._version)
        catalog.save(fsync=self._config.fsync)

    def _release_resources(self) -> None:
        """Best-effort teardown; used by close() and by a failed open()."""
        if self._txm is not None and self._txm.active_txn is None:
            try:
                self._txm.checkpoint()
            except _STORAGE_FAILURES as exc:
                # the WAL keeps the unit; recovery replays it on the next open
                logger.error("Checkpoint at close failed: %s", exc)
        if self._buffer is not None:
            self._buffer.clear()
        if self._table is not None:
            self._table.close()
        if self._log is not None:
            self._log.close()
        if self._claimed:
            registry.release(self._store_dir)
            self._claimed = False
        self._buffer = self._log = self._txm = None
        self._table = self._catalog = self._locks = None

    # ─── Sessions ────────────────────────────────────────────────────────

    def _require_ready(self) -> None:
        if self._state != EngineState.READY:
            raise NotInitialized(
                f"Store '{self._name}' is {self._state.value}; call open() first")

    @contextmanager
    def _session(self, exclusive: bool = False) -> Iterator[IndexedTable]:
        """Lock the connection and translate low-level failures."""
        self._require_ready()
        locks = self._locks
        if locks is None:
            # close() finished between the state check and this read
            raise NotInitialized(f"Store '{self._name}' is {self._state.value}")
        try:
            with (locks.exclusive() if exclusive else locks.shared()):
                self._require_ready()  # close() may have won the lock race
                yield self._table
        except TodoStoreError:
            raise
        except LockTimeoutError as exc:
            raise StorageError(str(exc)) from exc
        except _STORAGE_FAILURES as exc:
            logger.error("Storage failure in '%s': %s", self._name, exc)
            raise StorageError(f"{type(exc).__name__}: {exc}") from exc

    def __repr__(self) -> str:
        return f"TodoDatabase(name='{self._name}', version={self._version}, state={self._state.value})"


# ─── Argument checks ────────────────────────────────────────────────────────

def _check_name(name) -> None:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise InitError(f"Invalid store name {name!r}")


def _check_version(version) -> None:
    if not isinstance(version, int) or isinstance(version, bool) or version < 1:
        raise InitError(f"Invalid schema version {version!r}")


def _check_id(record_id) -> None:
    if not isinstance(record_id, int) or isinstance(record_id, bool) or record_id < 1:
        raise ValidationError(f"invalid id {record_id!r}")
