"""
TodoDB Transaction Manager
==========================
Single-writer atomic units over the page-image WAL.

Protocol (no-steal / redo-only):
  1. Mutations mark pages dirty in the buffer before changing them; dirty
     pages are never evicted, so nothing uncommitted reaches a data file.
  2. commit():  BEGIN, one PAGE image per dirty page, COMMIT, fsync WAL
  3. apply:     write the images to the data files and fsync them
  4. checkpoint: mark the pages clean, truncate the WAL
  5. abort():   drop every dirty page, run rollback hooks so in-memory
                structures re-read the committed files

If step 2 fails the WAL is cut back and the unit is aborted. If step 3
fails the unit is still committed and commit() returns normally: the
images stay pending, the WAL is kept, and the next begin(), checkpoint()
or recovery on the next open finishes the job.
"""

import logging
import os
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from storage.buffer import BufferManager
from storage.paged_file import write_page_images
from transactions.wal import LogManager

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


class TransactionError(Exception):
    """Misuse of the transaction API (nested begin, unknown txn, ...)."""
    pass


class _TxnInfo:
    """Internal bookkeeping for one transaction."""
    __slots__ = ('txn_id', 'state', 'start_lsn', 'commit_hooks', 'rollback_hooks')

    def __init__(self, txn_id: int, start_lsn: int):
        self.txn_id = txn_id
        self.state = TransactionState.ACTIVE
        self.start_lsn = start_lsn
        self.commit_hooks: List[Callable[[], None]] = []
        self.rollback_hooks: List[Callable[[], None]] = []


class TransactionManager:
    """
    One active transaction at a time. Callers serialize writers (the
    engine holds its exclusive lock around every atomic unit); the mutex
    here only protects the manager's own bookkeeping.
    """

    def __init__(self, log_manager: LogManager, buffer_manager: BufferManager,
                 data_dir: str, fsync: bool = True):
        self._log = log_manager
        self._buffer = buffer_manager
        self._data_dir = data_dir
        self._fsync = fsync
        self._next_txn_id = 1
        self._active: Optional[_TxnInfo] = None
        self._pending: List[Tuple[str, int, bytes]] = []
        self._mutex = threading.Lock()

    @property
    def active_txn(self) -> Optional[int]:
        info = self._active
        return info.txn_id if info is not None else None

    @property
    def has_pending_apply(self) -> bool:
        return bool(self._pending)

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def begin(self) -> int:
        with self._mutex:
            if self._active is not None:
                raise TransactionError(
                    f"Transaction {self._active.txn_id} is still active")
            if self._pending:
                self._apply_pending()
            txn_id = self._next_txn_id
            self._next_txn_id += 1
            self._active = _TxnInfo(txn_id, self._log.next_lsn)
        logger.debug("txn %d: begin", txn_id)
        return txn_id

    def commit(self, txn_id: int) -> None:
        info = self._get_active(txn_id)
        dirty = self._buffer.dirty_pages()
        images = [(path, pid, page.to_bytes()) for path, pid, page in dirty]

        if images:
            try:
                self._log.append_begin(txn_id)
                for path, pid, data in images:
                    self._log.append_page(txn_id, os.path.basename(path), pid, data)
                self._log.append_commit(txn_id)
            except BaseException:
                logger.error("txn %d: WAL write failed, rolling back", txn_id)
                self._log.truncate(info.start_lsn)
                self.abort(txn_id)
                raise

        # durable from here on
        with self._mutex:
            info.state = TransactionState.COMMITTED
            self._active = None
            self._pending = images

        if images:
            try:
                self._apply_pending()
            except OSError as exc:
                # still committed: the WAL holds the images, _pending keeps them
                logger.error("txn %d: apply failed, deferred to next checkpoint: %s",
                             txn_id, exc)
        logger.debug("txn %d: committed %d page(s)", txn_id, len(images))

        for hook in info.commit_hooks:
            hook()

    def abort(self, txn_id: int) -> None:
        info = self._get_active(txn_id)
        dropped = self._buffer.discard_dirty()
        with self._mutex:
            info.state = TransactionState.ABORTED
            self._active = None
        if dropped:
            logger.warning("txn %d: rolled back, %d dirty page(s) dropped", txn_id, dropped)
        else:
            logger.debug("txn %d: aborted before any change", txn_id)

        failure: Optional[BaseException] = None
        for hook in info.rollback_hooks:
            try:
                hook()
            except Exception as exc:
                logger.error("txn %d: rollback hook failed: %s", txn_id, exc)
                if failure is None:
                    failure = exc
        if failure is not None:
            raise failure

    @contextmanager
    def atomic(self) -> Iterator[int]:
        """
        Run a block as one unit:

            with txm.atomic() as txn_id:
                table.insert(...)

        Any exception inside the block aborts; a clean exit commits.
        """
        txn_id = self.begin()
        try:
            yield txn_id
        except BaseException:
            if self.active_txn == txn_id:
                self.abort(txn_id)
            raise
        self.commit(txn_id)

    def register_hook(self, txn_id: int, commit_fn: Optional[Callable[[], None]] = None,
                      rollback_fn: Optional[Callable[[], None]] = None) -> None:
        """Register a callback for commit/rollback."""
        info = self._get_active(txn_id)
        if commit_fn and commit_fn not in info.commit_hooks:
            info.commit_hooks.append(commit_fn)
        if rollback_fn and rollback_fn not in info.rollback_hooks:
            info.rollback_hooks.append(rollback_fn)

    def checkpoint(self) -> bool:
        """Finish a committed unit whose apply step failed. True if one was pending."""
        with self._mutex:
            if self._active is not None:
                raise TransactionError("Cannot checkpoint inside a transaction")
            if not self._pending:
                return False
            self._apply_pending()
            return True

    # ─── Internal ────────────────────────────────────────────────────────

    def _get_active(self, txn_id: int) -> _TxnInfo:
        with self._mutex:
            info = self._active
        if info is None or info.txn_id != txn_id:
            raise TransactionError(f"Transaction {txn_id} is not active")
        return info

    def _apply_pending(self) -> None:
        """Write committed images to the data files, then checkpoint."""
        by_file: Dict[str, List[Tuple[int, bytes]]] = {}
        for path, pid, data in self._pending:
            by_file.setdefault(path, []).append((pid, data))
        for path, pages in by_file.items():
            write_page_images(path, sorted(pages), fsync=self._fsync)

        self._buffer.mark_clean([(path, pid) for path, pid, _ in self._pending])
        self._pending = []
        self._log.truncate()

    # ─── Recovery support ────────────────────────────────────────────────

    def set_next_txn_id(self, txn_id: int) -> None:
        """Set by recovery so ids keep increasing within a WAL lifetime."""
        with self._mutex:
            self._next_txn_id = max(self._next_txn_id, txn_id)
