"""
TodoDB Recovery Manager
=======================
Redo-only crash recovery over the page-image WAL.

Runs when a store is opened, before any page is read.
Guarantees:
  - Every transaction whose COMMIT reached the log is reapplied
  - Anything after the last intact record (a torn tail) is ignored
  - Transactions without a COMMIT leave no trace
  - Idempotent: page images are absolute, so replaying twice is harmless
"""

import logging
import os
from typing import Dict, List, Tuple

from storage.paged_file import write_page_images
from transactions.transaction import TransactionManager
from transactions.wal import LogManager, WALCorruptionError, WALRecordType

logger = logging.getLogger(__name__)


class RecoveryManager:
    """
    Algorithm:
      1. Analysis: scan the WAL up to the first bad record, grouping PAGE
         images by transaction and noting which transactions committed
      2. Redo: write committed images to their files in commit order
      3. Checkpoint: truncate the WAL
    """

    def __init__(self, log_manager: LogManager, txn_manager: TransactionManager,
                 data_dir: str, fsync: bool = True):
        self._log = log_manager
        self._txn = txn_manager
        self._data_dir = data_dir
        self._fsync = fsync

    def recover(self) -> dict:
        """Run recovery. Returns a stats dict for diagnostics."""
        stats = {
            "committed_txns": 0,
            "uncommitted_txns": 0,
            "redo_pages": 0,
            "torn_tail": False,
        }
        if self._log.is_empty:
            return stats

        committed, uncommitted, max_txn_id, torn = self._analysis()
        stats["committed_txns"] = len(committed)
        stats["uncommitted_txns"] = len(uncommitted)
        stats["torn_tail"] = torn

        for txn_id, images in committed:
            stats["redo_pages"] += self._redo(images)

        self._log.truncate()
        self._txn.set_next_txn_id(max_txn_id + 1)
        logger.info("Recovery: %d committed txn(s) replayed (%d pages), "
                    "%d incomplete discarded%s",
                    stats["committed_txns"], stats["redo_pages"],
                    stats["uncommitted_txns"], ", torn tail ignored" if torn else "")
        return stats

    # ─── Analysis ────────────────────────────────────────────────────────

    def _analysis(self):
        """
        Returns (committed, uncommitted, max_txn_id, torn_tail).
        committed is a list of (txn_id, images) in commit order.
        """
        open_txns: Dict[int, List[Tuple[str, int, bytes]]] = {}
        committed: List[Tuple[int, List[Tuple[str, int, bytes]]]] = []
        max_txn_id = 0
        torn = False

        try:
            for entry in self._log.scan():
                max_txn_id = max(max_txn_id, entry.txn_id)
                if entry.record_type == WALRecordType.BEGIN:
                    open_txns[entry.txn_id] = []
                elif entry.record_type == WALRecordType.PAGE:
                    open_txns.setdefault(entry.txn_id, []).append(
                        LogManager.parse_page_payload(entry.payload))
                elif entry.record_type == WALRecordType.COMMIT:
                    committed.append((entry.txn_id, open_txns.pop(entry.txn_id, [])))
        except WALCorruptionError as exc:
            logger.warning("WAL scan stopped: %s", exc)
            torn = True

        return committed, list(open_txns), max_txn_id, torn

    # ─── Redo ────────────────────────────────────────────────────────────

    def _redo(self, images: List[Tuple[str, int, bytes]]) -> int:
        by_file: Dict[str, List[Tuple[int, bytes]]] = {}
        for file_name, page_id, data in images:
            # the WAL only names files inside this store directory
            path = os.path.join(self._data_dir, os.path.basename(file_name))
            by_file.setdefault(path, []).append((page_id, data))
        for path, pages in by_file.items():
            write_page_images(path, _last_image_wins(pages), fsync=self._fsync)
        return len(images)


def _last_image_wins(pages: List[Tuple[int, bytes]]) -> List[Tuple[int, bytes]]:
    latest: Dict[int, bytes] = {}
    for page_id, data in pages:
        latest[page_id] = data
    return sorted(latest.items())
