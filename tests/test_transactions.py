"""
TodoDB Transaction Tests
========================
WAL records, TransactionManager commit/abort, and RecoveryManager redo.
"""

import os
import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from records.todo import new_todo
from storage.buffer import BufferManager
from storage.page import PAGE_SIZE, Page
from storage.record_file import RecordFile
from transactions.recovery import RecoveryManager
from transactions.transaction import TransactionError, TransactionManager
from transactions.wal import (
    WAL_PADDING, LogManager, WALCorruptionError, WALRecordType,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _make_tmp():
    return tempfile.mkdtemp(prefix="tododb_txn_test_")


def _image(page_id: int, payload: bytes) -> bytes:
    page = Page(page_id=page_id)
    page.insert_tuple(payload)
    return page.to_bytes()


# ═══════════════════════════════════════════════════════════════════════════
# 1. WAL Unit Tests
# ═══════════════════════════════════════════════════════════════════════════

class TestWALBasics(unittest.TestCase):

    def setUp(self):
        self.tmp = _make_tmp()
        self.lm = LogManager(self.tmp, fsync=False)

    def tearDown(self):
        self.lm.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_new_log_is_empty(self):
        self.assertTrue(self.lm.is_empty)
        self.assertEqual(os.path.getsize(self.lm.path), WAL_PADDING)
        self.assertEqual(list(self.lm.scan()), [])

    def test_begin_page_commit_records(self):
        self.lm.append_begin(1)
        self.lm.append_page(1, "records.tbl", 3, _image(3, b"data"))
        self.lm.append_commit(1)
        recs = list(self.lm.scan())
        self.assertEqual([r.record_type for r in recs],
                         [WALRecordType.BEGIN, WALRecordType.PAGE, WALRecordType.COMMIT])
        self.assertTrue(all(r.txn_id == 1 for r in recs))

    def test_page_payload(self):
        image = _image(7, b"payload")
        lsn = self.lm.append_page(4, "by-date.idx", 7, image)
        name, page_id, data = LogManager.parse_page_payload(self.lm.read_record(lsn).payload)
        self.assertEqual((name, page_id, data), ("by-date.idx", 7, image))

    def test_page_image_size_enforced(self):
        with self.assertRaises(ValueError):
            self.lm.append_page(1, "x.tbl", 0, b"short")

    def test_lsn_is_byte_offset(self):
        lsn1 = self.lm.append_begin(1)
        self.assertEqual(lsn1, WAL_PADDING)
        rec = self.lm.read_record(lsn1)
        lsn2 = self.lm.append_commit(1)
        self.assertEqual(lsn2, lsn1 + rec.total_len)

    def test_crc_corruption_detected(self):
        lsn = self.lm.append_begin(1)
        self.lm.flush()
        with open(self.lm.path, "r+b") as f:
            f.seek(lsn + 14)  # inside the CRC
            byte = f.read(1)[0]
            f.seek(lsn + 14)
            f.write(bytes([byte ^ 0xFF]))
        self.lm.close()
        self.lm = LogManager(self.tmp, fsync=False)
        with self.assertRaises(WALCorruptionError):
            self.lm.read_record(lsn)

    def test_reopen_persistence(self):
        self.lm.append_begin(1)
        self.lm.append_commit(1)
        self.lm.close()
        self.lm = LogManager(self.tmp, fsync=False)
        self.assertEqual(len(list(self.lm.scan())), 2)
        self.assertFalse(self.lm.is_empty)

    def test_truncate(self):
        self.lm.append_begin(1)
        self.lm.append_commit(1)
        self.lm.truncate()
        self.assertTrue(self.lm.is_empty)
        self.assertEqual(list(self.lm.scan()), [])
        self.assertEqual(self.lm.append_begin(2), WAL_PADDING)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Transaction Manager
# ═══════════════════════════════════════════════════════════════════════════

class TestTransactionManager(unittest.TestCase):

    def setUp(self):
        self.tmp = _make_tmp()
        self.bm = BufferManager(capacity=32)
        self.lm = LogManager(self.tmp, fsync=False)
        self.tm = TransactionManager(self.lm, self.bm, self.tmp, fsync=False)
        self.path = os.path.join(self.tmp, "records.tbl")
        self.rf = RecordFile(self.path, self.bm)
        with self.tm.atomic():
            self.rf.create("records")

    def tearDown(self):
        self.lm.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _reopened(self):
        rf = RecordFile(self.path, BufferManager())
        rf.open()
        return rf

    def test_commit_writes_data_and_checkpoints(self):
        with self.tm.atomic():
            self.rf.insert(new_todo("persisted", created_at=T0))
        self.assertEqual(self.bm.dirty_pages(), [])
        self.assertTrue(self.lm.is_empty)
        self.assertEqual([t.title for t in self._reopened().scan()], ["persisted"])

    def test_exception_aborts_unit(self):
        with self.tm.atomic():
            self.rf.insert(new_todo("kept", created_at=T0))
        with self.assertRaises(RuntimeError):
            with self.tm.atomic() as txn_id:
                self.tm.register_hook(txn_id, rollback_fn=self.rf.reload)
                self.rf.insert(new_todo("lost", created_at=T0))
                raise RuntimeError("boom")
        self.assertEqual([t.title for t in self.rf.scan()], ["kept"])
        self.assertEqual(self.rf.next_id, 2)
        self.assertEqual(self.bm.dirty_pages(), [])
        self.assertEqual([t.title for t in self._reopened().scan()], ["kept"])

    def test_one_active_transaction(self):
        txn = self.tm.begin()
        with self.assertRaises(TransactionError):
            self.tm.begin()
        self.tm.abort(txn)
        with self.assertRaises(TransactionError):
            self.tm.commit(txn)

    def test_hooks_run(self):
        calls = []
        with self.tm.atomic() as txn_id:
            self.tm.register_hook(txn_id, commit_fn=lambda: calls.append("commit"))
        txn_id = self.tm.begin()
        self.tm.register_hook(txn_id, rollback_fn=lambda: calls.append("rollback"))
        self.tm.abort(txn_id)
        self.assertEqual(calls, ["commit", "rollback"])

    def test_wal_failure_rolls_back(self):
        with mock.patch.object(self.lm, "append_commit", side_effect=OSError("disk full")):
            with self.assertRaises(OSError):
                with self.tm.atomic() as txn_id:
                    self.tm.register_hook(txn_id, rollback_fn=self.rf.reload)
                    self.rf.insert(new_todo("never", created_at=T0))
        self.assertTrue(self.lm.is_empty)
        self.assertEqual(len(self.rf), 0)
        self.assertIsNone(self.tm.active_txn)

    def test_apply_failure_keeps_wal_and_retries(self):
        with mock.patch("transactions.transaction.write_page_images",
                        side_effect=OSError("EIO")):
            with self.tm.atomic():
                self.rf.insert(new_todo("durable", created_at=T0))
        # committed in the WAL, not yet in the data file
        self.assertIsNone(self.tm.active_txn)
        self.assertFalse(self.lm.is_empty)
        self.assertTrue(self.tm.has_pending_apply)
        self.assertEqual(len(self._reopened()), 0)
        self.assertEqual([t.title for t in self.rf.scan()], ["durable"])

        self.assertTrue(self.tm.checkpoint())
        self.assertTrue(self.lm.is_empty)
        self.assertEqual([t.title for t in self._reopened().scan()], ["durable"])

    def test_pending_apply_finished_by_next_begin(self):
        with mock.patch("transactions.transaction.write_page_images",
                        side_effect=OSError("EIO")):
            with self.tm.atomic():
                self.rf.insert(new_todo("first", created_at=T0))
        with self.tm.atomic():
            self.rf.insert(new_todo("second", created_at=T0))
        self.assertFalse(self.tm.has_pending_apply)
        self.assertEqual([t.title for t in self._reopened().scan()], ["first", "second"])

    def test_pending_apply_failing_again_blocks_next_unit(self):
        with mock.patch("transactions.transaction.write_page_images",
                        side_effect=OSError("EIO")):
            with self.tm.atomic():
                self.rf.insert(new_todo("first", created_at=T0))
            with self.assertRaises(OSError):
                self.tm.begin()
        self.assertIsNone(self.tm.active_txn)
        self.assertTrue(self.tm.has_pending_apply)


# ═══════════════════════════════════════════════════════════════════════════
# 3. Recovery
# ═══════════════════════════════════════════════════════════════════════════

class TestRecovery(unittest.TestCase):

    def setUp(self):
        self.tmp = _make_tmp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _recover(self):
        lm = LogManager(self.tmp, fsync=False)
        tm = TransactionManager(lm, BufferManager(), self.tmp, fsync=False)
        stats = RecoveryManager(lm, tm, self.tmp, fsync=False).recover()
        empty = lm.is_empty
        lm.close()
        return stats, empty

    def _read_page(self, name, page_id):
        with open(os.path.join(self.tmp, name), "rb") as f:
            f.seek(page_id * PAGE_SIZE)
            return Page(page_id=page_id, data=f.read(PAGE_SIZE))

    def test_committed_images_replayed(self):
        lm = LogManager(self.tmp, fsync=False)
        lm.append_begin(1)
        lm.append_page(1, "data.tbl", 0, _image(0, b"zero"))
        lm.append_page(1, "data.tbl", 1, _image(1, b"one"))
        lm.append_commit(1)
        lm.close()

        stats, empty = self._recover()
        self.assertEqual(stats["committed_txns"], 1)
        self.assertEqual(stats["redo_pages"], 2)
        self.assertTrue(empty)
        self.assertEqual(self._read_page("data.tbl", 1).get_tuple(0), b"one")

    def test_uncommitted_ignored(self):
        lm = LogManager(self.tmp, fsync=False)
        lm.append_begin(1)
        lm.append_page(1, "data.tbl", 0, _image(0, b"zero"))
        lm.close()

        stats, empty = self._recover()
        self.assertEqual(stats["committed_txns"], 0)
        self.assertEqual(stats["uncommitted_txns"], 1)
        self.assertTrue(empty)
        self.assertFalse(os.path.exists(os.path.join(self.tmp, "data.tbl")))

    def test_torn_tail_ignored(self):
        lm = LogManager(self.tmp, fsync=False)
        lm.append_begin(1)
        lm.append_page(1, "data.tbl", 0, _image(0, b"first"))
        lm.append_commit(1)
        lm.append_begin(2)
        lm.append_page(2, "data.tbl", 0, _image(0, b"second"))
        lm.append_commit(2)
        lm.close()
        # chop the last few bytes off the second COMMIT
        size = os.path.getsize(os.path.join(self.tmp, "wal.log"))
        with open(os.path.join(self.tmp, "wal.log"), "r+b") as f:
            f.truncate(size - 3)

        stats, _ = self._recover()
        self.assertTrue(stats["torn_tail"])
        self.assertEqual(stats["committed_txns"], 1)
        self.assertEqual(self._read_page("data.tbl", 0).get_tuple(0), b"first")

    def test_later_commit_wins(self):
        lm = LogManager(self.tmp, fsync=False)
        for txn, payload in ((1, b"old"), (2, b"new")):
            lm.append_begin(txn)
            lm.append_page(txn, "data.tbl", 0, _image(0, payload))
            lm.append_commit(txn)
        lm.close()
        self._recover()
        self.assertEqual(self._read_page("data.tbl", 0).get_tuple(0), b"new")

    def test_idempotent(self):
        lm = LogManager(self.tmp, fsync=False)
        lm.append_begin(1)
        lm.append_page(1, "data.tbl", 0, _image(0, b"x"))
        lm.append_commit(1)
        lm.close()
        self._recover()
        stats, empty = self._recover()
        self.assertEqual(stats["committed_txns"], 0)
        self.assertTrue(empty)
        self.assertEqual(self._read_page("data.tbl", 0).get_tuple(0), b"x")


if __name__ == "__main__":
    unittest.main()
