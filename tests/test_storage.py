"""
TodoDB Storage Tests
====================
Slotted pages, the buffer manager, paged files and the record file:
  ✔ tuple insert / fetch / delete / update
  ✔ page full handling and compaction
  ✔ CRC verification on load
  ✔ no-steal buffer: dirty pages are never evicted
  ✔ record ids: monotonic, relocated updates keep the id
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from engine.errors import NotFound
from records.todo import Todo, new_todo
from storage.buffer import BufferManager
from storage.page import DELETED_SLOT, PAGE_SIZE, Page, PageCorruptionError
from storage.paged_file import PagedFile, write_page_images
from storage.record_file import RecordFile


# ═══════════════════════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def tmp_dir():
    path = tempfile.mkdtemp(prefix="tododb_storage_")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def bm():
    return BufferManager(capacity=16)


def _commit_all(bm: BufferManager) -> None:
    """Write every dirty page to its file, as a commit would."""
    by_file = {}
    for path, pid, page in bm.dirty_pages():
        by_file.setdefault(path, []).append((pid, page.to_bytes()))
    for path, images in by_file.items():
        write_page_images(path, sorted(images), fsync=False)
    bm.mark_clean([(path, pid) for path, pid, _ in bm.dirty_pages()])


# ═══════════════════════════════════════════════════════════════════════════
# Page
# ═══════════════════════════════════════════════════════════════════════════

class TestPage:

    def test_insert_and_get(self):
        page = Page(page_id=3)
        s0 = page.insert_tuple(b"alpha")
        s1 = page.insert_tuple(b"beta")
        assert (s0, s1) == (0, 1)
        assert page.get_tuple(s0) == b"alpha"
        assert page.get_tuple(s1) == b"beta"
        assert page.get_tuple(5) is None

    def test_delete_reuses_slot(self):
        page = Page()
        page.insert_tuple(b"one")
        page.insert_tuple(b"two")
        assert page.delete_tuple(0)
        assert page.get_tuple(0) is None
        assert not page.delete_tuple(0)
        assert page.insert_tuple(b"three") == 0
        assert page.num_slots == 2

    def test_empty_payload_rejected(self):
        with pytest.raises(ValueError):
            Page().insert_tuple(b"")

    def test_page_full(self):
        page = Page()
        with pytest.raises(ValueError):
            page.insert_tuple(b"x" * PAGE_SIZE)
        count = 0
        while page.can_fit(100):
            page.insert_tuple(b"y" * 100)
            count += 1
        assert count > 30
        with pytest.raises(ValueError):
            page.insert_tuple(b"z" * 100)

    def test_compaction_makes_room(self):
        page = Page()
        slots = []
        while page.can_fit(500):
            slots.append(page.insert_tuple(b"a" * 500))
        page.delete_tuple(slots[0])
        page.delete_tuple(slots[1])
        # fits only once the dead bytes are squeezed out
        big = b"b" * 900
        slot = page.insert_tuple(big)
        assert page.get_tuple(slot) == big
        for s in slots[2:]:
            assert page.get_tuple(s) == b"a" * 500

    def test_update_in_place_and_grow(self):
        page = Page()
        s = page.insert_tuple(b"short")
        other = page.insert_tuple(b"neighbour")
        assert page.update_tuple(s, b"tiny")
        assert page.get_tuple(s) == b"tiny"
        assert page.update_tuple(s, b"a much longer payload than before")
        assert page.get_tuple(s) == b"a much longer payload than before"
        assert page.get_tuple(other) == b"neighbour"

    def test_update_that_cannot_fit_leaves_page_untouched(self):
        page = Page()
        s = page.insert_tuple(b"keep me")
        while page.can_fit(200):
            page.insert_tuple(b"f" * 200)
        before = page.to_bytes()
        assert not page.update_tuple(s, b"g" * 1000)
        assert page.to_bytes() == before
        assert page.get_tuple(s) == b"keep me"

    def test_checksum_roundtrip_and_corruption(self):
        page = Page(page_id=9)
        page.insert_tuple(b"payload")
        data = bytearray(page.to_bytes())
        restored = Page(page_id=9, data=bytes(data))
        assert restored.get_tuple(0) == b"payload"

        data[PAGE_SIZE - 1] ^= 0xFF
        with pytest.raises(PageCorruptionError):
            Page(page_id=9, data=bytes(data))

    def test_wrong_size_rejected(self):
        with pytest.raises(PageCorruptionError):
            Page(data=b"\x00" * 100)

    def test_deleted_slot_marker(self):
        page = Page()
        page.insert_tuple(b"x")
        page.delete_tuple(0)
        assert page._read_slot(0) == DELETED_SLOT


# ═══════════════════════════════════════════════════════════════════════════
# Buffer Manager
# ═══════════════════════════════════════════════════════════════════════════

class TestBufferManager:

    def test_lru_eviction_of_clean_pages(self):
        bm = BufferManager(capacity=2)
        bm.put_page("f", 0, Page(0))
        bm.put_page("f", 1, Page(1))
        bm.get_page("f", 0)            # 0 is now most recent
        bm.put_page("f", 2, Page(2))
        assert bm.get_page("f", 1) is None
        assert bm.get_page("f", 0) is not None

    def test_dirty_pages_never_evicted(self):
        bm = BufferManager(capacity=2)
        bm.put_page("f", 0, Page(0), dirty=True)
        bm.put_page("f", 1, Page(1), dirty=True)
        bm.put_page("f", 2, Page(2))
        assert bm.get_page("f", 0) is not None
        assert bm.get_page("f", 1) is not None
        assert bm.size == 3

    def test_dirty_order_and_clean(self):
        bm = BufferManager(capacity=8)
        for pid in (4, 1, 3):
            bm.put_page("f", pid, Page(pid), dirty=True)
        assert [pid for _, pid, _ in bm.dirty_pages()] == [4, 1, 3]
        bm.mark_clean([("f", 1)])
        assert [pid for _, pid, _ in bm.dirty_pages()] == [4, 3]
        assert not bm.is_dirty("f", 1)

    def test_discard_dirty(self):
        bm = BufferManager(capacity=8)
        bm.put_page("f", 0, Page(0))
        bm.put_page("f", 1, Page(1), dirty=True)
        assert bm.discard_dirty() == 1
        assert bm.get_page("f", 1) is None
        assert bm.get_page("f", 0) is not None

    def test_mark_dirty_requires_cached_page(self):
        with pytest.raises(KeyError):
            BufferManager().mark_dirty("f", 0)

    def test_invalidate_refuses_dirty(self):
        bm = BufferManager()
        bm.put_page("f", 0, Page(0), dirty=True)
        with pytest.raises(RuntimeError):
            bm.invalidate_file("f")


# ═══════════════════════════════════════════════════════════════════════════
# Paged File
# ═══════════════════════════════════════════════════════════════════════════

class TestPagedFile:

    def test_new_pages_stay_in_buffer_until_written(self, tmp_dir, bm):
        path = os.path.join(tmp_dir, "data.tbl")
        pf = PagedFile(path, bm)
        pf.create({"hello": "world"})
        assert not os.path.exists(path)
        assert pf.read_header() == {"hello": "world"}

        _commit_all(bm)
        assert os.path.getsize(path) == PAGE_SIZE

        fresh = PagedFile(path, BufferManager())
        fresh.reload()
        assert fresh.num_pages == 1
        assert fresh.read_header() == {"hello": "world"}

    def test_create_refuses_existing_file(self, tmp_dir, bm):
        path = os.path.join(tmp_dir, "data.tbl")
        pf = PagedFile(path, bm)
        pf.create({})
        _commit_all(bm)
        with pytest.raises(FileExistsError):
            PagedFile(path, bm).create({})

    def test_torn_file_size_detected(self, tmp_dir, bm):
        path = os.path.join(tmp_dir, "torn.tbl")
        with open(path, "wb") as f:
            f.write(b"\x00" * (PAGE_SIZE + 10))
        with pytest.raises(PageCorruptionError):
            PagedFile(path, bm).reload()

    def test_page_for_write_marks_dirty(self, tmp_dir, bm):
        path = os.path.join(tmp_dir, "data.tbl")
        pf = PagedFile(path, bm)
        pf.create({})
        _commit_all(bm)
        pf.page_for_write(0)
        assert bm.is_dirty(pf.file_path, 0)

    def test_read_out_of_range(self, tmp_dir, bm):
        pf = PagedFile(os.path.join(tmp_dir, "x.tbl"), bm)
        with pytest.raises(IndexError):
            pf.read_page(0)


# ═══════════════════════════════════════════════════════════════════════════
# Record File
# ═══════════════════════════════════════════════════════════════════════════

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _todo(title, minutes=0, completed=False):
    return new_todo(title, completed=completed, created_at=T0 + timedelta(minutes=minutes))


class TestRecordFile:

    def _create(self, tmp_dir, bm):
        rf = RecordFile(os.path.join(tmp_dir, "records.tbl"), bm)
        rf.create("records")
        return rf

    def test_insert_assigns_sequential_ids(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        assert rf.insert(_todo("a")) == 1
        assert rf.insert(_todo("b")) == 2
        assert rf.get(2).title == "b"
        assert len(rf) == 2
        assert 1 in rf

    def test_get_missing(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        with pytest.raises(NotFound) as info:
            rf.get(5)
        assert info.value.record_id == 5

    def test_scan_in_id_order(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        for i in range(5):
            rf.insert(_todo(f"t{i}", minutes=-i))
        assert [t.id for t in rf.scan()] == [1, 2, 3, 4, 5]

    def test_update_replaces_wholesale(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        rid = rf.insert(_todo("old"))
        previous = rf.update(Todo(id=rid, title="new", completed=True, created_at=T0))
        assert previous.title == "old"
        assert rf.get(rid) == Todo(id=rid, title="new", completed=True, created_at=T0)

    def test_update_relocates_when_page_is_full(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        small = rf.insert(_todo("a" * 10))
        others = [rf.insert(_todo("x" * 1000)) for _ in range(3)]
        others.append(rf.insert(_todo("y" * 900)))
        assert rf._directory[small].page_id == 1
        assert all(rf._directory[i].page_id == 1 for i in others)

        rf.update(Todo(id=small, title="z" * 1024, created_at=T0))
        assert rf._directory[small].page_id == 2
        assert rf.get(small).title == "z" * 1024
        assert [t.id for t in rf.scan()] == [small] + others

    def test_delete(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        rid = rf.insert(_todo("gone"))
        assert rf.delete(rid).title == "gone"
        assert rid not in rf
        with pytest.raises(NotFound):
            rf.delete(rid)

    def test_ids_survive_reopen_after_deleting_highest(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        rf.insert(_todo("a"))
        top = rf.insert(_todo("b"))
        rf.delete(top)
        _commit_all(bm)
        rf.close()

        reopened = RecordFile(os.path.join(tmp_dir, "records.tbl"), BufferManager())
        reopened.open()
        assert reopened.next_id == 3
        assert reopened.insert(_todo("c")) == 3

    def test_reload_drops_uncommitted_changes(self, tmp_dir, bm):
        rf = self._create(tmp_dir, bm)
        rf.insert(_todo("committed"))
        _commit_all(bm)

        rf.insert(_todo("uncommitted"))
        bm.discard_dirty()
        rf.reload()
        assert [t.title for t in rf.scan()] == ["committed"]
        assert rf.next_id == 2

    def test_open_rejects_foreign_file(self, tmp_dir, bm):
        path = os.path.join(tmp_dir, "other.tbl")
        pf = PagedFile(path, bm)
        pf.create({"magic": "NOPE"})
        _commit_all(bm)
        with pytest.raises(PageCorruptionError):
            RecordFile(path, BufferManager()).open()
