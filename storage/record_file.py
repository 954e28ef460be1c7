"""
TodoDB Record File (Primary Store)
==================================
Durable mapping from auto-assigned integer id to Todo record, stored in a
`.tbl` file of slotted pages.

File layout:
  Page 0: JSON header {magic, format_version, table, next_id}
  Page 1..N: record tuples (see records.codec)

Id contract:
  - next_id starts at 1 and only ever grows. It lives in the header page,
    so it is committed in the same atomic unit as the insert that used it
    and an id is never handed out twice, even after the highest id is
    deleted and the store reopened.
  - The id -> RID directory is rebuilt from a full scan on open; it is a
    cache of what the pages say, never a source of truth.

Every mutation goes through PagedFile.page_for_write(), so the enclosing
transaction can commit or discard it as a whole.
"""

import logging
from typing import Dict, List

from engine.errors import NotFound
from records.codec import decode_id, decode_todo, encode_todo
from records.todo import Todo
from storage.buffer import BufferManager
from storage.page import RID, PageCorruptionError
from storage.paged_file import PagedFile

logger = logging.getLogger(__name__)

RECORD_MAGIC = "TDBR"
RECORD_FORMAT_VERSION = 1


class RecordFile:
    """Primary store for one table."""

    def __init__(self, file_path: str, buffer_mgr: BufferManager):
        self._pager = PagedFile(file_path, buffer_mgr)
        self._table_name = ""
        self._next_id = 1
        self._directory: Dict[int, RID] = {}
        self._is_open = False

    @property
    def file_path(self) -> str:
        return self._pager.file_path

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def next_id(self) -> int:
        return self._next_id

    @property
    def is_open(self) -> bool:
        return self._is_open

    def __len__(self) -> int:
        return len(self._directory)

    def __contains__(self, record_id: int) -> bool:
        return record_id in self._directory

    # ─── Create / Open / Close ──────────────────────────────────────

    def create(self, table_name: str) -> None:
        self._table_name = table_name
        self._next_id = 1
        self._directory = {}
        self._pager.create(self._header())
        self._is_open = True

    def open(self) -> None:
        """Load the header and rebuild the id directory from the pages."""
        self._pager.reload()
        if self._pager.num_pages == 0:
            raise FileNotFoundError(f"Record file not found: {self.file_path}")
        header = self._pager.read_header()
        if header.get("magic") != RECORD_MAGIC:
            raise PageCorruptionError(f"{self.file_path}: not a record file")
        if header.get("format_version") != RECORD_FORMAT_VERSION:
            raise PageCorruptionError(
                f"{self.file_path}: unsupported format {header.get('format_version')}")
        self._table_name = header["table"]
        self._next_id = int(header["next_id"])
        self._directory = self._build_directory()
        self._is_open = True

    def reload(self) -> None:
        """Resynchronize in-memory state with the committed file (after abort)."""
        self._is_open = False
        self._directory = {}
        if self._pager.exists():
            self.open()
        else:
            self._pager.reload()

    def close(self) -> None:
        if not self._is_open:
            return
        self._pager.forget()
        self._directory = {}
        self._is_open = False

    def _header(self) -> dict:
        return {
            "magic": RECORD_MAGIC,
            "format_version": RECORD_FORMAT_VERSION,
            "table": self._table_name,
            "next_id": self._next_id,
        }

    def _build_directory(self) -> Dict[int, RID]:
        directory: Dict[int, RID] = {}
        for pid in range(1, self._pager.num_pages):
            for slot_id, payload in self._pager.read_page(pid).tuples():
                record_id = decode_id(payload)
                if record_id in directory:
                    raise PageCorruptionError(
                        f"{self.file_path}: id {record_id} stored twice")
                if record_id >= self._next_id:
                    raise PageCorruptionError(
                        f"{self.file_path}: id {record_id} >= next_id {self._next_id}")
                directory[record_id] = RID(pid, slot_id)
        return directory

    # ─── Record operations ──────────────────────────────────────────

    def insert(self, todo: Todo) -> int:
        """Assign the next id, store the record, and return the id."""
        self._ensure_open()
        record_id = self._next_id
        payload = encode_todo(_with_id(todo, record_id))
        rid = self._store(payload)
        self._next_id += 1
        self._pager.write_header(self._header())
        self._directory[record_id] = rid
        return record_id

    def get(self, record_id: int) -> Todo:
        self._ensure_open()
        rid = self._directory.get(record_id)
        if rid is None:
            raise NotFound(record_id)
        payload = self._pager.read_page(rid.page_id).get_tuple(rid.slot_id)
        if payload is None:
            raise PageCorruptionError(f"{self.file_path}: dangling {rid} for id {record_id}")
        return decode_todo(payload)

    def update(self, todo: Todo) -> Todo:
        """Replace the stored record wholesale. Returns the previous version."""
        self._ensure_open()
        previous = self.get(todo.id)
        rid = self._directory[todo.id]
        payload = encode_todo(todo)
        page = self._pager.page_for_write(rid.page_id)
        if not page.update_tuple(rid.slot_id, payload):
            # does not fit on its page any more: move it, the id stays
            page.delete_tuple(rid.slot_id)
            self._directory[todo.id] = self._store(payload)
        return previous

    def delete(self, record_id: int) -> Todo:
        """Remove a record. Returns what was deleted."""
        self._ensure_open()
        previous = self.get(record_id)
        rid = self._directory.pop(record_id)
        self._pager.page_for_write(rid.page_id).delete_tuple(rid.slot_id)
        return previous

    def scan(self) -> List[Todo]:
        """Snapshot of all records in id order."""
        self._ensure_open()
        return [self.get(record_id) for record_id in sorted(self._directory)]

    def ids(self) -> List[int]:
        return sorted(self._directory)

    # ─── Internal ───────────────────────────────────────────────────

    def _store(self, payload: bytes) -> RID:
        page = None
        # newest page first: that is where free space usually is
        for pid in range(self._pager.num_pages - 1, 0, -1):
            if self._pager.read_page(pid).can_fit(len(payload)):
                page = self._pager.page_for_write(pid)
                break
        if page is None:
            page = self._pager.allocate_page()
        return RID(page.page_id, page.insert_tuple(payload))

    def _ensure_open(self) -> None:
        if not self._is_open:
            raise RuntimeError("Record file not open; call open() or create() first")

    def __repr__(self) -> str:
        return (f"RecordFile(table='{self._table_name}', records={len(self)}, "
                f"next_id={self._next_id})")


def _with_id(todo: Todo, record_id: int) -> Todo:
    return Todo(id=record_id, title=todo.title, completed=todo.completed,
                created_at=todo.created_at)
