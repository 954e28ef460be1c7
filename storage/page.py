"""
TodoDB Slotted Pages
====================
4KB fixed-size pages shared by the record file and the B+ tree index.

Layout:
  [0..15]  Header (format_version, page_id, num_slots, free_start,
           free_end, checksum)
  [16..]   Slot directory, 4 bytes per slot (offset, length)
  [..]     Free space
  [..]     Tuple data, growing down from the end of the page

Slot rules:
  - A deleted slot is marked (0, 0) and may be reused by a later insert.
  - Slots are never reordered, so (page_id, slot_id) stays valid for a
    tuple's lifetime, including across compaction.
  - free_start == HEADER_SIZE + num_slots * SLOT_SIZE at all times.

All integers are big-endian. The CRC32 covers the whole page except the
checksum field itself and is verified whenever a page is loaded from disk.
"""

import struct
import zlib
from dataclasses import dataclass
from typing import List, Optional, Tuple

# ─── Constants ──────────────────────────────────────────────────────────────

PAGE_SIZE = 4096
FORMAT_VERSION = 1

# format_version(H) page_id(I) num_slots(H) free_start(H) free_end(H) checksum(I)
HEADER_STRUCT = struct.Struct(">HIHHHI")
HEADER_SIZE = HEADER_STRUCT.size        # 16
CHECKSUM_OFFSET = 12

SLOT_STRUCT = struct.Struct(">HH")
SLOT_SIZE = SLOT_STRUCT.size            # 4

DELETED_SLOT = (0, 0)


class PageCorruptionError(Exception):
    """Raised when a page fails its CRC or structural checks."""
    pass


@dataclass(frozen=True)
class RID:
    """Physical location of a tuple: (page_id, slot_id)."""
    page_id: int
    slot_id: int

    def __repr__(self) -> str:
        return f"RID({self.page_id}, {self.slot_id})"


class Page:
    """A slotted page. Mutations keep the header in sync with the slot directory."""

    def __init__(self, page_id: int = 0, data: Optional[bytes] = None,
                 verify: bool = True):
        if data is None:
            self._data = bytearray(PAGE_SIZE)
            self._page_id = page_id
            self._num_slots = 0
            self._free_start = HEADER_SIZE
            self._free_end = PAGE_SIZE
            self._write_header()
            return

        if len(data) != PAGE_SIZE:
            raise PageCorruptionError(
                f"Page {page_id}: expected {PAGE_SIZE} bytes, got {len(data)}")
        self._data = bytearray(data)
        (version, self._page_id, self._num_slots,
         self._free_start, self._free_end, _) = HEADER_STRUCT.unpack_from(self._data, 0)
        if verify:
            self._verify(version)

    # ─── Integrity ──────────────────────────────────────────────────

    def _verify(self, version: int) -> None:
        stored = struct.unpack_from(">I", self._data, CHECKSUM_OFFSET)[0]
        computed = self.compute_checksum()
        if stored != computed:
            raise PageCorruptionError(
                f"Page {self._page_id}: CRC mismatch "
                f"(stored=0x{stored:08X}, computed=0x{computed:08X})")
        if version != FORMAT_VERSION:
            raise PageCorruptionError(
                f"Page {self._page_id}: unsupported format version {version}")
        if self._free_start != HEADER_SIZE + self._num_slots * SLOT_SIZE:
            raise PageCorruptionError(
                f"Page {self._page_id}: slot directory inconsistent")
        if self._free_start > self._free_end or self._free_end > PAGE_SIZE:
            raise PageCorruptionError(
                f"Page {self._page_id}: free space overlap "
                f"({self._free_start} > {self._free_end})")

    def compute_checksum(self) -> int:
        body = self._data[:CHECKSUM_OFFSET] + self._data[CHECKSUM_OFFSET + 4:]
        return zlib.crc32(body) & 0xFFFFFFFF

    def _write_header(self) -> None:
        HEADER_STRUCT.pack_into(
            self._data, 0, FORMAT_VERSION, self._page_id, self._num_slots,
            self._free_start, self._free_end, 0)

    # ─── Properties ─────────────────────────────────────────────────

    @property
    def page_id(self) -> int:
        return self._page_id

    @property
    def num_slots(self) -> int:
        return self._num_slots

    @property
    def free_space(self) -> int:
        return self._free_end - self._free_start

    def can_fit(self, tuple_size: int) -> bool:
        """True if a tuple fits, counting a new slot entry if none is reusable."""
        if self._first_deleted_slot() is not None:
            return self.free_space >= tuple_size
        return self.free_space >= tuple_size + SLOT_SIZE

    # ─── Slots ──────────────────────────────────────────────────────

    def _read_slot(self, slot_id: int) -> Tuple[int, int]:
        return SLOT_STRUCT.unpack_from(self._data, HEADER_SIZE + slot_id * SLOT_SIZE)

    def _write_slot(self, slot_id: int, offset: int, length: int) -> None:
        SLOT_STRUCT.pack_into(self._data, HEADER_SIZE + slot_id * SLOT_SIZE,
                              offset, length)

    def _first_deleted_slot(self) -> Optional[int]:
        for i in range(self._num_slots):
            if self._read_slot(i) == DELETED_SLOT:
                return i
        return None

    def _place(self, payload: bytes) -> int:
        """Copy payload into the tuple area. Caller has checked the space."""
        self._free_end -= len(payload)
        self._data[self._free_end:self._free_end + len(payload)] = payload
        return self._free_end

    # ─── Tuple operations ───────────────────────────────────────────

    def insert_tuple(self, payload: bytes) -> int:
        """Store a tuple and return its slot id. Raises ValueError when full."""
        if not payload:
            raise ValueError("Empty tuples cannot be stored")
        if not self.can_fit(len(payload)):
            if self._dead_bytes() > 0:
                self.compact()
            if not self.can_fit(len(payload)):
                raise ValueError(
                    f"Page {self._page_id}: no room for {len(payload)}B "
                    f"(free: {self.free_space}B)")

        slot_id = self._first_deleted_slot()
        if slot_id is None:
            slot_id = self._num_slots
            self._num_slots += 1
            self._free_start += SLOT_SIZE
        offset = self._place(payload)
        self._write_slot(slot_id, offset, len(payload))
        self._write_header()
        return slot_id

    def get_tuple(self, slot_id: int) -> Optional[bytes]:
        if slot_id < 0 or slot_id >= self._num_slots:
            return None
        offset, length = self._read_slot(slot_id)
        if (offset, length) == DELETED_SLOT:
            return None
        return bytes(self._data[offset:offset + length])

    def delete_tuple(self, slot_id: int) -> bool:
        if self.get_tuple(slot_id) is None:
            return False
        self._write_slot(slot_id, *DELETED_SLOT)
        self._write_header()
        return True

    def update_tuple(self, slot_id: int, payload: bytes) -> bool:
        """
        Replace a tuple in place, keeping its slot id.
        Returns False when the new payload cannot fit on this page even
        after compaction; the old tuple is left untouched in that case.
        """
        if self.get_tuple(slot_id) is None:
            return False
        offset, length = self._read_slot(slot_id)
        if len(payload) <= length:
            self._data[offset:offset + len(payload)] = payload
            self._write_slot(slot_id, offset, len(payload))
            self._write_header()
            return True

        reclaimable = PAGE_SIZE - self._free_start - (self._live_bytes() - length)
        if len(payload) > reclaimable:
            return False

        self._write_slot(slot_id, *DELETED_SLOT)
        if self.free_space < len(payload):
            self.compact()
        self._write_slot(slot_id, self._place(payload), len(payload))
        self._write_header()
        return True

    def tuples(self) -> List[Tuple[int, bytes]]:
        """Live tuples as (slot_id, payload), in slot order."""
        result = []
        for i in range(self._num_slots):
            payload = self.get_tuple(i)
            if payload is not None:
                result.append((i, payload))
        return result

    def _live_bytes(self) -> int:
        return sum(len(p) for _, p in self.tuples())

    def _dead_bytes(self) -> int:
        return (PAGE_SIZE - self._free_end) - self._live_bytes()

    def compact(self) -> None:
        """Squeeze out space left by deleted or shrunk tuples. Slot ids are stable."""
        live = self.tuples()
        self._free_end = PAGE_SIZE
        for slot_id, payload in live:
            self._write_slot(slot_id, self._place(payload), len(payload))
        self._data[self._free_start:self._free_end] = bytes(self._free_end - self._free_start)
        self._write_header()

    # ─── Serialization ──────────────────────────────────────────────

    def to_bytes(self) -> bytes:
        """Serialize with a freshly computed checksum."""
        struct.pack_into(">I", self._data, CHECKSUM_OFFSET, self.compute_checksum())
        return bytes(self._data)

    def __repr__(self) -> str:
        return (f"Page(id={self._page_id}, slots={self._num_slots}, "
                f"live={len(self.tuples())}, free={self.free_space}B)")
