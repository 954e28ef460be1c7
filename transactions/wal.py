"""
TodoDB Write-Ahead Log (WAL)
============================
Append-only redo log of full page images. One atomic unit is logged as

    BEGIN(txn)  PAGE(txn, file, page_id, image) ...  COMMIT(txn)

and the COMMIT is fsynced before any data file is touched. After the data
files are written and synced the log is truncated back to empty
(checkpoint). Recovery replays every complete BEGIN..COMMIT group and
ignores a torn tail.

LSN = byte offset in wal.log. The file starts with 4 zero bytes so that
LSN 0 never names a record.

Record layout (big-endian):
  total_len(I) lsn(I) txn_id(I) type(B) payload CRC32(I)
"""

import os
import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum
from typing import BinaryIO, Iterator, Optional, Tuple

from storage.page import PAGE_SIZE

# ─── Constants ──────────────────────────────────────────────────────────────

WAL_FILE_NAME = "wal.log"
WAL_PADDING = 4


class WALRecordType(IntEnum):
    BEGIN = 0x01
    COMMIT = 0x02
    PAGE = 0x10


_HDR = struct.Struct(">IIIB")
_CRC_SIZE = 4
_MIN_RECORD = _HDR.size + _CRC_SIZE


class WALCorruptionError(Exception):
    """A record failed its length, LSN, or CRC check."""
    pass


@dataclass
class WALEntry:
    lsn: int
    txn_id: int
    record_type: WALRecordType
    payload: bytes
    total_len: int


# ─── LogManager ─────────────────────────────────────────────────────────────

class LogManager:
    """
    Owns wal.log for one store directory.

    Guarantees:
      - CRC32 on every record
      - append_commit() returns only after the log is fsynced
      - truncate() is the checkpoint: the log is empty afterwards
    """

    def __init__(self, data_dir: str, fsync: bool = True):
        self._wal_path = os.path.join(data_dir, WAL_FILE_NAME)
        self._fsync = fsync
        if not os.path.exists(self._wal_path):
            with open(self._wal_path, "wb") as f:
                f.write(bytes(WAL_PADDING))
                f.flush()
                if fsync:
                    os.fsync(f.fileno())
        self._file: Optional[BinaryIO] = open(self._wal_path, "r+b")
        size = self._file.seek(0, os.SEEK_END)
        if size < WAL_PADDING:
            self._file.seek(0)
            self._file.write(bytes(WAL_PADDING))
            size = WAL_PADDING
        self._next_lsn = size

    @property
    def path(self) -> str:
        return self._wal_path

    @property
    def next_lsn(self) -> int:
        return self._next_lsn

    @property
    def is_empty(self) -> bool:
        return self._next_lsn <= WAL_PADDING

    # ─── Core I/O ───────────────────────────────────────────────────

    def flush(self) -> None:
        self._ensure_open()
        self._file.flush()
        if self._fsync:
            os.fsync(self._file.fileno())

    def truncate(self, to_lsn: int = WAL_PADDING) -> None:
        self._ensure_open()
        to_lsn = max(to_lsn, WAL_PADDING)
        self._file.truncate(to_lsn)
        self._file.seek(to_lsn)
        self._next_lsn = to_lsn
        self.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None

    def _ensure_open(self) -> None:
        if self._file is None:
            raise RuntimeError("WAL is closed")

    # ─── Write ──────────────────────────────────────────────────────

    def _write_record(self, txn_id: int, rtype: WALRecordType,
                      payload: bytes = b"") -> int:
        self._ensure_open()
        lsn = self._next_lsn
        total_len = _HDR.size + len(payload) + _CRC_SIZE
        hdr = _HDR.pack(total_len, lsn, txn_id, rtype)
        crc = zlib.crc32(payload, zlib.crc32(hdr)) & 0xFFFFFFFF
        self._file.seek(lsn)
        self._file.write(hdr + payload + struct.pack(">I", crc))
        self._next_lsn = lsn + total_len
        return lsn

    def append_begin(self, txn_id: int) -> int:
        return self._write_record(txn_id, WALRecordType.BEGIN)

    def append_page(self, txn_id: int, file_name: str, page_id: int,
                    image: bytes) -> int:
        if len(image) != PAGE_SIZE:
            raise ValueError(f"Page image must be {PAGE_SIZE} bytes")
        name = file_name.encode("utf-8")
        payload = struct.pack(">H", len(name)) + name + struct.pack(">I", page_id) + image
        return self._write_record(txn_id, WALRecordType.PAGE, payload)

    def append_commit(self, txn_id: int) -> int:
        lsn = self._write_record(txn_id, WALRecordType.COMMIT)
        self.flush()  # durable before the caller is told it committed
        return lsn

    # ─── Read ───────────────────────────────────────────────────────

    def read_record(self, lsn: int) -> WALEntry:
        self._ensure_open()
        self._file.seek(lsn)
        hdr = self._file.read(_HDR.size)
        if len(hdr) < _HDR.size:
            raise WALCorruptionError(f"Truncated header at LSN {lsn}")
        total_len, rec_lsn, txn_id, rtype = _HDR.unpack(hdr)
        if rec_lsn != lsn:
            raise WALCorruptionError(f"LSN mismatch at {lsn}: header says {rec_lsn}")
        if total_len < _MIN_RECORD:
            raise WALCorruptionError(f"Record too small ({total_len}) at LSN {lsn}")

        rest = self._file.read(total_len - _HDR.size)
        if len(rest) < total_len - _HDR.size:
            raise WALCorruptionError(f"Truncated payload at LSN {lsn}")
        payload, stored = rest[:-_CRC_SIZE], struct.unpack(">I", rest[-_CRC_SIZE:])[0]
        if zlib.crc32(payload, zlib.crc32(hdr)) & 0xFFFFFFFF != stored:
            raise WALCorruptionError(f"CRC mismatch at LSN {lsn}")
        try:
            record_type = WALRecordType(rtype)
        except ValueError as exc:
            raise WALCorruptionError(f"Unknown record type {rtype} at LSN {lsn}") from exc
        return WALEntry(lsn, txn_id, record_type, payload, total_len)

    def scan(self, start_lsn: int = WAL_PADDING) -> Iterator[WALEntry]:
        """Yield records in order. Raises WALCorruptionError at the first bad one."""
        end = self._file.seek(0, os.SEEK_END)
        pos = start_lsn
        while pos < end:
            entry = self.read_record(pos)
            yield entry
            pos += entry.total_len

    @staticmethod
    def parse_page_payload(payload: bytes) -> Tuple[str, int, bytes]:
        """PAGE payload -> (file_name, page_id, image)."""
        name_len = struct.unpack_from(">H", payload, 0)[0]
        name = payload[2:2 + name_len].decode("utf-8")
        page_id = struct.unpack_from(">I", payload, 2 + name_len)[0]
        return name, page_id, payload[6 + name_len:]
