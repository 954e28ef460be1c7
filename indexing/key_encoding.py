"""
TodoDB Key Encoding
===================
Order-preserving binary encoding for B+ tree keys. Encoded keys compare
with plain bytes comparison in the same order as the original values.

Encoding rules:
  INT64     → big-endian int64 with the sign bit flipped (8 bytes)
  UINT64    → big-endian uint64 (8 bytes)
  TIMESTAMP → INT64 of microseconds since the Unix epoch

The by-date index key is TIMESTAMP + UINT64 insertion sequence, so equal
timestamps sort by the order their entries were added.
"""

import struct
from datetime import datetime
from typing import Tuple

from records.todo import from_micros, to_micros

INT64_SIZE = 8
DATE_KEY_SIZE = 2 * INT64_SIZE

_MAX_UINT64 = 2 ** 64 - 1


# ─── Scalars ────────────────────────────────────────────────────────────────

def encode_int64(value: int) -> bytes:
    raw = bytearray(struct.pack(">q", value))
    raw[0] ^= 0x80
    return bytes(raw)


def decode_int64(data: bytes, offset: int = 0) -> Tuple[int, int]:
    raw = bytearray(data[offset:offset + INT64_SIZE])
    raw[0] ^= 0x80
    return struct.unpack(">q", bytes(raw))[0], offset + INT64_SIZE


def encode_uint64(value: int) -> bytes:
    return struct.pack(">Q", value)


def decode_uint64(data: bytes, offset: int = 0) -> Tuple[int, int]:
    return struct.unpack_from(">Q", data, offset)[0], offset + INT64_SIZE


def encode_timestamp(value: datetime) -> bytes:
    return encode_int64(to_micros(value))


def decode_timestamp(data: bytes, offset: int = 0) -> Tuple[datetime, int]:
    micros, offset = decode_int64(data, offset)
    return from_micros(micros), offset


# ─── Composite by-date keys ─────────────────────────────────────────────────

def date_key(value: datetime, sequence: int) -> bytes:
    return encode_timestamp(value) + encode_uint64(sequence)


def split_date_key(key: bytes) -> Tuple[datetime, int]:
    stamp, offset = decode_timestamp(key)
    sequence, _ = decode_uint64(key, offset)
    return stamp, sequence


def date_key_floor(value: datetime) -> bytes:
    """Smallest key carrying this timestamp."""
    return date_key(value, 0)


def date_key_ceiling(value: datetime) -> bytes:
    """Largest key carrying this timestamp."""
    return date_key(value, _MAX_UINT64)
