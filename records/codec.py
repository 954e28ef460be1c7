"""
TodoDB Record Codec
===================
Binary tuple format for persisted Todo records.

Tuple layout (big-endian):
  [format: 1B] [id: 8B signed] [completed: 1B]
  [created_at: 8B signed, microseconds since epoch]
  [title_len: 2B] [title: UTF-8]
"""

import struct

from records.todo import Todo, from_micros, to_micros

TUPLE_FORMAT = 1

_FIXED = struct.Struct(">BqBqH")


def encode_todo(todo: Todo) -> bytes:
    """Encode a persisted record. id and created_at must be set."""
    if todo.id is None or todo.created_at is None:
        raise ValueError("Only records with id and created_at can be encoded")
    title = todo.title.encode("utf-8")
    return _FIXED.pack(TUPLE_FORMAT, todo.id, 1 if todo.completed else 0,
                       to_micros(todo.created_at), len(title)) + title


def decode_todo(data: bytes) -> Todo:
    if len(data) < _FIXED.size:
        raise ValueError(f"Record tuple too short ({len(data)}B)")
    fmt, record_id, completed, micros, title_len = _FIXED.unpack_from(data, 0)
    if fmt != TUPLE_FORMAT:
        raise ValueError(f"Unknown record tuple format {fmt}")
    end = _FIXED.size + title_len
    if len(data) != end:
        raise ValueError(f"Record tuple length mismatch ({len(data)} != {end})")
    return Todo(
        id=record_id,
        title=data[_FIXED.size:end].decode("utf-8"),
        completed=completed != 0,
        created_at=from_micros(micros),
    )


def decode_id(data: bytes) -> int:
    """Read only the id field; used when rebuilding the id directory."""
    return _FIXED.unpack_from(data, 0)[1]
