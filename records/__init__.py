"""
TodoDB Records
==============
Record shape, validation, and the on-page tuple codec.
"""

from records.todo import Todo, new_todo, validate_existing, normalize_timestamp
from records.codec import encode_todo, decode_todo

__all__ = [
    "Todo", "new_todo", "validate_existing", "normalize_timestamp",
    "encode_todo", "decode_todo",
]
