"""
TodoDB Record Shape
===================
The Todo record plus the pure validation/normalization applied before
anything is stored.

Timestamps are timezone-aware UTC datetimes with microsecond precision.
Naive datetimes are taken to be UTC; ISO 8601 strings are accepted and
parsed the same way.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from engine.errors import ValidationError

MAX_TITLE_BYTES = 1024

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Todo:
    """One todo item. `id` is None until the record is first persisted."""
    title: str
    completed: bool = False
    created_at: Optional[datetime] = None
    id: Optional[int] = None


# ─── Timestamps ─────────────────────────────────────────────────────────────

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_timestamp(value: Any, field: str = "created_at") -> datetime:
    """Coerce a datetime or ISO string to an aware UTC datetime."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError(f"{field}: not an ISO 8601 timestamp: {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValidationError(
            f"{field} must be a datetime, got {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    try:
        return value.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValidationError(f"{field}: out of range: {value.isoformat()}") from exc


def to_micros(value: datetime) -> int:
    """Microseconds since the Unix epoch (exact, no float rounding)."""
    delta = value - _EPOCH
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(micros: int) -> datetime:
    return _EPOCH + timedelta(microseconds=micros)


# ─── Validation ─────────────────────────────────────────────────────────────

def _check_title(title: Any) -> str:
    if not isinstance(title, str):
        raise ValidationError(f"title must be text, got {type(title).__name__}")
    if not title.strip():
        raise ValidationError("title must not be empty")
    if len(title.encode("utf-8")) > MAX_TITLE_BYTES:
        raise ValidationError(f"title exceeds {MAX_TITLE_BYTES} bytes")
    return title


def _check_completed(completed: Any) -> bool:
    # bool only; 0 and 1 are not accepted
    if not isinstance(completed, bool):
        raise ValidationError(
            f"completed must be a boolean, got {type(completed).__name__}")
    return completed


def new_todo(title: Any, completed: Any = False,
             created_at: Any = None) -> Todo:
    """
    Validate a candidate record that has no id yet.
    created_at defaults to the current time when not supplied.
    """
    stamp = utc_now() if created_at is None else normalize_timestamp(created_at)
    return Todo(title=_check_title(title),
                completed=_check_completed(completed),
                created_at=stamp)


def validate_existing(todo: Any) -> Todo:
    """
    Validate a record handed to update. The id is required; a missing
    created_at is returned as None so the store keeps its current value.
    """
    if not isinstance(todo, Todo):
        raise ValidationError(f"expected a Todo, got {type(todo).__name__}")
    if todo.id is None:
        raise ValidationError("record has no id; it was never persisted")
    if not isinstance(todo.id, int) or isinstance(todo.id, bool) or todo.id < 1:
        raise ValidationError(f"invalid id {todo.id!r}")
    stamp = None if todo.created_at is None else normalize_timestamp(todo.created_at)
    return replace(todo,
                   title=_check_title(todo.title),
                   completed=_check_completed(todo.completed),
                   created_at=stamp)
