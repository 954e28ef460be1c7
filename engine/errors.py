"""
TodoDB Error Taxonomy
=====================
Every error the engine reports to callers is a TodoStoreError tagged with
an ErrorKind, so callers can dispatch on `err.kind` exhaustively instead of
probing exception classes.

  VALIDATION       malformed input fields (caller's fault, not retried)
  NOT_INITIALIZED  engine is not READY; open() first
  NOT_FOUND        the referenced id does not exist
  INIT             backing storage could not be opened (retry open())
  STORAGE          I/O or integrity failure during a valid operation
"""

from enum import Enum


class ErrorKind(Enum):
    VALIDATION = "VALIDATION"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    NOT_FOUND = "NOT_FOUND"
    INIT = "INIT"
    STORAGE = "STORAGE"


class TodoStoreError(Exception):
    """Base class for all engine errors."""
    kind: ErrorKind = ErrorKind.STORAGE


class ValidationError(TodoStoreError):
    kind = ErrorKind.VALIDATION


class NotInitialized(TodoStoreError):
    kind = ErrorKind.NOT_INITIALIZED


class NotFound(TodoStoreError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, record_id: int):
        super().__init__(f"No record with id {record_id}")
        self.record_id = record_id


class InitError(TodoStoreError):
    kind = ErrorKind.INIT


class StorageError(TodoStoreError):
    kind = ErrorKind.STORAGE
