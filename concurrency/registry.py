"""
Process-wide registry of open stores.

Only one connection per store directory may exist in a process; a second
open of the same path is refused instead of racing the first one's buffer
and WAL.
"""

import os
import threading
from typing import Set

_lock = threading.Lock()
_open_paths: Set[str] = set()


def claim(store_path: str) -> bool:
    """Register an open store. False if the path is already claimed."""
    key = os.path.realpath(store_path)
    with _lock:
        if key in _open_paths:
            return False
        _open_paths.add(key)
        return True


def release(store_path: str) -> None:
    with _lock:
        _open_paths.discard(os.path.realpath(store_path))


def is_claimed(store_path: str) -> bool:
    with _lock:
        return os.path.realpath(store_path) in _open_paths
