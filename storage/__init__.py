"""
TodoDB Storage Layer
====================
Slotted pages, the per-connection buffer, page-granular files, and the
primary record store.

Usage:
    from storage import BufferManager, RecordFile
"""

from storage.page import Page, RID, PAGE_SIZE, FORMAT_VERSION, PageCorruptionError
from storage.buffer import BufferManager
from storage.paged_file import PagedFile
from storage.record_file import RecordFile

__all__ = [
    "Page", "RID", "PAGE_SIZE", "FORMAT_VERSION", "PageCorruptionError",
    "BufferManager",
    "PagedFile",
    "RecordFile",
]
