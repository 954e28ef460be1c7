"""
TodoDB Paged File
=================
Page-granular access to one data file through the connection's buffer.

Reads go buffer-first, then disk (CRC-validated). Writes never touch the
disk directly: a page is marked dirty in the buffer *before* the caller
mutates it, and the transaction manager later writes every dirty page
through the WAL. New pages exist only in the buffer until commit, so a
rolled-back allocation leaves the file unchanged.

Page 0 of every file holds a JSON header tuple.
"""

import json
import os
from typing import Any, Dict, Iterable, Tuple

from storage.buffer import BufferManager
from storage.page import PAGE_SIZE, Page, PageCorruptionError


def write_page_images(file_path: str, images: Iterable[Tuple[int, bytes]],
                      fsync: bool = True) -> None:
    """
    Write full page images at their offsets, creating the file if needed.
    Writing past the end extends the file; every gap is itself one of the
    images, since pages are allocated densely.
    """
    fd = os.open(file_path, os.O_RDWR | os.O_CREAT, 0o644)
    with os.fdopen(fd, "r+b") as f:
        for page_id, data in images:
            if len(data) != PAGE_SIZE:
                raise ValueError(f"Page image {page_id} is {len(data)} bytes")
            f.seek(page_id * PAGE_SIZE)
            f.write(data)
        f.flush()
        if fsync:
            os.fsync(f.fileno())


class PagedFile:
    """A data file viewed as an array of pages."""

    def __init__(self, file_path: str, buffer_mgr: BufferManager):
        self._file_path = os.path.abspath(file_path)
        self._buffer = buffer_mgr
        self._num_pages = 0

    @property
    def file_path(self) -> str:
        return self._file_path

    @property
    def num_pages(self) -> int:
        return self._num_pages

    def exists(self) -> bool:
        return os.path.exists(self._file_path)

    def reload(self) -> None:
        """Re-derive the page count from the committed file size."""
        if not self.exists():
            self._num_pages = 0
            return
        size = os.path.getsize(self._file_path)
        if size % PAGE_SIZE:
            raise PageCorruptionError(
                f"{self._file_path}: size {size} is not a multiple of {PAGE_SIZE}")
        self._num_pages = size // PAGE_SIZE

    # ─── Page access ────────────────────────────────────────────────

    def read_page(self, page_id: int) -> Page:
        """Fetch a page for reading. Do not mutate the returned object."""
        if page_id < 0 or page_id >= self._num_pages:
            raise IndexError(f"Page {page_id} out of range for {self._file_path}")
        page = self._buffer.get_page(self._file_path, page_id)
        if page is not None:
            return page

        with open(self._file_path, "rb") as f:
            f.seek(page_id * PAGE_SIZE)
            data = f.read(PAGE_SIZE)
        if len(data) < PAGE_SIZE:
            raise PageCorruptionError(
                f"{self._file_path}: truncated page {page_id}")
        page = Page(page_id=page_id, data=data)
        if page.page_id != page_id:
            raise PageCorruptionError(
                f"{self._file_path}: page {page_id} claims id {page.page_id}")
        self._buffer.put_page(self._file_path, page_id, page)
        return page

    def page_for_write(self, page_id: int) -> Page:
        """Fetch a page and mark it dirty before the caller changes it."""
        page = self.read_page(page_id)
        self._buffer.mark_dirty(self._file_path, page_id)
        return page

    def replace_page(self, page: Page) -> None:
        """Install a freshly built page image (dirty)."""
        if page.page_id >= self._num_pages:
            raise IndexError(f"Page {page.page_id} was never allocated")
        self._buffer.put_page(self._file_path, page.page_id, page, dirty=True)

    def allocate_page(self) -> Page:
        page = Page(page_id=self._num_pages)
        self._num_pages += 1
        self._buffer.put_page(self._file_path, page.page_id, page, dirty=True)
        return page

    # ─── Header page ────────────────────────────────────────────────

    def create(self, header: Dict[str, Any]) -> None:
        """Start a new, empty file whose page 0 holds the given header."""
        if self.exists():
            raise FileExistsError(self._file_path)
        self._num_pages = 0
        self.allocate_page()
        self.write_header(header)

    def read_header(self) -> Dict[str, Any]:
        tuples = self.read_page(0).tuples()
        if not tuples:
            raise PageCorruptionError(f"{self._file_path}: header page is empty")
        try:
            return json.loads(tuples[0][1].decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PageCorruptionError(
                f"{self._file_path}: unreadable header ({exc})") from exc

    def write_header(self, header: Dict[str, Any]) -> None:
        page = Page(page_id=0)
        page.insert_tuple(json.dumps(header, separators=(",", ":")).encode("utf-8"))
        self.replace_page(page)

    def forget(self) -> None:
        """Drop cached frames, e.g. when the connection closes."""
        self._buffer.invalidate_file(self._file_path)

    def __repr__(self) -> str:
        return f"PagedFile('{self._file_path}', pages={self._num_pages})"
