"""
TodoDB Connection Lock
======================
Shared/exclusive lock guarding one open store.

Design rules:
  - Readers (get_todos, range queries, stats) take SHARED
  - Mutations, index rebuilds and close take EXCLUSIVE
  - FIFO wait queue: a waiting writer is not overtaken by later readers
  - Re-entrant per thread: a holder may nest acquisitions, and an
    EXCLUSIVE holder may also take SHARED
  - Waits are bounded; a timeout is reported, never retried here

Thread safety: all state guarded by threading.Lock.
"""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List


class LockType(Enum):
    SHARED = "SHARED"
    EXCLUSIVE = "EXCLUSIVE"


class LockResult(Enum):
    GRANTED = "GRANTED"
    TIMEOUT = "TIMEOUT"


class LockTimeoutError(Exception):
    """Raised by the context-manager helpers when a wait times out."""

    def __init__(self, lock_type: LockType, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for {lock_type.value} lock")
        self.lock_type = lock_type
        self.timeout = timeout


# ─── Lock request ────────────────────────────────────────────────────────

@dataclass
class LockRequest:
    """A pending lock request."""
    owner: int
    lock_type: LockType
    event: threading.Event = field(default_factory=threading.Event)


# ─── Lock Manager ────────────────────────────────────────────────────────

class LockManager:
    """
    Usage:
        locks = LockManager(timeout=30.0)
        with locks.shared():
            ...read...
        with locks.exclusive():
            ...write...
    """

    def __init__(self, timeout: float = 30.0):
        self._mutex = threading.Lock()
        self._timeout = timeout
        self._holders: Dict[int, LockType] = {}   # owner → held type
        self._depth: Dict[int, int] = {}          # owner → nesting depth
        self._wait_queue: List[LockRequest] = []  # FIFO

    @property
    def timeout(self) -> float:
        return self._timeout

    # ─── Public API ──────────────────────────────────────────────────────

    def acquire(self, lock_type: LockType, timeout: float = None) -> LockResult:
        """Block until granted or the timeout (seconds) elapses."""
        owner = threading.get_ident()
        timeout = self._timeout if timeout is None else timeout

        with self._mutex:
            held = self._holders.get(owner)
            if held is not None:
                if held == LockType.EXCLUSIVE or lock_type == LockType.SHARED:
                    self._depth[owner] += 1
                    return LockResult.GRANTED
                if list(self._holders) == [owner]:
                    # sole SHARED holder: upgrade in place
                    self._holders[owner] = LockType.EXCLUSIVE
                    self._depth[owner] += 1
                    return LockResult.GRANTED
                # an upgrade that would have to wait can never be granted
                # while we keep our SHARED hold, so report it as a timeout
                return LockResult.TIMEOUT

            if not self._wait_queue and self._is_compatible(lock_type):
                self._grant(owner, lock_type)
                return LockResult.GRANTED

            request = LockRequest(owner=owner, lock_type=lock_type)
            self._wait_queue.append(request)

        granted = request.event.wait(timeout=timeout)

        with self._mutex:
            if granted or request.event.is_set():
                return LockResult.GRANTED
            self._wait_queue.remove(request)
            # our departure may unblock readers queued behind us
            self._try_grant_waiters()
            return LockResult.TIMEOUT

    def release(self) -> None:
        owner = threading.get_ident()
        with self._mutex:
            if owner not in self._holders:
                raise RuntimeError("release() by a thread that holds no lock")
            self._depth[owner] -= 1
            if self._depth[owner] == 0:
                del self._depth[owner]
                del self._holders[owner]
                self._try_grant_waiters()

    @contextmanager
    def shared(self, timeout: float = None) -> Iterator[None]:
        with self._held(LockType.SHARED, timeout):
            yield

    @contextmanager
    def exclusive(self, timeout: float = None) -> Iterator[None]:
        with self._held(LockType.EXCLUSIVE, timeout):
            yield

    @contextmanager
    def _held(self, lock_type: LockType, timeout: float) -> Iterator[None]:
        timeout = self._timeout if timeout is None else timeout
        if self.acquire(lock_type, timeout) != LockResult.GRANTED:
            raise LockTimeoutError(lock_type, timeout)
        try:
            yield
        finally:
            self.release()

    # ─── Query ───────────────────────────────────────────────────────────

    def holders(self) -> Dict[int, LockType]:
        with self._mutex:
            return dict(self._holders)

    def waiting_count(self) -> int:
        with self._mutex:
            return len(self._wait_queue)

    # ─── Internal ────────────────────────────────────────────────────────

    def _is_compatible(self, lock_type: LockType) -> bool:
        if not self._holders:
            return True
        # SHARED-SHARED is the only compatible combination
        if lock_type == LockType.EXCLUSIVE:
            return False
        return all(t == LockType.SHARED for t in self._holders.values())

    def _grant(self, owner: int, lock_type: LockType) -> None:
        self._holders[owner] = lock_type
        self._depth[owner] = 1

    def _try_grant_waiters(self) -> None:
        """Grant from the head of the queue while compatible (FIFO)."""
        while self._wait_queue:
            request = self._wait_queue[0]
            if not self._is_compatible(request.lock_type):
                break
            self._wait_queue.pop(0)
            self._grant(request.owner, request.lock_type)
            request.event.set()
