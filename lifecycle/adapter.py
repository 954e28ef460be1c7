"""
TodoDB Lifecycle Adapter
========================
Binds one TodoDatabase to a consumer's attach/detach lifetime.

  attach()  build a fresh engine through the factory and open it on a
            background thread; status moves to ready or error
  detach()  close the engine exactly once, waiting for a pending open

Status is observable as an immutable (ready, error) pair, by polling
`status` or by registering a listener. A detached adapter reports the
same pair as a fresh one; `pending` tells the two apart.

A detach()ed adapter may be attach()ed again; that always builds and
opens a new engine.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from engine.database import TodoDatabase
from engine.errors import InitError, NotInitialized, TodoStoreError

logger = logging.getLogger(__name__)

EngineFactory = Callable[[], TodoDatabase]
StatusListener = Callable[["EngineStatus"], None]


@dataclass(frozen=True)
class EngineStatus:
    ready: bool = False
    error: Optional[TodoStoreError] = None


class EngineLifecycle:
    """
    Usage:
        life = EngineLifecycle(lambda: TodoDatabase("TodoApp", 1, config))
        life.attach()
        if life.wait_until_settled(5.0).ready:
            life.engine.add_todo("...")
        life.detach()
    """

    def __init__(self, factory: EngineFactory):
        self._factory = factory
        self._mutex = threading.Lock()
        self._engine: Optional[TodoDatabase] = None
        self._open_thread: Optional[threading.Thread] = None
        self._status = EngineStatus()
        self._settled = threading.Event()
        self._listeners: List[StatusListener] = []
        self._generation = 0

    # ─── Observation ─────────────────────────────────────────────────────

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def attached(self) -> bool:
        return self._engine is not None

    @property
    def pending(self) -> bool:
        """True while an attached engine is still opening."""
        status = self._status
        return self._engine is not None and not status.ready and status.error is None

    @property
    def engine(self) -> TodoDatabase:
        """The attached engine. Raises NotInitialized when detached."""
        engine = self._engine
        if engine is None:
            raise NotInitialized("No engine attached")
        return engine

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def wait_until_settled(self, timeout: Optional[float] = None) -> EngineStatus:
        """Block until the pending open finishes (either way) or timeout."""
        self._settled.wait(timeout)
        return self._status

    # ─── Attach / detach ─────────────────────────────────────────────────

    def attach(self) -> None:
        with self._mutex:
            if self._engine is not None:
                raise RuntimeError("Already attached; detach() first")
            self._generation += 1
            generation = self._generation
            engine = self._factory()
            self._engine = engine
            self._settled.clear()
            thread = threading.Thread(target=self._run_open, args=(engine, generation),
                                      name=f"tododb-open-{engine.name}", daemon=True)
            self._open_thread = thread
        self._set_status(EngineStatus(), generation)
        logger.debug("Attached engine '%s' (generation %d)", engine.name, generation)
        thread.start()

    def detach(self) -> None:
        """Close the attached engine exactly once. No-op when detached."""
        with self._mutex:
            engine, thread = self._engine, self._open_thread
            self._engine = None
            self._open_thread = None
            self._generation += 1
        if engine is None:
            return
        if thread is not None:
            thread.join()
        try:
            engine.close()
        finally:
            self._status = EngineStatus()
            self._settled.set()
            self._notify(self._status)
            logger.debug("Detached engine '%s'", engine.name)

    # ─── Internal ────────────────────────────────────────────────────────

    def _run_open(self, engine: TodoDatabase, generation: int) -> None:
        try:
            engine.open()
        except TodoStoreError as exc:
            self._set_status(EngineStatus(ready=False, error=exc), generation)
        except Exception as exc:
            error = InitError(f"Unexpected failure opening '{engine.name}': {exc}")
            error.__cause__ = exc
            self._set_status(EngineStatus(ready=False, error=error), generation)
        else:
            self._set_status(EngineStatus(ready=True), generation)
        finally:
            if generation == self._generation:
                self._settled.set()

    def _set_status(self, status: EngineStatus, generation: int) -> None:
        with self._mutex:
            if generation != self._generation:
                return  # detached meanwhile; the result belongs to nobody
            self._status = status
        self._notify(status)

    def _notify(self, status: EngineStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed")
