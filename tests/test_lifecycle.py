"""
TodoDB Lifecycle Adapter Tests
==============================
attach()/detach() binding, background open, status reporting.
"""

import os
import shutil
import sys
import tempfile
import threading
import unittest
from unittest import mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.config import EngineConfig
from engine.database import EngineState, TodoDatabase
from engine.errors import InitError, NotInitialized
from lifecycle import EngineLifecycle, EngineStatus


class _GatedDatabase(TodoDatabase):
    """open() waits until the test releases the gate."""

    def __init__(self, *args, gate: threading.Event, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = gate

    def open(self, name=None, version=None):
        self.gate.wait(5.0)
        return super().open(name, version)


class TestEngineLifecycle(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix="tododb_life_")
        self.config = EngineConfig(data_dir=self.tmp, fsync=False)
        self.created = []

    def tearDown(self):
        for engine in self.created:
            if isinstance(engine, TodoDatabase):
                engine.close()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _factory(self, name="TodoApp", version=1):
        def build():
            engine = TodoDatabase(name, version, self.config)
            self.created.append(engine)
            return engine
        return build

    def test_initial_status(self):
        life = EngineLifecycle(self._factory())
        self.assertEqual(life.status, EngineStatus())
        self.assertFalse(life.pending)
        self.assertFalse(life.attached)
        with self.assertRaises(NotInitialized):
            _ = life.engine

    def test_attach_opens_in_background(self):
        life = EngineLifecycle(self._factory())
        life.attach()
        status = life.wait_until_settled(5.0)
        self.assertTrue(status.ready)
        self.assertIsNone(status.error)
        self.assertEqual(life.engine.add_todo("from adapter"), 1)
        life.detach()

    def test_detach_closes_once(self):
        life = EngineLifecycle(self._factory())
        life.attach()
        life.wait_until_settled(5.0)
        engine = life.engine
        with mock.patch.object(engine, "close", wraps=engine.close) as close:
            life.detach()
            life.detach()
        close.assert_called_once_with()
        self.assertEqual(engine.state, EngineState.CLOSED)
        self.assertEqual(life.status, EngineStatus())
        self.assertFalse(life.attached)
        self.assertFalse(life.pending)

    def test_open_failure_reported(self):
        life = EngineLifecycle(self._factory(name="../bad"))
        life.attach()
        status = life.wait_until_settled(5.0)
        self.assertFalse(status.ready)
        self.assertIsInstance(status.error, InitError)
        self.assertFalse(life.pending)
        life.detach()

    def test_unexpected_failure_wrapped(self):
        broken = mock.Mock()
        broken.name = "broken"
        broken.open.side_effect = RuntimeError("boom")
        life = EngineLifecycle(lambda: broken)
        life.attach()
        status = life.wait_until_settled(5.0)
        self.assertIsInstance(status.error, InitError)
        self.assertIsInstance(status.error.__cause__, RuntimeError)
        life.detach()
        broken.close.assert_called_once_with()

    def test_attach_twice_rejected(self):
        life = EngineLifecycle(self._factory())
        life.attach()
        with self.assertRaises(RuntimeError):
            life.attach()
        life.detach()

    def test_reattach_builds_new_engine(self):
        life = EngineLifecycle(self._factory())
        life.attach()
        life.wait_until_settled(5.0)
        first = life.engine
        first.add_todo("persisted")
        life.detach()

        life.attach()
        self.assertTrue(life.wait_until_settled(5.0).ready)
        self.assertIsNot(life.engine, first)
        self.assertEqual([t.title for t in life.engine.get_todos()], ["persisted"])
        life.detach()

    def test_listeners(self):
        seen = []
        life = EngineLifecycle(self._factory())
        life.add_listener(seen.append)
        life.attach()
        life.wait_until_settled(5.0)
        life.detach()
        self.assertEqual(seen, [EngineStatus(), EngineStatus(ready=True), EngineStatus()])

        life.remove_listener(seen.append)
        life.attach()
        life.wait_until_settled(5.0)
        life.detach()
        self.assertEqual(len(seen), 3)

    def test_failing_listener_does_not_break_open(self):
        life = EngineLifecycle(self._factory())
        life.add_listener(mock.Mock(side_effect=ValueError("listener bug")))
        life.attach()
        self.assertTrue(life.wait_until_settled(5.0).ready)
        life.detach()

    def test_detach_during_pending_open(self):
        gate = threading.Event()

        def build():
            engine = _GatedDatabase("TodoApp", 1, self.config, gate=gate)
            self.created.append(engine)
            return engine

        seen = []
        life = EngineLifecycle(build)
        life.attach()
        engine = life.engine
        life.add_listener(seen.append)
        self.assertTrue(life.pending)

        releaser = threading.Timer(0.1, gate.set)
        releaser.start()
        life.detach()
        releaser.join()

        # the open finished before close ran; its result was not published
        self.assertEqual(engine.state, EngineState.CLOSED)
        self.assertEqual(life.status, EngineStatus())
        self.assertEqual(seen, [EngineStatus()])
        self.assertFalse(life.pending)


if __name__ == "__main__":
    unittest.main()
