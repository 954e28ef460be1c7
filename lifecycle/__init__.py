"""
TodoDB Lifecycle
================
Attach/detach binding of an engine to whatever owns a consumer's lifetime.
"""

from lifecycle.adapter import EngineLifecycle, EngineStatus

__all__ = ["EngineLifecycle", "EngineStatus"]
