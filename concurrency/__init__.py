"""
TodoDB Concurrency Module
=========================
  - lock_manager: shared/exclusive lock for one connection (FIFO, timeouts)
  - registry: one connection per store directory per process
"""
