"""
TodoDB Engine
=============
  - errors: tagged error taxonomy (ErrorKind, TodoStoreError and subclasses)
  - config: EngineConfig
  - table: IndexedTable (records + by-date index, one atomic unit per mutation)
  - database: TodoDatabase, the connection facade and its state machine

Import from the submodules (e.g. `from engine.database import TodoDatabase`);
lower layers depend on engine.errors, so this package imports nothing eagerly.
"""
