"""
TodoDB Transactions Module
==========================
Atomic units for the record store and its indexes.

Components:
  - wal.py: LogManager (append-only page-image WAL with CRC32, offset-based LSN)
  - transaction.py: TransactionManager (begin/commit/abort, atomic() blocks)
  - recovery.py: RecoveryManager (redo committed images, drop torn tail)
"""
