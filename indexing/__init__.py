"""
TodoDB Indexing Module
======================
Disk-backed B+ tree and the by-date secondary index built on it.

Components:
  - key_encoding: order-preserving binary keys (int64, timestamps)
  - btree: unique-key B+ tree with insert, delete, range scan, verify
  - date_index: created_at -> id index with insertion-order tie-breaking
"""
