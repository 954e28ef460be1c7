"""
TodoDB B+ Tree
==============
Disk-backed B+ tree mapping unique byte-string keys to unsigned integer
values, persisted as an `.idx` file of slotted pages.

Architecture:
  - Page 0: JSON header (root_page, entry_count, tree_height, next_seq,
    reuse window)
  - Page 1+: one node per page, stored as a single tuple

clear() keeps page 1 as the new root and hands pages 2..N of the old tree
back out, in order, before the file grows again.

Node types:
  - LEAF: sorted (key, value) entries, chained through right_sibling
    for range scans.
  - INTERNAL: sorted separator keys with child page pointers.
    Invariant: left subtree < K <= right subtree.

Keys are expected to be unique (callers make them so, e.g. by appending
an insertion sequence). Deletes remove the leaf entry and never merge or
rebalance: separators stay valid, and empty leaves remain in the sibling
chain where scans step over them.

All page changes go through PagedFile, so a tree mutation is part of the
enclosing transaction and disappears entirely on abort.
"""

import logging
import struct
from typing import Iterator, List, Optional, Tuple

from storage.buffer import BufferManager
from storage.page import PAGE_SIZE, Page, PageCorruptionError
from storage.paged_file import PagedFile

logger = logging.getLogger(__name__)

# ─── Constants ──────────────────────────────────────────────────────────────

BTREE_MAGIC = "TDBX"
BTREE_FORMAT_VERSION = 1

NODE_TYPE_LEAF = 0
NODE_TYPE_INTERNAL = 1

# type(1) key_count(2) right_sibling(4)
_NODE_HEADER = struct.Struct(">BHI")

# leave room for the page header and the node's slot entry
MAX_NODE_PAYLOAD = PAGE_SIZE - 200


# ─── Node ───────────────────────────────────────────────────────────────────

class BTreeNode:
    """In-memory form of one node; serialized as a single page tuple."""
    __slots__ = ("page_id", "node_type", "keys", "values", "children",
                 "right_sibling")

    def __init__(self, page_id: int, node_type: int):
        self.page_id = page_id
        self.node_type = node_type
        self.keys: List[bytes] = []
        self.values: List[int] = []       # leaf only, parallel to keys
        self.children: List[int] = []     # internal only, len(keys) + 1
        self.right_sibling: int = 0       # leaf only, 0 = end of chain

    @property
    def is_leaf(self) -> bool:
        return self.node_type == NODE_TYPE_LEAF

    def serialize(self) -> bytes:
        buf = bytearray(_NODE_HEADER.pack(self.node_type, len(self.keys),
                                          self.right_sibling))
        for key in self.keys:
            buf += struct.pack(">H", len(key)) + key
        if self.is_leaf:
            for value in self.values:
                buf += struct.pack(">Q", value)
        else:
            for child in self.children:
                buf += struct.pack(">I", child)
        return bytes(buf)

    @classmethod
    def deserialize(cls, page_id: int, data: bytes) -> "BTreeNode":
        node_type, count, sibling = _NODE_HEADER.unpack_from(data, 0)
        if node_type not in (NODE_TYPE_LEAF, NODE_TYPE_INTERNAL):
            raise PageCorruptionError(f"Index page {page_id}: bad node type {node_type}")
        node = cls(page_id, node_type)
        node.right_sibling = sibling
        offset = _NODE_HEADER.size
        for _ in range(count):
            klen = struct.unpack_from(">H", data, offset)[0]
            offset += 2
            node.keys.append(bytes(data[offset:offset + klen]))
            offset += klen
        if node.is_leaf:
            node.values = list(struct.unpack_from(f">{count}Q", data, offset))
        else:
            node.children = list(struct.unpack_from(f">{count + 1}I", data, offset))
        return node

    def lower_bound(self, key: bytes) -> int:
        """Position of the first key >= key."""
        lo, hi = 0, len(self.keys)
        while lo < hi:
            mid = (lo + hi) // 2
            if self.keys[mid] < key:
                lo = mid + 1
            else:
                hi = mid
        return lo

    def child_index(self, key: bytes) -> int:
        """Child to descend into: the first separator > key bounds it."""
        lo, hi = 0, len(self.keys)
        while lo < hi:
            mid = (lo + hi) // 2
            if key < self.keys[mid]:
                hi = mid
            else:
                lo = mid + 1
        return lo


# ─── B+ Tree ────────────────────────────────────────────────────────────────

class BTree:
    """
    Usage:
        bt = BTree.create(path, buffer_mgr, name="by-date")
        bt.insert(b"k1", 7)
        list(bt.scan(b"k0", b"k9"))   # [(b"k1", 7)]
    """

    def __init__(self, file_path: str, buffer_mgr: BufferManager,
                 max_node_payload: int = MAX_NODE_PAYLOAD):
        self._pager = PagedFile(file_path, buffer_mgr)
        self._max_payload = max_node_payload
        self._name = ""
        self._root_page = 1
        self._entry_count = 0
        self._tree_height = 1
        self._next_seq = 1
        self._reuse_next = 0
        self._reuse_end = 0
        self._is_open = False

    @property
    def file_path(self) -> str:
        return self._pager.file_path

    @property
    def name(self) -> str:
        return self._name

    @property
    def entry_count(self) -> int:
        return self._entry_count

    @property
    def tree_height(self) -> int:
        return self._tree_height

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def page_count(self) -> int:
        return self._pager.num_pages

    # ─── Create / Open / Close ──────────────────────────────────────

    @classmethod
    def create(cls, file_path: str, buffer_mgr: BufferManager, name: str,
               max_node_payload: int = MAX_NODE_PAYLOAD) -> "BTree":
        bt = cls(file_path, buffer_mgr, max_node_payload)
        bt._name = name
        bt._pager.create(bt._header())
        root = BTreeNode(bt._pager.allocate_page().page_id, NODE_TYPE_LEAF)
        bt._write_node(root)
        bt._root_page = root.page_id
        bt._is_open = True
        bt._write_header()
        return bt

    @classmethod
    def open(cls, file_path: str, buffer_mgr: BufferManager,
             max_node_payload: int = MAX_NODE_PAYLOAD) -> "BTree":
        bt = cls(file_path, buffer_mgr, max_node_payload)
        bt._load()
        return bt

    def _load(self) -> None:
        self._pager.reload()
        if self._pager.num_pages == 0:
            raise FileNotFoundError(f"Index file not found: {self.file_path}")
        meta = self._pager.read_header()
        if meta.get("magic") != BTREE_MAGIC:
            raise PageCorruptionError(f"{self.file_path}: not an index file")
        if meta.get("format_version") != BTREE_FORMAT_VERSION:
            raise PageCorruptionError(
                f"{self.file_path}: unsupported index format {meta.get('format_version')}")
        self._name = meta["name"]
        self._root_page = meta["root_page"]
        self._entry_count = meta["entry_count"]
        self._tree_height = meta["tree_height"]
        self._next_seq = meta["next_seq"]
        self._reuse_next = meta.get("reuse_next", 0)
        self._reuse_end = meta.get("reuse_end", 0)
        if not 0 < self._root_page < self._pager.num_pages:
            raise PageCorruptionError(f"{self.file_path}: root page out of range")
        self._is_open = True

    def reload(self) -> None:
        """Resynchronize with the committed file (after abort)."""
        self._is_open = False
        if self._pager.exists():
            self._load()
        else:
            self._pager.reload()

    def close(self) -> None:
        if not self._is_open:
            return
        self._pager.forget()
        self._is_open = False

    def _header(self) -> dict:
        return {
            "magic": BTREE_MAGIC,
            "format_version": BTREE_FORMAT_VERSION,
            "name": self._name,
            "root_page": self._root_page,
            "entry_count": self._entry_count,
            "tree_height": self._tree_height,
            "next_seq": self._next_seq,
            "reuse_next": self._reuse_next,
            "reuse_end": self._reuse_end,
        }

    def _write_header(self) -> None:
        self._pager.write_header(self._header())

    # ─── Sequence ───────────────────────────────────────────────────

    def next_sequence(self) -> int:
        """Monotonic counter persisted with the tree (for tie-breaking keys)."""
        self._ensure_open()
        seq = self._next_seq
        self._next_seq += 1
        self._write_header()
        return seq

    # ─── Search ─────────────────────────────────────────────────────

    def get(self, key: bytes) -> Optional[int]:
        self._ensure_open()
        leaf = self._find_leaf(key)
        pos = leaf.lower_bound(key)
        if pos < len(leaf.keys) and leaf.keys[pos] == key:
            return leaf.values[pos]
        return None

    def scan(self, low: Optional[bytes] = None,
             high: Optional[bytes] = None) -> Iterator[Tuple[bytes, int]]:
        """
        Yield (key, value) with low <= key <= high in key order.
        None means unbounded on that side.
        """
        self._ensure_open()
        if low is not None and high is not None and low > high:
            return
        leaf = self._find_leaf(low) if low is not None else self._leftmost_leaf()
        pos = leaf.lower_bound(low) if low is not None else 0
        while True:
            for i in range(pos, len(leaf.keys)):
                key = leaf.keys[i]
                if high is not None and key > high:
                    return
                yield key, leaf.values[i]
            if leaf.right_sibling == 0:
                return
            leaf = self._read_node(leaf.right_sibling)
            pos = 0

    # ─── Insert ─────────────────────────────────────────────────────

    def insert(self, key: bytes, value: int) -> None:
        """Insert a unique key. Raises KeyError if the key is present."""
        self._ensure_open()
        split = self._insert_recursive(self._root_page, key, value)
        if split is not None:
            promoted, right_page = split
            root = BTreeNode(self._new_page_id(), NODE_TYPE_INTERNAL)
            root.keys = [promoted]
            root.children = [self._root_page, right_page]
            self._write_node(root)
            self._root_page = root.page_id
            self._tree_height += 1
            logger.debug("Index %s: root split, height now %d",
                         self._name, self._tree_height)
        self._entry_count += 1
        self._write_header()

    def _insert_recursive(self, page_id: int, key: bytes,
                          value: int) -> Optional[Tuple[bytes, int]]:
        node = self._read_node(page_id)
        if node.is_leaf:
            pos = node.lower_bound(key)
            if pos < len(node.keys) and node.keys[pos] == key:
                raise KeyError(f"Duplicate index key {key.hex()}")
            node.keys.insert(pos, key)
            node.values.insert(pos, value)
            if len(node.serialize()) > self._max_payload:
                return self._split_leaf(node)
            self._write_node(node)
            return None

        idx = node.child_index(key)
        split = self._insert_recursive(node.children[idx], key, value)
        if split is None:
            return None
        promoted, right_page = split
        node.keys.insert(idx, promoted)
        node.children.insert(idx + 1, right_page)
        if len(node.serialize()) > self._max_payload:
            return self._split_internal(node)
        self._write_node(node)
        return None

    def _split_leaf(self, node: BTreeNode) -> Tuple[bytes, int]:
        """Split at the median; the right half's first key is copied up."""
        mid = len(node.keys) // 2
        right = BTreeNode(self._new_page_id(), NODE_TYPE_LEAF)
        right.keys, node.keys = node.keys[mid:], node.keys[:mid]
        right.values, node.values = node.values[mid:], node.values[:mid]
        right.right_sibling = node.right_sibling
        node.right_sibling = right.page_id
        self._write_node(node)
        self._write_node(right)
        return right.keys[0], right.page_id

    def _split_internal(self, node: BTreeNode) -> Tuple[bytes, int]:
        """Split at the median; the median key moves up to the parent."""
        mid = len(node.keys) // 2
        promoted = node.keys[mid]
        right = BTreeNode(self._new_page_id(), NODE_TYPE_INTERNAL)
        right.keys = node.keys[mid + 1:]
        right.children = node.children[mid + 1:]
        node.keys = node.keys[:mid]
        node.children = node.children[:mid + 1]
        self._write_node(node)
        self._write_node(right)
        return promoted, right.page_id

    # ─── Delete ─────────────────────────────────────────────────────

    def delete(self, key: bytes) -> bool:
        """Remove a key. Returns False if it was not present."""
        self._ensure_open()
        leaf = self._find_leaf(key)
        pos = leaf.lower_bound(key)
        if pos >= len(leaf.keys) or leaf.keys[pos] != key:
            return False
        del leaf.keys[pos]
        del leaf.values[pos]
        self._write_node(leaf)
        self._entry_count -= 1
        self._write_header()
        return True

    def clear(self) -> None:
        """
        Drop every entry: page 1 becomes an empty root leaf, and the old
        tree's other pages are reused by later splits.
        """
        self._ensure_open()
        self._write_node(BTreeNode(1, NODE_TYPE_LEAF))
        self._reuse_next = 2
        self._reuse_end = self._pager.num_pages
        self._root_page = 1
        self._entry_count = 0
        self._tree_height = 1
        self._next_seq = 1
        self._write_header()

    # ─── Navigation / node I/O ──────────────────────────────────────

    def _new_page_id(self) -> int:
        if self._reuse_next < self._reuse_end:
            page_id = self._reuse_next
            self._reuse_next += 1
            return page_id
        return self._pager.allocate_page().page_id

    def _find_leaf(self, key: bytes) -> BTreeNode:
        node = self._read_node(self._root_page)
        while not node.is_leaf:
            node = self._read_node(node.children[node.child_index(key)])
        return node

    def _leftmost_leaf(self) -> BTreeNode:
        node = self._read_node(self._root_page)
        while not node.is_leaf:
            node = self._read_node(node.children[0])
        return node

    def _read_node(self, page_id: int) -> BTreeNode:
        tuples = self._pager.read_page(page_id).tuples()
        if not tuples:
            raise PageCorruptionError(f"{self.file_path}: empty node page {page_id}")
        return BTreeNode.deserialize(page_id, tuples[0][1])

    def _write_node(self, node: BTreeNode) -> None:
        page = Page(page_id=node.page_id)
        page.insert_tuple(node.serialize())
        self._pager.replace_page(page)

    def _ensure_open(self) -> None:
        if not self._is_open:
            raise RuntimeError("BTree is not open")

    # ─── Verification ───────────────────────────────────────────────

    def verify_structure(self) -> List[str]:
        """Check ordering, separator bounds, and the leaf chain. Empty = healthy."""
        self._ensure_open()
        issues: List[str] = []
        leaves: List[int] = []
        try:
            self._verify_node(self._root_page, None, None, issues, leaves, depth=1)
            self._verify_leaf_chain(leaves, issues)
        except (PageCorruptionError, IndexError, struct.error) as exc:
            issues.append(f"Unreadable node: {exc}")
        return issues

    def _verify_node(self, page_id: int, low: Optional[bytes], high: Optional[bytes],
                     issues: List[str], leaves: List[int], depth: int) -> None:
        node = self._read_node(page_id)
        for i in range(1, len(node.keys)):
            if node.keys[i] <= node.keys[i - 1]:
                issues.append(f"Page {page_id}: keys out of order at {i}")
        for key in node.keys:
            if low is not None and key < low:
                issues.append(f"Page {page_id}: key below separator")
            if high is not None and key >= high:
                issues.append(f"Page {page_id}: key at/above separator")
        if node.is_leaf:
            if depth != self._tree_height:
                issues.append(f"Page {page_id}: leaf at depth {depth}, "
                              f"height {self._tree_height}")
            leaves.append(page_id)
            return
        if len(node.children) != len(node.keys) + 1:
            issues.append(f"Page {page_id}: children count mismatch")
            return
        for i, child in enumerate(node.children):
            lo = node.keys[i - 1] if i > 0 else low
            hi = node.keys[i] if i < len(node.keys) else high
            self._verify_node(child, lo, hi, issues, leaves, depth + 1)

    def _verify_leaf_chain(self, leaves: List[int], issues: List[str]) -> None:
        chain: List[int] = []
        count = 0
        page_id = leaves[0] if leaves else 0
        while page_id != 0:
            if page_id in chain:
                issues.append(f"Leaf chain cycle at page {page_id}")
                return
            chain.append(page_id)
            node = self._read_node(page_id)
            count += len(node.keys)
            page_id = node.right_sibling
        if chain != leaves:
            issues.append("Leaf chain does not match tree order")
        if count != self._entry_count:
            issues.append(f"Entry count {self._entry_count} but {count} keys in leaves")

    def __repr__(self) -> str:
        return (f"BTree(name='{self._name}', entries={self._entry_count}, "
                f"height={self._tree_height})")
