"""
Store Catalog
=============
Persisted schema metadata for one store directory (catalog.json):
- Store name and schema version
- Table and index entries (name -> data file)
- Migration history

The catalog is the commit point of schema creation: it is written, atomically,
only after the data files it names have been committed.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

CATALOG_FILE = "catalog.json"
CATALOG_MAGIC = "TODODB"
CATALOG_FORMAT_VERSION = 1


class CatalogError(Exception):
    """catalog.json is missing fields, unreadable, or from another format."""
    pass


@dataclass
class TableInfo:
    name: str
    file: str


@dataclass
class IndexInfo:
    name: str
    table: str
    column: str
    file: str


@dataclass
class MigrationRecord:
    from_version: int
    to_version: int
    applied_at: str
    steps: List[str] = field(default_factory=list)


class StoreCatalog:
    """
    Usage:
        cat = StoreCatalog(store_dir)
        if cat.exists():
            cat.load()
        cat.version = 2
        cat.save()
    """

    def __init__(self, store_dir: str):
        self.store_dir = Path(store_dir)
        self.catalog_path = self.store_dir / CATALOG_FILE

        self.name: str = self.store_dir.name
        self.version: int = 0
        self.tables: Dict[str, TableInfo] = {}
        self.indexes: Dict[str, IndexInfo] = {}
        self.history: List[MigrationRecord] = []

    def exists(self) -> bool:
        return self.catalog_path.exists()

    # ─── Schema entries ──────────────────────────────────────────────────

    def add_table(self, name: str, file: str) -> TableInfo:
        info = TableInfo(name=name, file=file)
        self.tables[name] = info
        return info

    def add_index(self, name: str, table: str, column: str, file: str) -> IndexInfo:
        if table not in self.tables:
            raise CatalogError(f"Index '{name}' refers to unknown table '{table}'")
        info = IndexInfo(name=name, table=table, column=column, file=file)
        self.indexes[name] = info
        return info

    def get_index(self, name: str) -> Optional[IndexInfo]:
        return self.indexes.get(name)

    def record_migration(self, from_version: int, to_version: int,
                         steps: List[str]) -> None:
        self.history.append(MigrationRecord(
            from_version=from_version,
            to_version=to_version,
            applied_at=datetime.now(timezone.utc).isoformat(),
            steps=list(steps),
        ))

    # ─── Persistence ─────────────────────────────────────────────────────

    def load(self) -> None:
        try:
            with open(self.catalog_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CatalogError(f"Corrupted catalog at {self.catalog_path}: {e}") from e

        if not isinstance(data, dict) or data.get("magic") != CATALOG_MAGIC:
            raise CatalogError(f"{self.catalog_path} is not a TodoDB catalog")
        if data.get("format_version") != CATALOG_FORMAT_VERSION:
            raise CatalogError(
                f"Unsupported catalog format {data.get('format_version')!r}")
        try:
            self.name = data["name"]
            self.version = int(data["version"])
            self.tables = {t["name"]: TableInfo(**t) for t in data["tables"]}
            self.indexes = {i["name"]: IndexInfo(**i) for i in data["indexes"]}
            self.history = [MigrationRecord(**m) for m in data.get("history", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise CatalogError(f"Corrupted catalog at {self.catalog_path}: {e}") from e

    def save(self, fsync: bool = True) -> None:
        """Atomically save state to disk."""
        data = {
            "magic": CATALOG_MAGIC,
            "format_version": CATALOG_FORMAT_VERSION,
            "name": self.name,
            "version": self.version,
            "tables": [asdict(t) for t in self.tables.values()],
            "indexes": [asdict(i) for i in self.indexes.values()],
            "history": [asdict(m) for m in self.history],
        }

        # write to temp -> fsync -> rename
        tmp_path = self.catalog_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            if fsync:
                os.fsync(f.fileno())
        tmp_path.replace(self.catalog_path)
        logger.debug("Catalog saved: %s v%d", self.name, self.version)

    def __repr__(self) -> str:
        return (f"StoreCatalog(name='{self.name}', version={self.version}, "
                f"tables={list(self.tables)}, indexes={list(self.indexes)})")
