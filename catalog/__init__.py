# TodoDB Catalog Package
# ======================
# Schema metadata (catalog.json) for one store directory.

from catalog.catalog import (
    CATALOG_FILE, CatalogError, IndexInfo, MigrationRecord, StoreCatalog, TableInfo,
)
