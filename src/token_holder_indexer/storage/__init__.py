"""Storage layer - Database schemas and repositories."""

from token_holder_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from token_holder_indexer.storage.models import (
    Base,
    LedgerEntryModel,
    MerkleTreeModel,
    SkippedRangeModel,
    SnapshotCacheModel,
    SyncStatusModel,
    TransferEventModel,
)
from token_holder_indexer.storage.repos import (
    LedgerEntryDTO,
    LedgerRepository,
    MerkleTreeDTO,
    MerkleTreeRepository,
    SkippedRangeRepository,
    SnapshotCacheDTO,
    SnapshotCacheRepository,
    SyncStatusDTO,
    SyncStatusRepository,
    TransferEventRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "LedgerEntryDTO",
    "LedgerEntryModel",
    "LedgerRepository",
    "MerkleTreeDTO",
    "MerkleTreeModel",
    "MerkleTreeRepository",
    "SkippedRangeModel",
    "SkippedRangeRepository",
    "SnapshotCacheDTO",
    "SnapshotCacheModel",
    "SnapshotCacheRepository",
    "SyncStatusDTO",
    "SyncStatusModel",
    "SyncStatusRepository",
    "TransferEventModel",
    "TransferEventRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
