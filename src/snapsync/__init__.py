from snapsync.config import DATASETS, Dataset, ManagerConfig
from snapsync.engine import SyncEngine
from snapsync.errors import (
    AccessDeniedError,
    ConfigurationError,
    RecordNotFoundError,
    RemoteError,
    SnapSyncError,
    StoreUnavailableError,
    TransientRemoteError,
    ValidationError,
)
from snapsync.gc import GarbageCollector
from snapsync.keys import input_id, private_key, public_key
from snapsync.logging_config import configure_logging
from snapsync.manager import DataManager
from snapsync.merge import merge_records
from snapsync.models import (
    CleanupReport,
    DataResult,
    OpResult,
    PublicRecord,
    Record,
    Snapshot,
    StoreStats,
    SyncAction,
    SyncResult,
)
from snapsync.remote import (
    BlobStore,
    DirectoryBlobStore,
    HttpBlobStore,
    MemoryBlobStore,
    RemoteStorage,
)
from snapsync.scheduler import SyncScheduler
from snapsync.store import LocalStore
from snapsync.validation import PayloadSchema

__all__ = [
    "AccessDeniedError",
    "BlobStore",
    "CleanupReport",
    "ConfigurationError",
    "DATASETS",
    "DataManager",
    "DataResult",
    "Dataset",
    "DirectoryBlobStore",
    "GarbageCollector",
    "HttpBlobStore",
    "LocalStore",
    "ManagerConfig",
    "MemoryBlobStore",
    "OpResult",
    "PayloadSchema",
    "PublicRecord",
    "Record",
    "RecordNotFoundError",
    "RemoteError",
    "RemoteStorage",
    "Snapshot",
    "SnapSyncError",
    "StoreStats",
    "StoreUnavailableError",
    "SyncAction",
    "SyncEngine",
    "SyncResult",
    "SyncScheduler",
    "TransientRemoteError",
    "ValidationError",
    "configure_logging",
    "input_id",
    "merge_records",
    "private_key",
    "public_key",
]
