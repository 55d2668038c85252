"""Record, envelope and result models.

Records and the remote envelopes are pydantic models: they are stored locally
as msgpack (``model_dump()``) and sent remotely as camelCase JSON
(``model_dump(by_alias=True)``). Operation results are plain dataclasses.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# =============================================================================
# Local records
# =============================================================================


class Record(_WireModel):
    """A private record, scoped to one dataset and one owner."""

    key: str
    owner_id: str
    parent_id: str = ""
    last_read: int = 0
    last_modified: int = 0
    created_at: int = 0
    data_type: str
    deleted: bool = False
    payload: Any = None


class PublicRecord(_WireModel):
    """A shared record addressed by the content hash of its input."""

    key: str
    last_read: int = 0
    created_at: int = 0
    last_remote_modified: int = 0
    last_remote_sync: int = 0
    data_type: str
    payload: Any = None


class MetadataRecord(_WireModel):
    """Bookkeeping entry: device identity, last-updated counter."""

    key: str
    owner_id: str = ""
    last_read: int = 0
    created_at: int = 0
    data_type: str
    payload: Any = None


# =============================================================================
# Remote envelopes
# =============================================================================


class Snapshot(_WireModel):
    """The complete private record set of one dataset for one owner."""

    last_modified: int = 0
    owner_id: str | None = None
    total: int = 0
    records: list[Record] = Field(default_factory=list)


class DeviceMarker(_WireModel):
    """Which device last believed its local copy was authoritative."""

    last_used_device: str | None = None
    last_updated: int | None = None

    @property
    def is_present(self) -> bool:
        return bool(self.last_used_device and self.last_updated)


class DeviceKeyData(_WireModel):
    """Payload of the device identity metadata record."""

    device_key: str
    created_at: int
    last_used: int


# =============================================================================
# Results
# =============================================================================


class SyncAction(str, Enum):
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    MERGED = "merged"
    NO_ACTION = "no_action_needed"


@dataclass
class SyncResult:
    """Outcome of a sync-family operation. Never raised, always returned."""

    data_type: str
    success: bool
    action: SyncAction
    details: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_type": self.data_type,
            "success": self.success,
            "action": self.action.value,
            "details": self.details,
            "error": self.error,
        }


@dataclass
class OpResult:
    success: bool
    error: str | None = None
    deleted_count: int = 0


@dataclass
class DataResult:
    data: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CleanupReport:
    """Counts from a garbage-collection pass."""

    expired_public: int = 0
    expired_private: int = 0
    orphans: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def total(self) -> int:
        return self.expired_public + self.expired_private + self.orphans


@dataclass
class StoreStats:
    """Counts for one dataset/owner partition."""

    data_type: str
    owner_id: str | None
    total_public_items: int = 0
    total_private_items: int = 0
    expired_public_items: int = 0
    expired_private_items: int = 0
    time_to_live_ms: int = 0
