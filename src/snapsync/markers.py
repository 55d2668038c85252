"""Device marker protocol.

Each dataset has a small remote marker recording which device last
believed its local copy was authoritative, and the local-write time it
had then. A sync compares that marker with this device's identity and
last-updated counter:

- no marker: this device is the first to sync, upload;
- same device, counters within ``SKEW_TOLERANCE_MS``: already in sync;
- same device, remote newer: another session of this device pushed newer
  data, download; otherwise upload;
- another device: download (or merge, when configured to keep unsynced
  local edits).

This is last-writer-wins arbitration, not a vector clock: two devices
that race within one cycle resolve to whichever reads the marker second.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from enum import Enum

import structlog

from snapsync import keys
from snapsync.models import DeviceKeyData, DeviceMarker, MetadataRecord, now_ms
from snapsync.records import RecordStore
from snapsync.remote import RemoteStorage

logger = structlog.get_logger(__name__)

SKEW_TOLERANCE_MS = 1000


class Decision(str, Enum):
    NONE = "none"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    MERGE = "merge"


def decide(
    local_device: str,
    local_updated: int,
    marker: DeviceMarker | None,
    merge_foreign_changes: bool = False,
) -> Decision:
    """Pick the sync direction. Pure: no I/O, no clock."""
    if marker is None or not marker.is_present:
        return Decision.UPLOAD

    remote_updated = marker.last_updated or 0
    if marker.last_used_device == local_device:
        if abs(remote_updated - local_updated) < SKEW_TOLERANCE_MS:
            return Decision.NONE
        if remote_updated > local_updated:
            return Decision.DOWNLOAD
        return Decision.UPLOAD

    if merge_foreign_changes:
        return Decision.MERGE
    return Decision.DOWNLOAD


class DeviceIdentity:
    """Random per-dataset device id, created lazily, never regenerated."""

    def __init__(
        self,
        records: RecordStore,
        data_type: str,
        owner_id: str = "",
        clock: Callable[[], int] = now_ms,
    ):
        self.records = records
        self.data_type = data_type
        self.owner_id = owner_id
        self.clock = clock
        self.key = keys.device_key(data_type)

    def get_or_create(self) -> str:
        """Return the device id, refreshing its ``last_used`` time."""
        now = self.clock()
        existing = self.records.get_metadata(self.key)
        if existing is not None and isinstance(existing.payload, dict):
            data = DeviceKeyData.model_validate(existing.payload)
            data.last_used = now
            existing.last_read = now
            existing.payload = data.model_dump()
            self.records.put_metadata(existing)
            return data.device_key

        device_id = str(uuid.uuid4())
        self.records.put_metadata(
            MetadataRecord(
                key=self.key,
                owner_id=self.owner_id,
                last_read=now,
                created_at=now,
                data_type=self.data_type,
                payload=DeviceKeyData(
                    device_key=device_id, created_at=now, last_used=now
                ).model_dump(),
            )
        )
        logger.info("created device id %s for %s", device_id, self.data_type)
        return device_id


class LastUpdatedCounter:
    """Time of the latest local private mutation, per dataset and owner."""

    def __init__(
        self,
        records: RecordStore,
        data_type: str,
        owner_id: str,
        clock: Callable[[], int] = now_ms,
    ):
        self.records = records
        self.data_type = data_type
        self.owner_id = owner_id
        self.clock = clock
        self.key = keys.last_updated_key(data_type, owner_id)

    def get(self) -> int:
        record = self.records.get_metadata(self.key)
        if record is None or not isinstance(record.payload, int):
            return 0
        return record.payload

    def touch(self, timestamp: int | None = None) -> int:
        now = self.clock()
        ts = now if timestamp is None else timestamp
        existing = self.records.get_metadata(self.key)
        self.records.put_metadata(
            MetadataRecord(
                key=self.key,
                owner_id=self.owner_id,
                last_read=now,
                created_at=existing.created_at if existing else now,
                data_type=self.data_type,
                payload=ts,
            )
        )
        return ts


class MarkerStore:
    """Reads and writes the remote device marker of one dataset.

    ``scope="owner"`` keeps one marker per owner; ``scope="dataset"``
    shares one marker between every owner of the dataset.
    """

    def __init__(
        self,
        remote: RemoteStorage,
        data_type: str,
        owner_id: str,
        scope: str = "owner",
    ):
        self.remote = remote
        self.data_type = data_type
        self.owner_id = owner_id
        self.scope = scope

    @property
    def path(self) -> str:
        if self.scope == "dataset":
            return keys.marker_path(self.data_type)
        return keys.marker_path(self.data_type, self.owner_id)

    async def read(self) -> DeviceMarker | None:
        return await self.remote.get_marker(self.path)

    async def write(self, device_id: str, last_updated: int) -> DeviceMarker:
        marker = DeviceMarker(
            last_used_device=device_id, last_updated=last_updated
        )
        await self.remote.put_marker(self.path, marker)
        logger.debug(
            "wrote device marker %s: %s @ %d",
            self.path,
            device_id,
            last_updated,
        )
        return marker
