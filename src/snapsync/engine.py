"""Sync engine: upload, download and merge of one dataset's private records.

Every entry point takes the dataset's lock from the scheduler, so a
debounced sync and a forced upload/download/merge never interleave their
read-modify-write of the local partition. Entry points never raise; they
return a ``SyncResult`` whose ``error`` carries the failure text.

Remote layout:
    private/snapshot/<ownerHash>/<dataset>.json    full record set
    public/metadata/deviceKey/[<ownerHash>/]<dataset>.json    device marker
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import structlog

from snapsync import keys
from snapsync.errors import AccessDeniedError, SnapSyncError
from snapsync.gc import GarbageCollector
from snapsync.markers import (
    Decision,
    DeviceIdentity,
    LastUpdatedCounter,
    MarkerStore,
    decide,
)
from snapsync.merge import merge_records
from snapsync.models import Record, Snapshot, SyncAction, SyncResult, now_ms
from snapsync.records import RecordStore
from snapsync.remote import RemoteStorage
from snapsync.scheduler import SyncScheduler

logger = structlog.get_logger(__name__)


@dataclass
class SyncEngineStats:
    """Counters for the sync engine."""

    syncs: int = 0
    uploads: int = 0
    downloads: int = 0
    merges: int = 0
    failures: int = 0
    last_action: str | None = None
    last_error: str | None = None


class SyncEngine:
    """Reconciles one (dataset, owner) partition with its remote snapshot."""

    def __init__(
        self,
        records: RecordStore,
        remote: RemoteStorage,
        scheduler: SyncScheduler,
        data_type: str,
        owner_id: str,
        marker_scope: str = "owner",
        merge_foreign_changes: bool = False,
        gc: GarbageCollector | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.records = records
        self.remote = remote
        self.scheduler = scheduler
        self.data_type = data_type
        self.owner_id = owner_id
        self.merge_foreign_changes = merge_foreign_changes
        self.gc = gc
        self.clock = clock

        self.identity = DeviceIdentity(records, data_type, owner_id, clock)
        self.counter = LastUpdatedCounter(records, data_type, owner_id, clock)
        self.markers = MarkerStore(remote, data_type, owner_id, marker_scope)
        self.snapshot_path = keys.snapshot_path(owner_id, data_type)
        self.stats = SyncEngineStats()

    # =========================================================================
    # Entry points
    # =========================================================================

    async def sync(self) -> SyncResult:
        """Decide the direction from the device marker and reconcile."""
        async with self.scheduler.lock(self.data_type):
            self.stats.syncs += 1
            try:
                marker = await self.markers.read()
                device_id = self.identity.get_or_create()
                local_updated = self.counter.get()
                decision = decide(
                    device_id,
                    local_updated,
                    marker,
                    self.merge_foreign_changes,
                )
                logger.info(
                    "sync %s: %s (local device=%s updated=%d, remote=%s)",
                    self.data_type,
                    decision.value,
                    device_id,
                    local_updated,
                    marker.model_dump() if marker else None,
                )

                if decision is Decision.NONE:
                    return self._done(
                        SyncAction.NO_ACTION,
                        "device keys match, data is in sync",
                    )
                if decision is Decision.UPLOAD:
                    reason = (
                        "no remote device marker"
                        if marker is None
                        else "local is newer"
                    )
                    count = await self._upload(self._local_records())
                    action = SyncAction.UPLOADED
                    details = f"{reason}, uploaded {count} records"
                elif decision is Decision.DOWNLOAD:
                    action, details = await self._download_or_upload()
                else:
                    action, details = await self._merge()

                await self._refresh_marker(device_id)
                return self._done(action, details)
            except Exception as e:
                return self._failed("sync failed", e)
            finally:
                if self.gc is not None:
                    self.gc.run()

    async def force_upload(self, upload_empty: bool = False) -> SyncResult:
        """Overwrite the remote snapshot with local records."""
        async with self.scheduler.lock(self.data_type):
            try:
                local = [] if upload_empty else self._local_records()
                count = await self._upload(local)
                await self._refresh_marker()
                return self._done(
                    SyncAction.UPLOADED, f"uploaded {count} local records"
                )
            except Exception as e:
                return self._failed("upload failed", e)

    async def force_download(self) -> SyncResult:
        """Overwrite local records with the remote snapshot.

        Without a remote snapshot the local records are uploaded instead.
        """
        async with self.scheduler.lock(self.data_type):
            try:
                action, details = await self._download_or_upload()
                await self._refresh_marker()
                return self._done(action, details)
            except Exception as e:
                return self._failed("download failed", e)

    async def force_merge(self) -> SyncResult:
        """Merge local and remote records and write the result to both."""
        async with self.scheduler.lock(self.data_type):
            try:
                action, details = await self._merge()
                await self._refresh_marker()
                return self._done(action, details)
            except Exception as e:
                return self._failed("merge failed", e)

    # =========================================================================
    # Reconciliation steps (callers hold the lock)
    # =========================================================================

    def _local_records(self) -> list[Record]:
        return self.records.list_by_owner(self.data_type, self.owner_id)

    def _adopt(self, remote: list[Record], now: int) -> list[Record]:
        """Re-home remote records into this partition, marking them read."""
        return [
            r.model_copy(
                update={
                    "owner_id": self.owner_id,
                    "data_type": self.data_type,
                    "last_read": now,
                }
            )
            for r in remote
        ]

    def _replace_local(self, records: list[Record]) -> None:
        self.records.clear_partition(self.data_type, self.owner_id, sync=False)
        self.records.put_many(self.data_type, self.owner_id, records)

    async def _upload(self, records: list[Record]) -> int:
        now = self.clock()
        snapshot = Snapshot(
            last_modified=now,
            owner_id=self.owner_id,
            total=len(records),
            records=records,
        )
        await self.remote.put_snapshot(self.snapshot_path, snapshot)
        self.counter.touch(now)
        self.stats.uploads += 1
        logger.info("uploaded %d %s records", len(records), self.data_type)
        return len(records)

    async def _download(self) -> int | None:
        """Replace local records with the snapshot; None if there is none."""
        snapshot = await self.remote.get_snapshot(self.snapshot_path)
        if snapshot is None:
            return None
        now = self.clock()
        self._replace_local(self._adopt(snapshot.records, now))
        self.counter.touch(now)
        self.stats.downloads += 1
        logger.info(
            "downloaded %d %s records", len(snapshot.records), self.data_type
        )
        return len(snapshot.records)

    async def _download_or_upload(self) -> tuple[SyncAction, str]:
        count = await self._download()
        if count is not None:
            return SyncAction.DOWNLOADED, f"downloaded {count} records"
        logger.info("no remote snapshot for %s, uploading", self.data_type)
        count = await self._upload(self._local_records())
        return (
            SyncAction.UPLOADED,
            f"no remote snapshot, uploaded {count} local records",
        )

    async def _merge(self) -> tuple[SyncAction, str]:
        local = self._local_records()
        snapshot = await self.remote.get_snapshot(self.snapshot_path)
        if snapshot is None:
            count = await self._upload(local)
            return (
                SyncAction.UPLOADED,
                f"no remote snapshot, uploaded {count} local records",
            )

        now = self.clock()
        merged = merge_records(self._adopt(snapshot.records, now), local)
        # local first, then remote; a crash in between heals next cycle
        self._replace_local(merged)
        await self._upload(merged)
        self.stats.merges += 1
        return (
            SyncAction.MERGED,
            f"merged {len(local)} local and {len(snapshot.records)} remote "
            f"records into {len(merged)}",
        )

    async def _refresh_marker(self, device_id: str | None = None) -> None:
        if device_id is None:
            device_id = self.identity.get_or_create()
        last_updated = self.counter.get() or self.clock()
        await self.markers.write(device_id, last_updated)

    # =========================================================================
    # Results
    # =========================================================================

    def _done(self, action: SyncAction, details: str) -> SyncResult:
        self.stats.last_action = action.value
        self.stats.last_error = None
        return SyncResult(
            data_type=self.data_type,
            success=True,
            action=action,
            details=details,
        )

    def _failed(self, what: str, exc: Exception) -> SyncResult:
        self.stats.failures += 1
        if isinstance(exc, AccessDeniedError):
            error = f"access denied: {exc}"
            logger.error("%s for %s: %s", what, self.data_type, error)
        elif isinstance(exc, SnapSyncError):
            error = str(exc)
            logger.warning("%s for %s: %s", what, self.data_type, error)
        else:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("%s for %s", what, self.data_type)
        self.stats.last_error = error
        return SyncResult(
            data_type=self.data_type,
            success=False,
            action=SyncAction.NO_ACTION,
            details=what,
            error=error,
        )
