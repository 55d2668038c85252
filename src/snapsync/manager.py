"""Public orchestration surface used by application code.

A ``DataManager`` owns one dataset for one owner. Public data is shared
content addressed by the hash of its input and is dual-written to the
local store and (with ``use_remote_public``) the remote store. Private
data lives only in the local store; it reaches the remote store through
snapshot sync, armed by every local mutation after a debounce delay.

Result conventions:

- CRUD calls return ``OpResult`` / ``DataResult``. Absence is
  ``DataResult(data=None)``, never an error.
- A missing identity raises ``ConfigurationError``; an unusable local
  store raises ``StoreUnavailableError``; remote access denied raises
  ``AccessDeniedError``.
- Sync-family calls return ``SyncResult`` and never raise.

Example:
    scheduler = SyncScheduler()
    remote = RemoteStorage(HttpBlobStore.from_env())
    messages = DataManager(
        ManagerConfig.for_dataset("message", owner_id="user@example.com"),
        remote,
        scheduler=scheduler,
    )
    await messages.create_private_data({"text": "hi"}, {"body": "hi"})
    result = await messages.sync()
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import structlog

from snapsync import keys
from snapsync.config import ManagerConfig
from snapsync.engine import SyncEngine
from snapsync.errors import (
    ConfigurationError,
    RecordNotFoundError,
    TransientRemoteError,
    ValidationError,
)
from snapsync.gc import GarbageCollector
from snapsync.models import (
    CleanupReport,
    DataResult,
    OpResult,
    PublicRecord,
    Record,
    StoreStats,
    SyncAction,
    SyncResult,
    now_ms,
)
from snapsync.paths import ensure_data_dir, get_store_path
from snapsync.records import RecordStore
from snapsync.remote import BlobStore, RemoteStorage
from snapsync.scheduler import SyncScheduler
from snapsync.store import LocalStore

logger = structlog.get_logger(__name__)

PUBLIC_DISABLED = "public data operations are disabled"
PRIVATE_DISABLED = "private data operations are disabled"

CreateFunc = Callable[[], Any]
ItemBuilder = Callable[[str, Any, Any, int], Any]


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _apply_changes(payload: Any, changes: Any) -> Any:
    if isinstance(payload, dict) and isinstance(changes, dict):
        return {**payload, **changes}
    return changes


class DataManager:
    """Local-first data access for one dataset and owner.

    Args:
        config: Dataset, identity and feature flags
        remote: Remote storage facade, or a bare blob store to wrap
        store: Local store; by default one is opened under the data dir
        scheduler: Shared per-process scheduler; by default a private one
        clock: Millisecond clock
    """

    def __init__(
        self,
        config: ManagerConfig,
        remote: RemoteStorage | BlobStore,
        store: LocalStore | None = None,
        scheduler: SyncScheduler | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config
        self.data_type = config.data_type
        self.owner_id = config.owner_id
        self.clock = clock

        if isinstance(remote, BlobStore):
            remote = RemoteStorage(remote)
        self.remote = remote

        self._owns_store = store is None
        if store is None:
            ensure_data_dir(config.data_dir)
            store = LocalStore(get_store_path(config.data_dir))
        self.store = store

        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or SyncScheduler()

        self.records = RecordStore(self.store, on_change=self._on_change)
        self.gc = GarbageCollector(
            self.records,
            self.data_type,
            self.owner_id if config.use_private_data else None,
            config.ttl_ms,
            parent_data_type=config.parent_data_type,
            use_public=config.use_public_data,
            use_private=config.use_private_data,
            clock=clock,
        )
        self.engine: SyncEngine | None = None
        if config.use_private_data and self.owner_id:
            self.engine = SyncEngine(
                self.records,
                self.remote,
                self.scheduler,
                self.data_type,
                self.owner_id,
                marker_scope=config.marker_scope,
                merge_foreign_changes=config.merge_foreign_changes,
                gc=self.gc,
                clock=clock,
            )

    async def __aenter__(self) -> DataManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # =========================================================================
    # Mutation hook
    # =========================================================================

    def _on_change(self, dataset: str, owner: str) -> None:
        """One counter write and one debounced trigger per mutation."""
        if self.engine is None or dataset != self.data_type:
            return
        self.engine.counter.touch()
        self.scheduler.trigger(
            self.data_type, self.config.debounce_seconds, self.engine.sync
        )

    # =========================================================================
    # Keys
    # =========================================================================

    def input_id(self, value: Any) -> str:
        return keys.input_id(value)

    def public_key(self, value: Any) -> str:
        if not self.config.public_prefix:
            raise ConfigurationError("no public prefix configured")
        return keys.public_key(self.config.public_prefix, value)

    def private_key(self, value: Any) -> str:
        if not self.owner_id:
            raise ConfigurationError("owner_id is not set")
        if not self.config.private_prefix:
            raise ConfigurationError("no private prefix configured")
        return keys.private_key(
            self.config.private_prefix, self.owner_id, value
        )

    def is_data_valid(self, payload: Any) -> bool:
        return self.config.schema.is_valid(payload)

    def _refusal(self, payload: Any) -> str | None:
        """Error text for a payload the remote store would refuse.

        Checked before any local write so a refused payload is stored
        nowhere.
        """
        if not self.config.use_remote_public or self.is_data_valid(payload):
            return None
        problems = self.config.schema.problems(payload)
        return "invalid data: " + "; ".join(problems)

    # =========================================================================
    # Public data
    # =========================================================================

    async def _put_public_remote(self, key: str, payload: Any) -> str | None:
        """Write a public payload remotely; returns error text on failure."""
        if not self.config.use_remote_public:
            return None
        try:
            await self.remote.put_json(key, payload, schema=self.config.schema)
        except (ValidationError, TransientRemoteError) as e:
            logger.warning("public remote write of %s failed: %s", key, e)
            return str(e)
        return None

    async def _read_public(self, key: str, check_valid: bool) -> Any | None:
        """Local store first, then the remote store. Refreshes last_read."""
        now = self.clock()
        record = self.records.get_public(self.data_type, key)
        if record is not None and record.payload is not None:
            if not check_valid or self.is_data_valid(record.payload):
                record.last_read = now
                self.records.put_public(record)
                return record.payload

        if not self.config.use_remote_public:
            return None
        try:
            payload = await self.remote.get_json(key)
        except TransientRemoteError as e:
            logger.warning("public remote read of %s failed: %s", key, e)
            return None
        if payload is None:
            return None
        if check_valid and not self.is_data_valid(payload):
            return None

        self.records.put_public(
            PublicRecord(
                key=key,
                last_read=now,
                created_at=record.created_at if record else now,
                last_remote_modified=now,
                last_remote_sync=now,
                data_type=self.data_type,
                payload=payload,
            )
        )
        return payload

    async def create_public_data(
        self, value: Any, create_fn: CreateFunc
    ) -> DataResult:
        """Build a payload with ``create_fn`` and store it locally and remotely.

        ``create_fn`` may be sync or async; it returns the payload (None
        when it has nothing to store). With ``use_remote_public`` an invalid
        payload is refused before anything is written.
        """
        if not self.config.use_public_data:
            return DataResult(error=PUBLIC_DISABLED)

        key = self.public_key(value)
        try:
            payload = await _resolve(create_fn())
        except Exception as e:
            logger.warning("creating public data %s failed: %s", key, e)
            return DataResult(error=str(e) or type(e).__name__)
        if payload is None:
            return DataResult(error="data is null")

        refusal = self._refusal(payload)
        if refusal:
            return DataResult(error=refusal)

        now = self.clock()
        existing = self.records.get_public(self.data_type, key)
        self.records.put_public(
            PublicRecord(
                key=key,
                last_read=now,
                created_at=existing.created_at if existing else now,
                last_remote_modified=now,
                last_remote_sync=now,
                data_type=self.data_type,
                payload=payload,
            )
        )
        error = await self._put_public_remote(key, payload)
        return DataResult(data=payload, error=error)

    async def read_public_data(
        self,
        value: Any,
        create_fn: CreateFunc,
        check_valid: bool = True,
    ) -> DataResult:
        """Read from the local store, then the remote store, else create."""
        if not self.config.use_public_data:
            return DataResult(error=PUBLIC_DISABLED)

        key = self.public_key(value)
        payload = await self._read_public(key, check_valid)
        if payload is not None:
            return DataResult(data=payload)
        return await self.create_public_data(value, create_fn)

    async def read_public_data_without_create(self, value: Any) -> DataResult:
        if not self.config.use_public_data:
            return DataResult(error=PUBLIC_DISABLED)
        payload = await self._read_public(self.public_key(value), True)
        return DataResult(data=payload)

    async def read_public_data_by_key(self, key: str) -> DataResult:
        """Read by existing key or bare id; no validity check, no create."""
        if not self.config.use_public_data:
            return DataResult(error=PUBLIC_DISABLED)
        payload = await self._read_public(self.public_key(key), False)
        return DataResult(data=payload)

    async def _update_public(self, key: str, changes: Any) -> OpResult:
        record = self.records.get_public(self.data_type, key)
        if record is None or record.payload is None:
            raise RecordNotFoundError(key)

        payload = _apply_changes(record.payload, changes)
        refusal = self._refusal(payload)
        if refusal:
            return OpResult(False, error=refusal)

        now = self.clock()
        record.payload = payload
        record.last_read = now
        record.last_remote_modified = now
        record.last_remote_sync = now
        self.records.put_public(record)

        error = await self._put_public_remote(key, record.payload)
        if error:
            return OpResult(False, error=f"remote update failed: {error}")
        return OpResult(True)

    async def update_public_data(self, value: Any, changes: Any) -> OpResult:
        if not self.config.use_public_data:
            return OpResult(True)
        try:
            return await self._update_public(self.public_key(value), changes)
        except RecordNotFoundError as e:
            return OpResult(False, error=str(e))

    async def update_public_data_by_key(
        self, key: str, changes: Any
    ) -> OpResult:
        if not self.config.use_public_data:
            return OpResult(True)
        try:
            return await self._update_public(self.public_key(key), changes)
        except RecordNotFoundError as e:
            return OpResult(False, error=str(e))

    async def get_all_public_data(self) -> list[Any]:
        if not self.config.use_public_data:
            return []
        prefix = f"{self.config.public_prefix}/"
        return [
            r.payload
            for r in self.records.list_public(self.data_type)
            if r.key.startswith(prefix) and r.payload is not None
        ]

    # =========================================================================
    # Private data
    # =========================================================================

    def _live(self, key: str) -> Record | None:
        assert self.owner_id is not None
        record = self.records.get(self.data_type, self.owner_id, key)
        if record is None or record.deleted:
            return None
        return record

    async def create_private_data(self, value: Any, payload: Any) -> DataResult:
        return await self.create_private_data_by_key(
            self.input_id(value), payload
        )

    async def create_private_data_by_key(
        self, key: str, payload: Any
    ) -> DataResult:
        """Create (or overwrite) a private record and arm a sync."""
        if not self.config.use_private_data:
            return DataResult(error=PRIVATE_DISABLED)

        private_key = self.private_key(key)
        assert self.owner_id is not None
        now = self.clock()
        existing = self.records.get(self.data_type, self.owner_id, private_key)
        record = Record(
            key=private_key,
            owner_id=self.owner_id,
            parent_id=self.config.parent_key,
            last_read=now,
            last_modified=now,
            created_at=existing.created_at if existing else now,
            data_type=self.data_type,
            deleted=False,
            payload=payload,
        )
        self.records.put(self.data_type, self.owner_id, record)
        return DataResult(data=payload)

    async def read_private_data(self, value: Any) -> DataResult:
        return await self.read_private_data_by_key(self.input_id(value))

    async def read_private_data_by_key(self, key: str) -> DataResult:
        """Read a live private record. Refreshes last_read without a sync."""
        if not self.config.use_private_data:
            return DataResult(error=PRIVATE_DISABLED)

        record = self._live(self.private_key(key))
        if record is None:
            return DataResult(data=None)
        record.last_read = self.clock()
        assert self.owner_id is not None
        self.records.put(self.data_type, self.owner_id, record, sync=False)
        return DataResult(data=record.payload)

    async def update_private_data(
        self, value: Any, changes: Any
    ) -> DataResult:
        return await self.update_private_data_by_key(
            self.input_id(value), changes
        )

    async def update_private_data_by_key(
        self, key: str, changes: Any
    ) -> DataResult:
        """Apply ``changes`` to an existing private record and arm a sync."""
        if not self.config.use_private_data:
            return DataResult(error=PRIVATE_DISABLED)

        private_key = self.private_key(key)
        record = self._live(private_key)
        if record is None:
            return DataResult(error=str(RecordNotFoundError(private_key)))

        now = self.clock()
        record.payload = _apply_changes(record.payload, changes)
        record.last_modified = now
        record.last_read = now
        assert self.owner_id is not None
        self.records.put(self.data_type, self.owner_id, record)
        return DataResult(data=record.payload)

    async def delete_data(self, value: Any, remote: bool = False) -> OpResult:
        return await self.delete_data_by_key(self.input_id(value), remote)

    async def delete_data_by_key(
        self, key: str, remote: bool = False
    ) -> OpResult:
        """Delete the public copy and tombstone the private record.

        Public objects are shared between owners, so the remote public copy
        is only removed when ``remote`` is set (and ``use_remote_public``).
        """
        deleted = 0
        error = None
        if self.config.use_public_data:
            public_key = self.public_key(key)
            if self.records.delete_public(self.data_type, public_key):
                deleted += 1
            if remote and self.config.use_remote_public:
                try:
                    await self.remote.delete_blob(public_key)
                except TransientRemoteError as e:
                    logger.warning("remote delete of %s failed: %s", key, e)
                    error = f"remote delete failed: {e}"

        if self.config.use_private_data:
            record = self._live(self.private_key(key))
            if record is not None:
                now = self.clock()
                record.deleted = True
                record.last_modified = now
                record.last_read = now
                assert self.owner_id is not None
                self.records.put(self.data_type, self.owner_id, record)
                deleted += 1

        return OpResult(error is None, error=error, deleted_count=deleted)

    async def has_private_data(self, value: Any) -> bool:
        return await self.has_private_data_by_key(self.input_id(value))

    async def has_private_data_by_key(self, key: str) -> bool:
        if not self.config.use_private_data:
            return False
        return self._live(self.private_key(key)) is not None

    def _live_records(self) -> list[Record]:
        if not self.config.use_private_data or not self.owner_id:
            return []
        return [
            r
            for r in self.records.list_by_owner(self.data_type, self.owner_id)
            if not r.deleted
        ]

    async def get_all_private_data(self) -> DataResult:
        if not self.config.use_private_data:
            return DataResult(data=[], error=PRIVATE_DISABLED)
        return DataResult(data=[r.payload for r in self._live_records()])

    async def get_private_data_keys(self) -> list[str]:
        return [r.key for r in self._live_records()]

    async def get_all_items(self, builder: ItemBuilder) -> list[Any]:
        """Join private records with their public copies through ``builder``.

        ``builder(input_id, public_payload, private_payload, created_at)``
        may be sync or async and returns an item, a list of items or None.
        Records of another parent are skipped when ``use_parent_id`` is set.
        """
        items: list[Any] = []
        for record in self._live_records():
            if (
                self.config.use_parent_id
                and record.parent_id != self.config.parent_id
            ):
                continue

            public_payload = None
            if self.config.use_public_data:
                public = self.records.get_public(
                    self.data_type, self.public_key(record.key)
                )
                public_payload = public.payload if public else None

            item = await _resolve(
                builder(
                    self.input_id(record.key),
                    public_payload,
                    record.payload,
                    record.created_at,
                )
            )
            if item is None:
                continue
            if isinstance(item, list):
                items.extend(item)
            else:
                items.append(item)
        return items

    async def exists(self, value: Any) -> bool:
        """True when a public copy (local or remote) or a live private
        record exists."""
        if self.config.use_public_data:
            key = self.public_key(value)
            if self.records.get_public(self.data_type, key) is not None:
                return True
            if self.config.use_remote_public:
                try:
                    if await self.remote.get_blob(key) is not None:
                        return True
                except TransientRemoteError as e:
                    logger.warning("remote exists check failed: %s", e)

        if self.config.use_private_data:
            return self._live(self.private_key(value)) is not None
        return False

    async def get_stats(self) -> StoreStats:
        cutoff = self.clock() - self.config.ttl_ms
        stats = StoreStats(
            data_type=self.data_type,
            owner_id=self.owner_id,
            time_to_live_ms=self.config.ttl_ms,
        )
        if self.config.use_public_data:
            stats.total_public_items = self.records.count_public(
                self.data_type
            )
            stats.expired_public_items = self.records.count_expired_public(
                self.data_type, cutoff
            )
        if self.config.use_private_data and self.owner_id:
            stats.total_private_items = self.records.count_private(
                self.data_type, self.owner_id
            )
            stats.expired_private_items = self.records.count_expired(
                self.data_type, self.owner_id, cutoff
            )
        return stats

    # =========================================================================
    # Sync family
    # =========================================================================

    def _disabled_result(self) -> SyncResult:
        return SyncResult(
            data_type=self.data_type,
            success=True,
            action=SyncAction.NO_ACTION,
            details=PRIVATE_DISABLED,
        )

    async def sync(self) -> SyncResult:
        if self.engine is None:
            return self._disabled_result()
        return await self.engine.sync()

    async def sync_with_debounce(
        self, delay: float | None = None
    ) -> SyncResult:
        """Arm the debounce timer and wait for the coalesced sync."""
        if self.engine is None:
            return self._disabled_result()
        if delay is None:
            delay = self.config.debounce_seconds
        future = self.scheduler.trigger(self.data_type, delay, self.engine.sync)
        await asyncio.wait({future})
        if future.cancelled():
            return SyncResult(
                data_type=self.data_type,
                success=True,
                action=SyncAction.NO_ACTION,
                details="debounced sync was cancelled",
            )
        if future.exception() is not None:
            return SyncResult(
                data_type=self.data_type,
                success=False,
                action=SyncAction.NO_ACTION,
                details="debounced sync failed",
                error=str(future.exception()),
            )
        return future.result()

    def clear_debounce_timer(self) -> bool:
        return self.scheduler.cancel(self.data_type)

    async def force_upload_to_backend(
        self, upload_empty: bool = False
    ) -> SyncResult:
        if self.engine is None:
            return self._disabled_result()
        return await self.engine.force_upload(upload_empty=upload_empty)

    async def force_download_from_backend(self) -> SyncResult:
        if self.engine is None:
            return self._disabled_result()
        return await self.engine.force_download()

    async def force_merge_with_backend(self) -> SyncResult:
        if self.engine is None:
            return self._disabled_result()
        return await self.engine.force_merge()

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clean_up(self) -> CleanupReport:
        """Expire records unread for longer than the TTL."""
        try:
            return self.gc.expire()
        except Exception as e:
            logger.exception("clean up of %s failed", self.data_type)
            return CleanupReport(errors=[str(e)])

    async def clear_all_private_data(
        self, sync: bool = False, not_owner: bool = False
    ) -> OpResult:
        """Purge the owner's private records of the dataset.

        With ``not_owner`` every other owner's records are purged instead,
        for an account switch on a shared device.
        """
        if not self.config.use_private_data:
            return OpResult(True)
        if not self.owner_id:
            raise ConfigurationError("owner_id is not set")
        deleted = self.records.clear_partition(
            self.data_type, self.owner_id, invert=not_owner, sync=sync
        )
        return OpResult(True, deleted_count=deleted)

    async def clear_all_private_data_for_parent(self) -> OpResult:
        """Purge the owner's records that hang off the current parent."""
        if not self.config.use_parent_id or not self.config.parent_id:
            return OpResult(True)
        assert self.owner_id is not None
        deleted = self.records.clear_parent(
            self.data_type, self.owner_id, self.config.parent_id
        )
        return OpResult(True, deleted_count=deleted)

    async def clear_all_public_data(self) -> OpResult:
        deleted = self.records.clear_public(self.data_type)
        return OpResult(True, deleted_count=deleted)

    async def clear_all_metadata(self, not_owner: bool = False) -> OpResult:
        deleted = self.records.clear_metadata(
            self.data_type, self.owner_id or "", invert=not_owner
        )
        return OpResult(True, deleted_count=deleted)

    async def clear_orphaned_data(self) -> OpResult:
        try:
            report = self.gc.clear_orphans()
        except Exception as e:
            logger.exception("orphan cleanup failed")
            return OpResult(False, error=str(e))
        return OpResult(True, deleted_count=report.orphans)

    async def clear_entire_database(self) -> OpResult:
        """Purge this dataset's public records and the owner's private ones."""
        try:
            deleted = self.records.clear_public(self.data_type)
            if self.owner_id:
                deleted += self.records.clear_partition(
                    self.data_type, self.owner_id
                )
        except Exception as e:
            logger.exception("clearing %s failed", self.data_type)
            return OpResult(False, error=str(e))
        logger.info("cleared %d records of %s", deleted, self.data_type)
        return OpResult(True, deleted_count=deleted)

    async def force_recreate_database(self) -> None:
        """Delete the whole local store; it is re-created on next use."""
        self.scheduler.cancel(self.data_type)
        self.store.destroy()

    async def aclose(self) -> None:
        self.scheduler.cancel(self.data_type)
        if self._owns_scheduler:
            await self.scheduler.shutdown()
        if self._owns_store:
            self.store.close()
