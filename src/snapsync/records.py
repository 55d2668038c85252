"""Record store facade: typed, dataset- and owner-scoped access to the store.

Every private read filters by dataset and owner, so a record written under
one owner is reported as absent to every other owner. Writes that pass
``sync=True`` (the default) call the ``on_change(dataset, owner)`` hook
exactly once after the write succeeded; replays from merge and download
pass ``sync=False`` so they never re-arm the scheduler.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

import structlog

from snapsync.errors import ValidationError
from snapsync.models import MetadataRecord, PublicRecord, Record
from snapsync.store import METADATA, PRIVATE, PUBLIC, LocalStore

logger = structlog.get_logger(__name__)

ChangeHook = Callable[[str, str], None]


class RecordStore:
    """Typed facade over ``LocalStore``."""

    def __init__(
        self,
        store: LocalStore,
        on_change: ChangeHook | None = None,
    ):
        self.store = store
        self.on_change = on_change

    def _notify(self, dataset: str, owner: str, sync: bool) -> None:
        if sync and self.on_change is not None:
            self.on_change(dataset, owner)

    # =========================================================================
    # Private partition
    # =========================================================================

    def get(self, dataset: str, owner: str, key: str) -> Record | None:
        data = self.store.get(PRIVATE, key)
        if data is None:
            return None
        if data.get("data_type") != dataset or data.get("owner_id") != owner:
            return None
        return Record.model_validate(data)

    def put(
        self,
        dataset: str,
        owner: str,
        record: Record,
        sync: bool = True,
    ) -> None:
        if record.data_type != dataset or record.owner_id != owner:
            raise ValidationError(
                f"record {record.key} belongs to "
                f"{record.data_type}/{record.owner_id}, not {dataset}/{owner}"
            )
        self.store.put(PRIVATE, record.model_dump())
        self._notify(dataset, owner, sync)

    def put_many(
        self,
        dataset: str,
        owner: str,
        records: Iterable[Record],
        sync: bool = False,
    ) -> int:
        values = []
        for record in records:
            if record.data_type != dataset or record.owner_id != owner:
                raise ValidationError(
                    f"record {record.key} does not belong to {dataset}/{owner}"
                )
            values.append(record.model_dump())
        if values:
            self.store.put_many(PRIVATE, values)
            self._notify(dataset, owner, sync)
        return len(values)

    def delete(
        self,
        dataset: str,
        owner: str,
        key: str,
        sync: bool = True,
    ) -> bool:
        """Physically delete a record of the partition."""
        if self.get(dataset, owner, key) is None:
            return False
        deleted = self.store.delete(PRIVATE, key)
        if deleted:
            self._notify(dataset, owner, sync)
        return deleted

    def list_by_owner(self, dataset: str, owner: str) -> list[Record]:
        return [
            Record.model_validate(data)
            for data in self.store.iter_by_index(PRIVATE, "by_owner", owner)
            if data.get("data_type") == dataset
        ]

    def list_by_dataset(self, dataset: str) -> list[Record]:
        """Every owner's records of a dataset, for maintenance tasks."""
        return [
            Record.model_validate(data)
            for data in self.store.iter_by_index(PRIVATE, "by_type", dataset)
        ]

    def list_owner_records(self, owner: str) -> list[Record]:
        """An owner's records across every dataset."""
        return [
            Record.model_validate(data)
            for data in self.store.iter_by_index(PRIVATE, "by_owner", owner)
        ]

    def clear_partition(
        self,
        dataset: str,
        owner: str,
        invert: bool = False,
        sync: bool = False,
    ) -> int:
        """Delete the dataset's records of ``owner``, or of everyone else.

        With ``invert`` every record of the dataset NOT owned by ``owner``
        is deleted, which is what an account switch on a shared device
        needs.
        """
        keys = [
            r.key
            for r in self.list_by_dataset(dataset)
            if (r.owner_id != owner) == invert
        ]
        deleted = self.store.delete_many(PRIVATE, keys)
        if deleted:
            logger.info(
                "cleared %d private records of %s (invert=%s)",
                deleted,
                dataset,
                invert,
            )
            self._notify(dataset, owner, sync)
        return deleted

    def clear_parent(
        self,
        dataset: str,
        owner: str,
        parent_id: str,
        sync: bool = True,
    ) -> int:
        """Delete the owner's records of a dataset that hang off one parent."""
        keys = [
            r.key
            for r in self.list_by_owner(dataset, owner)
            if r.parent_id == parent_id
        ]
        deleted = self.store.delete_many(PRIVATE, keys)
        if deleted:
            self._notify(dataset, owner, sync)
        return deleted

    def delete_keys(self, keys: list[str]) -> int:
        """Purge private records by key, never triggering a sync."""
        return self.store.delete_many(PRIVATE, keys)

    def _stale_private(
        self, dataset: str, owner: str, cutoff: int
    ) -> list[str]:
        return [
            data["key"]
            for data in self.store.iter_last_read_before(PRIVATE, cutoff)
            if data.get("data_type") == dataset
            and data.get("owner_id") == owner
        ]

    def expire(self, dataset: str, owner: str, cutoff: int) -> int:
        """Delete the partition's records with ``last_read < cutoff``."""
        return self.store.delete_many(
            PRIVATE, self._stale_private(dataset, owner, cutoff)
        )

    def count_expired(self, dataset: str, owner: str, cutoff: int) -> int:
        return len(self._stale_private(dataset, owner, cutoff))

    # =========================================================================
    # Public partition
    # =========================================================================

    def get_public(self, dataset: str, key: str) -> PublicRecord | None:
        data = self.store.get(PUBLIC, key)
        if data is None or data.get("data_type") != dataset:
            return None
        return PublicRecord.model_validate(data)

    def put_public(self, record: PublicRecord) -> None:
        self.store.put(PUBLIC, record.model_dump())

    def delete_public(self, dataset: str, key: str) -> bool:
        if self.get_public(dataset, key) is None:
            return False
        return self.store.delete(PUBLIC, key)

    def list_public(self, dataset: str) -> list[PublicRecord]:
        return [
            PublicRecord.model_validate(data)
            for data in self.store.iter_by_index(PUBLIC, "by_type", dataset)
        ]

    def clear_public(self, dataset: str) -> int:
        keys = [r.key for r in self.list_public(dataset)]
        return self.store.delete_many(PUBLIC, keys)

    def _stale_public(self, dataset: str, cutoff: int) -> list[str]:
        return [
            data["key"]
            for data in self.store.iter_last_read_before(PUBLIC, cutoff)
            if data.get("data_type") == dataset
        ]

    def expire_public(self, dataset: str, cutoff: int) -> int:
        return self.store.delete_many(
            PUBLIC, self._stale_public(dataset, cutoff)
        )

    def count_expired_public(self, dataset: str, cutoff: int) -> int:
        return len(self._stale_public(dataset, cutoff))

    # =========================================================================
    # Metadata partition
    # =========================================================================

    def get_metadata(self, key: str) -> MetadataRecord | None:
        data = self.store.get(METADATA, key)
        if data is None:
            return None
        return MetadataRecord.model_validate(data)

    def put_metadata(self, record: MetadataRecord) -> None:
        self.store.put(METADATA, record.model_dump())

    def clear_metadata(
        self, dataset: str, owner: str, invert: bool = False
    ) -> int:
        keys = [
            data["key"]
            for data in self.store.iter_by_index(METADATA, "by_type", dataset)
            if (data.get("owner_id") != owner) == invert
        ]
        return self.store.delete_many(METADATA, keys)

    # =========================================================================
    # Counts
    # =========================================================================

    def count_private(self, dataset: str, owner: str) -> int:
        return len(self.list_by_owner(dataset, owner))

    def count_public(self, dataset: str) -> int:
        return sum(
            1 for _ in self.store.iter_by_index(PUBLIC, "by_type", dataset)
        )
