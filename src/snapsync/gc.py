"""Garbage collection: TTL expiry and orphan cleanup.

Both sweeps are idempotent and safe to interrupt. Neither arms a sync: a
purged record simply stops appearing in the next uploaded snapshot.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from snapsync.keys import input_id
from snapsync.markers import LastUpdatedCounter
from snapsync.models import CleanupReport, now_ms
from snapsync.records import RecordStore

logger = structlog.get_logger(__name__)


class GarbageCollector:
    """Sweeps for one dataset and owner.

    Args:
        records: Record store facade
        data_type: Dataset swept by ``expire``
        owner_id: Owner whose private records are swept; None sweeps
            public records only
        ttl_ms: Records unread for longer than this are expired
        parent_data_type: Dataset holding the valid parents
        clock: Millisecond clock
    """

    def __init__(
        self,
        records: RecordStore,
        data_type: str,
        owner_id: str | None,
        ttl_ms: int,
        parent_data_type: str = "learner",
        use_public: bool = True,
        use_private: bool = True,
        clock: Callable[[], int] = now_ms,
    ):
        self.records = records
        self.data_type = data_type
        self.owner_id = owner_id
        self.ttl_ms = ttl_ms
        self.parent_data_type = parent_data_type
        self.use_public = use_public
        self.use_private = use_private
        self.clock = clock

    def cutoff(self) -> int:
        return self.clock() - self.ttl_ms

    def expire(self) -> CleanupReport:
        """Delete records of the dataset with ``last_read < now - ttl``."""
        cutoff = self.cutoff()
        report = CleanupReport()
        if self.use_public:
            report.expired_public = self.records.expire_public(
                self.data_type, cutoff
            )
        if self.use_private and self.owner_id:
            report.expired_private = self.records.expire(
                self.data_type, self.owner_id, cutoff
            )
        if report.total:
            logger.info(
                "expired %d public and %d private records of %s",
                report.expired_public,
                report.expired_private,
                self.data_type,
            )
        return report

    def valid_parents(self) -> set[str]:
        """Input ids of the owner's live records in the parent dataset."""
        if not self.owner_id:
            return set()
        return {
            input_id(r.key)
            for r in self.records.list_by_owner(
                self.parent_data_type, self.owner_id
            )
            if not r.deleted
        }

    def parents_seen(self) -> bool:
        """Whether the parent dataset was ever written or synced here.

        False on a fresh device whose parents have not been downloaded
        yet; tombstoned or purged parents still count as seen.
        """
        if not self.owner_id:
            return False
        if self.records.list_by_owner(self.parent_data_type, self.owner_id):
            return True
        counter = LastUpdatedCounter(
            self.records, self.parent_data_type, self.owner_id, self.clock
        )
        return counter.get() > 0

    def clear_orphans(self) -> CleanupReport:
        """Delete the owner's records whose parent no longer exists.

        Runs across every dataset except the parent dataset itself. An
        empty valid set clears every child, unless the parent dataset has
        never been written or synced on this device.
        """
        report = CleanupReport()
        if not self.owner_id:
            return report

        if not self.parents_seen():
            logger.warning(
                "%s never synced for owner, skipping orphan cleanup",
                self.parent_data_type,
            )
            return report

        valid = self.valid_parents()
        orphans = [
            r.key
            for r in self.records.list_owner_records(self.owner_id)
            if r.data_type != self.parent_data_type
            and r.parent_id
            and r.parent_id not in valid
        ]
        if orphans:
            report.orphans = self.records.delete_keys(orphans)
            logger.info("cleared %d orphaned records", report.orphans)
        return report

    def run(self) -> CleanupReport:
        """Both sweeps. Never raises; failures are logged and reported."""
        report = CleanupReport()
        try:
            expired = self.expire()
            report.expired_public = expired.expired_public
            report.expired_private = expired.expired_private
        except Exception as e:
            logger.exception("TTL sweep of %s failed", self.data_type)
            report.errors.append(f"expire: {e}")

        try:
            report.orphans = self.clear_orphans().orphans
        except Exception as e:
            logger.exception("orphan sweep failed")
            report.errors.append(f"orphans: {e}")
        return report
