"""Last-writer-wins reconciliation of a remote snapshot and local records.

``merge_records`` is a pure function of its inputs: it reads no clock and
uses no randomness, so merging a remote set with the result of a previous
merge of the same remote set changes nothing.

For each key:

- present on one side only: kept unless tombstoned;
- present on both: the strictly newer ``last_modified`` wins (missing
  counts as 0) and ties go to remote. A winning tombstone is carried in
  the result so the deletion reaches the next snapshot, but the key is
  absent from the live set. Tombstones left behind are purged by the TTL
  sweep once nobody reads them.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from snapsync.keys import input_id
from snapsync.models import Record

KeyFunc = Callable[[str], str]


def _modified(record: Record) -> int:
    return record.last_modified or 0


def merge_records(
    remote: Iterable[Record],
    local: Iterable[Record],
    key: KeyFunc = input_id,
) -> list[Record]:
    """Merge two record sets; returns winners sorted by key."""
    remote_map: dict[str, Record] = {}
    for record in remote:
        remote_map[key(record.key)] = record

    local_map: dict[str, Record] = {}
    for record in local:
        local_map[key(record.key)] = record

    merged: dict[str, Record] = {}
    for k, local_record in local_map.items():
        remote_record = remote_map.get(k)
        if remote_record is None:
            if not local_record.deleted:
                merged[k] = local_record
            continue

        # ties go to remote
        if _modified(local_record) > _modified(remote_record):
            merged[k] = local_record
        else:
            merged[k] = remote_record

    for k, remote_record in remote_map.items():
        if k in local_map:
            continue
        if not remote_record.deleted:
            merged[k] = remote_record

    return [merged[k] for k in sorted(merged)]


def live(records: Iterable[Record]) -> list[Record]:
    """Drop tombstones."""
    return [r for r in records if not r.deleted]
