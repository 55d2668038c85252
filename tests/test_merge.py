from snapsync.merge import live, merge_records
from snapsync.models import Record


def rec(key, modified=None, deleted=False, payload=None, owner="u1"):
    return Record(
        key=f"private/messages/h/{key}",
        owner_id=owner,
        data_type="message",
        last_modified=modified or 0,
        deleted=deleted,
        payload=payload if payload is not None else key,
    )


def by_id(records):
    return {r.key.rsplit("/", 1)[-1]: r for r in records}


class TestMergeRecords:
    def test_disjoint_sets_union(self):
        merged = merge_records([rec("a", 1)], [rec("b", 2)])
        assert sorted(by_id(merged)) == ["a", "b"]

    def test_local_newer_wins(self):
        merged = by_id(
            merge_records(
                [rec("a", 10, payload="remote")],
                [rec("a", 20, payload="local")],
            )
        )
        assert merged["a"].payload == "local"

    def test_remote_newer_wins(self):
        merged = by_id(
            merge_records(
                [rec("a", 30, payload="remote")],
                [rec("a", 20, payload="local")],
            )
        )
        assert merged["a"].payload == "remote"

    def test_tie_goes_to_remote(self):
        merged = by_id(
            merge_records(
                [rec("a", 10, payload="remote")],
                [rec("a", 10, payload="local")],
            )
        )
        assert merged["a"].payload == "remote"

    def test_missing_timestamp_counts_as_zero(self):
        merged = by_id(
            merge_records(
                [rec("a", None, payload="remote")],
                [rec("a", 1, payload="local")],
            )
        )
        assert merged["a"].payload == "local"

    def test_keys_matched_across_owner_hashes(self):
        remote = rec("a", 5, payload="remote")
        local = rec("a", 9, payload="local").model_copy(
            update={"key": "private/messages/other-hash/a"}
        )
        merged = merge_records([remote], [local])
        assert len(merged) == 1
        assert merged[0].payload == "local"

    def test_newer_local_tombstone_wins(self):
        remote, local = [rec("a", 10)], [rec("a", 20, deleted=True)]
        merged = by_id(merge_records(remote, local))
        assert merged["a"].deleted
        assert live(merged.values()) == []

    def test_newer_remote_tombstone_wins(self):
        remote, local = [rec("a", 30, deleted=True)], [rec("a", 20)]
        merged = by_id(merge_records(remote, local))
        assert merged["a"].deleted

    def test_older_tombstone_loses(self):
        remote, local = [rec("a", 10, deleted=True)], [rec("a", 20)]
        merged = by_id(merge_records(remote, local))
        assert not merged["a"].deleted

    def test_one_sided_tombstones_dropped(self):
        merged = merge_records(
            [rec("r", 1, deleted=True)], [rec("l", 1, deleted=True)]
        )
        assert merged == []

    def test_sorted_by_key(self):
        merged = merge_records(
            [rec("c", 1), rec("a", 1)], [rec("b", 1)]
        )
        assert [r.payload for r in merged] == ["a", "b", "c"]

    def test_idempotent(self):
        remote = [rec("a", 10), rec("b", 30, deleted=True), rec("c", 5)]
        local = [rec("a", 20), rec("b", 20), rec("d", 1)]
        once = merge_records(remote, local)
        twice = merge_records(remote, once)
        assert twice == once

    def test_pure(self):
        remote = [rec("a", 10)]
        local = [rec("a", 20)]
        assert merge_records(remote, local) == merge_records(remote, local)
        assert remote[0].last_modified == 10
        assert local[0].last_modified == 20
