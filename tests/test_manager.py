import asyncio
import json

import pytest

from snapsync.config import DAY_MS, ManagerConfig
from snapsync.errors import AccessDeniedError, ConfigurationError
from snapsync.keys import input_id, snapshot_path
from snapsync.manager import DataManager
from snapsync.models import SyncAction
from snapsync.remote import RemoteStorage
from snapsync.store import PRIVATE, LocalStore
from snapsync.validation import PayloadSchema

OWNER = "user@example.com"
OTHER_OWNER = "other@example.com"
PHRASE = {"text": "hola", "lang": "es"}


@pytest.fixture
def make_manager(tmp_path, store, blobs, scheduler, clock):
    def make(data_type="message", owner_id=OWNER, **kwargs):
        kwargs.setdefault("debounce_seconds", 60.0)
        kwargs.setdefault("ttl_days", 7.0)
        kwargs.setdefault("marker_scope", "owner")
        config = ManagerConfig(
            data_type=data_type,
            owner_id=owner_id,
            data_dir=tmp_path,
            **kwargs,
        )
        return DataManager(
            config, blobs, store=store, scheduler=scheduler, clock=clock
        )

    return make


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.mark.asyncio
class TestPrivateData:
    async def test_create_and_read(self, manager):
        created = await manager.create_private_data(PHRASE, {"note": "hi"})
        assert created.ok
        result = await manager.read_private_data(PHRASE)
        assert result.data == {"note": "hi"}

    async def test_read_by_key_or_id(self, manager):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        key = manager.private_key(PHRASE)
        assert (await manager.read_private_data_by_key(key)).data == {
            "note": "hi"
        }
        by_id = await manager.read_private_data_by_key(input_id(PHRASE))
        assert by_id.data == {"note": "hi"}

    async def test_missing_is_absent_not_error(self, manager):
        result = await manager.read_private_data({"text": "nope"})
        assert result.data is None
        assert result.ok

    async def test_owner_isolation(self, manager, make_manager):
        other = make_manager(owner_id=OTHER_OWNER)
        await manager.create_private_data(PHRASE, {"note": "mine"})
        assert (await other.read_private_data(PHRASE)).data is None
        assert not await other.has_private_data(PHRASE)
        assert await other.get_private_data_keys() == []

    async def test_create_arms_debounced_sync(self, manager, scheduler):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        assert scheduler.pending("message")
        assert manager.engine.counter.get() == manager.clock()

    async def test_read_does_not_arm_sync(self, manager, scheduler, clock):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        manager.clear_debounce_timer()
        clock.advance(1000)
        await manager.read_private_data(PHRASE)
        assert not scheduler.pending("message")
        record = manager.records.get(
            "message", OWNER, manager.private_key(PHRASE)
        )
        assert record.last_read == clock.now
        assert record.last_modified == clock.now - 1000

    async def test_create_preserves_created_at(self, manager, clock):
        await manager.create_private_data(PHRASE, {"note": "v1"})
        first = clock.now
        clock.advance(1000)
        await manager.create_private_data(PHRASE, {"note": "v2"})
        record = manager.records.get(
            "message", OWNER, manager.private_key(PHRASE)
        )
        assert record.created_at == first
        assert record.last_modified == clock.now
        assert record.payload == {"note": "v2"}

    async def test_parent_id_recorded(self, make_manager):
        manager = make_manager(parent_id="learner-1", use_parent_id=True)
        await manager.create_private_data(PHRASE, {"note": "hi"})
        record = manager.records.get(
            "message", OWNER, manager.private_key(PHRASE)
        )
        assert record.parent_id == "learner-1"

    async def test_update_merges_changes(self, manager, clock):
        await manager.create_private_data(PHRASE, {"note": "hi", "n": 1})
        clock.advance(1000)
        result = await manager.update_private_data(PHRASE, {"n": 2})
        assert result.data == {"note": "hi", "n": 2}
        record = manager.records.get(
            "message", OWNER, manager.private_key(PHRASE)
        )
        assert record.last_modified == clock.now

    async def test_update_missing_is_error(self, manager):
        result = await manager.update_private_data_by_key("nope", {"n": 2})
        assert not result.ok
        assert "not found" in result.error

    async def test_delete_tombstones(self, manager, scheduler):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        manager.clear_debounce_timer()

        result = await manager.delete_data(PHRASE)
        assert result.success
        assert result.deleted_count == 1
        assert scheduler.pending("message")
        assert not await manager.has_private_data(PHRASE)
        assert (await manager.read_private_data(PHRASE)).data is None
        raw = manager.store.get(PRIVATE, manager.private_key(PHRASE))
        assert raw["deleted"] is True

    async def test_delete_missing_is_success(self, manager):
        result = await manager.delete_data_by_key("nope")
        assert result.success
        assert result.deleted_count == 0

    async def test_update_after_delete_fails(self, manager):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        await manager.delete_data(PHRASE)
        result = await manager.update_private_data(PHRASE, {"note": "x"})
        assert not result.ok

    async def test_listing_skips_tombstones(self, manager):
        await manager.create_private_data({"text": "a"}, "A")
        await manager.create_private_data({"text": "b"}, "B")
        await manager.delete_data({"text": "a"})
        assert (await manager.get_all_private_data()).data == ["B"]
        assert await manager.get_private_data_keys() == [
            manager.private_key({"text": "b"})
        ]

    async def test_private_disabled(self, make_manager):
        manager = make_manager(owner_id=None, use_private_data=False)
        result = await manager.create_private_data(PHRASE, "x")
        assert result.error == "private data operations are disabled"
        assert not await manager.has_private_data(PHRASE)


@pytest.mark.asyncio
class TestPublicData:
    async def test_create_with_async_factory(self, manager):
        async def build():
            return {"translation": "hello"}

        result = await manager.create_public_data(PHRASE, build)
        assert result.data == {"translation": "hello"}
        record = manager.records.get_public(
            "message", manager.public_key(PHRASE)
        )
        assert record.payload == {"translation": "hello"}

    async def test_read_uses_local_copy(self, manager):
        calls = []

        def build():
            calls.append(1)
            return {"translation": "hello"}

        await manager.read_public_data(PHRASE, build)
        result = await manager.read_public_data(PHRASE, build)
        assert result.data == {"translation": "hello"}
        assert calls == [1]

    async def test_public_writes_do_not_arm_sync(self, manager, scheduler):
        await manager.create_public_data(PHRASE, lambda: {"t": "x"})
        assert not scheduler.pending("message")

    async def test_factory_returning_none(self, manager):
        result = await manager.create_public_data(PHRASE, lambda: None)
        assert result.error == "data is null"

    async def test_factory_error_reported(self, manager):
        def build():
            raise RuntimeError("model offline")

        result = await manager.create_public_data(PHRASE, build)
        assert result.error == "model offline"

    async def test_read_without_create(self, manager):
        result = await manager.read_public_data_without_create(PHRASE)
        assert result.data is None
        assert result.ok

    async def test_remote_dual_write_and_fallback(
        self, make_manager, blobs, tmp_path, clock
    ):
        writer = make_manager(use_remote_public=True)
        await writer.create_public_data(PHRASE, lambda: {"t": "hello"})
        key = writer.public_key(PHRASE)
        assert json.loads(blobs.blobs[key]) == {"t": "hello"}

        fresh_store = LocalStore(tmp_path / "other.lmdb")
        try:
            reader = DataManager(
                ManagerConfig(
                    data_type="message",
                    owner_id=OWNER,
                    use_remote_public=True,
                    debounce_seconds=60.0,
                ),
                RemoteStorage(blobs),
                store=fresh_store,
                clock=clock,
            )
            result = await reader.read_public_data_without_create(PHRASE)
            assert result.data == {"t": "hello"}
            assert reader.records.get_public("message", key) is not None
            await reader.aclose()
        finally:
            fresh_store.close()

    async def test_invalid_payload_refused_with_remote(
        self, make_manager, blobs
    ):
        manager = make_manager(use_remote_public=True)
        result = await manager.create_public_data(PHRASE, lambda: {"t": ""})
        assert result.error.startswith("invalid data")
        assert blobs.blobs == {}
        assert manager.records.list_public("message") == []

    async def test_refused_update_writes_nothing(self, make_manager, blobs):
        manager = make_manager(use_remote_public=True)
        await manager.create_public_data(
            PHRASE, lambda: {"a": "x", "b": "y"}
        )
        key = manager.public_key(PHRASE)
        remote_before = dict(blobs.blobs)

        result = await manager.update_public_data(PHRASE, {"b": ""})
        assert not result.success
        assert result.error.startswith("invalid data")
        local = manager.records.get_public("message", key)
        assert local.payload == {"a": "x", "b": "y"}
        assert blobs.blobs == remote_before

    async def test_custom_schema(self, make_manager):
        manager = make_manager(
            use_remote_public=True, schema=PayloadSchema(required=("t",))
        )
        assert manager.is_data_valid({"t": "x", "extra": ""})
        assert not manager.is_data_valid({"other": "x"})

    async def test_update_public(self, manager):
        await manager.create_public_data(PHRASE, lambda: {"t": "a", "n": 1})
        result = await manager.update_public_data(PHRASE, {"n": 2})
        assert result.success
        key = manager.public_key(PHRASE)
        read = await manager.read_public_data_by_key(key)
        assert read.data == {"t": "a", "n": 2}

    async def test_update_public_missing(self, manager):
        result = await manager.update_public_data_by_key("nope", {"n": 2})
        assert not result.success
        assert "not found" in result.error

    async def test_get_all_public(self, manager):
        await manager.create_public_data({"text": "a"}, lambda: "A")
        await manager.create_public_data({"text": "b"}, lambda: "B")
        assert sorted(await manager.get_all_public_data()) == ["A", "B"]

    async def test_delete_removes_public_copy(self, manager):
        await manager.create_public_data(PHRASE, lambda: {"t": "x"})
        await manager.create_private_data(PHRASE, {"note": "hi"})
        result = await manager.delete_data(PHRASE)
        assert result.deleted_count == 2
        assert not await manager.exists(PHRASE)

    async def test_remote_public_copy_kept_unless_asked(
        self, make_manager, blobs
    ):
        manager = make_manager(use_remote_public=True)
        await manager.create_public_data(PHRASE, lambda: {"t": "x"})
        key = manager.public_key(PHRASE)

        await manager.delete_data(PHRASE)
        assert key in blobs.blobs

        await manager.create_public_data(PHRASE, lambda: {"t": "x"})
        result = await manager.delete_data(PHRASE, remote=True)
        assert result.success
        assert key not in blobs.blobs

    async def test_remote_delete_failure_still_tombstones(
        self, make_manager, blobs
    ):
        manager = make_manager(use_remote_public=True)
        await manager.create_public_data(PHRASE, lambda: {"t": "x"})
        await manager.create_private_data(PHRASE, {"note": "hi"})
        blobs.fail_next(OSError("network down"), op="delete")

        result = await manager.delete_data(PHRASE, remote=True)
        assert not result.success
        assert "network down" in result.error
        assert result.deleted_count == 2
        assert not await manager.has_private_data(PHRASE)

    async def test_exists(self, manager):
        assert not await manager.exists(PHRASE)
        await manager.create_public_data(PHRASE, lambda: {"t": "x"})
        assert await manager.exists(PHRASE)

    async def test_public_key_needs_prefix(self, make_manager):
        manager = make_manager(
            data_type="custom",
            public_prefix=None,
            private_prefix="private/custom",
            use_public_data=False,
        )
        with pytest.raises(ConfigurationError):
            manager.public_key(PHRASE)


@pytest.mark.asyncio
class TestItems:
    async def test_get_all_items_joins_public_and_private(self, manager):
        await manager.create_public_data(PHRASE, lambda: {"t": "hello"})
        await manager.create_private_data(PHRASE, {"note": "hi"})

        def build(item_id, public, private, created_at):
            return {"id": item_id, "public": public, "private": private}

        items = await manager.get_all_items(build)
        assert items == [
            {
                "id": input_id(PHRASE),
                "public": {"t": "hello"},
                "private": {"note": "hi"},
            }
        ]

    async def test_builder_can_skip_and_expand(self, manager):
        await manager.create_private_data({"text": "a"}, "A")
        await manager.create_private_data({"text": "b"}, "B")

        async def build(item_id, public, private, created_at):
            if private == "A":
                return None
            return [private, private]

        assert await manager.get_all_items(build) == ["B", "B"]

    async def test_items_filtered_by_parent(self, make_manager):
        first = make_manager(parent_id="p1", use_parent_id=True)
        second = make_manager(parent_id="p2", use_parent_id=True)
        await first.create_private_data({"text": "a"}, "A")
        await second.create_private_data({"text": "b"}, "B")

        items = await first.get_all_items(lambda *args: args[2])
        assert items == ["A"]


@pytest.mark.asyncio
class TestSyncFamily:
    async def test_debounced_sync_uploads(self, manager, blobs):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        result = await manager.sync_with_debounce(delay=0.01)
        assert result.success
        assert result.action is SyncAction.UPLOADED
        snapshot = json.loads(blobs.blobs[snapshot_path(OWNER, "message")])
        assert snapshot["total"] == 1

    async def test_mutation_burst_coalesces(self, make_manager, blobs):
        manager = make_manager(debounce_seconds=0.05)
        for i in range(5):
            await manager.create_private_data({"text": str(i)}, i)
        await asyncio.sleep(0.2)
        snapshot_puts = [
            c
            for c in blobs.calls
            if c == ("put", snapshot_path(OWNER, "message"))
        ]
        assert len(snapshot_puts) == 1
        assert manager.engine.stats.syncs == 1

    async def test_clear_debounce_timer_cancels_waiter(self, manager):
        task = asyncio.ensure_future(manager.sync_with_debounce(delay=10))
        await asyncio.sleep(0)
        assert manager.clear_debounce_timer()
        result = await task
        assert result.action is SyncAction.NO_ACTION
        assert "cancelled" in result.details

    async def test_sync_then_noop(self, manager):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        manager.clear_debounce_timer()
        assert (await manager.sync()).action is SyncAction.UPLOADED
        assert (await manager.sync()).action is SyncAction.NO_ACTION

    async def test_sync_never_raises(self, manager, blobs):
        blobs.fail_next(AccessDeniedError("forbidden", "x"))
        result = await manager.sync()
        assert not result.success
        assert result.error.startswith("access denied")

    async def test_force_operations(self, manager, blobs):
        await manager.create_private_data(PHRASE, {"note": "hi"})
        manager.clear_debounce_timer()

        up = await manager.force_upload_to_backend()
        assert up.action is SyncAction.UPLOADED
        await manager.clear_all_private_data()

        down = await manager.force_download_from_backend()
        assert down.action is SyncAction.DOWNLOADED
        assert (await manager.read_private_data(PHRASE)).data == {"note": "hi"}

        merged = await manager.force_merge_with_backend()
        assert merged.action is SyncAction.MERGED

    async def test_sync_disabled_without_private(self, make_manager):
        manager = make_manager(owner_id=None, use_private_data=False)
        result = await manager.sync()
        assert result.success
        assert result.action is SyncAction.NO_ACTION
        assert result.details == "private data operations are disabled"


@pytest.mark.asyncio
class TestMaintenance:
    async def test_clean_up_expires_stale(self, manager, clock):
        await manager.create_private_data({"text": "old"}, "old")
        await manager.create_public_data({"text": "old"}, lambda: "old")
        clock.advance(8 * DAY_MS)
        await manager.create_private_data({"text": "new"}, "new")

        report = await manager.clean_up()
        assert report.success
        assert report.expired_private == 1
        assert report.expired_public == 1
        assert (await manager.get_all_private_data()).data == ["new"]

    async def test_stats(self, manager, clock):
        await manager.create_private_data({"text": "old"}, "old")
        await manager.create_public_data({"text": "old"}, lambda: "old")
        clock.advance(8 * DAY_MS)
        await manager.create_private_data({"text": "new"}, "new")

        stats = await manager.get_stats()
        assert stats.total_private_items == 2
        assert stats.total_public_items == 1
        assert stats.expired_private_items == 1
        assert stats.expired_public_items == 1
        assert stats.time_to_live_ms == 7 * DAY_MS

    async def test_clear_all_private_data(self, manager, make_manager):
        other = make_manager(owner_id=OTHER_OWNER)
        await manager.create_private_data(PHRASE, "mine")
        await other.create_private_data(PHRASE, "theirs")

        result = await manager.clear_all_private_data(not_owner=True)
        assert result.deleted_count == 1
        assert await manager.has_private_data(PHRASE)
        assert not await other.has_private_data(PHRASE)

        result = await manager.clear_all_private_data()
        assert result.deleted_count == 1
        assert not await manager.has_private_data(PHRASE)

    async def test_clear_for_parent_arms_sync(self, make_manager, scheduler):
        first = make_manager(parent_id="p1", use_parent_id=True)
        second = make_manager(parent_id="p2", use_parent_id=True)
        await first.create_private_data({"text": "a"}, "A")
        await second.create_private_data({"text": "b"}, "B")
        scheduler.cancel_all()

        result = await first.clear_all_private_data_for_parent()
        assert result.deleted_count == 1
        assert scheduler.pending("message")
        assert (await first.get_all_private_data()).data == ["B"]

    async def test_clear_orphaned_data(self, make_manager):
        learners = make_manager(data_type="learner")
        messages = make_manager(parent_id="p1", use_parent_id=True)
        orphans = make_manager(parent_id="gone", use_parent_id=True)

        await learners.create_private_data_by_key("p1", {"name": "Ana"})
        await messages.create_private_data({"text": "a"}, "A")
        await orphans.create_private_data({"text": "b"}, "B")

        result = await messages.clear_orphaned_data()
        assert result.success
        assert result.deleted_count == 1
        assert await messages.has_private_data({"text": "a"})
        assert not await orphans.has_private_data({"text": "b"})

    async def test_deleting_last_parent_orphans_children(self, make_manager):
        learners = make_manager(data_type="learner")
        ana = {"name": "ana"}
        messages = make_manager(parent_id=input_id(ana), use_parent_id=True)

        await learners.create_private_data(ana, ana)
        await messages.create_private_data({"text": "hi"}, {"body": "hi"})
        await learners.delete_data(ana)

        result = await messages.clear_orphaned_data()
        assert result.deleted_count == 1
        assert (await messages.get_all_private_data()).data == []

    async def test_clear_public_and_metadata(self, manager):
        await manager.create_public_data(PHRASE, lambda: "x")
        await manager.create_private_data(PHRASE, "y")
        manager.clear_debounce_timer()
        await manager.sync()

        assert (await manager.clear_all_public_data()).deleted_count == 1
        assert (await manager.clear_all_metadata()).deleted_count >= 1
        assert manager.engine.counter.get() == 0

    async def test_clear_entire_database(self, manager):
        await manager.create_public_data(PHRASE, lambda: "x")
        await manager.create_private_data(PHRASE, "y")
        result = await manager.clear_entire_database()
        assert result.deleted_count == 2
        assert not await manager.exists(PHRASE)

    async def test_force_recreate_database(self, manager, store):
        await manager.create_private_data(PHRASE, "y")
        await manager.force_recreate_database()
        assert not store.db_path.exists()
        assert not await manager.has_private_data(PHRASE)

    async def test_aclose_cancels_timer(self, manager, scheduler):
        await manager.create_private_data(PHRASE, "y")
        await manager.aclose()
        assert not scheduler.pending("message")
