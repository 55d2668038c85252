import pytest

from snapsync.records import RecordStore
from snapsync.remote import MemoryBlobStore, RemoteStorage
from snapsync.scheduler import SyncScheduler
from snapsync.store import LocalStore


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = LocalStore(tmp_path / "store.lmdb")
    yield s
    s.close()


@pytest.fixture
def records(store):
    return RecordStore(store)


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def remote(blobs):
    return RemoteStorage(blobs)


@pytest.fixture
def scheduler():
    s = SyncScheduler()
    yield s
    s.cancel_all()
