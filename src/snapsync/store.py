"""LMDB-backed local store for snapsync.

Three partitions hold msgpack-encoded record dicts keyed by record key:

- public: shared content, indexed by data_type and last_read
- private: per-owner records, indexed by data_type, owner_id, last_read
- metadata: device identities and counters, same indexes as private

Index sub-databases map composite keys (``value \\0 record-key``) to an
empty value, so a prefix scan over one index value yields the matching
record keys. The ``last_read`` index uses big-endian u64 timestamps so a
cursor walk from the start visits records oldest first.

The environment is opened lazily. Any ``lmdb.Error`` during an operation
closes it, re-opens it and retries the operation once; a second failure
raises ``StoreUnavailableError``.
"""

from __future__ import annotations

import shutil
import struct
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, TypeVar

import lmdb
import msgpack
import structlog

from snapsync.errors import StoreUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Bumping this drops every partition on the next open.
SCHEMA_VERSION = 7

PUBLIC = "public"
PRIVATE = "private"
METADATA = "metadata"
PARTITIONS = (PUBLIC, PRIVATE, METADATA)

# Index name -> record field it is built from
_INDEX_FIELDS = {
    "by_type": "data_type",
    "by_owner": "owner_id",
    "by_last_read": "last_read",
}

_PARTITION_INDEXES: dict[str, tuple[str, ...]] = {
    PUBLIC: ("by_type", "by_last_read"),
    PRIVATE: ("by_type", "by_owner", "by_last_read"),
    METADATA: ("by_type", "by_owner", "by_last_read"),
}

_SCHEMA_VERSION_KEY = b"schema_version"


# =============================================================================
# Key Encoding Utilities
# =============================================================================


def _pack_u64(val: int) -> bytes:
    """Pack u64 as big-endian for lexicographic ordering."""
    return struct.pack(">Q", max(0, int(val)))


def _unpack_u64(data: bytes) -> int:
    """Unpack big-endian u64."""
    return struct.unpack(">Q", data)[0]


def _encode_part(p: str | int | bytes) -> bytes:
    if isinstance(p, bytes):
        return p
    if isinstance(p, int):
        return _pack_u64(p)
    return p.encode("utf-8")


def _composite_key(*parts: str | int | bytes) -> bytes:
    """Create composite key with null-separated parts."""
    return b"\x00".join(_encode_part(p) for p in parts)


def _index_db_name(partition: str, index: str) -> bytes:
    return f"{partition}_{index}".encode()


# =============================================================================
# LMDB Store Implementation
# =============================================================================


class LocalStore:
    """Versioned, indexed, partitioned record store on LMDB."""

    _DBS = [
        b"meta",  # schema_version -> u64
        b"public",  # key -> PublicRecord
        b"public_by_type",  # data_type|key -> ""
        b"public_by_last_read",  # last_read(u64)|key -> ""
        b"private",  # key -> Record
        b"private_by_type",  # data_type|key -> ""
        b"private_by_owner",  # owner_id|key -> ""
        b"private_by_last_read",  # last_read(u64)|key -> ""
        b"metadata",  # key -> MetadataRecord
        b"metadata_by_type",  # data_type|key -> ""
        b"metadata_by_owner",  # owner_id|key -> ""
        b"metadata_by_last_read",  # last_read(u64)|key -> ""
    ]

    def __init__(
        self,
        db_path: Path,
        map_size: int = 1024**3,  # 1GB default
    ):
        self.db_path = Path(db_path)
        self.map_size = map_size
        self.env: lmdb.Environment | None = None
        self._dbs: dict[bytes, Any] = {}

    # =========================================================================
    # Environment lifecycle
    # =========================================================================

    def _open(self) -> lmdb.Environment:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        env = lmdb.open(
            str(self.db_path),
            map_size=self.map_size,
            max_dbs=len(self._DBS) + 4,  # some headroom
            metasync=False,
        )
        dbs: dict[bytes, Any] = {}
        with env.begin(write=True) as txn:
            for name in self._DBS:
                dbs[name] = env.open_db(name, txn=txn)

            meta = dbs[b"meta"]
            stored = txn.get(_SCHEMA_VERSION_KEY, db=meta)
            if stored is not None and _unpack_u64(stored) != SCHEMA_VERSION:
                logger.warning(
                    "local store schema %d != %d, dropping all partitions",
                    _unpack_u64(stored),
                    SCHEMA_VERSION,
                )
                for name, db in dbs.items():
                    if name != b"meta":
                        txn.drop(db, delete=False)
            txn.put(_SCHEMA_VERSION_KEY, _pack_u64(SCHEMA_VERSION), db=meta)

        self.env = env
        self._dbs = dbs
        logger.debug("opened local store at %s", self.db_path)
        return env

    def _ensure_env(self) -> lmdb.Environment:
        if self.env is None:
            return self._open()
        return self.env

    def _db(self, name: bytes) -> Any:
        """Get sub-database handle."""
        return self._dbs[name]

    def _reset(self) -> None:
        if self.env is not None:
            try:
                self.env.close()
            except lmdb.Error:
                logger.debug("error closing broken environment", exc_info=True)
        self.env = None
        self._dbs = {}

    def _call(self, fn: Callable[[lmdb.Environment], T]) -> T:
        """Run ``fn`` against the environment, re-opening once on failure."""
        try:
            return fn(self._ensure_env())
        except lmdb.Error as e:
            logger.warning("local store error, re-opening: %s", e)
            self._reset()
        try:
            return fn(self._ensure_env())
        except lmdb.Error as e:
            self._reset()
            raise StoreUnavailableError(
                f"local store unavailable at {self.db_path}: {e}"
            ) from e

    def _read(self, fn: Callable[[lmdb.Transaction], T]) -> T:
        def run(env: lmdb.Environment) -> T:
            with env.begin() as txn:
                return fn(txn)

        return self._call(run)

    def _write(self, fn: Callable[[lmdb.Transaction], T]) -> T:
        def run(env: lmdb.Environment) -> T:
            with env.begin(write=True) as txn:
                return fn(txn)

        return self._call(run)

    def close(self) -> None:
        """Close the LMDB environment. The next operation re-opens it."""
        if self.env is not None:
            self.env.close()
        self.env = None
        self._dbs = {}

    def destroy(self) -> None:
        """Delete the whole store from disk."""
        self.close()
        if self.db_path.exists():
            shutil.rmtree(self.db_path)
        logger.info("deleted local store at %s", self.db_path)

    # =========================================================================
    # Index maintenance
    # =========================================================================

    def _index_keys(
        self, partition: str, value: dict[str, Any]
    ) -> list[tuple[bytes, bytes]]:
        key = value["key"]
        out = []
        for index in _PARTITION_INDEXES[partition]:
            field_value = value.get(_INDEX_FIELDS[index])
            if index == "by_last_read":
                field_value = int(field_value or 0)
            elif field_value is None:
                field_value = ""
            out.append(
                (
                    _index_db_name(partition, index),
                    _composite_key(field_value, key),
                )
            )
        return out

    def _remove_indexes(
        self, txn: lmdb.Transaction, partition: str, data: bytes
    ) -> None:
        old = msgpack.unpackb(data)
        for db_name, index_key in self._index_keys(partition, old):
            txn.delete(index_key, db=self._db(db_name))

    # =========================================================================
    # Record operations
    # =========================================================================

    def get(self, partition: str, key: str) -> dict[str, Any] | None:
        """Get a record dict by primary key."""

        def op(txn: lmdb.Transaction) -> dict[str, Any] | None:
            data = txn.get(key.encode("utf-8"), db=self._db(partition.encode()))
            if data is None:
                return None
            return msgpack.unpackb(data)

        return self._read(op)

    def put(self, partition: str, value: dict[str, Any]) -> None:
        """Insert or replace a record dict, keeping indexes in step."""
        primary = value["key"].encode("utf-8")
        packed = msgpack.packb(value)

        def op(txn: lmdb.Transaction) -> None:
            db = self._db(partition.encode())
            old = txn.get(primary, db=db)
            if old is not None:
                self._remove_indexes(txn, partition, old)
            txn.put(primary, packed, db=db)
            for db_name, index_key in self._index_keys(partition, value):
                txn.put(index_key, b"", db=self._db(db_name))

        self._write(op)

    def put_many(self, partition: str, values: list[dict[str, Any]]) -> None:
        """Insert or replace several records in one transaction."""
        packed = [(v, msgpack.packb(v)) for v in values]

        def op(txn: lmdb.Transaction) -> None:
            db = self._db(partition.encode())
            for value, data in packed:
                primary = value["key"].encode("utf-8")
                old = txn.get(primary, db=db)
                if old is not None:
                    self._remove_indexes(txn, partition, old)
                txn.put(primary, data, db=db)
                for db_name, index_key in self._index_keys(partition, value):
                    txn.put(index_key, b"", db=self._db(db_name))

        self._write(op)

    def delete(self, partition: str, key: str) -> bool:
        """Delete a record. Returns False when it did not exist."""
        primary = key.encode("utf-8")

        def op(txn: lmdb.Transaction) -> bool:
            db = self._db(partition.encode())
            old = txn.get(primary, db=db)
            if old is None:
                return False
            self._remove_indexes(txn, partition, old)
            txn.delete(primary, db=db)
            return True

        return self._write(op)

    def delete_many(self, partition: str, keys: list[str]) -> int:
        """Delete several records in one transaction; returns the count."""

        def op(txn: lmdb.Transaction) -> int:
            db = self._db(partition.encode())
            deleted = 0
            for key in keys:
                primary = key.encode("utf-8")
                old = txn.get(primary, db=db)
                if old is None:
                    continue
                self._remove_indexes(txn, partition, old)
                txn.delete(primary, db=db)
                deleted += 1
            return deleted

        return self._write(op)

    # =========================================================================
    # Scans
    # =========================================================================

    def iter_by_index(
        self, partition: str, index: str, value: str
    ) -> Iterator[dict[str, Any]]:
        """Iterate records whose indexed field equals ``value``."""
        indexes = _PARTITION_INDEXES[partition]
        if index not in indexes or index == "by_last_read":
            raise ValueError(f"{partition} has no equality index {index!r}")
        prefix = _composite_key(value, b"")
        index_db = _index_db_name(partition, index)

        def op(txn: lmdb.Transaction) -> list[dict[str, Any]]:
            out = []
            primary_db = self._db(partition.encode())
            cursor = txn.cursor(db=self._db(index_db))
            if not cursor.set_range(prefix):
                return out
            for key, _ in cursor:
                if not key.startswith(prefix):
                    break
                data = txn.get(key[len(prefix) :], db=primary_db)
                if data is not None:
                    out.append(msgpack.unpackb(data))
            return out

        yield from self._read(op)

    def iter_last_read_before(
        self, partition: str, cutoff: int
    ) -> Iterator[dict[str, Any]]:
        """Iterate records with ``last_read < cutoff``, oldest first."""
        bound = _pack_u64(cutoff)
        index_db = _index_db_name(partition, "by_last_read")

        def op(txn: lmdb.Transaction) -> list[dict[str, Any]]:
            out = []
            primary_db = self._db(partition.encode())
            cursor = txn.cursor(db=self._db(index_db))
            if not cursor.first():
                return out
            for key, _ in cursor:
                if key[:8] >= bound:
                    break
                data = txn.get(key[9:], db=primary_db)
                if data is not None:
                    out.append(msgpack.unpackb(data))
            return out

        yield from self._read(op)

    def iter_all(self, partition: str) -> Iterator[dict[str, Any]]:
        """Iterate every record of a partition."""

        def op(txn: lmdb.Transaction) -> list[dict[str, Any]]:
            cursor = txn.cursor(db=self._db(partition.encode()))
            return [msgpack.unpackb(value) for _, value in cursor]

        yield from self._read(op)

    def count(self, partition: str) -> int:
        """Count records of a partition."""

        def op(txn: lmdb.Transaction) -> int:
            return txn.stat(self._db(partition.encode()))["entries"]

        return self._read(op)
