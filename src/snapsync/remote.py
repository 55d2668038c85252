"""Remote object store access.

``BlobStore`` is the path-addressed backend interface; three backends ship
with snapsync:

- ``MemoryBlobStore``: in-process dict, for tests and single-process use
- ``DirectoryBlobStore``: files under a root directory
- ``HttpBlobStore``: GET/PUT/DELETE against an HTTP object store (aiohttp)

``RemoteStorage`` sits on top of a backend and speaks the JSON envelopes:
public documents, private snapshots and device markers.

Error mapping is the same for every backend: a missing object is ``None``,
``AccessDeniedError`` propagates unchanged, and any other failure is logged
and raised as ``TransientRemoteError``.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import aiohttp
import structlog

from snapsync.errors import (
    AccessDeniedError,
    ConfigurationError,
    RemoteError,
    TransientRemoteError,
)
from snapsync.models import DeviceMarker, Snapshot
from snapsync.validation import PayloadSchema

logger = structlog.get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"

ENV_REMOTE_URL = "SNAPSYNC_REMOTE_URL"
ENV_REMOTE_TOKEN = "SNAPSYNC_REMOTE_TOKEN"


def _check_path(path: str) -> str:
    path = path.strip("/")
    if not path or any(part in ("", ".", "..") for part in path.split("/")):
        raise ValueError(f"invalid remote path: {path!r}")
    return path


# =============================================================================
# Backends
# =============================================================================


class BlobStore(ABC):
    """Path-addressed blob storage."""

    @abstractmethod
    async def get(self, path: str) -> bytes | None:
        """Fetch a blob; ``None`` when it does not exist."""

    @abstractmethod
    async def put(
        self, path: str, data: bytes, content_type: str = JSON_CONTENT_TYPE
    ) -> None:
        """Create or replace a blob."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a blob; deleting a missing blob is not an error."""

    async def close(self) -> None:
        pass


class MemoryBlobStore(BlobStore):
    """Blobs in a dict.

    Several managers sharing one instance behave like several devices
    sharing a bucket. ``fail_next`` queues exceptions raised by the next
    calls, for exercising error paths.
    """

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: list[tuple[str | None, Exception]] = []

    def fail_next(
        self, exc: Exception, op: str | None = None, times: int = 1
    ) -> None:
        """Raise ``exc`` from the next ``times`` calls (of ``op`` if given)."""
        self._failures.extend([(op, exc)] * times)

    def _maybe_fail(self, op: str) -> None:
        for i, (fail_op, exc) in enumerate(self._failures):
            if fail_op is None or fail_op == op:
                del self._failures[i]
                raise exc

    async def get(self, path: str) -> bytes | None:
        path = _check_path(path)
        self.calls.append(("get", path))
        self._maybe_fail("get")
        return self.blobs.get(path)

    async def put(
        self, path: str, data: bytes, content_type: str = JSON_CONTENT_TYPE
    ) -> None:
        path = _check_path(path)
        self.calls.append(("put", path))
        self._maybe_fail("put")
        self.blobs[path] = bytes(data)
        self.content_types[path] = content_type

    async def delete(self, path: str) -> None:
        path = _check_path(path)
        self.calls.append(("delete", path))
        self._maybe_fail("delete")
        self.blobs.pop(path, None)
        self.content_types.pop(path, None)


class DirectoryBlobStore(BlobStore):
    """Blobs as files under ``root``; writes replace atomically."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _file(self, path: str) -> Path:
        return self.root / _check_path(path)

    def _read(self, path: str) -> bytes | None:
        try:
            return self._file(path).read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: str, data: bytes) -> None:
        target = self._file(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _remove(self, path: str) -> None:
        self._file(path).unlink(missing_ok=True)

    async def get(self, path: str) -> bytes | None:
        try:
            return await asyncio.to_thread(self._read, path)
        except PermissionError as e:
            raise AccessDeniedError(str(e), path) from e

    async def put(
        self, path: str, data: bytes, content_type: str = JSON_CONTENT_TYPE
    ) -> None:
        try:
            await asyncio.to_thread(self._write, path, data)
        except PermissionError as e:
            raise AccessDeniedError(str(e), path) from e

    async def delete(self, path: str) -> None:
        try:
            await asyncio.to_thread(self._remove, path)
        except PermissionError as e:
            raise AccessDeniedError(str(e), path) from e


class HttpBlobStore(BlobStore):
    """Object store over HTTP: ``{base_url}/{path}`` with a bearer token.

    404 means not found, 401/403 raise ``AccessDeniedError``, any other
    non-2xx status or client error raises ``TransientRemoteError``.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_env(cls) -> HttpBlobStore:
        """Build from SNAPSYNC_REMOTE_URL and SNAPSYNC_REMOTE_TOKEN."""
        url = os.environ.get(ENV_REMOTE_URL, "")
        if not url:
            raise ConfigurationError(f"{ENV_REMOTE_URL} is not set")
        return cls(url, os.environ.get(ENV_REMOTE_TOKEN, ""))

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{_check_path(path)}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    @staticmethod
    async def _raise_for_status(resp: aiohttp.ClientResponse, path: str):
        if resp.status in (401, 403):
            raise AccessDeniedError(
                f"access denied ({resp.status}) for {path}", path
            )
        if resp.status >= 400:
            body = await resp.text()
            raise TransientRemoteError(
                f"remote returned {resp.status} for {path}: {body[:100]}",
                path,
            )

    async def get(self, path: str) -> bytes | None:
        session = await self._get_session()
        try:
            async with session.get(
                self._url(path), headers=self._headers()
            ) as resp:
                if resp.status == 404:
                    return None
                await self._raise_for_status(resp, path)
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRemoteError(f"GET {path} failed: {e}", path) from e

    async def put(
        self, path: str, data: bytes, content_type: str = JSON_CONTENT_TYPE
    ) -> None:
        session = await self._get_session()
        headers = {**self._headers(), "Content-Type": content_type}
        try:
            async with session.put(
                self._url(path), data=data, headers=headers
            ) as resp:
                await self._raise_for_status(resp, path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRemoteError(f"PUT {path} failed: {e}", path) from e

    async def delete(self, path: str) -> None:
        session = await self._get_session()
        try:
            async with session.delete(
                self._url(path), headers=self._headers()
            ) as resp:
                if resp.status == 404:
                    return
                await self._raise_for_status(resp, path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRemoteError(
                f"DELETE {path} failed: {e}", path
            ) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


# =============================================================================
# Facade
# =============================================================================


class RemoteStorage:
    """JSON envelopes over a ``BlobStore``."""

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    async def get_blob(self, path: str) -> bytes | None:
        try:
            return await self.blobs.get(path)
        except AccessDeniedError:
            raise
        except (RemoteError, OSError) as e:
            logger.warning("remote get failed for %s: %s", path, e)
            raise TransientRemoteError(str(e), path) from e

    async def put_blob(
        self, path: str, data: bytes, content_type: str = JSON_CONTENT_TYPE
    ) -> None:
        try:
            await self.blobs.put(path, data, content_type)
        except AccessDeniedError:
            raise
        except (RemoteError, OSError) as e:
            logger.warning("remote put failed for %s: %s", path, e)
            raise TransientRemoteError(str(e), path) from e

    async def delete_blob(self, path: str) -> None:
        try:
            await self.blobs.delete(path)
        except AccessDeniedError:
            raise
        except (RemoteError, OSError) as e:
            logger.warning("remote delete failed for %s: %s", path, e)
            raise TransientRemoteError(str(e), path) from e

    async def get_json(self, path: str) -> Any | None:
        data = await self.get_blob(path)
        if data is None:
            return None
        try:
            return json.loads(data)
        except ValueError as e:
            logger.warning("remote object %s is not valid JSON: %s", path, e)
            raise TransientRemoteError(
                f"invalid JSON at {path}: {e}", path
            ) from e

    async def put_json(
        self,
        path: str,
        obj: Any,
        schema: PayloadSchema | None = None,
    ) -> None:
        """Upload ``obj`` as JSON; a schema refuses blank payloads."""
        if schema is not None:
            schema.check(obj)
        data = json.dumps(obj, ensure_ascii=False).encode("utf-8")
        await self.put_blob(path, data, JSON_CONTENT_TYPE)

    async def get_snapshot(self, path: str) -> Snapshot | None:
        raw = await self.get_json(path)
        if raw is None:
            return None
        try:
            return Snapshot.model_validate(raw)
        except ValueError as e:
            raise TransientRemoteError(
                f"invalid snapshot at {path}: {e}", path
            ) from e

    async def put_snapshot(self, path: str, snapshot: Snapshot) -> None:
        await self.put_json(
            path, snapshot.model_dump(mode="json", by_alias=True)
        )
        logger.debug(
            "uploaded snapshot %s with %d records", path, snapshot.total
        )

    async def get_marker(self, path: str) -> DeviceMarker | None:
        """Read the device marker; a marker missing a field counts as absent."""
        raw = await self.get_json(path)
        if not isinstance(raw, dict):
            return None
        try:
            marker = DeviceMarker.model_validate(raw)
        except ValueError:
            logger.warning("ignoring malformed device marker at %s", path)
            return None
        return marker if marker.is_present else None

    async def put_marker(self, path: str, marker: DeviceMarker) -> None:
        await self.put_json(path, marker.model_dump(by_alias=True))

    async def close(self) -> None:
        await self.blobs.close()
