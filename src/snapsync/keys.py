"""Keying and hashing layer for snapsync.

Provides canonical content hashing and key string constructors for:
- input ids: sha256 hex of the stable JSON form of an input object
- public keys: {public_prefix}/{input_id}
- private keys: {private_prefix}/{owner_hash}/{input_id}
- snapshot paths: private/snapshot/{owner_hash}/{data_type}.json
- device markers: public/metadata/deviceKey/[{owner_hash}/]{data_type}.json
- metadata keys: deviceKey:{data_type}, lastUpdated:{data_type}:{owner_hash}
"""

import hashlib
import json
from typing import Any

SNAPSHOT_ROOT = "private/snapshot"
MARKER_ROOT = "public/metadata/deviceKey"


def stable_stringify(obj: Any) -> str:
    """Serialize ``obj`` to JSON with object keys sorted at every level.

    Two inputs that are equal as mappings always produce the same string,
    regardless of insertion order.
    """
    if isinstance(obj, dict):
        items = sorted(obj.items(), key=lambda kv: str(kv[0]))
        return (
            "{"
            + ",".join(
                json.dumps(str(k), ensure_ascii=False)
                + ":"
                + stable_stringify(v)
                for k, v in items
            )
            + "}"
        )
    if isinstance(obj, (list, tuple)):
        return "[" + ",".join(stable_stringify(v) for v in obj) + "]"
    return json.dumps(obj, ensure_ascii=False)


def sha256_hex(text: str) -> str:
    """Hex SHA-256 of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_input(obj: Any) -> str:
    """Content hash of an application input object."""
    return sha256_hex(stable_stringify(obj))


def input_id(value: Any) -> str:
    """Resolve the input id of an input object or of an existing key.

    Strings are treated as keys (or bare ids): the last path segment is the
    id. Anything else is hashed.
    """
    if isinstance(value, str):
        return value.rsplit("/", 1)[-1]
    return hash_input(value)


def owner_hash(owner_id: str) -> str:
    """Opaque per-owner path component."""
    return sha256_hex(owner_id)


def public_key(public_prefix: str, value: Any) -> str:
    """Construct a public key.

    Format: {public_prefix}/{input_id}
    """
    return f"{public_prefix}/{input_id(value)}"


def private_key(private_prefix: str, owner_id: str, value: Any) -> str:
    """Construct a private key.

    Format: {private_prefix}/{sha256(owner_id)}/{input_id}
    """
    return f"{private_prefix}/{owner_hash(owner_id)}/{input_id(value)}"


def snapshot_path(owner_id: str, data_type: str) -> str:
    """Remote path of the private snapshot for one owner and dataset."""
    return f"{SNAPSHOT_ROOT}/{owner_hash(owner_id)}/{data_type}.json"


def marker_path(data_type: str, owner_id: str | None = None) -> str:
    """Remote path of the device marker.

    With ``owner_id`` the marker is scoped per owner, otherwise it is shared
    by every owner of the dataset.
    """
    if owner_id is None:
        return f"{MARKER_ROOT}/{data_type}.json"
    return f"{MARKER_ROOT}/{owner_hash(owner_id)}/{data_type}.json"


def device_key(data_type: str) -> str:
    """Construct the metadata key of the device identity.

    Format: deviceKey:{data_type}
    """
    return f"deviceKey:{data_type}"


def last_updated_key(data_type: str, owner_id: str) -> str:
    """Construct the metadata key of the last-updated counter.

    Format: lastUpdated:{data_type}:{owner_hash}
    """
    return f"lastUpdated:{data_type}:{owner_hash(owner_id)}"
