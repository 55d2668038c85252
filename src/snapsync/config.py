"""Configuration for a data manager.

Environment variables:
    SNAPSYNC_DATA_DIR: Directory of the local store (see snapsync.paths)
    SNAPSYNC_TTL_DAYS: Days a record may go unread before expiry (default 7)
    SNAPSYNC_DEBOUNCE_SECONDS: Quiet period before a debounced sync (default 1)
    SNAPSYNC_MARKER_SCOPE: "owner" (default) or "dataset"
    SNAPSYNC_REMOTE_URL / SNAPSYNC_REMOTE_TOKEN: used by
        HttpBlobStore.from_env()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from snapsync.errors import ConfigurationError
from snapsync.validation import DEFAULT_SCHEMA, PayloadSchema

ENV_TTL_DAYS = "SNAPSYNC_TTL_DAYS"
ENV_DEBOUNCE_SECONDS = "SNAPSYNC_DEBOUNCE_SECONDS"
ENV_MARKER_SCOPE = "SNAPSYNC_MARKER_SCOPE"

DEFAULT_TTL_DAYS = 7.0
DEFAULT_DEBOUNCE_SECONDS = 1.0

MARKER_SCOPES = ("owner", "dataset")

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class Dataset:
    data_type: str
    public_prefix: str
    private_prefix: str


# Datasets known to the application. Each is isolated from the others.
DATASETS: dict[str, Dataset] = {
    d.data_type: d
    for d in (
        Dataset("message", "public/messages", "private/messages"),
        Dataset(
            "conversation", "public/conversations", "private/conversations"
        ),
        Dataset("learner", "public/learners", "private/learners"),
        Dataset(
            "sentence-help", "public/sentence-help", "private/sentence-help"
        ),
        Dataset(
            "sentence-info", "public/sentence-info", "private/sentence-info"
        ),
        Dataset("vocab-help", "public/vocab-help", "private/vocab-help"),
        Dataset("vocab-info", "public/vocab-info", "private/vocab-info"),
        Dataset("voices-ai", "public/voices-ai", "private/voices-ai"),
        Dataset("voices-user", "public/voices-user", "private/voices-user"),
        Dataset("news", "public/news", "private/news"),
        Dataset(
            "transliteration",
            "public/transliteration",
            "private/transliteration",
        ),
    )
}

# Dataset whose records are the valid parents of every other dataset
PARENT_DATA_TYPE = "learner"


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name, "")
    if not val:
        return default
    try:
        return float(val)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got {val!r}"
        ) from e


def _env_marker_scope() -> str:
    return os.environ.get(ENV_MARKER_SCOPE, "owner").lower() or "owner"


@dataclass
class ManagerConfig:
    """Settings of one data manager: one dataset, one owner.

    ``use_remote_public`` dual-writes public data to the remote store and
    enables the remote fallback on public reads. ``merge_foreign_changes``
    merges instead of downloading when another device owns the marker.
    """

    data_type: str
    owner_id: str | None = None
    parent_id: str | None = None
    public_prefix: str | None = None
    private_prefix: str | None = None
    use_parent_id: bool = False
    use_public_data: bool = True
    use_private_data: bool = True
    use_remote_public: bool = False
    merge_foreign_changes: bool = False
    parent_data_type: str = PARENT_DATA_TYPE
    schema: PayloadSchema = DEFAULT_SCHEMA
    data_dir: Path | None = None
    ttl_days: float = field(
        default_factory=lambda: _env_float(ENV_TTL_DAYS, DEFAULT_TTL_DAYS)
    )
    debounce_seconds: float = field(
        default_factory=lambda: _env_float(
            ENV_DEBOUNCE_SECONDS, DEFAULT_DEBOUNCE_SECONDS
        )
    )
    marker_scope: str = field(default_factory=_env_marker_scope)

    def __post_init__(self) -> None:
        known = DATASETS.get(self.data_type)
        if self.public_prefix is None and known is not None:
            self.public_prefix = known.public_prefix
        if self.private_prefix is None and known is not None:
            self.private_prefix = known.private_prefix
        if self.public_prefix:
            self.public_prefix = self.public_prefix.rstrip("/")
        if self.private_prefix:
            self.private_prefix = self.private_prefix.rstrip("/")
        self.validate()

    @classmethod
    def for_dataset(cls, data_type: str, **kwargs) -> ManagerConfig:
        """Build a config for a dataset listed in ``DATASETS``."""
        if data_type not in DATASETS:
            raise ConfigurationError(f"unknown dataset: {data_type}")
        return cls(data_type=data_type, **kwargs)

    def validate(self) -> None:
        if not self.data_type:
            raise ConfigurationError("data_type is required")
        if self.use_parent_id and not self.parent_id:
            raise ConfigurationError(
                "parent_id is required when use_parent_id is set"
            )
        if self.use_private_data and not self.owner_id:
            raise ConfigurationError(
                "owner_id is required when private data is enabled"
            )
        if not self.use_public_data and not self.use_private_data:
            raise ConfigurationError(
                "public and private data cannot both be disabled"
            )
        if self.use_remote_public and not self.use_public_data:
            raise ConfigurationError(
                "use_remote_public requires public data to be enabled"
            )
        if self.use_public_data and not self.public_prefix:
            raise ConfigurationError(
                "public_prefix is required when public data is enabled"
            )
        if self.use_private_data and not self.private_prefix:
            raise ConfigurationError(
                "private_prefix is required when private data is enabled"
            )
        if self.ttl_days <= 0:
            raise ConfigurationError("ttl_days must be positive")
        if self.debounce_seconds < 0:
            raise ConfigurationError("debounce_seconds cannot be negative")
        if self.marker_scope not in MARKER_SCOPES:
            raise ConfigurationError(
                f"marker_scope must be one of {MARKER_SCOPES}, "
                f"got {self.marker_scope!r}"
            )

    @property
    def ttl_ms(self) -> int:
        return int(self.ttl_days * DAY_MS)

    @property
    def parent_key(self) -> str:
        """Value written to ``Record.parent_id`` for new private records."""
        if self.use_parent_id and self.parent_id:
            return self.parent_id
        return ""
