"""Declarative payload validation.

A payload is valid when none of its checked fields is blank. Blank means
``None``, the empty string, an empty list, or a list holding a falsy item.
By default every field present in the payload is checked; a schema with an
explicit ``required`` tuple checks exactly those fields, and a missing
required field is a problem too.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from snapsync.errors import ValidationError


def _as_mapping(payload: Any) -> Mapping[str, Any] | None:
    if isinstance(payload, BaseModel):
        return payload.model_dump()
    if isinstance(payload, Mapping):
        return payload
    return None


def _blank_reason(value: Any) -> str | None:
    if value is None:
        return "is null"
    if isinstance(value, str) and value == "":
        return "is an empty string"
    if isinstance(value, (list, tuple)):
        if not value:
            return "is an empty list"
        for i, item in enumerate(value):
            if not item:
                return f"has an empty item at index {i}"
    return None


@dataclass(frozen=True)
class PayloadSchema:
    """Required-field constraints for the payloads of one dataset."""

    required: tuple[str, ...] | None = None

    def problems(self, payload: Any) -> list[str]:
        if payload is None:
            return ["payload is null"]

        fields = _as_mapping(payload)
        if fields is None:
            reason = _blank_reason(payload)
            return [f"payload {reason}"] if reason else []

        names = self.required if self.required is not None else tuple(fields)
        problems = []
        for name in names:
            if name not in fields:
                problems.append(f"{name} is missing")
                continue
            reason = _blank_reason(fields[name])
            if reason:
                problems.append(f"{name} {reason}")
        return problems

    def is_valid(self, payload: Any) -> bool:
        return not self.problems(payload)

    def check(self, payload: Any) -> None:
        """Raise ``ValidationError`` listing every blank field."""
        problems = self.problems(payload)
        if problems:
            raise ValidationError(
                "invalid payload: " + "; ".join(problems), problems
            )


# checks every present field
DEFAULT_SCHEMA = PayloadSchema()
