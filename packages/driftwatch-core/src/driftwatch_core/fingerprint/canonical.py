"""Deterministic JSON serialization for fingerprinting.

CRITICAL: output must be byte-identical across runs, processes and hosts,
or both sides of a comparison will report drift that is not there.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel

CANONICAL_JSON_SEPARATORS: tuple[str, str] = (",", ":")


class CanonicalizationError(ValueError):
    """A value has no canonical JSON form."""

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        super().__init__(f"{message} (at {path or '<root>'})")


def format_datetime_canonical(dt: datetime) -> str:
    """ISO-8601 in UTC with a Z suffix; naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond == 0:
        return dt.strftime("%Y-%m-%dT%H:%M:%SZ")
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonicalize_value(value: Any, path: str = "") -> Any:
    """Recursively convert *value* into JSON-ready, deterministic data."""
    if isinstance(value, Enum):
        return canonicalize_value(value.value, path)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(f"non-finite float {value}", path)
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise CanonicalizationError(f"non-finite decimal {value}", path)
        return str(value)
    if isinstance(value, datetime):
        return format_datetime_canonical(value)
    if isinstance(value, BaseModel):
        return canonicalize_value(value.model_dump(mode="json", by_alias=True), path)
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise CanonicalizationError(f"non-string key {k!r}", path)
            out[k] = canonicalize_value(v, f"{path}.{k}" if path else k)
        return out
    if isinstance(value, (list, tuple)):
        return [canonicalize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, bytes):
        return value.hex()
    raise CanonicalizationError(f"cannot canonicalize {type(value).__name__}", path)


def dumps_canonical(obj: Any) -> str:
    """Serialize with sorted keys, no whitespace, and UTF-8 kept as is."""
    return json.dumps(
        canonicalize_value(obj),
        sort_keys=True,
        separators=CANONICAL_JSON_SEPARATORS,
        ensure_ascii=False,
        allow_nan=False,
    )
