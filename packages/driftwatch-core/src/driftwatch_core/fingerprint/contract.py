"""Canonical Fingerprint Contract: record -> (key, fingerprint).

Each participating service supplies a contract for the shared entity. The
engine only needs two things from it: the same logical state always yields
the same fingerprint, and both sides normalize equivalently. The ruleset tag
travels with every tree so that a normalization skew between the two sides
is reported as a RulesetMismatch instead of as mass drift.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from driftwatch_core.fingerprint.canonical import dumps_canonical, format_datetime_canonical
from driftwatch_core.mst.models import Leaf, NondeterministicFingerprintError


@runtime_checkable
class FingerprintContract(Protocol):
    """Maps a raw record to its Leaf under a named, versioned ruleset."""

    @property
    def ruleset_tag(self) -> str: ...

    def fingerprint(self, record: Mapping[str, Any]) -> Leaf: ...


# ── Normalizers ──────────────────────────────────────────────────────

Normalizer = Callable[[Any], Any]

_TRUE = {"true", "t", "yes", "y", "1"}
_FALSE = {"false", "f", "no", "n", "0"}


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _to_iso_datetime(value: Any) -> str:
    if isinstance(value, datetime):
        return format_datetime_canonical(value)
    return format_datetime_canonical(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _decimal(places: int) -> Normalizer:
    quantum = Decimal(1).scaleb(-places)

    def normalize(value: Any) -> str:
        try:
            return str(Decimal(str(value).strip()).quantize(quantum, rounding=ROUND_HALF_EVEN))
        except InvalidOperation as e:
            raise ValueError(f"not a decimal: {value!r}") from e

    return normalize


NORMALIZERS: dict[str, Normalizer] = {
    "strip": lambda v: str(v).strip(),
    "lower": lambda v: str(v).lower(),
    "casefold": lambda v: str(v).casefold(),
    "collapse_whitespace": lambda v: " ".join(str(v).split()),
    "int": lambda v: int(str(v).strip()),
    "bool": _to_bool,
    "iso_datetime": _to_iso_datetime,
}


def resolve_normalizer(name: str) -> Normalizer:
    """Look up a normalizer by name; ``decimal:N`` rounds to N places."""
    if name.startswith("decimal:"):
        places = name.split(":", 1)[1]
        if not places.isdigit():
            raise ValueError(f"decimal normalizer needs a place count, got {name!r}")
        return _decimal(int(places))
    try:
        return NORMALIZERS[name]
    except KeyError:
        raise ValueError(f"unknown normalizer {name!r}") from None


# ── Ruleset ──────────────────────────────────────────────────────────


class Ruleset(BaseModel):
    """Which fields both services compare, in which order, normalized how."""

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    key_field: str = "id"
    fields: list[str] = Field(min_length=1)
    normalize: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("fields")
    @classmethod
    def validate_fields(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("fields must not repeat")
        return v

    @model_validator(mode="after")
    def validate_normalizers(self) -> Ruleset:
        for field_name, names in self.normalize.items():
            if field_name not in self.fields:
                raise ValueError(f"normalizer given for unknown field {field_name!r}")
            for name in names:
                resolve_normalizer(name)
        return self

    @property
    def tag(self) -> str:
        return f"{self.name}@{self.version}"

    @classmethod
    def load(cls, path: Path) -> Ruleset:
        """Read a ruleset from a YAML file."""
        try:
            raw = yaml.safe_load(path.read_text())
            return cls.model_validate(raw or {})
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e
        except ValidationError as e:
            raise ValueError(f"Invalid ruleset in {path}: {e}") from e


class RulesetContract:
    """Reference contract: normalize the ruleset's fields, then SHA-256 them.

    The hashed payload is the list of ``[field, value]`` pairs in ruleset
    order, serialized with dumps_canonical. Fields missing from a record
    hash as null.
    """

    def __init__(self, ruleset: Ruleset) -> None:
        self.ruleset = ruleset
        self._pipelines: dict[str, list[Normalizer]] = {
            f: [resolve_normalizer(n) for n in ruleset.normalize.get(f, [])] for f in ruleset.fields
        }

    @property
    def ruleset_tag(self) -> str:
        return self.ruleset.tag

    def extract_key(self, record: Mapping[str, Any]) -> int:
        try:
            raw = record[self.ruleset.key_field]
        except KeyError:
            raise ValueError(f"record has no key field {self.ruleset.key_field!r}") from None
        if isinstance(raw, bool) or not isinstance(raw, (int, str)):
            raise ValueError(f"key must be an integer, got {raw!r}")
        key = int(raw)
        if key < 0:
            raise ValueError(f"key must be non-negative, got {key}")
        return key

    def canonical_payload(self, record: Mapping[str, Any]) -> str:
        pairs = []
        for field_name in self.ruleset.fields:
            value = record.get(field_name)
            if value is not None:
                for normalize in self._pipelines[field_name]:
                    value = normalize(value)
            pairs.append([field_name, value])
        return dumps_canonical(pairs)

    def fingerprint(self, record: Mapping[str, Any]) -> Leaf:
        key = self.extract_key(record)
        digest = hashlib.sha256(self.canonical_payload(record).encode("utf-8")).digest()
        return Leaf(key, digest)


def check_deterministic(
    contract: FingerprintContract,
    records: Iterable[Mapping[str, Any]],
    rounds: int = 2,
) -> None:
    """Fingerprint every record *rounds* times; raise if any result differs."""
    for record in records:
        first = contract.fingerprint(record)
        for _ in range(rounds - 1):
            if contract.fingerprint(record) != first:
                raise NondeterministicFingerprintError(first.key)
