"""Tests for canonical serialization and the ruleset contract."""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path

import pytest

from driftwatch_core.fingerprint import (
    CanonicalizationError,
    FingerprintContract,
    Ruleset,
    RulesetContract,
    check_deterministic,
    dumps_canonical,
    resolve_normalizer,
)
from driftwatch_core.mst import Leaf, NondeterministicFingerprintError


class Tier(Enum):
    GOLD = "gold"


# ── Canonical JSON ───────────────────────────────────────────────────


def test_dumps_canonical_sorts_keys_and_strips_whitespace():
    assert dumps_canonical({"b": 1, "a": [1, 2]}) == '{"a":[1,2],"b":1}'


def test_dumps_canonical_keeps_unicode():
    assert dumps_canonical({"name": "Zoë"}) == '{"name":"Zoë"}'


def test_dumps_canonical_converts_rich_types():
    value = {
        "at": datetime(2024, 5, 1, 12, 0, tzinfo=timezone(timedelta(hours=2))),
        "amount": Decimal("10.50"),
        "tier": Tier.GOLD,
        "raw": b"\x01\x02",
    }
    assert dumps_canonical(value) == (
        '{"amount":"10.50","at":"2024-05-01T10:00:00Z","raw":"0102","tier":"gold"}'
    )


def test_naive_datetime_taken_as_utc():
    assert dumps_canonical(datetime(2024, 1, 1, 0, 0, 0, 500)) == '"2024-01-01T00:00:00.000500Z"'


@pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("NaN"), {1: "x"}, object()])
def test_uncanonicalizable_values_rejected(value):
    with pytest.raises(CanonicalizationError):
        dumps_canonical({"v": value})


def test_error_reports_path():
    with pytest.raises(CanonicalizationError) as exc:
        dumps_canonical({"outer": [1, {"bad": float("nan")}]})
    assert exc.value.path == "outer[1].bad"


# ── Normalizers ──────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "name, raw, expected",
    [
        ("strip", "  a ", "a"),
        ("casefold", "STRASSE", "strasse"),
        ("collapse_whitespace", "a   b\tc", "a b c"),
        ("int", " 42 ", 42),
        ("bool", "Yes", True),
        ("bool", "0", False),
        ("decimal:2", "10.005", "10.00"),
        ("decimal:2", 3, "3.00"),
        ("iso_datetime", "2024-05-01T12:00:00+02:00", "2024-05-01T10:00:00Z"),
        ("iso_datetime", "2024-05-01T10:00:00Z", "2024-05-01T10:00:00Z"),
    ],
)
def test_normalizers(name, raw, expected):
    assert resolve_normalizer(name)(raw) == expected


@pytest.mark.parametrize("name", ["nope", "decimal:x"])
def test_unknown_normalizer_rejected(name):
    with pytest.raises(ValueError):
        resolve_normalizer(name)


def test_bool_normalizer_rejects_garbage():
    with pytest.raises(ValueError):
        resolve_normalizer("bool")("maybe")


# ── Ruleset ──────────────────────────────────────────────────────────


def test_ruleset_tag(customer_ruleset):
    assert customer_ruleset.tag == "customer@3"


def test_ruleset_rejects_normalizer_for_unknown_field():
    with pytest.raises(ValueError):
        Ruleset(name="r", version="1", fields=["a"], normalize={"b": ["strip"]})


def test_ruleset_rejects_repeated_fields():
    with pytest.raises(ValueError):
        Ruleset(name="r", version="1", fields=["a", "a"])


def test_ruleset_load_from_yaml(tmp_path: Path):
    path = tmp_path / "ruleset.yaml"
    path.write_text(
        "name: customer\n"
        "version: '3'\n"
        "fields: [email, tier]\n"
        "normalize:\n"
        "  email: [strip, lower]\n"
    )
    ruleset = Ruleset.load(path)
    assert ruleset.tag == "customer@3"
    assert ruleset.normalize["email"] == ["strip", "lower"]


@pytest.mark.parametrize("text", ["name: [unclosed", "name: r\nversion: '1'\n"])
def test_ruleset_load_errors(tmp_path: Path, text):
    path = tmp_path / "bad.yaml"
    path.write_text(text)
    with pytest.raises(ValueError, match="Invalid"):
        Ruleset.load(path)


# ── Contract ─────────────────────────────────────────────────────────


def test_contract_satisfies_protocol(customer_ruleset):
    assert isinstance(RulesetContract(customer_ruleset), FingerprintContract)


def test_equivalent_records_share_fingerprint(customer_ruleset):
    """Two services formatting the same state differently still agree."""
    contract = RulesetContract(customer_ruleset)
    billing = {"id": 7, "email": "  Ann@Example.COM", "tier": "gold", "balance": "10.5"}
    crm = {"id": "7", "email": "ann@example.com", "tier": "gold", "balance": 10.50, "extra": 1}
    assert contract.fingerprint(billing) == contract.fingerprint(crm)


def test_changed_field_changes_fingerprint(customer_ruleset):
    contract = RulesetContract(customer_ruleset)
    base = {"id": 7, "email": "a@x", "tier": "gold", "balance": "1"}
    assert contract.fingerprint(base) != contract.fingerprint({**base, "tier": "silver"})


def test_missing_field_hashes_as_null(customer_ruleset):
    contract = RulesetContract(customer_ruleset)
    record = {"id": 1, "email": "a@x"}
    assert contract.canonical_payload(record) == (
        '[["email","a@x"],["tier",null],["balance",null]]'
    )
    expected = hashlib.sha256(contract.canonical_payload(record).encode()).digest()
    assert contract.fingerprint(record) == Leaf(1, expected)


@pytest.mark.parametrize("record", [{"email": "a"}, {"id": -1}, {"id": True}, {"id": 1.5}])
def test_bad_keys_rejected(customer_ruleset, record):
    with pytest.raises(ValueError):
        RulesetContract(customer_ruleset).fingerprint(record)


def test_check_deterministic_passes_for_pure_contract(customer_ruleset):
    contract = RulesetContract(customer_ruleset)
    check_deterministic(contract, [{"id": k, "email": f"u{k}@x"} for k in range(10)], rounds=3)


def test_check_deterministic_catches_oscillation():
    class Flaky:
        ruleset_tag = "flaky@1"

        def __init__(self) -> None:
            self.n = 0

        def fingerprint(self, record) -> Leaf:
            self.n += 1
            return Leaf(record["id"], hashlib.sha256(str(self.n).encode()).digest())

    with pytest.raises(NondeterministicFingerprintError) as exc:
        check_deterministic(Flaky(), [{"id": 5}])
    assert exc.value.key == 5
