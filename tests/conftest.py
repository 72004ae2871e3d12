"""Shared test fixtures for Driftwatch."""

import hashlib

import pytest

from driftwatch.config.loader import ENV_OVERRIDES
from driftwatch_core.config import DriftwatchConfig, TreeConfig
from driftwatch_core.fingerprint import Ruleset
from driftwatch_core.mst import Leaf


def fp(label: object) -> bytes:
    """32-byte fingerprint derived from any label."""
    return hashlib.sha256(str(label).encode()).digest()


@pytest.fixture
def make_leaf():
    """Factory: make_leaf(key) or make_leaf(key, "label")."""

    def _make(key: int, label: object = None) -> Leaf:
        return Leaf(key, fp(label if label is not None else f"v{key}"))

    return _make


@pytest.fixture
def small_fanout():
    """Fanout 1/4 per level, so a few hundred leaves give a deep tree."""
    return TreeConfig(fanout_bits=2)


@pytest.fixture
def sample_config():
    return DriftwatchConfig()


@pytest.fixture
def customer_ruleset():
    return Ruleset(
        name="customer",
        version="3",
        key_field="id",
        fields=["email", "tier", "balance"],
        normalize={"email": ["strip", "casefold"], "balance": ["decimal:2"]},
    )


@pytest.fixture(autouse=True)
def clean_driftwatch_env(monkeypatch):
    """Keep the caller's DRIFTWATCH_* settings out of every test."""
    for name in ("DRIFTWATCH_CONFIG", *ENV_OVERRIDES):
        monkeypatch.delenv(name, raising=False)
