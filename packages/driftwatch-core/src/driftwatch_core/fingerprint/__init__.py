"""Canonical Fingerprint Contract and the leaf sets it produces."""

from driftwatch_core.fingerprint.canonical import CanonicalizationError, dumps_canonical
from driftwatch_core.fingerprint.contract import (
    NORMALIZERS,
    FingerprintContract,
    Ruleset,
    RulesetContract,
    check_deterministic,
    resolve_normalizer,
)
from driftwatch_core.fingerprint.leafset import LeafSet

__all__ = [
    "CanonicalizationError",
    "FingerprintContract",
    "LeafSet",
    "NORMALIZERS",
    "Ruleset",
    "RulesetContract",
    "check_deterministic",
    "dumps_canonical",
    "resolve_normalizer",
]
