"""Hash algebra for the Merkle Search Tree.

Three domains share SHA-256 and are kept apart by a one-byte tag:

- level probe:  sha256(0x00 || key || fingerprint)
- height-1 node: sha256(0x01 || height || key || fingerprint || ...)
- higher node:  sha256(0x02 || height || child_hash || ...)

Keys are encoded as a one-byte length followed by their minimal big-endian
bytes, so the encoding is canonical for any key width both sides agree on.
The empty tree hashes to sha256(b"").
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from driftwatch_core.mst.models import ChildRef, Leaf

FINGERPRINT_SIZE = 32
HASH_SIZE = 32

_PROBE_TAG = b"\x00"
_LEAF_NODE_TAG = b"\x01"
_INTERNAL_NODE_TAG = b"\x02"

EMPTY_ROOT_HASH = hashlib.sha256(b"").digest()


def sha256(data: bytes) -> bytes:
    """Raw 32-byte SHA-256 digest."""
    return hashlib.sha256(data).digest()


def encode_key(key: int) -> bytes:
    """Length-prefixed minimal big-endian encoding of a non-negative key."""
    raw = key.to_bytes((key.bit_length() + 7) // 8 or 1, "big")
    return len(raw).to_bytes(1, "big") + raw


def leading_zero_bits(data: bytes) -> int:
    """Count leading zero bits of *data*, most significant bit first."""
    count = 0
    for byte in data:
        if byte == 0:
            count += 8
            continue
        return count + 8 - byte.bit_length()
    return count


def leaf_level(key: int, fingerprint: bytes, fanout_bits: int) -> int:
    """Content-defined level of a leaf.

    Each additional level requires *fanout_bits* more leading zero bits in
    the probe, so a leaf reaches level L with probability 2 ** -(L * fanout_bits).
    """
    probe = sha256(_PROBE_TAG + encode_key(key) + fingerprint)
    return leading_zero_bits(probe) // fanout_bits


def node_hash(height: int, entries: Sequence[Leaf] | Sequence[ChildRef]) -> bytes:
    """Aggregate hash of a node from its ordered entries."""
    h = hashlib.sha256()
    if height == 1:
        h.update(_LEAF_NODE_TAG)
        h.update(height.to_bytes(2, "big"))
        for leaf in entries:
            h.update(encode_key(leaf.key))
            h.update(leaf.fingerprint)
    else:
        h.update(_INTERNAL_NODE_TAG)
        h.update(height.to_bytes(2, "big"))
        for ref in entries:
            h.update(ref.hash)
    return h.digest()


def to_hex(data: bytes) -> str:
    return data.hex()


def from_hex(value: str) -> bytes:
    """Decode a 64-char hex digest, tolerating an optional 0x prefix."""
    if value.startswith("0x"):
        value = value[2:]
    raw = bytes.fromhex(value)
    if len(raw) != HASH_SIZE:
        raise ValueError(f"expected {HASH_SIZE}-byte hex digest, got {len(raw)} bytes")
    return raw
