"""Node Fetch Protocol: the seam between the differ and wherever nodes live."""

from driftwatch_core.fetch.http import AsyncHttpNodeFetcher, HttpNodeFetcher
from driftwatch_core.fetch.interfaces import AsyncNodeFetcher, NodeFetcher
from driftwatch_core.fetch.local import AsyncFetcherAdapter, LocalNodeFetcher
from driftwatch_core.fetch.protocol import (
    NodeFetchHandler,
    NodeMessage,
    TreeManifest,
    decode_node,
    encode_node,
    ensure_comparable,
)

__all__ = [
    "AsyncFetcherAdapter",
    "AsyncHttpNodeFetcher",
    "AsyncNodeFetcher",
    "HttpNodeFetcher",
    "LocalNodeFetcher",
    "NodeFetchHandler",
    "NodeFetcher",
    "NodeMessage",
    "TreeManifest",
    "decode_node",
    "encode_node",
    "ensure_comparable",
]
