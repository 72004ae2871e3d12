"""Node fetcher interfaces used by the differ."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from driftwatch_core.mst.models import Node


@runtime_checkable
class NodeFetcher(Protocol):
    """Returns the node with the given hash, from memory or a peer."""

    def fetch(self, node_hash: bytes) -> Node: ...


@runtime_checkable
class AsyncNodeFetcher(Protocol):
    """Coroutine variant of NodeFetcher for remote peers."""

    async def fetch(self, node_hash: bytes) -> Node: ...
