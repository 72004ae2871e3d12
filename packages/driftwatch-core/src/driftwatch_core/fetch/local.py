"""In-process node fetchers."""

from __future__ import annotations

import asyncio

from driftwatch_core.fetch.interfaces import NodeFetcher
from driftwatch_core.mst.models import Node
from driftwatch_core.mst.store import NodeStore


class LocalNodeFetcher:
    """Reads nodes straight from a NodeStore."""

    def __init__(self, store: NodeStore) -> None:
        self._store = store

    def fetch(self, node_hash: bytes) -> Node:
        return self._store.get(node_hash)


class AsyncFetcherAdapter:
    """Exposes a blocking NodeFetcher to the async differ.

    Each fetch runs with asyncio.to_thread() so a slow backend does not
    block the event loop.
    """

    def __init__(self, fetcher: NodeFetcher) -> None:
        self._fetcher = fetcher

    async def fetch(self, node_hash: bytes) -> Node:
        return await asyncio.to_thread(self._fetcher.fetch, node_hash)
