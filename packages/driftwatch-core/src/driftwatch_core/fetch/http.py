"""HTTP node fetchers for diffing against a remote peer via httpx."""

from __future__ import annotations

import logging

import httpx

from driftwatch_core.fetch.protocol import TreeManifest, decode_node
from driftwatch_core.mst.hashing import to_hex
from driftwatch_core.mst.models import Node

logger = logging.getLogger(__name__)


def _headers(token: str | None) -> dict[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


class HttpNodeFetcher:
    """Blocking fetcher speaking the Node Fetch Protocol over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        verify: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            headers=_headers(token), timeout=timeout, verify=verify, transport=transport
        )

    def manifest(self) -> TreeManifest:
        resp = self._client.get(f"{self._base_url}/manifest")
        resp.raise_for_status()
        return TreeManifest.model_validate(resp.json())

    def fetch(self, node_hash: bytes) -> Node:
        logger.debug("GET node %s from %s", to_hex(node_hash)[:12], self._base_url)
        resp = self._client.get(f"{self._base_url}/nodes/{to_hex(node_hash)}")
        resp.raise_for_status()
        return decode_node(resp.json(), expected=node_hash)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpNodeFetcher:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class AsyncHttpNodeFetcher:
    """Async fetcher speaking the Node Fetch Protocol over HTTP."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 10.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers=_headers(token), timeout=timeout, verify=verify, transport=transport
        )

    async def manifest(self) -> TreeManifest:
        resp = await self._client.get(f"{self._base_url}/manifest")
        resp.raise_for_status()
        return TreeManifest.model_validate(resp.json())

    async def fetch(self, node_hash: bytes) -> Node:
        logger.debug("GET node %s from %s", to_hex(node_hash)[:12], self._base_url)
        resp = await self._client.get(f"{self._base_url}/nodes/{to_hex(node_hash)}")
        resp.raise_for_status()
        return decode_node(resp.json(), expected=node_hash)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> AsyncHttpNodeFetcher:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
