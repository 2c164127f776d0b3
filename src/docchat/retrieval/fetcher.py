"""Loads the full source document behind a vectorstore match."""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from docchat.config import VectorStoreConfig
from docchat.types import LoaderType, RawMatch

logger = logging.getLogger(__name__)


class DocumentFetcher(Protocol):
    async def fetch(self, match: RawMatch) -> Any:
        """Return the raw document: text, bytes (PDF) or decoded JSON."""


class HttpDocumentFetcher:
    """Reads documents from bucket storage at `/<bucket>/<identifier>`."""

    def __init__(self, config: VectorStoreConfig, client: httpx.AsyncClient | None = None) -> None:
        if client is None and not config.storage_url:
            raise ValueError("storage_url is required to fetch documents")
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=config.storage_url or "",
            headers=headers,
            timeout=config.timeout_seconds,
        )

    async def fetch(self, match: RawMatch) -> Any:
        path = f"/{match.bucket}/{quote(match.identifier, safe='')}"
        head = await self._client.head(path)
        head.raise_for_status()
        content_type = head.headers.get("content-type", "").split(";")[0].strip()

        response = await self._client.get(path)
        response.raise_for_status()

        if content_type == "application/pdf":
            logger.debug(f"Fetched pdf document {match.identifier}")
            return response.content
        if content_type == "application/json" or match.loader_type is LoaderType.ARTICLE:
            return response.json()
        return response.text

    async def aclose(self) -> None:
        await self._client.aclose()
