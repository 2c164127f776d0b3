"""Vector store interfaces and concrete adapters."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from docchat.config import VectorStoreConfig
from docchat.ingest.splitter import SplitterRegistry
from docchat.tokenizer import Tokenizer, default_tokenizer
from docchat.types import ContentUnit, Index, LoaderType, RawMatch

logger = logging.getLogger(__name__)

ARTICLE_METADATA_KEYS = ("article_id", "title", "url", "updated_at", "heading")


class VectorStoreError(Exception):
    """The similarity-search service rejected or failed a query."""


class VectorStore(Protocol):
    """Minimal similarity-search contract for retrieval."""

    async def query(self, text: str, indexes: list[Index], max_results: int | None = None) -> list[RawMatch]:
        """Search every index and return matches sorted by certainty, highest first."""


class HttpVectorStore:
    """Similarity search over an HTTP embeddings service.

    Each index (bucket) is queried concurrently; a single failed bucket fails
    the whole query. Matches are de-duplicated by identifier, weighted per
    bucket and sorted by certainty.
    """

    def __init__(
        self,
        config: VectorStoreConfig,
        client: httpx.AsyncClient | None = None,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        self.config = config
        self.tokenizer = tokenizer or default_tokenizer
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout_seconds,
        )

    async def query(self, text: str, indexes: list[Index], max_results: int | None = None) -> list[RawMatch]:
        if not indexes:
            raise VectorStoreError("No indexes (buckets) specified for searching")

        responses = await asyncio.gather(*(self._search(text, index, max_results) for index in indexes))

        matches: list[RawMatch] = []
        seen: set[str] = set()
        for index, rows in zip(indexes, responses, strict=True):
            for row in rows:
                match = self._format_match(row, index.name)
                if match.identifier in seen:
                    continue
                seen.add(match.identifier)
                if index.weight != 1:
                    match.certainty *= index.weight
                matches.append(match)

        return sorted(matches, key=lambda match: match.certainty, reverse=True)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _search(self, text: str, index: Index, max_results: int | None) -> list[dict[str, Any]]:
        body = {"bucket_name": index.name, "num_of_docs": max_results or 3, "query": text}
        try:
            response = await self._client.post(self.config.search_path, json=body)
        except httpx.HTTPError as exc:
            raise VectorStoreError(f"Similarity search request failed: {exc}") from exc

        if response.is_error:
            raise VectorStoreError(_error_message(response))
        return response.json().get("data", [])

    def _format_match(self, row: dict[str, Any], bucket: str) -> RawMatch:
        metadata = row.get("metadata") or {}
        identifier = metadata.get("filename", "")
        content = row.get("document_chunk", "")
        loader_metadata = metadata.get("loader_metadata")
        certainty = float(metadata.get("certainty", 0.0))

        loader_type = detect_loader_type(identifier, content, loader_metadata)
        heading = None
        if loader_type is LoaderType.ARTICLE:
            heading = loader_metadata["heading"].replace("\n", "").strip()
            content = content.replace(heading, "", 1)

        return RawMatch(
            identifier=identifier,
            unit=ContentUnit(heading=heading, content=content, tokens=self.tokenizer.count(content)),
            certainty=certainty,
            bucket=bucket,
            loader_type=loader_type,
            url=loader_metadata.get("url") if isinstance(loader_metadata, dict) else None,
            loader_metadata=loader_metadata,
        )


def detect_loader_type(identifier: str, content: str, loader_metadata: dict[str, Any] | None) -> LoaderType:
    """Infer the source format of a match from its metadata, filename and content."""

    if isinstance(loader_metadata, dict) and all(
        isinstance(loader_metadata.get(key), str) for key in ARTICLE_METADATA_KEYS
    ):
        return LoaderType.ARTICLE
    if identifier.endswith(".csv"):
        return LoaderType.CSV
    if identifier.endswith(".json") or _is_json(content):
        return LoaderType.JSON
    if identifier.endswith(".md"):
        return LoaderType.MARKDOWN
    if identifier.endswith(".pdf"):
        return LoaderType.PDF
    return LoaderType.TEXT


def _is_json(content: str) -> bool:
    try:
        json.loads(content)
    except (TypeError, ValueError):
        return False
    return True


def _error_message(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
    except ValueError:
        errors = []
    first = errors[0] if errors else None
    if isinstance(first, dict) and first.get("code") and first.get("detail"):
        return f"[{first['code']}] {first['detail']}"
    if isinstance(first, str):
        return first
    logger.error(f"Failed to get similarity search results: {response.status_code} {response.text[:200]}")
    return "An unexpected error occured whilst processing the similarity search results."


@dataclass(slots=True)
class _StoredDocument:
    identifier: str
    raw: Any
    loader_type: LoaderType
    bucket: str
    units: list[ContentUnit]
    url: str | None = None
    loader_metadata: dict[str, Any] | None = None


class InMemoryVectorStore:
    """Deterministic store used for tests and local prototyping.

    Certainty is the share of query words found in a unit. The store keeps the
    raw documents too, so it doubles as a document fetcher.
    """

    def __init__(self, splitters: SplitterRegistry | None = None) -> None:
        self._splitters = splitters or SplitterRegistry()
        self._documents: dict[str, _StoredDocument] = {}

    def add_document(
        self,
        identifier: str,
        raw: Any,
        loader_type: LoaderType = LoaderType.TEXT,
        bucket: str = "default",
        url: str | None = None,
        loader_metadata: dict[str, Any] | None = None,
    ) -> None:
        units = self._splitters.split(loader_type, raw)
        self._documents[identifier] = _StoredDocument(
            identifier=identifier,
            raw=raw,
            loader_type=loader_type,
            bucket=bucket,
            units=units,
            url=url,
            loader_metadata=loader_metadata,
        )

    async def query(self, text: str, indexes: list[Index], max_results: int | None = None) -> list[RawMatch]:
        if not indexes:
            raise VectorStoreError("No indexes (buckets) specified for searching")

        weights = {index.name: index.weight for index in indexes}
        query_tokens = set(text.lower().split())
        denom = max(1, len(query_tokens))
        matches: list[RawMatch] = []

        for document in self._documents.values():
            if document.bucket not in weights:
                continue
            best: tuple[float, ContentUnit] | None = None
            for unit in document.units:
                unit_tokens = set(f"{unit.heading or ''} {unit.content}".lower().split())
                score = len(query_tokens & unit_tokens) / denom
                if best is None or score > best[0]:
                    best = (score, unit)
            if best is None:
                continue
            matches.append(
                RawMatch(
                    identifier=document.identifier,
                    unit=best[1],
                    certainty=best[0] * weights[document.bucket],
                    bucket=document.bucket,
                    loader_type=document.loader_type,
                    url=document.url,
                    loader_metadata=document.loader_metadata,
                )
            )

        ranked = sorted(matches, key=lambda match: match.certainty, reverse=True)
        return ranked[: max_results or 3]

    async def fetch(self, match: RawMatch) -> Any:
        document = self._documents.get(match.identifier)
        if document is None:
            raise KeyError(f"Document not found: {match.identifier}")
        return document.raw
