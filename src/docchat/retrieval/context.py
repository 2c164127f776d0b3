"""Context assembly: turns vectorstore hits into a token-bounded prompt.

`matches()` rebuilds full source documents from similarity-search hits.
`prompt()` packs them, most certain first, into a fixed token budget. A
document that does not fit whole is trimmed to a contiguous window of units
grown outward from the unit the search actually matched.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import replace
from typing import Any

from docchat.config import ContextConfig
from docchat.errors import DownstreamError
from docchat.ingest.markdown import parse_front_matter
from docchat.ingest.splitter import SplitterRegistry
from docchat.obs.tracing import EventObserver, Timer, emit, timer_event
from docchat.retrieval.fetcher import DocumentFetcher
from docchat.retrieval.vector_store import VectorStore
from docchat.types import (
    ContentUnit,
    FormattedPrompt,
    Index,
    LoaderType,
    RawMatch,
    SourceDocument,
    UsedDocument,
)

logger = logging.getLogger(__name__)

MAX_DESCRIBED_HEADINGS = 20
PREVIEW_CHARACTERS = 120


class ContextAssembler:
    """Retrieves source documents and packs them into prompt context."""

    def __init__(
        self,
        vector_store: VectorStore,
        fetcher: DocumentFetcher,
        splitters: SplitterRegistry | None = None,
        config: ContextConfig | None = None,
    ) -> None:
        self.vector_store = vector_store
        self.fetcher = fetcher
        self.splitters = splitters or SplitterRegistry()
        self.config = config or ContextConfig()

    async def matches(
        self,
        query: str,
        indexes: list[Index],
        max_results: int | None = None,
        min_certainty: float | None = None,
        observer: EventObserver | None = None,
    ) -> list[SourceDocument]:
        """Search, filter by certainty and rebuild the matched documents."""

        threshold = self.config.min_certainty if min_certainty is None else min_certainty

        with Timer() as vector_timer:
            try:
                raw_matches = await self.vector_store.query(query, indexes, max_results or self.config.max_results)
            except Exception as exc:
                raise DownstreamError("Failed to query the vectorstore.", str(exc)) from exc
        emit(observer, timer_event("Vector Query", vector_timer.seconds))

        with Timer() as enrich_timer:
            valid = [match for match in raw_matches if match.certainty > threshold]
            if not valid:
                logger.info(f"No matches above certainty {threshold} for query {query!r}")
                return []
            documents = await self.to_documents(valid)
        emit(observer, timer_event("Enrich Results", enrich_timer.seconds))

        return sorted(documents, key=lambda document: document.certainty, reverse=True)

    async def to_documents(self, matches: list[RawMatch]) -> list[SourceDocument]:
        results = await asyncio.gather(*(self.to_document(match) for match in matches), return_exceptions=True)

        documents: list[SourceDocument] = []
        for match, result in zip(matches, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(f"Failed to convert match {match.identifier!r} to a document: {result}")
                continue
            documents.append(result)

        if not documents:
            raise DownstreamError("Failed to convert matches to documents.", "No documents were successfully processed.")
        return documents

    async def to_document(self, match: RawMatch) -> SourceDocument:
        raw = await self.fetcher.fetch(match)

        title = description = url = None
        if match.loader_type is LoaderType.MARKDOWN:
            front_matter = parse_front_matter(raw.decode("utf-8") if isinstance(raw, bytes) else str(raw))
            raw = front_matter.body
            title, description, url = front_matter.title, front_matter.description, front_matter.url
        elif match.loader_type is LoaderType.ARTICLE and isinstance(raw, dict):
            title, description, url = raw.get("title"), raw.get("description"), raw.get("url")

        units = self.splitters.split(match.loader_type, raw)
        return SourceDocument(
            identifier=match.identifier,
            loader_type=match.loader_type,
            units=tuple(units),
            total_tokens=sum(unit.tokens for unit in units),
            matched=match,
            title=title,
            description=description,
            url=url or match.url,
        )

    async def prompt(
        self,
        documents: list[SourceDocument],
        max_tokens: int | None = None,
        observer: EventObserver | None = None,
    ) -> FormattedPrompt:
        if not documents:
            return FormattedPrompt(context="", used=[])

        start = time.perf_counter()
        try:
            result = self.pack(documents, max_tokens or self.config.max_document_tokens)
        except Exception as exc:
            raise DownstreamError("Failed to generate the context.", str(exc)) from exc
        emit(observer, timer_event("Generating Prompt", time.perf_counter() - start))
        return result

    def pack(self, documents: list[SourceDocument], max_tokens: int) -> FormattedPrompt:
        """Fit documents into `max_tokens` minus the safety margin.

        Whole documents are added while they fit. The first one that does not
        fit is trimmed to a window around its matched unit, and packing stops
        there whether or not the window was usable.
        """

        budget = max_tokens - self.config.safe_tokens
        total = 0
        parts: list[str] = []
        used: list[UsedDocument] = []

        for document in sorted(documents, key=lambda item: item.certainty, reverse=True):
            if total + document.total_tokens <= budget:
                parts.append(self.format_document(document))
                used.append(UsedDocument(title=document.title, url=document.url, tokens=document.total_tokens))
                total += document.total_tokens
            else:
                remaining = budget - total
                start = self._find_starting_unit(document)
                window = _grow_window(list(document.units), start if start >= 0 else 0, remaining)
                tokens_used = sum(unit.tokens for unit in window)

                if 0 < tokens_used <= remaining:
                    trimmed = replace(document, units=tuple(window), total_tokens=tokens_used)
                    parts.append(self.format_document(trimmed))
                    used.append(
                        UsedDocument(
                            title=document.title,
                            url=document.url,
                            tokens=f"{tokens_used}/{document.total_tokens}",
                        )
                    )
                    total += tokens_used
                break

            if total >= budget:
                break

        return FormattedPrompt(context="".join(parts), used=used)

    def describe(self, documents: list[SourceDocument]) -> FormattedPrompt:
        """Summarize documents without packing them; not budgeted."""

        if not documents:
            return FormattedPrompt(context="", used=[])

        return FormattedPrompt(
            context="\n\n".join(self._describe_document(document) for document in documents),
            used=[
                UsedDocument(title=document.title, url=document.url, tokens=document.total_tokens)
                for document in documents
            ],
        )

    def format_document(self, document: SourceDocument) -> str:
        if document.override:
            return document.override

        if document.loader_type is LoaderType.TEXT:
            return "".join(unit.content for unit in document.units)

        if document.title and document.url and document.description:
            output = f"# {document.title} ([link]({document.url}))\n{document.description}\n\n"
        else:
            output = (
                f"# {document.identifier}\n"
                "This file is being represented as unstructured text. "
                "It has no title, description or URL defined.\n\n"
            )

        for unit in document.units:
            if unit.heading:
                output += f"### {unit.heading}\n{unit.content}\n\n"
            else:
                output += f"{unit.content}\n\n"
        return output

    def _describe_document(self, document: SourceDocument) -> str:
        lines = [f"# Document ID: {document.identifier}", f"- Type: `{document.loader_type.value}`"]
        if document.title:
            lines.append(f"- Title: {document.title}")
        if document.description:
            description = " ".join(document.description.splitlines())
            lines.append(f"- Description: {description}")
        if document.url:
            lines.append(f"- URL: {document.url}")

        units = document.units[:MAX_DESCRIBED_HEADINGS]
        headings = [unit.heading for unit in units if unit.heading]
        if headings:
            lines.append(f"- Paragraph Headings: [{_quoted(headings)}]")
        elif units:
            previews = [_preview(unit.content) for unit in units]
            lines.append(f"- Content Previews: [{_quoted(previews)}]")
        return "\n".join(lines)

    def _find_starting_unit(self, document: SourceDocument) -> int:
        """Index of the unit most similar to the matched text, or -1."""

        matched = document.matched.unit
        if len(matched.content.strip()) >= self.config.minimum_content_length:
            return _best_match(matched.content, [unit.content for unit in document.units])
        if matched.heading and len(matched.heading.strip()) >= self.config.minimum_content_length:
            return _best_match(matched.heading, [unit.heading or "" for unit in document.units])
        return -1


def _best_match(text: str, candidates: list[str]) -> int:
    best_index = -1
    best_score = 0.0
    for index, candidate in enumerate(candidates):
        score = dice_coefficient(text, candidate)
        if score > best_score:
            best_score = score
            best_index = index
    return best_index


def _grow_window(units: list[ContentUnit], start: int, max_tokens: int) -> list[ContentUnit]:
    """Contiguous units around `start`, alternating above and below while they fit."""

    if not units or units[start].tokens > max_tokens:
        return []

    remaining = max_tokens - units[start].tokens
    window = [units[start]]
    below = start - 1
    above = start + 1

    while (below >= 0 or above < len(units)) and remaining > 0:
        added = False
        if below >= 0 and units[below].tokens <= remaining:
            window.insert(0, units[below])
            remaining -= units[below].tokens
            below -= 1
            added = True
        if above < len(units) and remaining > 0 and units[above].tokens <= remaining:
            window.append(units[above])
            remaining -= units[above].tokens
            above += 1
            added = True
        if not added:
            break

    return window


def dice_coefficient(first: str, second: str) -> float:
    """Sørensen-Dice similarity over character bigrams, ignoring whitespace."""

    first = "".join(first.split())
    second = "".join(second.split())
    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0

    first_bigrams = Counter(first[i : i + 2] for i in range(len(first) - 1))
    intersection = 0
    for i in range(len(second) - 1):
        bigram = second[i : i + 2]
        if first_bigrams[bigram] > 0:
            first_bigrams[bigram] -= 1
            intersection += 1

    return (2.0 * intersection) / (len(first) + len(second) - 2)


def _quoted(items: list[str]) -> str:
    return ", ".join(f'"{item}"' for item in items)


def _preview(content: str) -> str:
    text = " ".join(content.split()).replace('"', "'")
    if len(text) <= PREVIEW_CHARACTERS:
        return text
    return f"{text[:PREVIEW_CHARACTERS]}..."


def match_summary(documents: list[SourceDocument]) -> list[dict[str, Any]]:
    """Shape of the `matches` event payload."""

    return [
        {
            "title": document.title,
            "url": document.url,
            "type": document.loader_type.value,
            "certainty": document.certainty,
            "tokens": document.total_tokens,
        }
        for document in documents
    ]
