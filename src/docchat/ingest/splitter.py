"""Splitter interface and the registry that maps formats to splitters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from docchat.tokenizer import Tokenizer, default_tokenizer
from docchat.types import ContentUnit, LoaderType


class Splitter(ABC):
    """Base splitter: turns one raw document into ordered content units."""

    loader_types: tuple[LoaderType, ...] = ()

    def __init__(self, tokenizer: Tokenizer | None = None) -> None:
        self.tokenizer = tokenizer or default_tokenizer

    @abstractmethod
    def split(self, raw: Any, **options: Any) -> list[ContentUnit]:
        """Split a raw document. Empty input yields an empty list."""

    def unit(self, heading: str | None, content: str) -> ContentUnit:
        """Build a unit whose token count covers heading and content."""
        text = f"{heading}\n{content}" if heading is not None else content
        return ContentUnit(heading=heading, content=content, tokens=self.tokenizer.count(text))

    def window(self, text: str, chunk_size: int) -> list[ContentUnit]:
        """Fixed character windows, independent of word boundaries."""
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        return [self.unit(None, text[i : i + chunk_size]) for i in range(0, len(text), chunk_size)]


class SplitterRegistry:
    """Maps loader type to splitter implementation."""

    def __init__(self, splitters: list[Splitter] | None = None) -> None:
        self._splitters: dict[LoaderType, Splitter] = {}
        for splitter in splitters or _default_splitters():
            self.register(splitter)

    def register(self, splitter: Splitter) -> None:
        for loader_type in splitter.loader_types:
            self._splitters[loader_type] = splitter

    def get(self, loader_type: LoaderType) -> Splitter | None:
        return self._splitters.get(loader_type)

    def split(self, loader_type: LoaderType, raw: Any, **options: Any) -> list[ContentUnit]:
        splitter = self._splitters.get(loader_type)
        if splitter is None:
            raise ValueError(f"No splitter registered for loader type: {loader_type}")
        if loader_type is LoaderType.CSV:
            options.setdefault("from_csv", True)
        return splitter.split(raw, **options)


def _default_splitters() -> list[Splitter]:
    from docchat.ingest.article import ArticleSplitter
    from docchat.ingest.markdown import MarkdownSplitter
    from docchat.ingest.tabular import JsonSplitter
    from docchat.ingest.text import PdfTextSplitter, UnstructuredTextSplitter

    return [
        UnstructuredTextSplitter(),
        MarkdownSplitter(),
        ArticleSplitter(),
        PdfTextSplitter(),
        JsonSplitter(),
    ]
