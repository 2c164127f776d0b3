import asyncio
from typing import Any

import pytest

from docchat.ingest.article import ArticleSplitter
from docchat.ingest.markdown import MarkdownSplitter
from docchat.ingest.splitter import SplitterRegistry
from docchat.ingest.tabular import JsonSplitter
from docchat.ingest.text import PdfTextSplitter, UnstructuredTextSplitter
from docchat.tokenizer import Tokenizer


class WordTokenizer(Tokenizer):
    """One token per whitespace-separated word; keeps tests independent of BPE files."""

    def count(self, text: str | None, model: str | None = None) -> int:
        return len(text.split()) if text else 0


@pytest.fixture
def tokenizer() -> WordTokenizer:
    return WordTokenizer()


@pytest.fixture
def splitters(tokenizer: WordTokenizer) -> SplitterRegistry:
    return SplitterRegistry(
        [
            UnstructuredTextSplitter(tokenizer=tokenizer),
            MarkdownSplitter(tokenizer=tokenizer),
            ArticleSplitter(tokenizer=tokenizer),
            PdfTextSplitter(tokenizer=tokenizer),
            JsonSplitter(tokenizer=tokenizer),
        ]
    )


@pytest.fixture
def drain():
    """Run an async event generator to completion and return its events."""

    def _run(events: Any) -> list[Any]:
        async def _collect() -> list[Any]:
            return [event async for event in events]

        return asyncio.run(_collect())

    return _run
