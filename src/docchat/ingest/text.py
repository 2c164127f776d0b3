"""Character-window splitters for unstructured and PDF-extracted text."""

from __future__ import annotations

import io
import logging
from typing import Any

from pypdf import PdfReader

from docchat.config import SplitterConfig
from docchat.ingest.splitter import Splitter
from docchat.tokenizer import Tokenizer
from docchat.types import ContentUnit, LoaderType

logger = logging.getLogger(__name__)


class UnstructuredTextSplitter(Splitter):
    """Splits plain text into fixed-size character windows."""

    loader_types = (LoaderType.TEXT,)

    def __init__(self, config: SplitterConfig | None = None, tokenizer: Tokenizer | None = None) -> None:
        super().__init__(tokenizer)
        self.config = config or SplitterConfig()

    def split(self, raw: Any, *, chunk_size: int | None = None, **options: Any) -> list[ContentUnit]:
        text = _as_text(raw)
        if not text.strip():
            return []
        return self.window(text, chunk_size or self.config.chunk_size)


class PdfTextSplitter(Splitter):
    """Splits extracted PDF text line by line (one line per page).

    A line over `max_line_tokens` is re-split into character windows of
    `chunk_size`, so every unit stays well under the line ceiling.
    """

    loader_types = (LoaderType.PDF,)

    def __init__(self, config: SplitterConfig | None = None, tokenizer: Tokenizer | None = None) -> None:
        super().__init__(tokenizer)
        self.config = config or SplitterConfig()

    def split(self, raw: Any, *, chunk_size: int | None = None, **options: Any) -> list[ContentUnit]:
        text = extract_pdf_text(raw) if isinstance(raw, (bytes, bytearray)) else _as_text(raw)
        size = chunk_size or self.config.chunk_size
        units: list[ContentUnit] = []

        for line in text.split("\n"):
            if not line.strip():
                continue
            unit = self.unit(None, line)
            if unit.tokens > self.config.max_line_tokens:
                units.extend(self.window(line, size))
            else:
                units.append(unit)
        return units


def extract_pdf_text(data: bytes) -> str:
    """Extract the text of a PDF, one line per page."""

    reader = PdfReader(io.BytesIO(data))
    pages: list[str] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        pages.append(" ".join(page_text.split()))
    logger.debug(f"Extracted {len(pages)} pdf pages")
    return "\n".join(pages)


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode("utf-8", errors="replace")
    return str(raw)
