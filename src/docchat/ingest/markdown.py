"""Markdown splitting by heading sections."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from markdown_it import MarkdownIt

from docchat.ingest.splitter import Splitter
from docchat.tokenizer import Tokenizer
from docchat.types import ContentUnit, LoaderType

logger = logging.getLogger(__name__)

DEFAULT_HEADING = "Introduction"
CONTENT_BLOCKS = {"paragraph", "fence", "code_block", "html_block", "bullet_list", "ordered_list", "table", "blockquote"}

_SEO_BLOCK = re.compile(r"---\nseo:\n[\s\S]*?---")
_SEO_FIELDS = {name: re.compile(rf"{name}:[\s\S]*?\n") for name in ("title", "description", "url", "keywords")}
_SEO_STRIP = re.compile(r"\\|\"|'|\n")


@dataclass(slots=True)
class FrontMatter:
    title: str = "No Title"
    description: str = "No Description"
    url: str | None = None
    keywords: str = "No Keywords"
    body: str = ""


@dataclass(slots=True)
class _Section:
    heading: str | None
    blocks: list[str] = field(default_factory=list)
    kinds: set[str] = field(default_factory=set)


class MarkdownSplitter(Splitter):
    """One unit per heading section; content keeps its markdown source."""

    loader_types = (LoaderType.MARKDOWN,)

    def __init__(self, tokenizer: Tokenizer | None = None) -> None:
        super().__init__(tokenizer)
        self._md = MarkdownIt("commonmark").enable("table")

    def split(self, raw: Any, **options: Any) -> list[ContentUnit]:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw or "")
        if not text.strip():
            return []

        units: list[ContentUnit] = []
        for section in self._sections(text):
            if not section.kinds & CONTENT_BLOCKS:
                continue
            content = "\n\n".join(section.blocks).strip().replace("\n", " ")
            units.append(self.unit(section.heading or DEFAULT_HEADING, content))
        return units

    def _sections(self, text: str) -> list[_Section]:
        lines = text.splitlines()
        tokens = self._md.parse(text)
        sections: list[_Section] = []

        for position, token in enumerate(tokens):
            if token.level != 0 or token.nesting == -1 or token.map is None:
                continue

            if token.type == "heading_open":
                inline = tokens[position + 1] if position + 1 < len(tokens) else None
                sections.append(_Section(heading=inline.content.strip() if inline else ""))
                continue

            if not sections:
                sections.append(_Section(heading=None))

            start, end = token.map
            sections[-1].blocks.append("\n".join(lines[start:end]).strip())
            sections[-1].kinds.add(token.type.removesuffix("_open"))

        return sections


def parse_front_matter(text: str) -> FrontMatter:
    """Extract the `---\\nseo:` block and return its fields plus the remaining body."""

    match = _SEO_BLOCK.search(text)
    if match is None:
        return FrontMatter(body=text)

    block = match.group(0)
    values: dict[str, str] = {}
    for name, pattern in _SEO_FIELDS.items():
        found = pattern.search(block)
        if found:
            value = _SEO_STRIP.sub("", found.group(0).replace(f"{name}: ", "", 1)).strip()
            if value:
                values[name] = value

    logger.debug(f"Parsed front matter fields: {sorted(values)}")
    return FrontMatter(body=_SEO_BLOCK.sub("", text), **values)
