"""Help-center article (HTML) splitting.

Article bodies are rewritten into markdown-flavoured text with a sequence of
regex transforms, then split on heading tags. BeautifulSoup is only used to
pull plain text out of the remaining markup.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from typing import Any

from bs4 import BeautifulSoup

from docchat.ingest.splitter import Splitter
from docchat.tokenizer import Tokenizer
from docchat.types import ContentUnit, LoaderType

logger = logging.getLogger(__name__)

DEFAULT_HEADING = "Introduction"
EXCLUDED_HEADINGS = ("Can't find what you're looking for?",)

H_TAGS = re.compile(r"<h[1-6][\S\s]*?</h[1-6]>")
A_TAGS = re.compile(r"<a[\S\s]*?</a>")
A_HREF = re.compile(r'href=\\?"([^"\\]*)')
TABLE_TAGS = re.compile(r"<table[\S\s]*?</table>")
TABLE_ROWS = re.compile(r"<tr[\S\s]*?</tr>")
TABLE_CELLS = re.compile(r"<td[\S\s]*?</td>")
IMAGE_TAGS = re.compile(r"<img[\S\s]*?>")
IFRAME_TAGS = re.compile(r"<iframe[\S\s]*?</iframe>")
SRC = re.compile(r'src=\\?"([^"\\]*)')
AUTOLINKS = re.compile(r"<(?:[a-zA-Z][\w+.-]*://|mailto:)[^\s<>]*>")
BLOCK_TAGS = ["p", "div", "li", "ul", "ol", "h1", "h2", "h3", "h4", "h5", "h6", "tr", "table", "blockquote", "pre"]


@dataclass(slots=True)
class Article:
    body: str
    title: str | None = None
    description: str | None = None
    url: str | None = None

    @classmethod
    def from_raw(cls, raw: Any) -> "Article":
        if isinstance(raw, Article):
            return raw
        if isinstance(raw, dict):
            return cls(
                body=raw.get("body") or "",
                title=raw.get("title"),
                description=raw.get("description"),
                url=raw.get("url"),
            )
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        return cls(body=str(raw or ""))


class ArticleSplitter(Splitter):
    loader_types = (LoaderType.ARTICLE,)

    def __init__(
        self,
        tokenizer: Tokenizer | None = None,
        exclude_headings: tuple[str, ...] = EXCLUDED_HEADINGS,
        exclude_images: tuple[str, ...] = (),
    ) -> None:
        super().__init__(tokenizer)
        self.exclude_headings = exclude_headings
        self.exclude_images = exclude_images

    def split(self, raw: Any, **options: Any) -> list[ContentUnit]:
        article = Article.from_raw(raw)
        if not article.body.strip():
            return []

        document = self.to_markdown(article)
        headers = H_TAGS.findall(document)
        if not headers:
            content = text_of(document)
            return [self.unit(article.title or DEFAULT_HEADING, content)] if content else []

        sections = H_TAGS.split(document)
        units: list[ContentUnit] = []
        pending: str | None = None

        for index, body in enumerate(sections):
            if index == 0:
                heading: str | None = DEFAULT_HEADING
            else:
                heading = text_of(headers[index - 1]).replace(":", "", 1).strip() or None
            if heading is None or heading in self.exclude_headings:
                continue

            content = text_of(body)
            if not content:
                # Empty sections fold their heading into the next one.
                if index > 0:
                    pending = f"{pending}\n{heading}" if pending else heading
                continue

            if pending:
                heading = f"{pending}\n{heading}"
                pending = None
            units.append(self.unit(heading, content))

        return units

    def to_markdown(self, article: Article) -> str:
        """Rewrite the article's HTML into markdown-flavoured text."""

        try:
            document = html.unescape(article.body.replace("\t", ""))
            document = self.convert_tables(document, article.url)
            document = remove_empty_headers(document)
            document = self.convert_images(document)
            document = convert_links(document, article.url)
            return convert_videos(document)
        except Exception:
            logger.exception("Failed to convert article HTML, using the raw body")
            return article.body

    def convert_tables(self, document: str, url: str | None) -> str:
        """Two-column rows become a heading (first cell) followed by a body (second cell)."""

        for table in TABLE_TAGS.findall(document):
            converted = convert_links(table, url)
            for row in TABLE_ROWS.findall(converted):
                cells = TABLE_CELLS.findall(row)
                if len(cells) < 2:
                    continue
                title = text_of(cells[0]).replace("\n", " ")
                body = text_of(cells[1]).replace("\n", " ")
                converted = converted.replace(cells[0], f"<h1>{title}</h1>", 1)
                converted = converted.replace(cells[1], body, 1)
            document = document.replace(table, converted, 1)
        return document

    def convert_images(self, document: str) -> str:
        for image in IMAGE_TAGS.findall(document):
            found = SRC.search(image)
            if found is None:
                document = document.replace(image, "")
                continue
            src = found.group(1)
            if any(excluded in src for excluded in self.exclude_images):
                continue
            name = src.rstrip("/").split("/")[-1]
            document = document.replace(image, f" ![{name}]({src}) ")
        return document


def remove_empty_headers(document: str) -> str:
    for header in H_TAGS.findall(document):
        if not text_of(header):
            document = document.replace(header, "")
    return document


def convert_links(document: str, url: str | None) -> str:
    for link in A_TAGS.findall(document):
        label = text_of(link)
        found = A_HREF.search(link)
        href = found.group(1) if found else None

        if href and href.startswith("#") and url:
            href = f"{url.split('#')[0]}{href}"

        if href and label:
            replacement = f"[{label}]({href})"
        elif href:
            replacement = f"<{href}>"
        else:
            replacement = "link not found "
        document = document.replace(link, replacement)
    return document


def convert_videos(document: str) -> str:
    for video in IFRAME_TAGS.findall(document):
        found = SRC.search(video)
        if found is None:
            document = document.replace(video, "video not found")
            continue
        src = found.group(1)
        if "vimeo" in src and "/video/" in src:
            src = f"https://vimeo.com/{src.split('/video/')[1].split('?')[0]}"
        document = document.replace(video, f" [{src}]({src}) ")
    return document


def text_of(fragment: str) -> str:
    """Plain text of an HTML fragment, one non-empty line per block."""

    # Autolinks stay literal text rather than being parsed as tags.
    fragment = AUTOLINKS.sub(lambda found: html.escape(found.group(0)), fragment)
    soup = BeautifulSoup(fragment, "html.parser")
    for tag in soup.find_all(BLOCK_TAGS):
        tag.insert_after("\n")
    for tag in soup.find_all("br"):
        tag.replace_with("\n")
    text = soup.get_text()
    lines = (" ".join(line.split()) for line in text.splitlines())
    return "\n".join(line for line in lines if line)
