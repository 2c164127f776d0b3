"""Local file loading for seeding the in-memory vectorstore."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from docchat.types import LoaderType

logger = logging.getLogger(__name__)

EXTENSIONS: dict[str, LoaderType] = {
    ".txt": LoaderType.TEXT,
    ".log": LoaderType.TEXT,
    ".md": LoaderType.MARKDOWN,
    ".markdown": LoaderType.MARKDOWN,
    ".html": LoaderType.ARTICLE,
    ".htm": LoaderType.ARTICLE,
    ".pdf": LoaderType.PDF,
    ".json": LoaderType.JSON,
    ".csv": LoaderType.CSV,
}


def loader_type_for(path: str | Path) -> LoaderType | None:
    return EXTENSIONS.get(Path(path).suffix.lower())


def read_document(path: str | Path) -> tuple[Any, LoaderType]:
    """Read a file into the raw form its splitter expects."""

    file_path = Path(path)
    loader_type = loader_type_for(file_path)
    if loader_type is None:
        raise ValueError(f"Unsupported file extension: {file_path.suffix or '<none>'}")

    if loader_type is LoaderType.PDF:
        return file_path.read_bytes(), loader_type
    text = file_path.read_text(encoding="utf-8")
    if loader_type is LoaderType.ARTICLE:
        return {"title": file_path.stem, "body": text}, loader_type
    if loader_type is LoaderType.JSON:
        return json.loads(text), loader_type
    return text, loader_type


def iter_documents(directory: str | Path) -> list[tuple[Path, Any, LoaderType]]:
    """Every supported file under `directory`, sorted by path. Unreadable files are skipped."""

    documents: list[tuple[Path, Any, LoaderType]] = []
    for path in sorted(Path(directory).rglob("*")):
        if not path.is_file() or loader_type_for(path) is None:
            continue
        try:
            raw, loader_type = read_document(path)
        except (OSError, ValueError):
            logger.exception(f"Failed to read {path}")
            continue
        documents.append((path, raw, loader_type))
    return documents
