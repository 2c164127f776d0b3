"""JSON and CSV splitting."""

from __future__ import annotations

import csv
import io
import json
from typing import Any

from docchat.ingest.splitter import Splitter
from docchat.types import ContentUnit, LoaderType


class JsonSplitter(Splitter):
    """Splits structured records.

    A list becomes one unit per element, serialized back to indented JSON.
    A single object becomes one unit per string leaf, headed by the leaf's
    property path. CSV input is first converted to a list of row objects.
    """

    loader_types = (LoaderType.JSON, LoaderType.CSV)

    def split(self, raw: Any, *, from_csv: bool = False, **options: Any) -> list[ContentUnit]:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            if not raw.strip():
                return []
            data = csv_to_records(raw) if from_csv else json.loads(raw)
        else:
            data = raw

        if isinstance(data, list):
            return self.split_records(data)
        return self.split_string_values(data)

    def split_records(self, records: list[Any]) -> list[ContentUnit]:
        return [self.unit(None, json.dumps(record, indent=2, ensure_ascii=False)) for record in records]

    def split_string_values(self, data: Any) -> list[ContentUnit]:
        return [self.unit(key, value) for key, value in extract_string_values(data)]


def extract_string_values(data: Any) -> list[tuple[str, str]]:
    """Depth-first walk returning `(path, value)` for every string leaf.

    Top-level keys are returned bare; nested keys are joined with dots and
    list positions are written as `[i]`.
    """

    result: list[tuple[str, str]] = []

    def _walk(node: Any, path: str) -> None:
        if isinstance(node, dict):
            items = ((f"{path}.{key}" if path else str(key), value) for key, value in node.items())
        elif isinstance(node, list):
            items = ((f"{path}[{i}]", value) for i, value in enumerate(node))
        else:
            return
        for child_path, value in items:
            if isinstance(value, str):
                result.append((child_path, value))
            else:
                _walk(value, child_path)

    _walk(data, "")
    return result


def csv_to_records(text: str) -> list[dict[str, str]]:
    """Convert CSV text to row dicts keyed by the header row."""

    lines = "\n".join(line.strip() for line in text.strip().splitlines() if line.strip())
    reader = csv.DictReader(io.StringIO(lines), skipinitialspace=True)
    records: list[dict[str, str]] = []
    for row in reader:
        records.append(
            {(key or "").strip(): (value or "").strip() for key, value in row.items() if key is not None}
        )
    return records
