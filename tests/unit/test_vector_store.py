import asyncio
import json

import httpx
import pytest

from docchat.config import VectorStoreConfig
from docchat.retrieval.fetcher import HttpDocumentFetcher
from docchat.retrieval.vector_store import HttpVectorStore, InMemoryVectorStore, VectorStoreError, detect_loader_type
from docchat.types import ContentUnit, Index, LoaderType, RawMatch

CONFIG = VectorStoreConfig(base_url="https://vectors.example.com", storage_url="https://storage.example.com")

ARTICLE_METADATA = {
    "article_id": "42",
    "title": "Refunds",
    "url": "https://help.example.com/refunds",
    "updated_at": "2024-01-01",
    "heading": "How refunds work\n",
}


def _row(filename: str, certainty: float, chunk: str, loader_metadata: dict | None = None) -> dict:
    return {
        "document_chunk": chunk,
        "metadata": {"filename": filename, "certainty": certainty, "loader_metadata": loader_metadata},
    }


def _search_client(rows_by_bucket: dict[str, list[dict]], seen: list | None = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if seen is not None:
            seen.append(body)
        if body["bucket_name"] not in rows_by_bucket:
            return httpx.Response(404, json={"errors": [{"code": "404", "detail": "Bucket not found"}]})
        return httpx.Response(200, json={"data": rows_by_bucket[body["bucket_name"]]})

    return httpx.AsyncClient(base_url=CONFIG.base_url, transport=httpx.MockTransport(handler))


def test_http_store_fans_out_weights_and_dedupes(tokenizer) -> None:
    seen = []
    client = _search_client(
        {
            "docs": [_row("install.md", 0.95, "Run the installer."), _row("faq.json", 0.91, '{"q": "a"}')],
            "archive": [_row("install.md", 0.99, "Old installer."), _row("notes.txt", 0.96, "Legacy notes.")],
        },
        seen,
    )
    store = HttpVectorStore(CONFIG, client=client, tokenizer=tokenizer)

    matches = asyncio.run(store.query("installer", [Index("docs"), Index("archive", weight=0.5)], max_results=4))

    assert [(match.identifier, match.bucket) for match in matches] == [
        ("install.md", "docs"),
        ("faq.json", "docs"),
        ("notes.txt", "archive"),
    ]
    assert matches[-1].certainty == pytest.approx(0.48)
    assert matches[0].loader_type is LoaderType.MARKDOWN
    assert matches[1].loader_type is LoaderType.JSON
    assert matches[0].unit.tokens == 3
    assert {body["num_of_docs"] for body in seen} == {4}


def test_http_store_article_match_strips_heading(tokenizer) -> None:
    client = _search_client(
        {"help": [_row("refunds", 0.97, "How refunds work Refunds take five days.", ARTICLE_METADATA)]}
    )

    match = asyncio.run(HttpVectorStore(CONFIG, client=client, tokenizer=tokenizer).query("refund", [Index("help")]))[0]

    assert match.loader_type is LoaderType.ARTICLE
    assert match.unit.heading == "How refunds work"
    assert match.unit.content == " Refunds take five days."
    assert match.url == "https://help.example.com/refunds"


def test_http_store_errors(tokenizer) -> None:
    store = HttpVectorStore(CONFIG, client=_search_client({}), tokenizer=tokenizer)

    with pytest.raises(VectorStoreError, match=r"\[404\] Bucket not found"):
        asyncio.run(store.query("anything", [Index("missing")]))
    with pytest.raises(VectorStoreError):
        asyncio.run(store.query("anything", []))


@pytest.mark.parametrize(
    ("identifier", "content", "metadata", "expected"),
    [
        ("refunds", "text", ARTICLE_METADATA, LoaderType.ARTICLE),
        ("people.csv", "a,b", None, LoaderType.CSV),
        ("data.json", "not json", None, LoaderType.JSON),
        ("chunk", '{"a": 1}', None, LoaderType.JSON),
        ("guide.md", "# Guide", None, LoaderType.MARKDOWN),
        ("manual.pdf", "page", None, LoaderType.PDF),
        ("notes", "plain words", None, LoaderType.TEXT),
    ],
)
def test_detect_loader_type(identifier, content, metadata, expected) -> None:
    assert detect_loader_type(identifier, content, metadata) is expected


def _match(identifier: str, loader_type: LoaderType = LoaderType.TEXT) -> RawMatch:
    return RawMatch(
        identifier=identifier,
        unit=ContentUnit(heading=None, content="x", tokens=1),
        certainty=0.95,
        bucket="docs",
        loader_type=loader_type,
    )


def test_fetcher_decodes_by_content_type() -> None:
    requests = []
    content_types = {
        "/docs/guide.pdf": "application/pdf",
        "/docs/faq.json": "application/json; charset=utf-8",
        "/docs/notes%2Fa.txt": "text/plain",
    }
    bodies = {
        "/docs/guide.pdf": b"%PDF-1.4",
        "/docs/faq.json": b'{"q": "a"}',
        "/docs/notes%2Fa.txt": b"plain notes",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.raw_path.decode()))
        path = request.url.raw_path.decode()
        return httpx.Response(200, headers={"content-type": content_types[path]}, content=bodies[path])

    client = httpx.AsyncClient(base_url=CONFIG.storage_url, transport=httpx.MockTransport(handler))
    fetcher = HttpDocumentFetcher(CONFIG, client=client)

    assert asyncio.run(fetcher.fetch(_match("guide.pdf", LoaderType.PDF))) == b"%PDF-1.4"
    assert asyncio.run(fetcher.fetch(_match("faq.json", LoaderType.JSON))) == {"q": "a"}
    assert asyncio.run(fetcher.fetch(_match("notes/a.txt"))) == "plain notes"
    assert requests[:2] == [("HEAD", "/docs/guide.pdf"), ("GET", "/docs/guide.pdf")]


def test_fetcher_requires_storage_url() -> None:
    with pytest.raises(ValueError):
        HttpDocumentFetcher(VectorStoreConfig(base_url="https://vectors.example.com"))


def test_in_memory_store_scores_by_word_overlap(splitters) -> None:
    store = InMemoryVectorStore(splitters)
    store.add_document("a.txt", "alpha beta gamma", bucket="docs")
    store.add_document("b.txt", "alpha delta", bucket="docs", url="https://b")
    store.add_document("c.txt", "alpha beta", bucket="other")

    matches = asyncio.run(store.query("alpha beta", [Index("docs"), Index("other", weight=0.5)]))

    assert [(match.identifier, match.certainty) for match in matches] == [
        ("a.txt", 1.0),
        ("b.txt", 0.5),
        ("c.txt", 0.5),
    ]
    assert asyncio.run(store.fetch(matches[1])) == "alpha delta"
    with pytest.raises(KeyError):
        asyncio.run(store.fetch(_match("missing.txt")))
