import asyncio

import pytest

from docchat.config import ContextConfig
from docchat.errors import DownstreamError
from docchat.retrieval.context import ContextAssembler, dice_coefficient
from docchat.retrieval.vector_store import InMemoryVectorStore
from docchat.types import ContentUnit, Index, LoaderType, RawMatch, SourceDocument


def _document(identifier: str, sizes: list[int], certainty: float, matched: int = 0) -> SourceDocument:
    units = tuple(
        ContentUnit(heading=f"{identifier} section {i}", content=f"{identifier} body number {i}", tokens=size)
        for i, size in enumerate(sizes)
    )
    return SourceDocument(
        identifier=identifier,
        loader_type=LoaderType.MARKDOWN,
        units=units,
        total_tokens=sum(sizes),
        matched=RawMatch(identifier=identifier, unit=units[matched], certainty=certainty, bucket="docs"),
        title=identifier.title(),
        description=f"About {identifier}",
        url=f"https://docs.example.com/{identifier}",
    )


def _used_tokens(used) -> int:
    total = 0
    for document in used:
        total += int(str(document.tokens).split("/")[0])
    return total


@pytest.fixture
def assembler() -> ContextAssembler:
    store = InMemoryVectorStore()
    return ContextAssembler(store, store, config=ContextConfig(safe_tokens=10, minimum_content_length=3))


def test_all_documents_fit_whole_in_certainty_order(assembler) -> None:
    documents = [_document("low", [10, 10], 0.91), _document("high", [5, 5], 0.99)]

    prompt = assembler.pack(documents, max_tokens=100)

    assert [document.title for document in prompt.used] == ["High", "Low"]
    assert [document.tokens for document in prompt.used] == [10, 20]
    assert prompt.context.index("# High") < prompt.context.index("# Low")


def test_oversized_document_is_trimmed_around_matched_unit(assembler) -> None:
    document = _document("guide", [30, 30, 20, 30, 30], 0.95, matched=2)

    prompt = assembler.pack([document], max_tokens=90)

    assert len(prompt.used) == 1
    used, total = str(prompt.used[0].tokens).split("/")
    assert int(total) == 140
    assert 20 <= int(used) <= 80
    assert "guide body number 2" in prompt.context
    assert "guide body number 0" not in prompt.context


def test_packing_never_exceeds_budget_and_stops_after_partial(assembler) -> None:
    documents = [
        _document("first", [40], 0.99),
        _document("second", [30, 30, 30], 0.98, matched=1),
        _document("third", [5], 0.97),
    ]

    prompt = assembler.pack(documents, max_tokens=110)

    assert _used_tokens(prompt.used) <= 110 - 10
    assert [document.title for document in prompt.used] == ["First", "Second"]
    assert "third" not in prompt.context


def test_window_is_empty_when_matched_unit_does_not_fit(assembler) -> None:
    documents = [_document("first", [80], 0.99), _document("second", [50, 5], 0.98)]

    prompt = assembler.pack(documents, max_tokens=100)

    assert [document.title for document in prompt.used] == ["First"]


def test_packing_is_idempotent(assembler) -> None:
    documents = [_document("a", [20, 20, 20], 0.93, matched=1), _document("b", [15], 0.96)]

    assert assembler.pack(documents, 60) == assembler.pack(documents, 60)


def test_dice_coefficient() -> None:
    assert dice_coefficient("night", "nacht") == pytest.approx(0.25)
    assert dice_coefficient("same text", "same text") == 1.0
    assert dice_coefficient("a", "ab") == 0.0


def test_format_document_without_metadata_notes_identifier(assembler) -> None:
    document = _document("notes", [3], 0.95)
    bare = SourceDocument(
        identifier="notes.json",
        loader_type=LoaderType.JSON,
        units=document.units,
        total_tokens=document.total_tokens,
        matched=document.matched,
    )

    output = assembler.format_document(bare)

    assert output.startswith("# notes.json\n")
    assert "### notes section 0\nnotes body number 0" in output


def test_describe_lists_headings(assembler) -> None:
    prompt = assembler.describe([_document("guide", [5, 5], 0.95)])

    assert "# Document ID: guide" in prompt.context
    assert "- Type: `markdown`" in prompt.context
    assert '- Paragraph Headings: ["guide section 0", "guide section 1"]' in prompt.context
    assert prompt.used[0].tokens == 10


def test_matches_filters_by_certainty_and_sorts(splitters) -> None:
    store = InMemoryVectorStore(splitters)
    store.add_document("install.md", "# Install\n\nRun the installer on your laptop.\n", LoaderType.MARKDOWN, "docs")
    store.add_document("billing.txt", "Invoices are sent monthly.", LoaderType.TEXT, "docs")
    store.add_document("other.txt", "Run the installer.", LoaderType.TEXT, "archive")
    assembler = ContextAssembler(store, store, splitters)
    events = []

    documents = asyncio.run(
        assembler.matches("run the installer", [Index(name="docs")], min_certainty=0.5, observer=events.append)
    )

    assert [document.identifier for document in documents] == ["install.md"]
    assert documents[0].title == "No Title"
    assert [event.value["name"] for event in events] == ["Vector Query", "Enrich Results"]


def test_matches_returns_empty_when_nothing_survives(splitters) -> None:
    store = InMemoryVectorStore(splitters)
    store.add_document("billing.txt", "Invoices are sent monthly.", LoaderType.TEXT)
    assembler = ContextAssembler(store, store, splitters)

    assert asyncio.run(assembler.matches("weather", [Index(name="default")], min_certainty=0.1)) == []


def test_vectorstore_failure_is_downstream_error(assembler) -> None:
    with pytest.raises(DownstreamError):
        asyncio.run(assembler.matches("anything", []))


def test_prompt_emits_timer_and_handles_empty(assembler) -> None:
    events = []
    prompt = asyncio.run(assembler.prompt([_document("a", [5], 0.95)], 100, observer=events.append))

    assert prompt.used[0].tokens == 5
    assert events[0].value["name"] == "Generating Prompt"
    assert asyncio.run(assembler.prompt([])).context == ""
