"""Shared domain models."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from docchat.errors import ErrorPayload


class LoaderType(str, Enum):
    """Source format of a stored document."""

    TEXT = "text"
    MARKDOWN = "markdown"
    ARTICLE = "article"
    PDF = "pdf"
    JSON = "json"
    CSV = "csv"


@dataclass(slots=True)
class ContentUnit:
    """Smallest token-counted piece of a document."""

    heading: str | None
    content: str
    tokens: int


@dataclass(slots=True)
class Index:
    """A searchable vectorstore index (bucket) with a certainty weight."""

    name: str
    weight: float = 1.0


@dataclass(slots=True)
class RawMatch:
    """A similarity-search hit before the source document is loaded."""

    identifier: str
    unit: ContentUnit
    certainty: float
    bucket: str
    loader_type: LoaderType = LoaderType.TEXT
    url: str | None = None
    loader_metadata: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class SourceDocument:
    """A full document rebuilt from a match and split into units."""

    identifier: str
    loader_type: LoaderType
    units: tuple[ContentUnit, ...]
    total_tokens: int
    matched: RawMatch
    title: str | None = None
    description: str | None = None
    url: str | None = None
    override: str | None = None

    @property
    def certainty(self) -> float:
        return self.matched.certainty


@dataclass(slots=True)
class UsedDocument:
    """A document that made it into the prompt, wholly or partially."""

    title: str | None
    url: str | None
    tokens: int | str


@dataclass(slots=True)
class FormattedPrompt:
    context: str
    used: list[UsedDocument]


@dataclass(slots=True)
class DatabaseMessage:
    type: Literal["user", "bot"]
    message: str


@dataclass(slots=True)
class ChatbotQuestion:
    """The caller's question plus identifiers for the turn."""

    user_id: str
    question: str
    session_id: str | None = None
    message_id: str | None = None


@dataclass(slots=True)
class ToolCompletion:
    """Record of one executed tool call, stored with the turn."""

    id: str
    message_id: str
    system: str
    tool_name: str
    tool_arguments: str
    tool_output: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    duration: float


@dataclass(slots=True)
class DocumentRecord:
    document_id: str
    message_id: str
    type: Literal["used", "matched"]
    url: str | None


@dataclass(slots=True)
class TurnMetadata:
    tool_completions: list[ToolCompletion] = field(default_factory=list)
    documents: list[DocumentRecord] = field(default_factory=list)
    processing_duration: float = 0.0
    show_help_action: bool = False
    show_feedback: bool = False
    error: ErrorPayload | None = None
    result: str = "initial_request"


@dataclass(slots=True)
class ConversationRequest:
    """Per-turn aggregate, finalized once and handed to persistence."""

    chatbot: str
    user_id: str
    message_id: str
    query: str
    system: str
    model: str
    session_id: str | None = None
    answer: str | None = None
    start_time: float = field(default_factory=time.perf_counter)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    metadata: TurnMetadata = field(default_factory=TurnMetadata)
    delivery: Literal["http", "stream"] | None = None
    response_format: Literal["text", "json_object"] = "text"
    save_thread: bool = True


@dataclass(slots=True)
class ToolInvocation:
    """Argument text accumulated for one tool call."""

    tool_name: str
    arguments: str = "{"
    tool_call_id: str | None = None

    def append(self, fragment: str) -> None:
        stripped = fragment.strip()
        if stripped in {"{", "}"}:
            return
        self.arguments += fragment

    def repaired(self) -> str:
        arguments = self.arguments
        if arguments.startswith("{{"):
            arguments = arguments[1:]
        if not arguments.strip().endswith("}"):
            arguments += "}"
        return arguments

    def reset(self) -> None:
        self.arguments = "{"
        self.tool_call_id = None


@dataclass(slots=True)
class ToolMetadata:
    result: str = "cant_answer"
    used_documents: list[UsedDocument] = field(default_factory=list)
    matched_documents: list[SourceDocument] = field(default_factory=list)
    show_help_action: bool = False
    show_feedback: bool = False
    tools: list[str] = field(default_factory=list)
    tool_choice: Any = "auto"
    model: str | None = None
    retry: bool = False
    decision: bool = False


@dataclass(slots=True)
class ToolResult:
    system: str
    tool_output: str
    metadata: ToolMetadata = field(default_factory=ToolMetadata)


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: str
    output_preview: str
    latency_ms: float


EventType = Literal["token", "error", "complete", "documents", "matches", "timer", "function"]


@dataclass(slots=True)
class ChatEvent:
    """One lifecycle event emitted by the engine."""

    type: EventType
    value: Any
