"""Tool base class and the preset tools a chatbot can expose to the model."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

import httpx
from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, Field, ValidationError

from docchat.config import WeatherConfig
from docchat.errors import ChatError, ToolExecutionError
from docchat.retrieval.context import ContextAssembler
from docchat.types import ChatEvent, Index, SourceDocument, ToolMetadata, ToolResult

logger = logging.getLogger(__name__)

NOT_FOUND = "There was no documentation found to support this question."
SUPPORT_TOOL = "contact_support"


@dataclass(slots=True)
class TurnCache:
    """State shared by tools within one turn.

    `matched_documents` holds the last non-empty match set so later tools can
    reuse it. `events` buffers telemetry emitted while a tool runs.
    """

    matched_documents: list[SourceDocument] = field(default_factory=list)
    events: list[ChatEvent] = field(default_factory=list)

    def emit(self, event: ChatEvent) -> None:
        self.events.append(event)

    def drain(self) -> list[ChatEvent]:
        events, self.events = self.events, []
        return events


class Tool(ABC):
    """A callable capability declared to the model.

    Subclasses declare `name`, `description` and a pydantic `args_schema`, and
    implement `run`. `arguments` holds the raw arguments of the call in
    progress so `error` can report them; the turn's invocation itself is
    tracked by the engine.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    args_schema: ClassVar[type[BaseModel]]

    def __init__(self) -> None:
        self.arguments = ""

    @property
    def definition(self) -> dict[str, Any]:
        tool = convert_to_openai_tool(self.args_schema)
        tool["function"]["name"] = self.name
        tool["function"]["description"] = self.description
        return tool

    async def execute(self, arguments: str, cache: TurnCache) -> ToolResult:
        self.arguments = arguments
        try:
            args = self.parse_arguments(arguments)
            return await self.run(args, cache)
        except Exception as exc:
            return self.error(exc)

    @abstractmethod
    async def run(self, args: Any, cache: TurnCache) -> ToolResult:
        """Execute with validated arguments."""

    def parse_arguments(self, arguments: str) -> BaseModel:
        try:
            return self.args_schema.model_validate_json(arguments)
        except ValidationError as exc:
            logger.warning(f"Tool arguments are not valid for {self.name}: {arguments}")
            raise ToolExecutionError("The tool arguments passed by the language model are invalid.", str(exc)) from exc

    def response(self, system: str, tool_output: str | None, metadata: ToolMetadata | None = None) -> ToolResult:
        return ToolResult(system=system, tool_output=tool_output or "N/A", metadata=metadata or ToolMetadata())

    def error(self, exc: Exception, retry: bool = False, tool_choice: Any = None) -> ToolResult:
        """Turn a failure into a retry result, or raise it as a tool error."""

        call = json.dumps({"name": self.name, "arguments": self.arguments})
        message = f"Failed to execute tool: {call} for reason: {exc or 'An unexpected error occured.'}"

        if retry:
            logger.warning(message)
            return self.response(
                system="An error occured.",
                tool_output="error",
                metadata=ToolMetadata(tool_choice=tool_choice or "auto", retry=True),
            )

        logger.error(message)
        if isinstance(exc, ChatError):
            raise exc
        raise ToolExecutionError("Failed to execute the tool.", message) from exc


class WeatherArgs(BaseModel):
    location: str = Field(description="The city and state, e.g. San Francisco, CA")
    unit: Literal["metric", "imperial"] = "metric"


class WeatherTool(Tool):
    name = "get_current_weather"
    description = "Get the current weather in a given location"
    args_schema = WeatherArgs

    system = (
        "You are a weather reporter who can check the weather in real-time.\n"
        "You should tell the user the current weather in the location they specify."
    )
    unavailable = "The weather data could not be fetched. Please prompt the user for more information."

    def __init__(self, config: WeatherConfig | None = None, client: httpx.AsyncClient | None = None) -> None:
        super().__init__()
        self.config = config or WeatherConfig()
        self._client = client

    async def run(self, args: WeatherArgs, cache: TurnCache) -> ToolResult:
        report = await self.check_weather(args.location or "unknown", args.unit)
        return self.response(
            system=self.system,
            tool_output=report,
            metadata=ToolMetadata(result="weather_response", show_feedback=True),
        )

    async def check_weather(self, location: str, unit: str) -> str:
        if not self.config.api_key:
            raise ToolExecutionError(
                "Weather API key not found.",
                "Get an OpenWeatherMap API key and set OPEN_WEATHER_MAP_API_KEY.",
            )

        params = {"q": location, "units": unit, "appid": self.config.api_key}
        try:
            if self._client is not None:
                response = await self._client.get(self.config.base_url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.get(self.config.base_url, params=params)
            data = response.json()
        except (httpx.HTTPError, ValueError):
            logger.exception(f"Weather lookup failed for {location!r}")
            return self.unavailable

        if response.is_error:
            logger.warning(data.get("message") or "An error occurred while fetching the weather data.")
            return self.unavailable

        symbol = "C" if unit == "metric" else "F"
        return (
            f"The weather in {location} is {data['weather'][0]['description']}. "
            f"The temperature is {data['main']['temp']}°{symbol}."
        )


class SearchArgs(BaseModel):
    search: str = Field(description="A search term for the documentation")


class DocumentSearchTool(Tool):
    """Searches the configured indexes and packs the best documents as context."""

    name = "search_documents"
    description = "Search the documentation for content that answers the user's question"
    args_schema = SearchArgs

    system = (
        "You are an intelligent assistant that just searched the documentation.\n"
        "Answer the user's question using only the documents below. Keep your responses short."
    )

    def __init__(
        self,
        assembler: ContextAssembler,
        indexes: list[Index],
        max_tokens: int | None = None,
        min_certainty: float | None = None,
    ) -> None:
        super().__init__()
        self.assembler = assembler
        self.indexes = indexes
        self.max_tokens = max_tokens
        self.min_certainty = min_certainty

    async def run(self, args: SearchArgs, cache: TurnCache) -> ToolResult:
        if not args.search.strip():
            raise ValueError("The language model did not output a valid search term.")

        matches = await self.assembler.matches(
            args.search, self.indexes, min_certainty=self.min_certainty, observer=cache.emit
        )
        prompt = await self.assembler.prompt(matches, self.max_tokens, observer=cache.emit)

        return self.response(
            system=self.system,
            tool_output=prompt.context or NOT_FOUND,
            metadata=ToolMetadata(
                result="bucket_response",
                show_feedback=True,
                used_documents=prompt.used,
                matched_documents=matches,
                tools=[] if prompt.context else [SUPPORT_TOOL],
            ),
        )


class DescribeArgs(BaseModel):
    search: str | None = Field(default=None, description="What to look for; omit to describe the last results")


class DocumentDescribeTool(Tool):
    """Lists what the matching documents cover instead of their content."""

    name = "describe_documents"
    description = "Describe which documents are available on a topic, with their titles and sections"
    args_schema = DescribeArgs

    system = (
        "You are an intelligent assistant that just looked up the available documentation.\n"
        "Tell the user which documents exist and what they cover. Keep your responses short."
    )

    def __init__(self, assembler: ContextAssembler, indexes: list[Index], min_certainty: float | None = None) -> None:
        super().__init__()
        self.assembler = assembler
        self.indexes = indexes
        self.min_certainty = min_certainty

    async def run(self, args: DescribeArgs, cache: TurnCache) -> ToolResult:
        if args.search and args.search.strip():
            matches = await self.assembler.matches(
                args.search, self.indexes, min_certainty=self.min_certainty, observer=cache.emit
            )
        else:
            matches = list(cache.matched_documents)

        description = self.assembler.describe(matches)
        return self.response(
            system=self.system,
            tool_output=description.context or NOT_FOUND,
            metadata=ToolMetadata(
                result="describe_response",
                show_feedback=True,
                used_documents=description.used,
                matched_documents=matches,
            ),
        )


class ContactSupportArgs(BaseModel):
    reason: str = Field(description="Why the user needs to talk to a person")


class ContactSupportTool(Tool):
    name = SUPPORT_TOOL
    description = "Offer the user a way to contact a human support agent"
    args_schema = ContactSupportArgs

    system = (
        "You are a helpful assistant. The user has been shown a button to contact support.\n"
        "Let them know a support agent can help with their request."
    )

    async def run(self, args: ContactSupportArgs, cache: TurnCache) -> ToolResult:
        return self.response(
            system=self.system,
            tool_output=f"The user has been offered a way to contact support. Reason: {args.reason}",
            metadata=ToolMetadata(result="contact_support", show_help_action=True),
        )
