import asyncio

import httpx
import pytest

from docchat.agent.tools import (
    NOT_FOUND,
    ContactSupportArgs,
    ContactSupportTool,
    DocumentDescribeTool,
    DocumentSearchTool,
    Tool,
    TurnCache,
    WeatherTool,
)
from docchat.config import ContextConfig, WeatherConfig
from docchat.errors import ToolExecutionError
from docchat.retrieval.context import ContextAssembler
from docchat.retrieval.vector_store import InMemoryVectorStore
from docchat.types import Index, LoaderType


def _weather_client(status: int = 200, payload: dict | None = None, seen: list | None = None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        body = payload or {"weather": [{"description": "light rain"}], "main": {"temp": 11.5}}
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _assembler(splitters) -> ContextAssembler:
    store = InMemoryVectorStore(splitters)
    store.add_document(
        "install.md",
        "# Install\n\nRun the installer and restart.\n\n# Upgrade\n\nDownload the new release.\n",
        LoaderType.MARKDOWN,
    )
    return ContextAssembler(store, store, splitters, ContextConfig(min_certainty=0.5))


def test_definition_is_an_openai_tool() -> None:
    definition = WeatherTool().definition

    assert definition["type"] == "function"
    assert definition["function"]["name"] == "get_current_weather"
    properties = definition["function"]["parameters"]["properties"]
    assert set(properties) == {"location", "unit"}
    assert properties["unit"]["enum"] == ["metric", "imperial"]


def test_weather_report_uses_openweathermap() -> None:
    seen = []
    tool = WeatherTool(WeatherConfig(api_key="key"), client=_weather_client(seen=seen))

    result = asyncio.run(tool.execute('{"location": "Dublin"}', TurnCache()))

    assert result.tool_output == "The weather in Dublin is light rain. The temperature is 11.5°C."
    assert result.system == WeatherTool.system
    assert result.metadata.result == "weather_response"
    assert seen[0].url.params["q"] == "Dublin"
    assert seen[0].url.params["units"] == "metric"


def test_weather_lookup_failure_is_reported_to_the_model() -> None:
    tool = WeatherTool(WeatherConfig(api_key="key"), client=_weather_client(404, {"message": "city not found"}))

    result = asyncio.run(tool.execute('{"location": "Atlantis", "unit": "imperial"}', TurnCache()))

    assert result.tool_output == WeatherTool.unavailable


def test_weather_without_api_key_is_a_tool_error() -> None:
    with pytest.raises(ToolExecutionError) as excinfo:
        asyncio.run(WeatherTool(WeatherConfig()).execute('{"location": "Dublin"}', TurnCache()))

    assert excinfo.value.detail == "Weather API key not found."


def test_invalid_arguments_raise_tool_error() -> None:
    with pytest.raises(ToolExecutionError):
        asyncio.run(WeatherTool(WeatherConfig(api_key="key")).execute('{"unit": "kelvin"}', TurnCache()))


def test_error_with_retry_returns_retry_result() -> None:
    tool = ContactSupportTool()

    result = tool.error(ValueError("flaky"), retry=True, tool_choice="none")

    assert result.metadata.retry is True
    assert result.metadata.tool_choice == "none"
    assert result.tool_output == "error"


def test_unexpected_failure_is_wrapped() -> None:
    with pytest.raises(ToolExecutionError) as excinfo:
        ContactSupportTool().error(RuntimeError("boom"))

    assert "boom" in excinfo.value.message


class BrokenTool(Tool):
    name = "broken"
    description = "Always fails"
    args_schema = ContactSupportArgs

    async def run(self, args, cache: TurnCache):
        raise RuntimeError("backend down")


def test_failure_reports_arguments_of_the_current_call() -> None:
    tool = BrokenTool()
    with pytest.raises(ToolExecutionError):
        asyncio.run(tool.execute('{"reason": "first"}', TurnCache()))

    with pytest.raises(ToolExecutionError) as excinfo:
        asyncio.run(tool.execute('{"reason": "second"}', TurnCache()))

    assert "second" in excinfo.value.message
    assert "first" not in excinfo.value.message
    assert tool.arguments == '{"reason": "second"}'


def test_search_tool_packs_matching_documents(splitters) -> None:
    tool = DocumentSearchTool(_assembler(splitters), [Index(name="default")], max_tokens=500)
    cache = TurnCache()

    result = asyncio.run(tool.execute('{"search": "run the installer"}', cache))

    assert "Run the installer and restart." in result.tool_output
    assert result.metadata.result == "bucket_response"
    assert result.metadata.show_feedback is True
    assert [document.identifier for document in result.metadata.matched_documents] == ["install.md"]
    assert result.metadata.tools == []
    assert [event.value["name"] for event in cache.drain()] == [
        "Vector Query",
        "Enrich Results",
        "Generating Prompt",
    ]


def test_search_without_results_unlocks_contact_support(splitters) -> None:
    tool = DocumentSearchTool(_assembler(splitters), [Index(name="default")])

    result = asyncio.run(tool.execute('{"search": "weather forecast"}', TurnCache()))

    assert result.tool_output == NOT_FOUND
    assert result.metadata.tools == ["contact_support"]


def test_describe_reuses_cached_matches(splitters) -> None:
    assembler = _assembler(splitters)
    cache = TurnCache()
    search = DocumentSearchTool(assembler, [Index(name="default")])
    searched = asyncio.run(search.execute('{"search": "run the installer"}', cache))
    cache.matched_documents = searched.metadata.matched_documents

    result = asyncio.run(DocumentDescribeTool(assembler, [Index(name="default")]).execute("{}", cache))

    assert result.metadata.result == "describe_response"
    assert "# Document ID: install.md" in result.tool_output
    assert '"Install", "Upgrade"' in result.tool_output


def test_contact_support_shows_help_action() -> None:
    result = asyncio.run(ContactSupportTool().execute('{"reason": "billing dispute"}', TurnCache()))

    assert result.metadata.show_help_action is True
    assert result.metadata.result == "contact_support"
    assert "billing dispute" in result.tool_output
