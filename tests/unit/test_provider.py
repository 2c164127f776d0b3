import asyncio
import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from docchat.agent.fallback import NO_ANSWER, DeterministicChatProvider
from docchat.agent.provider import LangChainChatProvider, ProviderRequest, to_langchain_messages
from docchat.agent.tools import WeatherTool
from docchat.config import ProviderConfig


def test_messages_convert_to_langchain() -> None:
    messages = to_langchain_messages(
        [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "weather?"},
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "get_current_weather", "arguments": '{"location": "Dublin"}'},
                    }
                ],
            },
            {"role": "tool", "tool_call_id": "call_1", "content": "rainy"},
        ]
    )

    assert [type(message) for message in messages] == [SystemMessage, HumanMessage, AIMessage, ToolMessage]
    assert messages[2].tool_calls[0]["args"] == {"location": "Dublin"}
    assert messages[3].tool_call_id == "call_1"


def test_unknown_role_is_rejected() -> None:
    with pytest.raises(ValueError):
        to_langchain_messages([{"role": "narrator", "content": "..."}])


def test_runnable_binds_tools_and_json_mode() -> None:
    provider = LangChainChatProvider(ProviderConfig(api_key="sk-test"))
    request = ProviderRequest(
        model="gpt-4o-mini",
        messages=[],
        tools=[WeatherTool().definition],
        tool_choice="auto",
        response_format="json_object",
    )

    runnable = provider._runnable(request)

    assert runnable.kwargs["response_format"] == {"type": "json_object"}


def _search_declaration() -> list[dict]:
    return [{"type": "function", "function": {"name": "search_documents", "parameters": {}}}]


def test_deterministic_provider_requests_search_then_answers() -> None:
    provider = DeterministicChatProvider()
    first = asyncio.run(
        provider.complete(
            ProviderRequest(model="m", messages=[{"role": "user", "content": "how to install?"}], tools=_search_declaration())
        )
    )

    assert first.tool_name == "search_documents"
    assert json.loads(first.tool_arguments) == {"search": "how to install?"}

    second = asyncio.run(
        provider.complete(
            ProviderRequest(model="m", messages=[{"role": "tool", "tool_call_id": "c", "content": "Run setup.exe"}])
        )
    )
    assert second.content == "Here is what the documentation says:\n\nRun setup.exe"


def test_deterministic_provider_without_search_tool() -> None:
    provider = DeterministicChatProvider()

    completion = asyncio.run(provider.complete(ProviderRequest(model="m", messages=[{"role": "user", "content": "hi"}])))

    assert completion.content == NO_ANSWER


def test_deterministic_provider_streams_words(drain) -> None:
    provider = DeterministicChatProvider()
    request = ProviderRequest(model="m", messages=[{"role": "tool", "tool_call_id": "c", "content": "N/A"}])

    deltas = drain(provider.stream(request))

    assert "".join(delta.content for delta in deltas) == NO_ANSWER
