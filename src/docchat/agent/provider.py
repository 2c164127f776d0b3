"""Model provider contract and the LangChain/OpenAI implementation."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from docchat.config import ProviderConfig
from docchat.errors import ProviderError

logger = logging.getLogger(__name__)

INITIATE_FAILURE = "Failed to initiate stream with the language model."
STREAM_FAILURE = "Failure during streaming from the language model."


@dataclass(slots=True)
class ProviderRequest:
    model: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] | None = None
    tool_choice: Any = None
    temperature: float = 0.0
    max_tokens: int = 1000
    response_format: Literal["text", "json_object"] = "text"


@dataclass(slots=True)
class ProviderCompletion:
    """A buffered response: either content or the first requested tool call."""

    content: str | None = None
    tool_name: str | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


@dataclass(slots=True)
class ProviderDelta:
    """One streamed increment. `index` identifies the tool call a fragment belongs to."""

    content: str | None = None
    tool_name: str | None = None
    argument_fragment: str | None = None
    tool_call_id: str | None = None
    index: int = 0

    @property
    def is_tool(self) -> bool:
        return self.tool_name is not None or self.argument_fragment is not None


class ChatProvider(Protocol):
    async def complete(self, request: ProviderRequest) -> ProviderCompletion:
        """Return one buffered completion."""

    def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderDelta]:
        """Yield completion increments in provider order."""


@dataclass(slots=True)
class LangChainChatProvider:
    """Chat completions through `langchain_openai.ChatOpenAI`."""

    config: ProviderConfig = field(default_factory=ProviderConfig)

    async def complete(self, request: ProviderRequest) -> ProviderCompletion:
        runnable = self._runnable(request)
        try:
            message = await runnable.ainvoke(to_langchain_messages(request.messages))
        except Exception as exc:
            logger.exception("Response error (pre-stream)")
            raise ProviderError(INITIATE_FAILURE, str(exc)) from exc

        completion = ProviderCompletion(content=_text(message.content))
        usage = getattr(message, "usage_metadata", None)
        if usage:
            completion.prompt_tokens = usage.get("input_tokens")
            completion.completion_tokens = usage.get("output_tokens")

        if message.tool_calls:
            call = message.tool_calls[0]
            completion.tool_name = call["name"]
            completion.tool_arguments = json.dumps(call["args"])
            completion.tool_call_id = call.get("id")
        elif getattr(message, "invalid_tool_calls", None):
            call = message.invalid_tool_calls[0]
            completion.tool_name = call.get("name")
            completion.tool_arguments = call.get("args") or "{}"
            completion.tool_call_id = call.get("id")
        return completion

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderDelta]:
        runnable = self._runnable(request)
        try:
            async for chunk in runnable.astream(to_langchain_messages(request.messages)):
                for call in getattr(chunk, "tool_call_chunks", None) or []:
                    yield ProviderDelta(
                        tool_name=call.get("name"),
                        argument_fragment=call.get("args") or "",
                        tool_call_id=call.get("id"),
                        index=call.get("index") or 0,
                    )
                content = _text(chunk.content)
                if content:
                    yield ProviderDelta(content=content)
        except Exception as exc:
            logger.exception("Response error (post-stream)")
            raise ProviderError(STREAM_FAILURE, str(exc)) from exc

    def _runnable(self, request: ProviderRequest) -> Any:
        llm = ChatOpenAI(
            model=f"{self.config.model_prefix}{request.model}",
            api_key=self.config.api_key,
            base_url=self.config.base_url,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            timeout=self.config.timeout_seconds,
            stream_usage=True,
        )
        runnable: Any = llm
        if request.tools:
            runnable = llm.bind_tools(request.tools, tool_choice=request.tool_choice or "auto")
        if request.response_format == "json_object":
            runnable = runnable.bind(response_format={"type": "json_object"})
        logger.debug(f"Provider call: model={request.model} tool_choice={request.tool_choice}")
        return runnable


def to_langchain_messages(messages: list[dict[str, Any]]) -> list[BaseMessage]:
    """Convert OpenAI-style message dicts into LangChain message objects."""

    converted: list[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "user":
            converted.append(HumanMessage(content=content))
        elif role == "assistant":
            tool_calls = [
                {
                    "name": call["function"]["name"],
                    "args": _arguments(call["function"].get("arguments")),
                    "id": call.get("id"),
                }
                for call in message.get("tool_calls") or []
            ]
            converted.append(AIMessage(content=content, tool_calls=tool_calls))
        elif role == "tool":
            converted.append(ToolMessage(content=content, tool_call_id=message["tool_call_id"]))
        else:
            raise ValueError(f"Unsupported message role: {role}")
    return converted


def _arguments(raw: str | None) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except ValueError:
        logger.warning(f"Tool arguments are not valid JSON ({raw})")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    return ""
