"""Deterministic provider used when no model API key is configured."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from docchat.agent.provider import ProviderCompletion, ProviderDelta, ProviderRequest

NO_ANSWER = "I could not find any documentation to answer this question."


class DeterministicChatProvider:
    """Answers from the document search tool without a language model.

    The first call requests `search_documents` with the user's question; once
    the tool output is in the conversation, it is returned as the answer. This
    keeps the same request/response contract as `LangChainChatProvider` and is
    useful for local or offline environments where `OPENAI_API_KEY` is not set.
    """

    def __init__(self, tool_name: str = "search_documents", argument: str = "search") -> None:
        self.tool_name = tool_name
        self.argument = argument

    async def complete(self, request: ProviderRequest) -> ProviderCompletion:
        last = request.messages[-1] if request.messages else {}

        if last.get("role") == "tool":
            return ProviderCompletion(content=_answer(last.get("content")))

        if self._declared(request.tools):
            question = _last_user_message(request.messages)
            return ProviderCompletion(
                tool_name=self.tool_name,
                tool_arguments=json.dumps({self.argument: question}),
            )

        return ProviderCompletion(content=NO_ANSWER)

    async def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderDelta]:
        completion = await self.complete(request)
        if completion.tool_name:
            yield ProviderDelta(tool_name=completion.tool_name, argument_fragment="")
            yield ProviderDelta(argument_fragment=completion.tool_arguments)
            return
        words = (completion.content or "").split(" ")
        for position, word in enumerate(words):
            yield ProviderDelta(content=word if position == len(words) - 1 else f"{word} ")

    def _declared(self, tools: list[dict[str, Any]] | None) -> bool:
        return any(tool.get("function", {}).get("name") == self.tool_name for tool in tools or [])


def _last_user_message(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return str(message.get("content") or "")
    return ""


def _answer(tool_output: str | None) -> str:
    if not tool_output or tool_output == "N/A":
        return NO_ANSWER
    return f"Here is what the documentation says:\n\n{tool_output.strip()}"
