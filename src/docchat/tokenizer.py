"""Token accounting that mirrors the provider's own prompt arithmetic."""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
DEFAULT_MODEL = "gpt-4"


@lru_cache(maxsize=32)
def encoding_for(model: str | None) -> tiktoken.Encoding:
    """Return the encoding for a model, falling back to cl100k_base."""

    name = (model or DEFAULT_MODEL).split("/")[-1]
    try:
        return tiktoken.encoding_for_model(name)
    except KeyError:
        logger.warning(f"Model {name!r} not found. Using {DEFAULT_ENCODING} encoding.")
        return tiktoken.get_encoding(DEFAULT_ENCODING)


def _message_overhead(model: str) -> tuple[int, int]:
    name = model.split("/")[-1]
    if name.endswith("-0613") or name == "gpt-3.5-turbo-16k":
        return 3, 1
    if name.startswith("gpt-3.5-turbo"):
        return 4, -1
    return 3, 1


class Tokenizer:
    """Counts tokens for a model family; never raises to the caller."""

    def __init__(self, default_model: str = DEFAULT_MODEL) -> None:
        self.default_model = default_model

    def count(self, text: str | None, model: str | None = None) -> int:
        if not text:
            return 0
        try:
            encoding = encoding_for(model or self.default_model)
            return len(encoding.encode(text, disallowed_special=()))
        except Exception:
            logger.exception("Failed to count tokens")
            return 0

    def prompt_tokens(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> int:
        """Prompt tokens for a chat completion: messages plus tool declarations."""

        try:
            return self._message_tokens(model, messages) + self._tool_definition_tokens(model, tools)
        except Exception:
            logger.exception("Error calculating prompt tokens")
            return 0

    def tool_call_tokens(self, model: str, tool_call: dict[str, Any] | None) -> int:
        if not tool_call:
            logger.error("Tool call token calculator executed without a tool call")
            return 0
        header = json.dumps(tool_call, separators=(",", ":"), ensure_ascii=False)
        return self.count(header, model) + 12

    def _message_tokens(self, model: str, messages: list[dict[str, Any]]) -> int:
        tokens_per_message, tokens_per_name = _message_overhead(model)
        total = 0
        for message in messages:
            total += tokens_per_message
            content = message.get("content")
            if isinstance(content, str):
                total += self.count(content, model)
            total += self.count(message.get("role"), model)

            if "name" in message:
                total += self.count(message["name"], model)
                total += tokens_per_name

            for call in message.get("tool_calls") or []:
                function = call.get("function", call)
                total += 1
                total += self.count(function.get("name"), model)
                total += self.count(function.get("arguments"), model)

        return total + 3

    def _tool_definition_tokens(self, model: str, tools: list[dict[str, Any]] | None) -> int:
        if not tools:
            return 0

        total = 0
        for tool in tools:
            function = tool.get("function", tool)
            total += self.count(function.get("name"), model)
            total += self.count(function.get("description"), model)

            parameters = function.get("parameters")
            if not parameters:
                continue

            for key, schema in parameters.get("properties", {}).items():
                total += self.count(key, model)
                for field_key, field_value in schema.items():
                    if field_key in {"type", "description"}:
                        total += 2
                        total += self.count(str(field_value), model)
                    elif field_key == "enum":
                        total -= 3
                        for option in field_value:
                            total += 3
                            total += self.count(str(option), model)
                    else:
                        logger.debug(f"Unknown function parameter key {field_key!r}")
            total += 11

        return total + 12


default_tokenizer = Tokenizer()
