"""Buffered and streamed consumers of the engine's event sequence."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from docchat.agent.chatbot import Chatbot
from docchat.agent.engine import ChatEngine, TurnState
from docchat.errors import ChatError, ErrorPayload, UnexpectedError
from docchat.types import ChatEvent, ConversationRequest

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(slots=True)
class TurnOutcome:
    """Result of a buffered turn. `request` is None when configuration failed."""

    request: ConversationRequest | None
    error: ErrorPayload | None = None
    timers: list[dict[str, Any]] = field(default_factory=list)

    @property
    def answer(self) -> str | None:
        return self.request.answer if self.request is not None else None


async def _configure(chatbot: Chatbot, params: dict[str, Any]) -> TurnState:
    question = chatbot.validate(params)
    try:
        return await chatbot.configure(question)
    except ChatError:
        raise
    except Exception as exc:
        logger.exception(f"Failed to configure {chatbot.name}")
        raise UnexpectedError("HTTP Request Failed", str(exc)) from exc


async def answer(engine: ChatEngine, chatbot: Chatbot, params: dict[str, Any]) -> TurnOutcome:
    """Run a whole turn and return only the final outcome."""

    try:
        state = await _configure(chatbot, params)
    except ChatError as exc:
        return TurnOutcome(request=None, error=exc.payload)

    outcome = TurnOutcome(request=state.request)
    async for event in engine.run(state, stream=False):
        if event.type == "timer":
            outcome.timers.append(event.value)
        elif event.type == "error":
            outcome.error = state.error.payload if state.error else ErrorPayload.model_validate(event.value)
    return outcome


class EventChannel:
    """Single-consumer event channel backed by an asyncio queue.

    Once closed, `send` is a no-op, so a disconnected client never causes
    writes to a finished stream.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: ChatEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ChatEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ChatEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


def to_sse(event: ChatEvent) -> str:
    payload = json.dumps({"type": event.type, "value": event.value}, default=str, ensure_ascii=False)
    return f"data: {payload}\n\n"


async def stream(engine: ChatEngine, chatbot: Chatbot, params: dict[str, Any], channel: EventChannel) -> None:
    """Forward every event of a turn to `channel`, closing it exactly once."""

    try:
        try:
            state = await _configure(chatbot, params)
        except ChatError as exc:
            channel.send(ChatEvent(type="error", value=exc.payload.model_dump()))
            return

        async for event in engine.run(state, stream=True):
            channel.send(event)
    finally:
        channel.close()
