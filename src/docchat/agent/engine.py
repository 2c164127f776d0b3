"""Tool-calling orchestration for one conversation turn.

A turn is an explicit `TurnState` moved through phase handlers:

    CONFIGURED -> CALLING_PROVIDER -> (TOOL_REQUESTED -> EXECUTING_TOOL -> CALLING_PROVIDER)*
               -> FINALIZED | ERROR

`ChatEngine.run` drives the state and yields `ChatEvent`s as they happen. The
buffered and streamed delivery adapters consume the same event sequence.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from docchat.agent.provider import ChatProvider, ProviderRequest
from docchat.agent.registry import ToolRegistry
from docchat.agent.tools import ContactSupportTool, TurnCache
from docchat.config import ChatbotConfig
from docchat.errors import ChatError, MaxToolCallsError, ProviderError, ToolExecutionError, UnexpectedError
from docchat.obs.tracing import since, timer_event
from docchat.retrieval.context import match_summary
from docchat.store.threads import ThreadStore
from docchat.tokenizer import Tokenizer, default_tokenizer
from docchat.types import ChatEvent, ConversationRequest, DocumentRecord, ToolCompletion, ToolInvocation

logger = logging.getLogger(__name__)


class TurnPhase(str, Enum):
    CONFIGURED = "configured"
    CALLING_PROVIDER = "calling_provider"
    TOOL_REQUESTED = "tool_requested"
    EXECUTING_TOOL = "executing_tool"
    FINALIZED = "finalized"
    ERROR = "error"


TERMINAL_PHASES = {TurnPhase.FINALIZED, TurnPhase.ERROR}


@dataclass(slots=True)
class TurnState:
    """Everything one turn mutates, threaded through the phase handlers."""

    request: ConversationRequest
    messages: list[dict[str, Any]]
    registry: ToolRegistry
    settings: ChatbotConfig
    max_tool_calls: int
    tool_choice: Any = "auto"
    phase: TurnPhase = TurnPhase.CONFIGURED
    invocation: ToolInvocation | None = None
    tool_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    answer: str = ""
    completion_start: float = field(default_factory=time.perf_counter)
    cache: TurnCache = field(default_factory=TurnCache)
    error: ChatError | None = None


class ChatEngine:
    """Runs turns against a provider, executing tool calls until an answer or an error."""

    def __init__(
        self,
        provider: ChatProvider,
        store: ThreadStore | None = None,
        tokenizer: Tokenizer | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.tokenizer = tokenizer or default_tokenizer

    async def run(self, state: TurnState, stream: bool = False) -> AsyncIterator[ChatEvent]:
        state.request.delivery = "stream" if stream else "http"
        state.phase = TurnPhase.CALLING_PROVIDER

        while state.phase not in TERMINAL_PHASES:
            phase = state.phase
            try:
                if phase is TurnPhase.CALLING_PROVIDER:
                    async for event in self._call_provider(state, stream):
                        yield event
                elif phase is TurnPhase.TOOL_REQUESTED:
                    self._request_tool(state)
                elif phase is TurnPhase.EXECUTING_TOOL:
                    async for event in self._execute_tool(state):
                        yield event
                else:
                    raise RuntimeError(f"No handler for phase {phase}")
            except ChatError as exc:
                async for event in self._fail(state, exc):
                    yield event
            except Exception as exc:
                logger.exception(f"Unexpected failure in phase {phase.value}")
                async for event in self._fail(state, _wrap(phase, exc)):
                    yield event

    async def _call_provider(self, state: TurnState, stream: bool) -> AsyncIterator[ChatEvent]:
        request = state.request
        tools = state.registry.definitions()
        state.prompt_tokens = self.tokenizer.prompt_tokens(request.model, state.messages, tools)
        state.completion_start = time.perf_counter()
        state.invocation = None

        provider_request = ProviderRequest(
            model=request.model,
            messages=state.messages,
            tools=tools,
            tool_choice=(state.tool_choice or "auto") if tools else None,
            temperature=state.settings.temperature,
            max_tokens=state.settings.max_tokens,
            response_format=request.response_format,
        )
        logger.info(f"Provider call: model={request.model} tool_choice={provider_request.tool_choice}")

        if stream:
            async for delta in self.provider.stream(provider_request):
                if delta.is_tool:
                    self._stream_tool(state, delta.index, delta.tool_name, delta.argument_fragment, delta.tool_call_id)
                elif delta.content:
                    state.answer += delta.content
                    state.completion_tokens += 1
                    yield ChatEvent(type="token", value=delta.content)
        else:
            completion = await self.provider.complete(provider_request)
            if completion.prompt_tokens is not None:
                state.prompt_tokens = completion.prompt_tokens
            if completion.tool_name:
                state.registry.get(completion.tool_name)
                state.invocation = ToolInvocation(
                    tool_name=completion.tool_name,
                    arguments=completion.tool_arguments or "{}",
                    tool_call_id=completion.tool_call_id,
                )
            else:
                state.answer = completion.content or ""
            if completion.completion_tokens is not None:
                state.completion_tokens = completion.completion_tokens
            else:
                state.completion_tokens = self.tokenizer.count(
                    completion.tool_arguments if completion.tool_name else state.answer, request.model
                )

        if state.invocation is not None:
            state.phase = TurnPhase.TOOL_REQUESTED
            return

        async for event in self._finalize(state):
            yield event

    def _stream_tool(
        self,
        state: TurnState,
        index: int,
        name: str | None,
        fragment: str | None,
        tool_call_id: str | None,
    ) -> None:
        # Only the first tool call of a response is executed.
        if index != 0:
            return

        if name and state.invocation is None:
            state.registry.get(name)
            state.prompt_tokens += self.tokenizer.tool_call_tokens(
                state.request.model, {"name": name, "arguments": ""}
            )
            state.invocation = ToolInvocation(tool_name=name, tool_call_id=tool_call_id)
            if not fragment:
                return

        if state.invocation is None or fragment is None:
            return
        state.completion_tokens += 1
        state.invocation.append(fragment)

    def _request_tool(self, state: TurnState) -> None:
        state.tool_count += 1
        if state.tool_count >= state.max_tool_calls:
            raise MaxToolCallsError(state.max_tool_calls)
        state.phase = TurnPhase.EXECUTING_TOOL

    async def _execute_tool(self, state: TurnState) -> AsyncIterator[ChatEvent]:
        request = state.request
        invocation = state.invocation
        if invocation is None:
            raise ToolExecutionError("Failed to execute the tool.", "No tool invocation was recorded.")

        arguments = invocation.repaired()
        logger.info(f"Executing tool {invocation.tool_name} with {arguments}")
        result = await state.registry.execute(invocation.tool_name, arguments, state.cache)
        for event in state.cache.drain():
            yield event

        metadata = result.metadata
        if metadata.model:
            request.model = metadata.model
        if metadata.matched_documents:
            state.cache.matched_documents = list(metadata.matched_documents)
        if metadata.tools:
            state.registry.activate(metadata.tools)
        state.tool_choice = metadata.tool_choice

        if metadata.retry:
            logger.warning(f"Retrying provider call after {invocation.tool_name} asked for a retry")
            invocation.reset()
            state.invocation = None
            state.phase = TurnPhase.CALLING_PROVIDER
            return

        request.metadata.show_feedback = metadata.show_feedback
        request.metadata.show_help_action = metadata.show_help_action
        asked_for_support = state.tool_count == 1 and invocation.tool_name == ContactSupportTool.name
        request.metadata.result = "contact_support" if asked_for_support else metadata.result

        yield timer_event(invocation.tool_name, since(state.completion_start))
        yield ChatEvent(type="documents", value=[asdict(document) for document in metadata.used_documents])
        yield ChatEvent(type="matches", value=match_summary(metadata.matched_documents))

        call_id = invocation.tool_call_id or f"call_{uuid.uuid4().hex[:24]}"
        assistant = {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": invocation.tool_name, "arguments": arguments},
                }
            ],
        }
        output = {"role": "tool", "tool_call_id": call_id, "content": result.tool_output}

        messages = state.messages
        if result.system:
            messages = [{"role": "system", "content": result.system}] + [
                message for message in messages if message.get("role") != "system"
            ]
        if metadata.decision and not result.tool_output:
            state.messages = [*messages, assistant]
        else:
            state.messages = [*messages, assistant, output]

        yield ChatEvent(
            type="function",
            value={
                "action": invocation.tool_name,
                "input": arguments,
                "system": result.system,
                "output": result.tool_output,
            },
        )

        if result.system:
            request.system = result.system
        request.metadata.tool_completions.append(
            ToolCompletion(
                id=str(uuid.uuid4()),
                message_id=request.message_id,
                system=result.system,
                tool_name=invocation.tool_name,
                tool_arguments=arguments,
                tool_output=result.tool_output,
                model=request.model,
                prompt_tokens=state.prompt_tokens,
                completion_tokens=self.tokenizer.count(result.tool_output, request.model),
                duration=since(state.completion_start),
            )
        )
        request.metadata.documents.extend(
            [_document(request, document.url, "used") for document in metadata.used_documents]
            + [_document(request, document.url, "matched") for document in metadata.matched_documents]
        )

        invocation.reset()
        state.invocation = None
        state.prompt_tokens = 0
        state.completion_tokens = 0
        state.completion_start = time.perf_counter()
        state.phase = TurnPhase.CALLING_PROVIDER

    async def _finalize(self, state: TurnState) -> AsyncIterator[ChatEvent]:
        request = state.request
        yield timer_event(f"{request.model} Completion", since(state.completion_start))
        yield timer_event("Total Duration", since(request.start_time))
        yield ChatEvent(
            type="complete",
            value={
                "show_help_action": request.metadata.show_help_action,
                "show_feedback": request.metadata.show_feedback,
            },
        )

        request.prompt_tokens = state.prompt_tokens
        request.completion_tokens = state.completion_tokens
        request.answer = state.answer
        request.metadata.processing_duration = since(request.start_time)
        state.phase = TurnPhase.FINALIZED

        if request.save_thread and self.store is not None:
            await self.store.store(request)

    async def _fail(self, state: TurnState, error: ChatError) -> AsyncIterator[ChatEvent]:
        if state.error is not None:
            logger.warning(f"Suppressed error after the first failure: {error}")
            return

        state.error = error
        state.phase = TurnPhase.ERROR
        request = state.request
        payload = error.payload
        logger.error(f"Turn {request.message_id} failed: {error}")

        request.prompt_tokens = state.prompt_tokens
        request.completion_tokens = state.completion_tokens
        request.answer = state.answer
        request.metadata.result = "error"
        request.metadata.error = payload
        request.metadata.processing_duration = since(request.start_time)

        yield ChatEvent(type="error", value=payload.model_dump())
        yield timer_event("Total Duration", since(request.start_time))

        if self.store is not None:
            await self.store.store(request, payload)


def _wrap(phase: TurnPhase, exc: Exception) -> ChatError:
    if phase is TurnPhase.CALLING_PROVIDER:
        return ProviderError("Failure during streaming from the language model.", str(exc))
    if phase is TurnPhase.EXECUTING_TOOL:
        return ToolExecutionError("Failed to execute the tool.", str(exc))
    return UnexpectedError("The turn failed unexpectedly.", str(exc))


def _document(request: ConversationRequest, url: str | None, kind: str) -> DocumentRecord:
    return DocumentRecord(document_id=str(uuid.uuid4()), message_id=request.message_id, type=kind, url=url)
