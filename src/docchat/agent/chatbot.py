"""Chatbot definition and the configure step that prepares a turn."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from docchat.agent.engine import TurnState
from docchat.agent.registry import ToolRegistry
from docchat.agent.tools import Tool
from docchat.config import AgentConfig, ChatbotConfig
from docchat.errors import MissingParametersError
from docchat.store.threads import ThreadStore
from docchat.types import ChatbotQuestion, ConversationRequest, DatabaseMessage

logger = logging.getLogger(__name__)

ToolFactory = Callable[[], list[Tool]]


class Chatbot:
    """Binds a system prompt, model settings and tool factories to a name.

    Tool instances keep per-call state, so the factories are called once per
    turn and never share instances across turns.
    """

    def __init__(
        self,
        config: ChatbotConfig,
        agent_config: AgentConfig | None = None,
        store: ThreadStore | None = None,
        tools: ToolFactory | None = None,
        conditional_tools: ToolFactory | None = None,
    ) -> None:
        self.config = config
        self.agent_config = agent_config or AgentConfig()
        self.store = store
        self.tools = tools or list
        self.conditional_tools = conditional_tools or list

    @property
    def name(self) -> str:
        return self.config.name

    def validate(self, params: dict[str, Any]) -> ChatbotQuestion:
        """Check required parameters before anything contacts the provider."""

        passed = [key for key, value in params.items() if value not in (None, "")]
        missing = [key for key in self.config.required_params if key not in passed]
        if missing:
            logger.warning(f"Request to {self.name} is missing {missing}")
            raise MissingParametersError(self.config.required_params, passed)

        return ChatbotQuestion(
            user_id=str(params.get("user_id") or "anonymous"),
            question=str(params.get("question") or ""),
            session_id=params.get("session_id") or None,
            message_id=params.get("message_id") or None,
        )

    async def configure(self, question: ChatbotQuestion) -> TurnState:
        history: list[DatabaseMessage] = []
        if self.store is not None:
            history = await self.store.history(question.session_id, self.agent_config.history_limit)

        request = ConversationRequest(
            chatbot=self.name,
            user_id=question.user_id,
            session_id=question.session_id,
            message_id=question.message_id or str(uuid.uuid4()),
            query=question.question,
            system=self.config.system,
            model=self.config.model,
            response_format=self.config.response_format,
            save_thread=self.config.save_thread,
        )

        return TurnState(
            request=request,
            messages=build_messages(self.config.system, history, question.question),
            registry=ToolRegistry(self.tools(), self.conditional_tools()),
            settings=self.config,
            max_tool_calls=self.agent_config.tool_call_limit(self.name),
        )


def build_messages(system: str, history: list[DatabaseMessage], question: str) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
    for message in history:
        role = "user" if message.type == "user" else "assistant"
        messages.append({"role": role, "content": message.message})
    messages.append({"role": "user", "content": question})
    return messages
