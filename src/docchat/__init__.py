"""Documentation chat package."""

from .config import AgentConfig, ChatbotConfig, ContextConfig

__all__ = ["AgentConfig", "ChatbotConfig", "ContextConfig"]
