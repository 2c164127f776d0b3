"""Configuration models for the chat system."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class SplitterConfig(BaseModel):
    """Configures the fixed-window text splitters."""

    chunk_size: int = Field(default=1000, ge=1)
    max_line_tokens: int = Field(default=2000, ge=1)


class ContextConfig(BaseModel):
    """Configures retrieval filtering and prompt packing."""

    max_document_tokens: int = Field(default=2000, ge=1)
    safe_tokens: int = Field(default=100, ge=0)
    min_certainty: float = Field(default=0.9, ge=0.0, le=1.0)
    minimum_content_length: int = Field(default=10, ge=0)
    max_results: int = Field(default=3, ge=1)


class AgentConfig(BaseModel):
    """Configures the tool-calling loop."""

    max_tool_calls: int = Field(default=6, ge=1)
    max_tool_calls_by_chatbot: dict[str, int] = Field(default_factory=lambda: {"slack": 10})
    history_limit: int = Field(default=5, ge=0)

    def tool_call_limit(self, chatbot: str | None) -> int:
        if chatbot and chatbot in self.max_tool_calls_by_chatbot:
            return self.max_tool_calls_by_chatbot[chatbot]
        return self.max_tool_calls


class ChatbotConfig(BaseModel):
    """Per-chatbot completion settings."""

    name: str = "weather_bot"
    system: str = Field(min_length=1)
    model: str = "gpt-4-turbo-preview"
    max_tokens: int = Field(default=1000, ge=1)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    response_format: Literal["text", "json_object"] = "text"
    save_thread: bool = True
    required_params: list[str] = Field(default_factory=lambda: ["user_id", "session_id", "question"])


class ProviderConfig(BaseModel):
    """Credentials and endpoint for the model provider."""

    api_key: str | None = None
    base_url: str | None = None
    model_prefix: str = ""
    timeout_seconds: float = Field(default=60.0, gt=0.0)


class VectorStoreConfig(BaseModel):
    """Credentials and endpoint for the similarity-search service."""

    base_url: str
    api_key: str | None = None
    storage_url: str | None = None
    search_path: str = "/ai/embeddings/similarity-search"
    timeout_seconds: float = Field(default=30.0, gt=0.0)


class WeatherConfig(BaseModel):
    """OpenWeatherMap settings for the weather tool."""

    api_key: str | None = None
    base_url: str = "https://api.openweathermap.org/data/2.5/weather"
    timeout_seconds: float = Field(default=10.0, gt=0.0)


class StorageConfig(BaseModel):
    """Location of the conversation database."""

    sqlite_path: str = "docchat.db"
