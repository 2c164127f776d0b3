"""FastAPI entrypoint for completion and source-search endpoints."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from docchat.agent.chatbot import Chatbot
from docchat.agent.delivery import EventChannel, answer, stream, to_sse
from docchat.agent.engine import ChatEngine
from docchat.agent.fallback import DeterministicChatProvider
from docchat.agent.provider import ChatProvider, LangChainChatProvider
from docchat.agent.tools import ContactSupportTool, DocumentDescribeTool, DocumentSearchTool, WeatherTool
from docchat.config import (
    AgentConfig,
    ChatbotConfig,
    ContextConfig,
    ProviderConfig,
    StorageConfig,
    VectorStoreConfig,
    WeatherConfig,
)
from docchat.errors import ChatError
from docchat.ingest.files import iter_documents
from docchat.retrieval.context import ContextAssembler, match_summary
from docchat.retrieval.fetcher import HttpDocumentFetcher
from docchat.retrieval.vector_store import HttpVectorStore, InMemoryVectorStore
from docchat.store.threads import SqliteThreadStore, ThreadStore
from docchat.types import Index

logger = logging.getLogger(__name__)

DOCS_SYSTEM = (
    "You are a helpful support assistant for a documentation site.\n"
    "Search the documentation before answering and only answer from what you find."
)
WEATHER_SYSTEM = "You are a helpful assistant who can look up the current weather."


@dataclass(slots=True)
class Services:
    """Everything the routes need, resolved once at startup."""

    engine: ChatEngine
    assembler: ContextAssembler
    indexes: list[Index]
    chatbots: dict[str, Chatbot] = field(default_factory=dict)
    llm_configured: bool = False
    default_chatbot: str = "docs_bot"
    closers: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        for resource in self.closers:
            result = resource()
            if asyncio.iscoroutine(result):
                await result


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=3, ge=1, le=20)
    min_certainty: float = Field(default=0.0, ge=0.0, le=1.0)
    buckets: list[str] | None = None


def _create_provider() -> tuple[ChatProvider, bool]:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        logger.warning("OPENAI_API_KEY is not set; answering with the deterministic provider")
        return DeterministicChatProvider(), False
    return LangChainChatProvider(ProviderConfig(api_key=api_key, base_url=os.getenv("OPENAI_BASE_URL"))), True


def _create_retrieval() -> tuple[ContextAssembler, list[Index]]:
    base_url = os.getenv("VECTORSTORE_URL")
    if base_url:
        config = VectorStoreConfig(
            base_url=base_url,
            api_key=os.getenv("VECTORSTORE_API_KEY"),
            storage_url=os.getenv("STORAGE_URL"),
        )
        buckets = os.getenv("DOCCHAT_BUCKETS", "default").split(",")
        indexes = [Index(name=bucket.strip()) for bucket in buckets if bucket.strip()]
        return ContextAssembler(HttpVectorStore(config), HttpDocumentFetcher(config)), indexes

    store = InMemoryVectorStore()
    docs_dir = os.getenv("DOCCHAT_DOCS_DIR")
    if docs_dir:
        for path, raw, loader_type in iter_documents(docs_dir):
            store.add_document(str(path.relative_to(docs_dir)), raw, loader_type=loader_type)
        logger.info(f"Loaded local documents from {docs_dir}")
    # Lexical overlap certainties are much lower than embedding similarities.
    return ContextAssembler(store, store, config=ContextConfig(min_certainty=0.2)), [Index(name="default")]


def default_chatbots(
    assembler: ContextAssembler,
    indexes: list[Index],
    store: ThreadStore | None = None,
    model: str | None = None,
) -> dict[str, Chatbot]:
    agent_config = AgentConfig()
    weather_config = WeatherConfig(api_key=os.getenv("OPEN_WEATHER_MAP_API_KEY"))
    docs = ChatbotConfig(name="docs_bot", system=DOCS_SYSTEM, **({"model": model} if model else {}))
    weather = ChatbotConfig(name="weather_bot", system=WEATHER_SYSTEM, **({"model": model} if model else {}))

    return {
        docs.name: Chatbot(
            docs,
            agent_config,
            store,
            tools=lambda: [DocumentSearchTool(assembler, indexes), DocumentDescribeTool(assembler, indexes)],
            conditional_tools=lambda: [ContactSupportTool()],
        ),
        weather.name: Chatbot(weather, agent_config, store, tools=lambda: [WeatherTool(weather_config)]),
    }


def build_services() -> Services:
    provider, llm_configured = _create_provider()
    assembler, indexes = _create_retrieval()
    store = SqliteThreadStore(os.getenv("DOCCHAT_DB_PATH", StorageConfig().sqlite_path))
    return Services(
        engine=ChatEngine(provider, store),
        assembler=assembler,
        indexes=indexes,
        chatbots=default_chatbots(assembler, indexes, store, os.getenv("OPENAI_MODEL")),
        llm_configured=llm_configured,
        closers=[
            resource.aclose
            for resource in (assembler.vector_store, assembler.fetcher)
            if hasattr(resource, "aclose")
        ]
        + [store.close],
    )


def create_app(services: Services | None = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await services.aclose()

    app = FastAPI(title="docchat", version="0.1.0", lifespan=lifespan)
    running: set[asyncio.Task[None]] = set()

    def _chatbot(name: str | None) -> Chatbot:
        chatbot = services.chatbots.get(name or services.default_chatbot)
        if chatbot is None:
            raise HTTPException(status_code=404, detail=f"Unknown chatbot: {name}")
        return chatbot

    @app.exception_handler(ChatError)
    async def chat_error(_: Request, exc: ChatError) -> JSONResponse:
        payload = exc.payload
        return JSONResponse(status_code=payload.meta.code, content=payload.model_dump())

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": services.llm_configured,
            "provider_mode": "langchain" if services.llm_configured else "deterministic",
            "chatbots": sorted(services.chatbots),
        }

    @app.get("/completion", response_model=None)
    async def completion(
        question: str | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        message_id: str | None = None,
        chatbot: str | None = None,
        http: bool = False,
    ) -> JSONResponse | StreamingResponse:
        bot = _chatbot(chatbot)
        params = {"question": question, "user_id": user_id, "session_id": session_id, "message_id": message_id}

        if http:
            outcome = await answer(services.engine, bot, params)
            if outcome.error is not None:
                return JSONResponse(status_code=outcome.error.meta.code, content=outcome.error.model_dump())
            request = outcome.request
            return JSONResponse(
                content={
                    "answer": request.answer,
                    "message_id": request.message_id,
                    "session_id": request.session_id,
                    "result": request.metadata.result,
                    "show_help_action": request.metadata.show_help_action,
                    "show_feedback": request.metadata.show_feedback,
                    "documents": [asdict(document) for document in request.metadata.documents],
                    "timers": outcome.timers,
                }
            )

        channel = EventChannel()
        task = asyncio.create_task(stream(services.engine, bot, params, channel))
        running.add(task)
        task.add_done_callback(running.discard)

        async def events() -> AsyncIterator[str]:
            try:
                async for event in channel:
                    yield to_sse(event)
            finally:
                channel.close()

        return StreamingResponse(events(), media_type="text/event-stream")

    @app.post("/sources/search")
    async def source_search(request: SourceSearchRequest) -> dict[str, Any]:
        indexes = services.indexes
        if request.buckets:
            indexes = [Index(name=bucket) for bucket in request.buckets]
        documents = await services.assembler.matches(
            request.query, indexes, max_results=request.top_k, min_certainty=request.min_certainty
        )
        return {"items": match_summary(documents)}

    return app


app = create_app()
