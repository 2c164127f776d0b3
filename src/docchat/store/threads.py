"""Conversation persistence: chat history reads and per-turn writes."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
import uuid
from typing import Protocol

from docchat.errors import ErrorPayload
from docchat.types import ConversationRequest, DatabaseMessage, DocumentRecord

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    session_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT PRIMARY KEY,
    session_id TEXT,
    user_id TEXT NOT NULL,
    user_message TEXT NOT NULL,
    processing_duration REAL,
    show_help_action INTEGER,
    show_feedback INTEGER,
    error_title TEXT,
    error_detail TEXT,
    error_message TEXT,
    request_type TEXT,
    chatbot TEXT,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS tool_completions (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    system TEXT,
    tool_name TEXT NOT NULL,
    tool_arguments TEXT,
    tool_output TEXT,
    model TEXT,
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    duration REAL
);
CREATE TABLE IF NOT EXISTS chat_completions (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    type TEXT,
    system TEXT,
    answer TEXT,
    model TEXT,
    prompt_tokens INTEGER,
    completion_tokens INTEGER,
    duration REAL
);
CREATE TABLE IF NOT EXISTS documents (
    document_id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    type TEXT NOT NULL,
    url TEXT
);
"""

HISTORY_QUERY = """
SELECT m.user_message, cc.answer
FROM messages AS m
LEFT JOIN chat_completions AS cc ON cc.message_id = m.message_id
WHERE m.session_id = ? AND m.user_message != '' AND cc.answer != '' AND cc.type != 'internal_request'
ORDER BY m.created_at DESC, m.rowid DESC
LIMIT ?
"""


class ThreadStore(Protocol):
    async def history(self, session_id: str | None, limit: int = 5) -> list[DatabaseMessage]:
        """Most recent exchanges for a session, oldest first."""

    async def store(self, request: ConversationRequest, error: ErrorPayload | None = None) -> None:
        """Persist a finalized turn. Failures are logged, never raised."""


class SqliteThreadStore:
    """Thread store over stdlib sqlite3; blocking calls run in a worker thread."""

    def __init__(self, path: str = "docchat.db") -> None:
        self.path = path
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(path, check_same_thread=False)
        with self._lock:
            self._connection.executescript(SCHEMA)

    async def history(self, session_id: str | None, limit: int = 5) -> list[DatabaseMessage]:
        if not session_id:
            return []
        rows = await asyncio.to_thread(self._fetch_history, session_id, limit)

        history: list[DatabaseMessage] = []
        for user_message, bot_message in reversed(rows):
            history.append(DatabaseMessage(type="user", message=user_message))
            history.append(DatabaseMessage(type="bot", message=bot_message))
        return history

    async def store(self, request: ConversationRequest, error: ErrorPayload | None = None) -> None:
        logger.info(f"Storing request {request.message_id}")
        try:
            await asyncio.to_thread(self._store, request, error)
        except Exception:
            logger.exception(f"Failed to store request {request.message_id} to the database")

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    def _fetch_history(self, session_id: str, limit: int) -> list[tuple[str, str]]:
        with self._lock:
            return self._connection.execute(HISTORY_QUERY, (session_id, limit)).fetchall()

    def _store(self, request: ConversationRequest, error: ErrorPayload | None) -> None:
        with self._lock, self._connection as connection:
            self._store_conversation(connection, request)
            self._store_message(connection, request, error)
            self._store_tools(connection, request)
            self._store_answer(connection, request, error is not None)
            self._store_documents(connection, request)

    @staticmethod
    def _store_conversation(connection: sqlite3.Connection, request: ConversationRequest) -> None:
        if not request.session_id:
            return
        connection.execute(
            "INSERT OR IGNORE INTO conversations (session_id, user_id, created_at) VALUES (?, ?, ?)",
            (request.session_id, request.user_id, time.time()),
        )

    @staticmethod
    def _store_message(
        connection: sqlite3.Connection, request: ConversationRequest, error: ErrorPayload | None
    ) -> None:
        metadata = request.metadata
        connection.execute(
            """
            INSERT INTO messages (
                message_id, session_id, user_id, user_message, processing_duration, show_help_action,
                show_feedback, error_title, error_detail, error_message, request_type, chatbot, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                request.message_id,
                request.session_id,
                request.user_id,
                request.query,
                metadata.processing_duration,
                int(metadata.show_help_action),
                int(metadata.show_feedback),
                error.meta.title if error else None,
                error.meta.detail if error else None,
                error.meta.message if error else None,
                request.delivery,
                request.chatbot,
                time.time(),
            ),
        )

    @staticmethod
    def _store_tools(connection: sqlite3.Connection, request: ConversationRequest) -> None:
        connection.executemany(
            """
            INSERT INTO tool_completions (
                id, message_id, system, tool_name, tool_arguments, tool_output, model,
                prompt_tokens, completion_tokens, duration
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    completion.id,
                    completion.message_id,
                    completion.system,
                    completion.tool_name,
                    completion.tool_arguments,
                    completion.tool_output,
                    completion.model,
                    completion.prompt_tokens,
                    completion.completion_tokens,
                    completion.duration,
                )
                for completion in request.metadata.tool_completions
            ],
        )

    @staticmethod
    def _store_answer(connection: sqlite3.Connection, request: ConversationRequest, has_error: bool) -> None:
        connection.execute(
            """
            INSERT INTO chat_completions (
                id, message_id, type, system, answer, model, prompt_tokens, completion_tokens, duration
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid.uuid4()),
                request.message_id,
                "error" if has_error else request.metadata.result,
                request.system,
                request.answer,
                request.model,
                request.prompt_tokens,
                request.completion_tokens,
                time.perf_counter() - request.start_time,
            ),
        )

    @staticmethod
    def _store_documents(connection: sqlite3.Connection, request: ConversationRequest) -> None:
        connection.executemany(
            "INSERT INTO documents (document_id, message_id, type, url) VALUES (?, ?, ?, ?)",
            [
                (document.document_id, document.message_id, document.type, document.url)
                for document in unique_documents(request.metadata.documents)
            ],
        )


def unique_documents(documents: list[DocumentRecord]) -> list[DocumentRecord]:
    """First record per (url, type) pair, in original order."""

    seen: set[tuple[str | None, str]] = set()
    unique: list[DocumentRecord] = []
    for document in documents:
        key = (document.url, document.type)
        if key in seen:
            continue
        seen.add(key)
        unique.append(document)
    return unique
