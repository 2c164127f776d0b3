import asyncio

from docchat.agent.chatbot import Chatbot
from docchat.agent.delivery import answer
from docchat.agent.engine import ChatEngine
from docchat.agent.provider import ProviderCompletion
from docchat.agent.tools import ContactSupportTool, DocumentSearchTool
from docchat.config import ChatbotConfig, ContextConfig
from docchat.retrieval.context import ContextAssembler
from docchat.retrieval.vector_store import InMemoryVectorStore
from docchat.store.threads import SqliteThreadStore
from docchat.types import Index, LoaderType


class ScriptedProvider:
    def __init__(self, completions: list[ProviderCompletion]) -> None:
        self.completions = list(completions)
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        return self.completions.pop(0)

    async def stream(self, request):
        raise NotImplementedError
        yield


def _declared(request) -> list[str]:
    return [tool["function"]["name"] for tool in request.tools or []]


def _chatbot(splitters, store) -> Chatbot:
    vectors = InMemoryVectorStore(splitters)
    vectors.add_document("install.md", "# Install\n\nRun the installer and restart.\n", LoaderType.MARKDOWN)
    assembler = ContextAssembler(vectors, vectors, splitters, ContextConfig(min_certainty=0.5))
    indexes = [Index(name="default")]
    return Chatbot(
        ChatbotConfig(name="docs_bot", system="Answer from the documentation."),
        store=store,
        tools=lambda: [DocumentSearchTool(assembler, indexes)],
        conditional_tools=lambda: [ContactSupportTool()],
    )


def test_empty_search_unlocks_contact_support(tmp_path, splitters, tokenizer) -> None:
    store = SqliteThreadStore(str(tmp_path / "threads.db"))
    provider = ScriptedProvider(
        [
            ProviderCompletion(tool_name="search_documents", tool_arguments='{"search": "refund policy"}'),
            ProviderCompletion(tool_name="contact_support", tool_arguments='{"reason": "refunds are undocumented"}'),
            ProviderCompletion(content="I could not find that, but support can help."),
        ]
    )
    params = {"user_id": "user-1", "session_id": "session-1", "question": "How do refunds work?"}

    outcome = asyncio.run(answer(ChatEngine(provider, store, tokenizer), _chatbot(splitters, store), params))

    assert outcome.error is None
    assert _declared(provider.requests[0]) == ["search_documents"]
    assert _declared(provider.requests[1]) == ["search_documents", "contact_support"]
    assert outcome.request.metadata.show_help_action is True
    assert outcome.request.metadata.result == "contact_support"
    assert [completion.tool_name for completion in outcome.request.metadata.tool_completions] == [
        "search_documents",
        "contact_support",
    ]
    store.close()


def test_follow_up_turn_sees_history(tmp_path, splitters, tokenizer) -> None:
    store = SqliteThreadStore(str(tmp_path / "threads.db"))
    chatbot = _chatbot(splitters, store)
    provider = ScriptedProvider(
        [
            ProviderCompletion(tool_name="search_documents", tool_arguments='{"search": "run the installer"}'),
            ProviderCompletion(content="Run the installer, then restart."),
            ProviderCompletion(content="Yes, restart once."),
        ]
    )
    engine = ChatEngine(provider, store, tokenizer)

    first = asyncio.run(
        answer(engine, chatbot, {"user_id": "user-1", "session_id": "session-1", "question": "How do I install?"})
    )
    second = asyncio.run(
        answer(engine, chatbot, {"user_id": "user-1", "session_id": "session-1", "question": "Restart needed?"})
    )

    assert "Run the installer and restart." in provider.requests[1].messages[-1]["content"]
    assert first.request.metadata.result == "bucket_response"
    assert second.answer == "Yes, restart once."
    assert [message["role"] for message in provider.requests[2].messages] == ["system", "user", "assistant", "user"]
    assert provider.requests[2].messages[2]["content"] == "Run the installer, then restart."
    store.close()
