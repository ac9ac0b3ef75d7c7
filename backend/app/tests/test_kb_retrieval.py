"""Unit tests for knowledge retrieval and context assembly."""
import threading
from unittest.mock import MagicMock

import pytest

from app.kb.errors import StorageReadError
from app.kb.models import KnowledgeFile
from app.kb.retrieval import (
    CONTEXT_HEADER,
    ContextState,
    KnowledgeRetriever,
    estimate_tokens,
)


def _file(file_id: str, agent_ids: list[str]) -> KnowledgeFile:
    return KnowledgeFile(id=file_id, name=file_id, file_path=f"files/{file_id}", agent_ids=agent_ids)


@pytest.fixture
def backend():
    """Backend mock with two files for finance-bot."""
    documents = {
        "f1": {"a.md": "A" * 400, "notes.txt": "ignored"},
        "f2": {"b.md": "B" * 400},
    }
    mock = MagicMock()
    mock.get_knowledge_files_for_agent.side_effect = lambda agent_id: (
        [_file("f1", ["finance-bot"]), _file("f2", ["finance-bot"])] if agent_id == "finance-bot" else []
    )
    mock.list_documents.side_effect = lambda kf: sorted(documents[kf.id])
    mock.read_document.side_effect = lambda kf, path: documents[kf.id][path]
    return mock


class TestEstimateTokens:
    """Test the character based token estimate."""

    def test_rounds_half_up(self):
        """Test rounding to the nearest integer."""
        assert estimate_tokens("") == 0
        assert estimate_tokens("ab") == 1  # 0.5 rounds up
        assert estimate_tokens("a") == 0
        assert estimate_tokens("a" * 400) == 100

    def test_custom_ratio(self):
        """Test a non-default tokens-per-char ratio."""
        assert estimate_tokens("a" * 10, tokens_per_char=1.0) == 10


class TestGetKnowledgeForAgent:
    """Test per-agent document loading."""

    def test_only_markdown_in_order(self, backend):
        """Test markdown bodies are returned in file then path order."""
        retriever = KnowledgeRetriever(backend)

        documents = retriever.get_knowledge_for_agent("finance-bot")

        assert documents == ["A" * 400, "B" * 400]

    def test_unknown_agent_is_empty(self, backend):
        """Test an agent with no files gets nothing."""
        retriever = KnowledgeRetriever(backend)
        assert retriever.get_knowledge_for_agent("nobody") == []

    def test_cached_until_cleared(self, backend):
        """Test documents are read once until the agent cache is cleared."""
        retriever = KnowledgeRetriever(backend)

        retriever.get_knowledge_for_agent("finance-bot")
        retriever.get_knowledge_for_agent("finance-bot")
        assert backend.read_document.call_count == 2

        retriever.clear_agent_cache("finance-bot")
        retriever.get_knowledge_for_agent("finance-bot")
        assert backend.read_document.call_count == 4

    def test_returned_list_is_a_copy(self, backend):
        """Test callers cannot mutate the cache."""
        retriever = KnowledgeRetriever(backend)

        documents = retriever.get_knowledge_for_agent("finance-bot")
        documents.clear()

        assert len(retriever.get_knowledge_for_agent("finance-bot")) == 2

    def test_unreadable_documents_skipped(self, backend):
        """Test a listing or read failure only drops the affected documents."""
        def list_documents(kf):
            if kf.id == "f2":
                raise StorageReadError("listing failed")
            return ["a.md"]

        backend.list_documents.side_effect = list_documents
        backend.read_document.side_effect = StorageReadError("read failed")
        retriever = KnowledgeRetriever(backend)

        assert retriever.get_knowledge_for_agent("finance-bot") == []


class TestBuildContext:
    """Test token-budgeted context assembly."""

    def test_empty_agent(self, backend):
        """Test an agent without documents gets an empty context."""
        build = KnowledgeRetriever(backend).build_context("nobody")

        assert build.state == ContextState.EMPTY
        assert build.context == ""
        assert build.estimated_tokens == 0

    def test_disabled(self, backend):
        """Test a disabled retriever never touches the backend."""
        retriever = KnowledgeRetriever(backend, enabled=False)

        assert retriever.get_knowledge_context("finance-bot") == ""
        backend.get_knowledge_files_for_agent.assert_not_called()

    def test_complete(self, backend):
        """Test all documents included under a generous ceiling."""
        build = KnowledgeRetriever(backend).build_context("finance-bot")

        assert build.state == ContextState.COMPLETE
        assert not build.truncated
        assert build.documents_included == 2
        assert build.context.startswith(CONTEXT_HEADER)
        assert build.context.index("## Document 1") < build.context.index("A" * 400)
        assert build.context.index("A" * 400) < build.context.index("## Document 2")
        assert build.context.endswith("\n\n---\n\n")
        # header 5 + two documents at 4 + 100 + 2 each
        assert build.estimated_tokens == 217

    def test_ceiling_exactly_fits_first_document(self, backend):
        """Test a document that lands exactly on the ceiling is included."""
        build = KnowledgeRetriever(backend, max_tokens=111).build_context("finance-bot")

        assert build.state == ContextState.TRUNCATED
        assert build.documents_included == 1
        assert build.documents_total == 2
        assert build.estimated_tokens == 111
        assert "A" * 400 in build.context
        assert "B" * 400 not in build.context
        assert "*Note: 1 additional documents were omitted due to token limits.*" in build.context

    def test_first_document_over_ceiling(self, backend):
        """Test nothing but the header and note when the first document overflows."""
        build = KnowledgeRetriever(backend, max_tokens=110).build_context("finance-bot")

        assert build.truncated
        assert build.documents_included == 0
        assert "## Document" not in build.context
        assert "*Note: 2 additional documents were omitted due to token limits.*" in build.context

    def test_get_knowledge_context_matches_build(self, backend):
        """Test the string accessor returns the built context."""
        retriever = KnowledgeRetriever(backend)
        assert retriever.get_knowledge_context("finance-bot") == retriever.build_context("finance-bot").context


class TestCacheInvalidationRace:
    """Test invalidation while a load is in flight."""

    def test_clear_during_load_not_overwritten(self, backend):
        """Test a load that started before an invalidation does not cache its old result."""
        listed = threading.Event()
        release = threading.Event()
        documents = {"f1": {"a.md": "old"}}
        files = [_file("f1", ["finance-bot"])]

        def list_documents(kf):
            listed.set()
            release.wait(timeout=5)
            return sorted(documents[kf.id])

        backend.get_knowledge_files_for_agent.side_effect = lambda agent_id: list(files)
        backend.list_documents.side_effect = list_documents
        backend.read_document.side_effect = lambda kf, path: documents[kf.id][path]
        retriever = KnowledgeRetriever(backend)

        loader = threading.Thread(target=retriever.get_knowledge_for_agent, args=("finance-bot",))
        loader.start()
        assert listed.wait(timeout=5)

        # A write lands while the load is paused, then the cache is invalidated
        files.append(_file("f2", ["finance-bot"]))
        documents["f2"] = {"b.md": "Rate: 5%"}
        retriever.clear_agent_cache("finance-bot")

        release.set()
        loader.join(timeout=5)
        assert not loader.is_alive()

        backend.list_documents.side_effect = lambda kf: sorted(documents[kf.id])
        assert "Rate: 5%" in retriever.get_knowledge_context("finance-bot")

    def test_clear_all_during_load_not_overwritten(self, backend):
        """Test a full cache clear also discards an in-flight load."""
        listed = threading.Event()
        release = threading.Event()

        def list_documents(kf):
            listed.set()
            release.wait(timeout=5)
            return ["a.md"]

        backend.list_documents.side_effect = list_documents
        backend.read_document.side_effect = lambda kf, path: "old"
        retriever = KnowledgeRetriever(backend)

        loader = threading.Thread(target=retriever.get_knowledge_for_agent, args=("finance-bot",))
        loader.start()
        assert listed.wait(timeout=5)
        retriever.clear_cache()
        release.set()
        loader.join(timeout=5)

        backend.list_documents.side_effect = lambda kf: ["a.md"]
        backend.read_document.side_effect = lambda kf, path: "new"
        assert retriever.get_knowledge_for_agent("finance-bot") == ["new", "new"]
