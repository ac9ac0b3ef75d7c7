"""Pytest configuration and shared fixtures."""

import io
import os
import zipfile
from pathlib import Path
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing app
os.environ.update({
    "STORAGE_TYPE": "local",
    "KNOWLEDGE_ENABLED": "true",
    "TRACING_ENABLED": "false",
    "LOG_LEVEL": "DEBUG",
})

from app.kb.models import Agent  # noqa: E402
from app.kb.retrieval import KnowledgeRetriever  # noqa: E402
from app.kb.service import KnowledgeService  # noqa: E402
from app.kb.storage.local import LocalStorageBackend  # noqa: E402


def build_zip(entries: dict[str, str | bytes]) -> bytes:
    """Build an in-memory zip archive from ``{entry_name: content}``."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def make_zip() -> Callable[[dict[str, str | bytes]], bytes]:
    """Factory for zip archive bytes."""
    return build_zip


@pytest.fixture
def default_agent() -> Agent:
    """Agent seeded into an empty registry."""
    return Agent(id="default-bot", name="Default Bot", description="Default agent", tenant_id="default")


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    """Base directory for a local backend."""
    return tmp_path / "knowledge"


@pytest.fixture
def local_backend(storage_root: Path, default_agent: Agent) -> LocalStorageBackend:
    """Initialized local filesystem backend."""
    return LocalStorageBackend(storage_root, default_agent).initialize()


@pytest.fixture
def retriever(local_backend: LocalStorageBackend) -> KnowledgeRetriever:
    """Retriever over the local backend with default limits."""
    return KnowledgeRetriever(local_backend)


@pytest.fixture
def knowledge_service(local_backend: LocalStorageBackend, retriever: KnowledgeRetriever) -> KnowledgeService:
    """Knowledge service over the local backend with a 1 MB upload limit."""
    return KnowledgeService(local_backend, retriever, max_upload_size=1024 * 1024)


@pytest.fixture
def client(knowledge_service: KnowledgeService) -> Generator[TestClient, None, None]:
    """Create FastAPI test client wired to a temporary knowledge service."""
    from app.main import app

    app.state.knowledge_service = knowledge_service
    yield TestClient(app)
    app.state.knowledge_service = None
