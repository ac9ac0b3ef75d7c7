"""
Knowledge management operations.

Composes the storage backend and the retriever into the caller-facing
contract: upload, list, delete, create agent, and context lookup. Validation
happens here before anything reaches storage, and the retriever cache is
invalidated for every agent touched by a write.
"""

import logging
from pathlib import Path
from typing import BinaryIO

from app.core.config import Settings
from app.kb.errors import (
    NotFoundError,
    PayloadTooLargeError,
    StorageTimeoutError,
    ValidationError,
)
from app.kb.extractor import ARCHIVE_EXTENSION, ExtractionResult
from app.kb.models import Agent, CleanupReport, KnowledgeFile
from app.kb.retrieval import ContextBuild, KnowledgeRetriever
from app.kb.storage import StorageBackend, create_storage_backend

logger = logging.getLogger(__name__)


def _clean_ids(agent_ids: list[str]) -> list[str]:
    """Strip, drop blanks and de-duplicate while keeping order."""
    cleaned: list[str] = []
    for agent_id in agent_ids:
        agent_id = agent_id.strip()
        if agent_id and agent_id not in cleaned:
            cleaned.append(agent_id)
    return cleaned


class KnowledgeService:
    """Caller-facing knowledge base operations."""

    def __init__(
        self,
        backend: StorageBackend,
        retriever: KnowledgeRetriever,
        max_upload_size: int | None = None,
    ):
        self.backend = backend
        self.retriever = retriever
        self.max_upload_size = max_upload_size

    @property
    def storage_type(self) -> str:
        return self.backend.storage_type

    def upload_knowledge_file(
        self,
        name: str,
        description: str,
        agent_ids: list[str],
        filename: str,
        content: BinaryIO,
        content_type: str = "",
        size: int | None = None,
    ) -> tuple[KnowledgeFile, ExtractionResult]:
        """
        Validate and store an uploaded archive.

        Raises:
            ValidationError: Missing name, no agents, unknown agent, or not a .zip
            PayloadTooLargeError: If ``size`` exceeds the upload ceiling
            Any storage error from ``StorageBackend.store_knowledge_file``
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required")

        agent_ids = _clean_ids(agent_ids or [])
        if not agent_ids:
            raise ValidationError("At least one agent ID is required")

        if Path(filename or "").suffix.lower() != ARCHIVE_EXTENSION:
            raise ValidationError(f"Only {ARCHIVE_EXTENSION} files are allowed")

        if size is not None and self.max_upload_size is not None and size > self.max_upload_size:
            raise PayloadTooLargeError(
                f"File size exceeds {self.max_upload_size // (1024 * 1024)} MB limit"
            )

        logger.info(f"Processing knowledge upload: name={name}, file={filename}, agents={agent_ids}")

        knowledge_file, extraction = self.backend.store_knowledge_file(
            name=name,
            description=description or "",
            agent_ids=agent_ids,
            content=content,
            content_type=content_type or "",
        )

        for agent_id in knowledge_file.agent_ids:
            self.retriever.clear_agent_cache(agent_id)

        return knowledge_file, extraction

    def list_knowledge_files(self, agent_id: str | None = None) -> list[KnowledgeFile]:
        if agent_id:
            return self.backend.get_knowledge_files_for_agent(agent_id)
        return self.backend.get_all_knowledge_files()

    def get_knowledge_file(self, file_id: str) -> KnowledgeFile:
        return self.backend.get_knowledge_file(file_id)

    def delete_knowledge_file(self, file_id: str, timeout: float | None = None) -> CleanupReport:
        """
        Delete a knowledge file.

        Success is decided by the registry update alone. A cleanup sweep that
        fails partially or times out is reported in the returned
        ``CleanupReport`` rather than raised.

        Raises:
            ValidationError: If no file ID is given
            NotFoundError: If the file is not registered
            RegistryPersistError: If the registry cannot be saved
        """
        if not file_id:
            raise ValidationError("File ID is required")

        knowledge_file = self.backend.get_knowledge_file(file_id)

        try:
            cleanup = self.backend.delete_knowledge_file(file_id, timeout=timeout)
        except StorageTimeoutError as e:
            cleanup = e.cleanup if isinstance(e.cleanup, CleanupReport) else CleanupReport(timed_out=True)
            logger.warning(
                f"Knowledge file {file_id} unregistered but cleanup timed out "
                f"(deleted={cleanup.deleted_count}, errors={cleanup.error_count})"
            )

        for agent_id in knowledge_file.agent_ids:
            self.retriever.clear_agent_cache(agent_id)

        if not cleanup.complete:
            logger.warning(f"Physical cleanup incomplete for knowledge file {file_id}")

        return cleanup

    def create_agent(self, agent_id: str, name: str, description: str, tenant_id: str) -> Agent:
        """
        Raises:
            ValidationError: If ID, name or tenant ID is empty
            AlreadyExistsError: If the ID is taken
        """
        agent_id = (agent_id or "").strip()
        name = (name or "").strip()
        tenant_id = (tenant_id or "").strip()
        if not agent_id or not name or not tenant_id:
            raise ValidationError("ID, name, and tenant ID are required")

        return self.backend.create_agent(agent_id, name, description or "", tenant_id)

    def list_agents(self) -> list[Agent]:
        return self.backend.get_all_agents()

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.backend.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    def get_context(self, agent_id: str) -> ContextBuild:
        return self.retriever.build_context(agent_id)

    def get_knowledge_context(self, agent_id: str) -> str:
        return self.retriever.get_knowledge_context(agent_id)

    def close(self) -> None:
        self.backend.close()


def build_knowledge_service(settings: Settings) -> KnowledgeService:
    """Construct the backend, retriever and service from settings."""
    backend = create_storage_backend(settings)
    retriever = KnowledgeRetriever(
        backend,
        max_tokens=settings.KNOWLEDGE_MAX_TOKENS,
        tokens_per_char=settings.KNOWLEDGE_TOKENS_PER_CHAR,
        enabled=settings.KNOWLEDGE_ENABLED,
    )
    return KnowledgeService(backend, retriever, max_upload_size=settings.MAX_UPLOAD_SIZE)
