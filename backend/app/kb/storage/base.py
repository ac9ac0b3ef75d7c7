"""
Storage backend contract shared by the local filesystem and object store.

Subclasses provide the physical layer (registry blob, raw archive, extracted
documents, delete sweep); this base class owns the registry and the ordering
of every operation so both implementations behave identically to callers.

Physical layout, relative to the backend root:
- registry.json
- files/<file_id>/content.zip
- files/<file_id>/extracted/...
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import BinaryIO

from opentelemetry.trace import Status, StatusCode

from app.core.tracing import get_tracer, safe_span_attributes
from app.kb.errors import KnowledgeBaseError, StorageTimeoutError, ValidationError
from app.kb.extractor import ARCHIVE_EXTENSION, ExtractionResult
from app.kb.models import Agent, CleanupReport, KnowledgeFile
from app.kb.registry import RegistryStore

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

REGISTRY_KEY = "registry.json"
FILES_PREFIX = "files"
ARCHIVE_NAME = f"content{ARCHIVE_EXTENSION}"
EXTRACTED_DIR = "extracted"


def deadline_after(timeout: float | None) -> float | None:
    """Convert a relative timeout into a monotonic deadline."""
    if timeout is None:
        return None
    return time.monotonic() + timeout


def remaining(deadline: float | None) -> float | None:
    """Seconds left before ``deadline``; None means unbounded."""
    if deadline is None:
        return None
    return max(deadline - time.monotonic(), 0.0)


def expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class StorageBackend(ABC):
    """Persists knowledge archives, extracted documents and the registry."""

    storage_type: str = ""

    def __init__(self, default_agent: Agent):
        self.registry = RegistryStore(
            read_blob=self._read_registry_blob,
            write_blob=self._write_registry_blob,
            default_agent=default_agent,
        )

    # Physical layer

    @abstractmethod
    def _read_registry_blob(self) -> bytes | None:
        """Return the persisted registry, or None if none exists."""

    @abstractmethod
    def _write_registry_blob(self, data: bytes) -> None:
        """Overwrite the persisted registry."""

    @abstractmethod
    def _write_archive(self, file_id: str, content: BinaryIO, content_type: str) -> tuple[str, int]:
        """
        Durably store the raw upload.

        Returns:
            (file_path locator for the file, archive size in bytes)

        Raises:
            StorageWriteError: If the archive cannot be written
        """

    @abstractmethod
    def _extract_archive(self, file_id: str, file_path: str) -> ExtractionResult:
        """Unpack the stored archive under ``<file_path>/extracted``."""

    @abstractmethod
    def _delete_physical(self, file_path: str, deadline: float | None) -> CleanupReport:
        """
        Delete every object under ``file_path``, continuing past individual failures.

        Raises:
            StorageTimeoutError: If ``deadline`` passes mid-sweep (carries the partial report)
        """

    @abstractmethod
    def list_documents(self, knowledge_file: KnowledgeFile) -> list[str]:
        """Relative paths of extracted documents in discovery order."""

    @abstractmethod
    def read_document(self, knowledge_file: KnowledgeFile, relative_path: str) -> str:
        """
        Read one extracted document as text.

        Raises:
            StorageReadError: If the document cannot be read
        """

    def close(self) -> None:
        """Release client resources."""

    def initialize(self) -> "StorageBackend":
        """Load (or seed) the registry. Must be called once after construction."""
        self.registry.load()
        return self

    # Knowledge files

    def store_knowledge_file(
        self,
        name: str,
        description: str,
        agent_ids: list[str],
        content: BinaryIO,
        content_type: str,
    ) -> tuple[KnowledgeFile, ExtractionResult]:
        """
        Store an uploaded archive, extract it and register it.

        Order: archive write, extraction, registry append + persist. When
        extraction or persisting fails the registry is unchanged and the
        file's physical prefix is swept on a best-effort basis.

        Raises:
            ValidationError: If no agents are given or an agent is unknown
            StorageWriteError: If the archive cannot be written
            InvalidArchiveEntry / ArchiveExtractionError: If extraction fails
            RegistryPersistError: If the registry cannot be saved
        """
        if not agent_ids:
            raise ValidationError("At least one agent ID is required")

        missing = self.registry.missing_agents(agent_ids)
        if missing:
            raise ValidationError(f"Unknown agent IDs: {', '.join(missing)}")

        file_id = str(uuid.uuid4())

        with tracer.start_as_current_span("kb.store_knowledge_file") as span:
            span.set_attributes(safe_span_attributes(
                file_id=file_id,
                storage_type=self.storage_type,
                agent_ids=agent_ids,
                description=description,
            ))

            file_path, size = self._write_archive(file_id, content, content_type)

            extraction = self._extract_archive(file_id, file_path)
            if not extraction.success:
                logger.error(f"Extraction failed for knowledge file {file_id}: {extraction.error}")
                span.set_status(Status(StatusCode.ERROR, "Extraction failed"))
                self._discard(file_id, file_path)
                raise extraction.error or KnowledgeBaseError("Extraction failed")

            knowledge_file = KnowledgeFile(
                id=file_id,
                name=name,
                description=description,
                file_path=file_path,
                agent_ids=list(agent_ids),
                file_size=size,
                content_type=content_type,
            )

            try:
                self.registry.add_knowledge_file(knowledge_file)
            except KnowledgeBaseError as e:
                span.set_status(Status(StatusCode.ERROR, e.error_code))
                self._discard(file_id, file_path)
                raise

            span.set_attributes({
                "files_extracted": extraction.files_extracted,
                "markdown_files": extraction.markdown_files,
            })

        logger.info(
            f"Stored knowledge file {file_id} '{name}' for agents {agent_ids} "
            f"({size} bytes, {extraction.files_extracted} files extracted)"
        )
        return knowledge_file, extraction

    def _discard(self, file_id: str, file_path: str) -> None:
        """Best-effort removal of bytes that will not be registered."""
        try:
            report = self._delete_physical(file_path, deadline=None)
        except StorageTimeoutError as e:
            report = e.cleanup or CleanupReport(timed_out=True)
        if report.complete:
            logger.info(f"Discarded unregistered bytes for {file_id}: {report.deleted_count} objects")
        else:
            logger.warning(
                f"Orphaned objects may remain for {file_id} at {file_path}: "
                f"{report.deleted_count} deleted, {report.error_count} failed"
            )

    def get_knowledge_file(self, file_id: str) -> KnowledgeFile:
        return self.registry.get_knowledge_file(file_id)

    def get_knowledge_files_for_agent(self, agent_id: str) -> list[KnowledgeFile]:
        return self.registry.get_knowledge_files_for_agent(agent_id)

    def get_all_knowledge_files(self) -> list[KnowledgeFile]:
        return self.registry.get_all_knowledge_files()

    def delete_knowledge_file(self, file_id: str, timeout: float | None = None) -> CleanupReport:
        """
        Unregister a knowledge file, then sweep its physical objects.

        The delete succeeds as soon as the registry no longer references the
        file; the returned report only describes the cleanup.

        Raises:
            NotFoundError: If the file is not registered
            RegistryPersistError: If the registry cannot be saved (file stays registered)
            StorageTimeoutError: If the sweep outlives ``timeout`` (registry already updated)
        """
        deadline = deadline_after(timeout)

        with tracer.start_as_current_span("kb.delete_knowledge_file") as span:
            span.set_attributes(safe_span_attributes(file_id=file_id, storage_type=self.storage_type))

            removed = self.registry.remove_knowledge_file(file_id)
            logger.info(f"Removed knowledge file {file_id} '{removed.name}' from registry")

            try:
                report = self._delete_physical(removed.file_path, deadline)
            except StorageTimeoutError:
                span.set_status(Status(StatusCode.ERROR, "Cleanup sweep timed out"))
                raise

            span.set_attributes({
                "deleted_count": report.deleted_count,
                "error_count": report.error_count,
            })

        logger.info(
            f"Completed file deletion from storage: {file_id} "
            f"(deleted={report.deleted_count}, errors={report.error_count})"
        )
        return report

    # Agents

    def get_all_agents(self) -> list[Agent]:
        return self.registry.get_all_agents()

    def get_agent(self, agent_id: str) -> Agent | None:
        return self.registry.get_agent(agent_id)

    def create_agent(self, agent_id: str, name: str, description: str, tenant_id: str) -> Agent:
        return self.registry.create_agent(agent_id, name, description, tenant_id)
