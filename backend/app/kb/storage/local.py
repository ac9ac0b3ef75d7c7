"""Local filesystem storage backend."""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO

from app.kb.errors import StorageReadError, StorageTimeoutError, StorageWriteError
from app.kb.extractor import ExtractionResult, extract_archive, resolve_entry_path
from app.kb.models import Agent, CleanupReport, KnowledgeFile
from app.kb.storage.base import (
    ARCHIVE_NAME,
    EXTRACTED_DIR,
    FILES_PREFIX,
    REGISTRY_KEY,
    StorageBackend,
    expired,
)

logger = logging.getLogger(__name__)


class LocalStorageBackend(StorageBackend):
    """Stores everything under a single base directory."""

    storage_type = "local"

    def __init__(self, base_path: str | os.PathLike, default_agent: Agent):
        self.base_path = Path(base_path)
        self.files_path = self.base_path / FILES_PREFIX
        self.registry_path = self.base_path / REGISTRY_KEY

        try:
            self.files_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageWriteError(f"Failed to create base directory {self.base_path}: {e}") from e

        logger.info(f"Local storage backend at {self.base_path.resolve()}")
        super().__init__(default_agent)

    def _read_registry_blob(self) -> bytes | None:
        try:
            return self.registry_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageReadError(f"Failed to read registry file: {e}") from e

    def _write_registry_blob(self, data: bytes) -> None:
        # Write a sibling temp file and rename over the registry
        fd, tmp_path = tempfile.mkstemp(dir=self.base_path, prefix=".registry-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.registry_path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise StorageWriteError(f"Failed to write registry file: {e}") from e

    def _write_archive(self, file_id: str, content: BinaryIO, content_type: str) -> tuple[str, int]:
        file_dir = self.files_path / file_id
        archive_path = file_dir / ARCHIVE_NAME
        try:
            file_dir.mkdir(parents=True, exist_ok=True)
            with open(archive_path, "wb") as out:
                shutil.copyfileobj(content, out)
                size = out.tell()
        except OSError as e:
            raise StorageWriteError(f"Failed to save archive for {file_id}: {e}") from e

        logger.debug(f"Saved archive {archive_path} ({size} bytes)")
        return str(file_dir), size

    def _extract_archive(self, file_id: str, file_path: str) -> ExtractionResult:
        root = Path(file_path)
        return extract_archive(root / ARCHIVE_NAME, root / EXTRACTED_DIR)

    def _delete_physical(self, file_path: str, deadline: float | None) -> CleanupReport:
        report = CleanupReport()
        root = Path(file_path)
        if not root.exists():
            return report

        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            for filename in filenames:
                if expired(deadline):
                    report.timed_out = True
                    logger.warning(
                        f"Deadline exceeded while deleting {file_path} "
                        f"(deleted={report.deleted_count}, errors={report.error_count})"
                    )
                    raise StorageTimeoutError(f"Timed out deleting {file_path}", cleanup=report)
                path = os.path.join(dirpath, filename)
                try:
                    os.remove(path)
                    report.deleted_count += 1
                except OSError as e:
                    logger.error(f"Failed to delete file {path}: {e}")
                    report.error_count += 1
            try:
                os.rmdir(dirpath)
            except OSError:
                # Still holds files that failed to delete
                pass

        return report

    def _extracted_root(self, knowledge_file: KnowledgeFile) -> Path:
        return Path(knowledge_file.file_path) / EXTRACTED_DIR

    def list_documents(self, knowledge_file: KnowledgeFile) -> list[str]:
        root = self._extracted_root(knowledge_file)
        if not root.is_dir():
            logger.warning(f"Extracted directory missing for {knowledge_file.id}: {root}")
            return []
        return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())

    def read_document(self, knowledge_file: KnowledgeFile, relative_path: str) -> str:
        root = self._extracted_root(knowledge_file)
        try:
            path = resolve_entry_path(root, relative_path)
            return path.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            raise StorageReadError(f"Failed to read {relative_path} for {knowledge_file.id}: {e}") from e
