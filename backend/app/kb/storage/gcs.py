"""
Google Cloud Storage backend.

Uses the same key layout as the local backend, rooted at the bucket. Objects
read back for retrieval are mirrored into a local cache directory keyed by
object name; a cached copy is reused until it is older than the configured
TTL, and a file's cached prefix is dropped when the file is deleted. The cache
is advisory and can be wiped at any time.
"""

import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import BinaryIO

from google.api_core import exceptions as google_exceptions
from google.cloud import storage

from app.kb.errors import (
    InvalidArchiveEntry,
    StorageReadError,
    StorageTimeoutError,
    StorageWriteError,
)
from app.kb.extractor import ExtractionResult, content_type_for, extract_archive, resolve_entry_path
from app.kb.models import Agent, CleanupReport, KnowledgeFile
from app.kb.storage.base import (
    ARCHIVE_NAME,
    EXTRACTED_DIR,
    FILES_PREFIX,
    REGISTRY_KEY,
    StorageBackend,
    deadline_after,
    expired,
    remaining,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "agent-knowledge-cache")


def create_gcs_client(project: str = "", key_file: str = "") -> storage.Client:
    """Build a storage client from an optional service account key file."""
    if key_file:
        return storage.Client.from_service_account_json(key_file, project=project or None)
    return storage.Client(project=project or None)


class GCSStorageBackend(StorageBackend):
    """Stores archives, extracted documents and the registry in a GCS bucket."""

    storage_type = "gcp"

    def __init__(
        self,
        bucket_name: str,
        default_agent: Agent,
        client: storage.Client | None = None,
        project: str = "",
        key_file: str = "",
        cache_dir: str | os.PathLike = "",
        cache_ttl_seconds: int = 3600,
        operation_timeout: float = 30.0,
    ):
        logger.info(f"Creating GCS storage backend: bucket={bucket_name}, key_file_set={bool(key_file)}")

        self.bucket_name = bucket_name
        self.project = project
        self.client = client or create_gcs_client(project, key_file)
        self.cache_dir = Path(cache_dir or DEFAULT_CACHE_DIR)
        self.cache_ttl_seconds = cache_ttl_seconds
        self.operation_timeout = operation_timeout

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageWriteError(f"Failed to create cache directory {self.cache_dir}: {e}") from e

        self.bucket = self._ensure_bucket()
        super().__init__(default_agent)

    def _ensure_bucket(self) -> storage.Bucket:
        """Return the bucket, creating it if it does not exist yet."""
        try:
            bucket = self.client.lookup_bucket(self.bucket_name, timeout=self.operation_timeout)
            if bucket is None:
                logger.info(f"Bucket does not exist, creating: {self.bucket_name}")
                bucket = self.client.create_bucket(
                    self.bucket_name,
                    project=self.project or None,
                    timeout=self.operation_timeout,
                )
                logger.info(f"Bucket created successfully: {self.bucket_name}")
            else:
                logger.info(f"Bucket exists: {self.bucket_name}")
        except google_exceptions.GoogleAPIError as e:
            raise StorageWriteError(f"Failed to ensure bucket {self.bucket_name} exists: {e}") from e
        return bucket

    def close(self) -> None:
        self.client.close()

    # Registry

    def _read_registry_blob(self) -> bytes | None:
        try:
            return self.bucket.blob(REGISTRY_KEY).download_as_bytes(timeout=self.operation_timeout)
        except google_exceptions.NotFound:
            return None
        except google_exceptions.GoogleAPIError as e:
            raise StorageReadError(f"Failed to read registry object: {e}") from e

    def _write_registry_blob(self, data: bytes) -> None:
        # Single-request uploads replace the object atomically
        try:
            self.bucket.blob(REGISTRY_KEY).upload_from_string(
                data,
                content_type="application/json",
                timeout=self.operation_timeout,
            )
        except google_exceptions.GoogleAPIError as e:
            raise StorageWriteError(f"Failed to write registry object: {e}") from e

    # Local object cache

    def _cache_path(self, key: str) -> Path:
        try:
            return resolve_entry_path(self.cache_dir, key)
        except InvalidArchiveEntry as e:
            raise StorageReadError(f"Refusing to cache object outside cache root: {key}") from e

    def _is_fresh(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except OSError:
            return False
        return age < self.cache_ttl_seconds

    def _ensure_local_copy(self, key: str) -> Path:
        """Return a local copy of ``key``, downloading it on a miss or when stale."""
        local_path = self._cache_path(key)
        if self._is_fresh(local_path):
            logger.debug(f"Using cached object: {key}")
            return local_path

        logger.debug(f"Object not cached or stale, downloading: {key}")
        tmp_path = None
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=local_path.parent, prefix=".download-")
            os.close(fd)
            self.bucket.blob(key).download_to_filename(tmp_path, timeout=self.operation_timeout)
            os.replace(tmp_path, local_path)
        except google_exceptions.NotFound as e:
            raise StorageReadError(f"Object not found: {key}") from e
        except (google_exceptions.GoogleAPIError, OSError) as e:
            raise StorageReadError(f"Failed to download {key}: {e}") from e
        finally:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)

        return local_path

    def _drop_cached_prefix(self, file_path: str) -> None:
        cached = self.cache_dir / file_path
        if cached.exists():
            shutil.rmtree(cached, ignore_errors=True)

    # Knowledge files

    def _write_archive(self, file_id: str, content: BinaryIO, content_type: str) -> tuple[str, int]:
        file_path = f"{FILES_PREFIX}/{file_id}"
        archive_key = f"{file_path}/{ARCHIVE_NAME}"

        # Spool into the cache slot for this key so extraction reads it locally
        local_archive = self._cache_path(archive_key)
        try:
            local_archive.parent.mkdir(parents=True, exist_ok=True)
            with open(local_archive, "wb") as out:
                shutil.copyfileobj(content, out)
                size = out.tell()
        except OSError as e:
            raise StorageWriteError(f"Failed to spool upload for {file_id}: {e}") from e

        try:
            self.bucket.blob(archive_key).upload_from_filename(
                str(local_archive),
                content_type=content_type or "application/zip",
                timeout=self.operation_timeout,
            )
        except google_exceptions.GoogleAPIError as e:
            raise StorageWriteError(f"Failed to upload archive to GCS: {e}") from e

        logger.info(f"Uploaded archive gs://{self.bucket_name}/{archive_key} ({size} bytes)")
        return file_path, size

    def _extract_archive(self, file_id: str, file_path: str) -> ExtractionResult:
        try:
            local_archive = self._ensure_local_copy(f"{file_path}/{ARCHIVE_NAME}")
            local_extracted = self._cache_path(f"{file_path}/{EXTRACTED_DIR}")
        except StorageReadError as e:
            return ExtractionResult().fail(e)

        result = extract_archive(local_archive, local_extracted)
        if not result.success:
            return result

        for relative in result.extracted_paths:
            key = f"{file_path}/{EXTRACTED_DIR}/{relative}"
            try:
                self.bucket.blob(key).upload_from_filename(
                    str(local_extracted / relative),
                    content_type=content_type_for(relative),
                    timeout=self.operation_timeout,
                )
            except google_exceptions.GoogleAPIError as e:
                logger.error(f"Failed to upload extracted file {key}: {e}")
                return result.fail(StorageWriteError(f"Failed to upload extracted file {relative}: {e}"))

        return result

    def _delete_physical(self, file_path: str, deadline: float | None) -> CleanupReport:
        if deadline is None:
            deadline = deadline_after(self.operation_timeout)

        report = CleanupReport()
        prefix = f"{file_path.rstrip('/')}/"
        self._drop_cached_prefix(file_path)

        if expired(deadline):
            report.timed_out = True
            logger.warning(f"Deadline exceeded before listing objects under {prefix}")
            raise StorageTimeoutError(f"Timed out deleting objects under {prefix}", cleanup=report)

        try:
            blobs = self.client.list_blobs(self.bucket_name, prefix=prefix, timeout=remaining(deadline))
            for blob in blobs:
                if expired(deadline):
                    report.timed_out = True
                    logger.warning(
                        f"Deadline exceeded while deleting objects under {prefix} "
                        f"(deleted={report.deleted_count}, errors={report.error_count})"
                    )
                    raise StorageTimeoutError(f"Timed out deleting objects under {prefix}", cleanup=report)

                try:
                    blob.delete(timeout=remaining(deadline))
                    report.deleted_count += 1
                except google_exceptions.NotFound:
                    report.deleted_count += 1
                except Exception as e:
                    logger.error(f"Failed to delete object {blob.name}: {e}")
                    report.error_count += 1
        except StorageTimeoutError:
            raise
        except Exception as e:
            # Enumeration failed; whatever was not yet listed stays behind
            logger.error(f"Error listing objects to delete under {prefix}: {e}")
            report.error_count += 1

        return report

    def list_documents(self, knowledge_file: KnowledgeFile) -> list[str]:
        prefix = f"{knowledge_file.file_path}/{EXTRACTED_DIR}/"
        try:
            names = [
                blob.name
                for blob in self.client.list_blobs(self.bucket_name, prefix=prefix, timeout=self.operation_timeout)
            ]
        except google_exceptions.GoogleAPIError as e:
            raise StorageReadError(f"Failed to list documents for {knowledge_file.id}: {e}") from e

        return sorted(name[len(prefix):] for name in names if not name.endswith("/") and len(name) > len(prefix))

    def read_document(self, knowledge_file: KnowledgeFile, relative_path: str) -> str:
        key = f"{knowledge_file.file_path}/{EXTRACTED_DIR}/{relative_path}"
        local_path = self._ensure_local_copy(key)
        try:
            return local_path.read_bytes().decode("utf-8", errors="replace")
        except OSError as e:
            raise StorageReadError(f"Failed to read cached copy of {key}: {e}") from e
