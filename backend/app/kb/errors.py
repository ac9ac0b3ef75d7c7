"""Exceptions raised by the knowledge base engine.

Every error carries the HTTP status and a stable machine-readable code so the
API layer can map it to a response without inspecting messages.
"""

from typing import Any


class KnowledgeBaseError(Exception):
    """Base exception for knowledge base errors."""

    def __init__(self, message: str, status_code: int = 500, error_code: str = "knowledge_base_error"):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class ConfigurationError(KnowledgeBaseError):
    """Raised when the storage configuration cannot produce a backend."""

    def __init__(self, message: str = "Invalid knowledge base configuration"):
        super().__init__(message=message, status_code=500, error_code="configuration_error")


class ValidationError(KnowledgeBaseError):
    """Raised when a request is missing required fields or carries invalid values."""

    def __init__(self, message: str = "Invalid request"):
        super().__init__(message=message, status_code=400, error_code="validation_error")


class PayloadTooLargeError(KnowledgeBaseError):
    """Raised when an uploaded archive exceeds the size ceiling."""

    def __init__(self, message: str = "Upload too large"):
        super().__init__(message=message, status_code=413, error_code="payload_too_large")


class NotFoundError(KnowledgeBaseError):
    """Raised when a knowledge file or agent does not exist."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message=message, status_code=404, error_code="not_found")


class AlreadyExistsError(KnowledgeBaseError):
    """Raised when creating an agent whose ID is already registered."""

    def __init__(self, message: str = "Already exists"):
        super().__init__(message=message, status_code=409, error_code="already_exists")


class InvalidArchiveEntry(KnowledgeBaseError):
    """Raised when an archive entry would be written outside the extraction root."""

    def __init__(self, entry_name: str):
        self.entry_name = entry_name
        super().__init__(
            message=f"Invalid file path in archive: {entry_name}",
            status_code=400,
            error_code="invalid_archive_entry",
        )


class ArchiveExtractionError(KnowledgeBaseError):
    """Raised when an archive cannot be opened or one of its entries cannot be copied."""

    def __init__(self, message: str = "Failed to extract archive"):
        super().__init__(message=message, status_code=422, error_code="archive_extraction_failed")


class StorageWriteError(KnowledgeBaseError):
    """Raised when bytes cannot be durably written to the storage backend."""

    def __init__(self, message: str = "Failed to write to storage"):
        super().__init__(message=message, status_code=500, error_code="storage_write_error")


class StorageReadError(KnowledgeBaseError):
    """Raised when bytes cannot be read back from the storage backend."""

    def __init__(self, message: str = "Failed to read from storage"):
        super().__init__(message=message, status_code=500, error_code="storage_read_error")


class RegistryPersistError(KnowledgeBaseError):
    """Raised when the registry cannot be saved after an in-memory mutation."""

    def __init__(self, message: str = "Failed to persist registry"):
        super().__init__(message=message, status_code=500, error_code="registry_persist_error")


class RegistryCorruptError(KnowledgeBaseError):
    """Raised when a persisted registry exists but cannot be deserialized."""

    def __init__(self, message: str = "Registry is corrupt"):
        super().__init__(message=message, status_code=500, error_code="registry_corrupt")


class StorageTimeoutError(KnowledgeBaseError):
    """Raised when an operation-level deadline elapses.

    ``cleanup`` holds the partial sweep report when the deadline expired during
    a delete, so callers can still report what was removed.
    """

    def __init__(self, message: str = "Storage operation timed out", cleanup: Any = None):
        self.cleanup = cleanup
        super().__init__(message=message, status_code=504, error_code="storage_timeout")
