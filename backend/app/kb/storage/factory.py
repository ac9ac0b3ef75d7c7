"""Storage backend selection from settings."""
import logging

from app.core.config import Settings
from app.kb.errors import ConfigurationError
from app.kb.models import Agent
from app.kb.storage.base import StorageBackend

logger = logging.getLogger(__name__)

LOCAL_STORAGE = "local"
GCP_STORAGE = "gcp"


def default_agent_from_settings(settings: Settings) -> Agent:
    """Agent seeded into an empty registry."""
    return Agent(
        id=settings.DEFAULT_AGENT_ID,
        name=settings.DEFAULT_AGENT_NAME,
        description=settings.DEFAULT_AGENT_DESCRIPTION,
        tenant_id=settings.DEFAULT_TENANT_ID,
    )


def create_storage_backend(settings: Settings) -> StorageBackend:
    """
    Build and initialize the configured storage backend.

    The backend is chosen once; there is no switching at runtime.

    Raises:
        ConfigurationError: For an unknown storage type or a missing bucket
        RegistryCorruptError: If the persisted registry cannot be parsed
    """
    storage_type = settings.STORAGE_TYPE
    default_agent = default_agent_from_settings(settings)

    logger.info(f"Initializing storage backend: type={storage_type}")

    if storage_type == LOCAL_STORAGE:
        from app.kb.storage.local import LocalStorageBackend

        backend: StorageBackend = LocalStorageBackend(settings.LOCAL_STORAGE_PATH, default_agent)

    elif storage_type == GCP_STORAGE:
        if not settings.GCP_STORAGE_BUCKET:
            raise ConfigurationError("GCP_STORAGE_BUCKET must be set when using GCP storage")

        from app.kb.storage.gcs import GCSStorageBackend

        backend = GCSStorageBackend(
            bucket_name=settings.GCP_STORAGE_BUCKET,
            default_agent=default_agent,
            project=settings.GCP_PROJECT_ID,
            key_file=settings.GCP_KEY_FILE,
            cache_dir=settings.GCP_CACHE_DIR,
            cache_ttl_seconds=settings.GCP_CACHE_TTL_SECONDS,
            operation_timeout=settings.GCP_OPERATION_TIMEOUT_SECONDS,
        )

    else:
        raise ConfigurationError(f"Unknown storage type: {storage_type}")

    backend.initialize()
    logger.info(f"Storage backend initialized successfully: type={backend.storage_type}")
    return backend
