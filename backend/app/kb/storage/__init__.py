"""Interchangeable storage backends for knowledge archives and the registry."""

from app.kb.storage.base import StorageBackend
from app.kb.storage.factory import create_storage_backend

__all__ = ["StorageBackend", "create_storage_backend"]
