"""
Agent and knowledge-file registry.

The registry is the single source of truth mapping agents to knowledge files.
It is held fully in memory, read under a shared lock, and every mutation is
applied and written through to durable storage under an exclusive lock. The
durable location is supplied by the storage backend as a pair of callables, so
the same registry logic serves the local filesystem and the object store.
"""

import logging
import secrets
import threading
from contextlib import contextmanager
from typing import Callable, Iterator

from pydantic import ValidationError as PydanticValidationError

from app.kb.errors import (
    AlreadyExistsError,
    KnowledgeBaseError,
    NotFoundError,
    RegistryCorruptError,
    RegistryPersistError,
)
from app.kb.models import Agent, KnowledgeFile, KnowledgeRegistry

logger = logging.getLogger(__name__)

# Returns the persisted registry bytes, or None when nothing is persisted yet
RegistryReader = Callable[[], bytes | None]
RegistryWriter = Callable[[bytes], None]


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def generate_api_key() -> str:
    return secrets.token_urlsafe(32)


class RegistryStore:
    """In-memory registry with write-through persistence."""

    def __init__(
        self,
        read_blob: RegistryReader,
        write_blob: RegistryWriter,
        default_agent: Agent,
    ):
        self._read_blob = read_blob
        self._write_blob = write_blob
        self._default_agent = default_agent
        self._lock = ReadWriteLock()
        self._registry = KnowledgeRegistry()

    def load(self) -> None:
        """
        Load the persisted registry, or seed and persist a default one.

        Raises:
            RegistryCorruptError: If a persisted registry cannot be parsed
            RegistryPersistError: If the seeded registry cannot be saved
        """
        with self._lock.write_lock():
            blob = self._read_blob()

            if blob is None:
                logger.info(f"No registry found, seeding default agent: {self._default_agent.id}")
                self._registry = KnowledgeRegistry(agents=[self._default_agent.model_copy(deep=True)])
                self._persist()
                return

            try:
                self._registry = KnowledgeRegistry.model_validate_json(blob)
            except (PydanticValidationError, ValueError) as e:
                raise RegistryCorruptError(f"Failed to parse registry: {e}") from e

            logger.info(
                f"Loaded registry: {len(self._registry.agents)} agents, "
                f"{len(self._registry.knowledge_files)} knowledge files"
            )

    def _persist(self) -> None:
        """Serialize and write the whole registry. Caller holds the write lock."""
        data = self._registry.model_dump_json(indent=2).encode("utf-8")
        try:
            self._write_blob(data)
        except KnowledgeBaseError as e:
            raise RegistryPersistError(f"Failed to save registry: {e.message}") from e
        except Exception as e:
            raise RegistryPersistError(f"Failed to save registry: {e}") from e

    # Reads

    def get_all_agents(self) -> list[Agent]:
        with self._lock.read_lock():
            return [agent.public_copy() for agent in self._registry.agents]

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._lock.read_lock():
            for agent in self._registry.agents:
                if agent.id == agent_id:
                    return agent.public_copy()
        return None

    def missing_agents(self, agent_ids: list[str]) -> list[str]:
        """Return the IDs from ``agent_ids`` that are not registered."""
        with self._lock.read_lock():
            known = {agent.id for agent in self._registry.agents}
        return [agent_id for agent_id in agent_ids if agent_id not in known]

    def get_knowledge_file(self, file_id: str) -> KnowledgeFile:
        with self._lock.read_lock():
            for knowledge_file in self._registry.knowledge_files:
                if knowledge_file.id == file_id:
                    return knowledge_file.model_copy(deep=True)
        raise NotFoundError(f"Knowledge file not found: {file_id}")

    def get_knowledge_files_for_agent(self, agent_id: str) -> list[KnowledgeFile]:
        with self._lock.read_lock():
            return [
                knowledge_file.model_copy(deep=True)
                for knowledge_file in self._registry.knowledge_files
                if agent_id in knowledge_file.agent_ids
            ]

    def get_all_knowledge_files(self) -> list[KnowledgeFile]:
        with self._lock.read_lock():
            return [knowledge_file.model_copy(deep=True) for knowledge_file in self._registry.knowledge_files]

    # Mutations

    def create_agent(self, agent_id: str, name: str, description: str, tenant_id: str) -> Agent:
        """
        Register a new agent with a freshly generated API key.

        Returns:
            Copy of the agent without its API key

        Raises:
            AlreadyExistsError: If the ID is taken
            RegistryPersistError: If the registry cannot be saved (no agent is added)
        """
        with self._lock.write_lock():
            if any(agent.id == agent_id for agent in self._registry.agents):
                raise AlreadyExistsError(f"Agent with ID {agent_id} already exists")

            agent = Agent(
                id=agent_id,
                name=name,
                description=description,
                tenant_id=tenant_id,
                api_key=generate_api_key(),
            )
            self._registry.agents.append(agent)
            try:
                self._persist()
            except RegistryPersistError:
                self._registry.agents.pop()
                raise

        logger.info(f"Created agent: {agent_id} (tenant={tenant_id})")
        return agent.public_copy()

    def add_knowledge_file(self, knowledge_file: KnowledgeFile) -> None:
        """Append a knowledge file record and persist; rolled back if persisting fails."""
        with self._lock.write_lock():
            self._registry.knowledge_files.append(knowledge_file.model_copy(deep=True))
            try:
                self._persist()
            except RegistryPersistError:
                self._registry.knowledge_files.pop()
                raise

    def remove_knowledge_file(self, file_id: str) -> KnowledgeFile:
        """
        Remove a knowledge file record and persist.

        Returns:
            The removed record

        Raises:
            NotFoundError: If no record has this ID
            RegistryPersistError: If the registry cannot be saved (record is restored)
        """
        with self._lock.write_lock():
            files = self._registry.knowledge_files
            index = next((i for i, f in enumerate(files) if f.id == file_id), None)
            if index is None:
                raise NotFoundError(f"Knowledge file not found: {file_id}")

            removed = files.pop(index)
            try:
                self._persist()
            except RegistryPersistError:
                files.insert(index, removed)
                raise

        return removed
