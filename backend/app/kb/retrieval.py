"""KB retrieval: per-agent document loading and token-budgeted context assembly."""
import logging
import threading
from dataclasses import dataclass
from enum import Enum

from app.core.tracing import get_tracer, safe_span_attributes
from app.kb.errors import KnowledgeBaseError
from app.kb.extractor import is_markdown
from app.kb.storage.base import StorageBackend

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

# Rough estimate of tokens per character for the model
DEFAULT_TOKENS_PER_CHAR = 0.25
# Leaves room in the prompt for the conversation itself
DEFAULT_MAX_TOKENS = 50000

CONTEXT_HEADER = "# Knowledge Base\n\n"
DOCUMENT_HEADER = "## Document {number}\n\n"
DOCUMENT_FOOTER = "\n\n---\n\n"
TRUNCATION_NOTE = "\n\n*Note: {omitted} additional documents were omitted due to token limits.*\n"


class ContextState(str, Enum):
    """Lifecycle of a context build."""
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    COMPLETE = "complete"
    TRUNCATED = "truncated"


@dataclass
class ContextBuild:
    """Result of assembling an agent's context string."""
    agent_id: str
    state: ContextState = ContextState.EMPTY
    context: str = ""
    estimated_tokens: int = 0
    documents_included: int = 0
    documents_total: int = 0

    @property
    def truncated(self) -> bool:
        return self.state == ContextState.TRUNCATED


def estimate_tokens(text: str, tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR) -> int:
    """Estimate token cost from character count, rounding half up."""
    return int(len(text) * tokens_per_char + 0.5)


class KnowledgeRetriever:
    """
    Reads an agent's documents through the storage backend and caches them.

    The cache has its own lock, independent of the registry lock, and is never
    held while calling into the backend. It is not invalidated on writes; the
    management layer calls ``clear_agent_cache`` after store/delete.
    """

    def __init__(
        self,
        backend: StorageBackend,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        tokens_per_char: float = DEFAULT_TOKENS_PER_CHAR,
        enabled: bool = True,
    ):
        self.backend = backend
        self.max_tokens = max_tokens
        self.tokens_per_char = tokens_per_char
        self.enabled = enabled
        self._cache: dict[str, list[str]] = {}
        # Bumped on every invalidation; a load is cached only if unchanged since it started
        self._epoch = 0
        self._generations: dict[str, int] = {}
        self._cache_lock = threading.Lock()

    def get_knowledge_for_agent(self, agent_id: str) -> list[str]:
        """
        Return the raw markdown bodies for an agent, in upload then discovery order.

        A document or file that cannot be read is logged and skipped.
        """
        with self._cache_lock:
            cached = self._cache.get(agent_id)
            generation = self._generation(agent_id)
        if cached is not None:
            logger.debug(f"Knowledge cache hit for agent: {agent_id}")
            return list(cached)

        documents: list[str] = []
        for knowledge_file in self.backend.get_knowledge_files_for_agent(agent_id):
            try:
                paths = self.backend.list_documents(knowledge_file)
            except KnowledgeBaseError as e:
                logger.error(f"Failed to list documents for file {knowledge_file.id}: {e.message}")
                continue

            for path in paths:
                if not is_markdown(path):
                    continue
                try:
                    documents.append(self.backend.read_document(knowledge_file, path))
                except KnowledgeBaseError as e:
                    logger.error(f"Failed to read markdown file {path} of {knowledge_file.id}: {e.message}")

        with self._cache_lock:
            if self._generation(agent_id) == generation:
                self._cache[agent_id] = documents
            else:
                logger.debug(f"Knowledge cache invalidated during load, not storing: {agent_id}")

        logger.info(f"Loaded {len(documents)} knowledge documents for agent: {agent_id}")
        return list(documents)

    def _generation(self, agent_id: str) -> tuple[int, int]:
        """Invalidation counter for an agent. Caller holds the cache lock."""
        return self._epoch, self._generations.get(agent_id, 0)

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache = {}
            self._epoch += 1

    def clear_agent_cache(self, agent_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(agent_id, None)
            self._generations[agent_id] = self._generations.get(agent_id, 0) + 1

    def build_context(self, agent_id: str) -> ContextBuild:
        """
        Concatenate an agent's documents under the token ceiling.

        Documents are added whole, in order. The first document that would
        push the estimate past ``max_tokens`` stops the build and a note with
        the number of omitted documents is appended instead.
        """
        build = ContextBuild(agent_id=agent_id)
        if not self.enabled:
            return build

        with tracer.start_as_current_span("kb.get_knowledge_context") as span:
            span.set_attributes(safe_span_attributes(agent_id=agent_id))

            documents = self.get_knowledge_for_agent(agent_id)
            build.documents_total = len(documents)
            if not documents:
                return build

            build.state = ContextState.ACCUMULATING
            parts = [CONTEXT_HEADER]
            token_count = estimate_tokens(CONTEXT_HEADER, self.tokens_per_char)
            footer_tokens = estimate_tokens(DOCUMENT_FOOTER, self.tokens_per_char)

            for index, document in enumerate(documents):
                header = DOCUMENT_HEADER.format(number=index + 1)
                cost = (
                    estimate_tokens(header, self.tokens_per_char)
                    + estimate_tokens(document, self.tokens_per_char)
                    + footer_tokens
                )

                if token_count + cost > self.max_tokens:
                    parts.append(TRUNCATION_NOTE.format(omitted=len(documents) - index))
                    build.state = ContextState.TRUNCATED
                    logger.warning(
                        f"Knowledge context truncated due to token limit: agent={agent_id}, "
                        f"included_docs={index}, total_docs={len(documents)}, estimated_tokens={token_count}"
                    )
                    break

                parts.extend((header, document, DOCUMENT_FOOTER))
                token_count += cost
                build.documents_included += 1
            else:
                build.state = ContextState.COMPLETE

            build.context = "".join(parts)
            build.estimated_tokens = token_count

            span.set_attributes({
                "documents_included": build.documents_included,
                "documents_total": build.documents_total,
                "estimated_tokens": token_count,
                "truncated": build.truncated,
            })

        logger.info(
            f"Knowledge context prepared: agent={agent_id}, docs={build.documents_included}/{build.documents_total}, "
            f"estimated_tokens={build.estimated_tokens}, chars={len(build.context)}"
        )
        return build

    def get_knowledge_context(self, agent_id: str) -> str:
        """Context string for an agent's prompt; empty when it has no documents."""
        return self.build_context(agent_id).context
