"""Pydantic models for KB registry records and API payloads."""
from datetime import datetime, timezone
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Agent(BaseModel):
    """An independently-branded assistant identity with its own knowledge scope."""
    id: str
    name: str
    description: str = ""
    tenant_id: str
    # Only ever populated inside the registry; stripped from every returned copy
    api_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def public_copy(self) -> "Agent":
        """Return a deep copy with the API key removed."""
        return self.model_copy(update={"api_key": None}, deep=True)


class KnowledgeFile(BaseModel):
    """An uploaded archive and its extracted documents."""
    id: str
    name: str
    description: str = ""
    file_path: str  # local directory or object-store prefix, backend-specific
    agent_ids: list[str] = Field(default_factory=list)
    uploaded_at: datetime = Field(default_factory=utcnow)
    file_size: int = 0
    content_type: str = ""


class KnowledgeRegistry(BaseModel):
    """Persisted mapping of agents to knowledge files (registry.json)."""
    agents: list[Agent] = Field(default_factory=list)
    knowledge_files: list[KnowledgeFile] = Field(default_factory=list)


class ExtractionSummary(BaseModel):
    """Extraction statistics reported to the uploader."""
    success: bool
    files_extracted: int = 0
    markdown_files: int = 0
    total_size_bytes: int = 0
    error: str | None = None


class CleanupReport(BaseModel):
    """Outcome of the best-effort physical delete sweep."""
    deleted_count: int = 0
    error_count: int = 0
    timed_out: bool = False

    @property
    def complete(self) -> bool:
        return self.error_count == 0 and not self.timed_out


class CreateAgentRequest(BaseModel):
    """Request model for creating an agent."""
    id: str = ""
    name: str = ""
    description: str = ""
    tenant_id: str = ""

    class Config:
        json_schema_extra = {
            "example": {
                "id": "finance-bot",
                "name": "Finance Bot",
                "description": "Answers questions about rates and billing",
                "tenant_id": "acme",
            }
        }


class AgentResponse(BaseModel):
    """Agent as returned to callers (never includes the API key)."""
    id: str
    name: str
    description: str
    tenant_id: str
    created_at: datetime

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        return cls(
            id=agent.id,
            name=agent.name,
            description=agent.description,
            tenant_id=agent.tenant_id,
            created_at=agent.created_at,
        )


class UploadResponse(BaseModel):
    """Response model for a knowledge file upload."""
    success: bool
    file_id: str | None = None
    extraction: ExtractionSummary | None = None
    error: str | None = None


class ListFilesResponse(BaseModel):
    """Response model for listing knowledge files."""
    files: list[KnowledgeFile]


class ListAgentsResponse(BaseModel):
    """Response model for listing agents."""
    agents: list[AgentResponse]


class DeleteResponse(BaseModel):
    """Response model for deleting a knowledge file."""
    success: bool
    file_id: str
    cleanup: CleanupReport


class KnowledgeContextResponse(BaseModel):
    """Assembled context string for an agent."""
    agent_id: str
    context: str
    estimated_tokens: int
    truncated: bool
    documents_included: int
    documents_total: int
