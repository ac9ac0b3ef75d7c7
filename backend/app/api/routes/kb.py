"""Knowledge Base API routes for archive upload, agents and context retrieval."""
import logging
import os
from typing import NoReturn

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from starlette.concurrency import run_in_threadpool

from app.kb.errors import KnowledgeBaseError
from app.kb.models import (
    AgentResponse,
    CreateAgentRequest,
    DeleteResponse,
    KnowledgeContextResponse,
    KnowledgeFile,
    ListAgentsResponse,
    ListFilesResponse,
    UploadResponse,
)
from app.kb.service import KnowledgeService

logger = logging.getLogger(__name__)

kb_router = APIRouter(prefix="/knowledge", tags=["knowledge-base"])


def get_knowledge_service(request: Request) -> KnowledgeService:
    return request.app.state.knowledge_service


def _raise_http(e: KnowledgeBaseError) -> NoReturn:
    raise HTTPException(
        status_code=e.status_code,
        detail={"error": e.error_code, "message": e.message},
    ) from e


def _upload_size(file: UploadFile) -> int:
    if file.size is not None:
        return file.size
    file.file.seek(0, os.SEEK_END)
    size = file.file.tell()
    file.file.seek(0)
    return size


@kb_router.post("/upload", response_model=UploadResponse)
async def upload_knowledge_file(
    file: UploadFile = File(...),
    name: str = Form(""),
    description: str = Form(""),
    agent_ids: list[str] = Form([]),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> UploadResponse:
    """
    Upload a ZIP archive of documents for one or more agents.

    The archive is stored, extracted and registered in one operation. Only
    markdown documents inside it are later used as agent context.

    Args:
        file: ZIP archive
        name: Display name
        description: Free-text description
        agent_ids: Agents that may use the documents (repeat the field per agent)

    Returns:
        File ID and extraction statistics
    """
    size = _upload_size(file)

    try:
        knowledge_file, extraction = await run_in_threadpool(
            service.upload_knowledge_file,
            name=name,
            description=description,
            agent_ids=agent_ids,
            filename=file.filename or "",
            content=file.file,
            content_type=file.content_type or "",
            size=size,
        )
    except KnowledgeBaseError as e:
        logger.error(f"Knowledge upload failed: {e.error_code}: {e.message}")
        _raise_http(e)
    finally:
        await file.close()

    return UploadResponse(
        success=True,
        file_id=knowledge_file.id,
        extraction=extraction.summary(),
    )


@kb_router.get("/files", response_model=ListFilesResponse)
async def list_knowledge_files(
    agent_id: str | None = Query(None, description="Only files assigned to this agent"),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> ListFilesResponse:
    files = await run_in_threadpool(service.list_knowledge_files, agent_id)
    return ListFilesResponse(files=files)


@kb_router.get("/files/{file_id}", response_model=KnowledgeFile)
async def get_knowledge_file(
    file_id: str,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeFile:
    try:
        return await run_in_threadpool(service.get_knowledge_file, file_id)
    except KnowledgeBaseError as e:
        _raise_http(e)


@kb_router.delete("/files/{file_id}", response_model=DeleteResponse)
async def delete_knowledge_file(
    file_id: str,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> DeleteResponse:
    """
    Delete a knowledge file.

    Succeeds once the file is unregistered. Objects that could not be
    removed are reported in ``cleanup``.
    """
    try:
        cleanup = await run_in_threadpool(service.delete_knowledge_file, file_id)
    except KnowledgeBaseError as e:
        logger.error(f"Knowledge delete failed for {file_id}: {e.error_code}: {e.message}")
        _raise_http(e)

    return DeleteResponse(success=True, file_id=file_id, cleanup=cleanup)


@kb_router.get("/agents", response_model=ListAgentsResponse)
async def list_agents(
    service: KnowledgeService = Depends(get_knowledge_service),
) -> ListAgentsResponse:
    agents = await run_in_threadpool(service.list_agents)
    return ListAgentsResponse(agents=[AgentResponse.from_agent(agent) for agent in agents])


@kb_router.get("/agents/{agent_id}", response_model=AgentResponse)
async def get_agent(
    agent_id: str,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> AgentResponse:
    try:
        agent = await run_in_threadpool(service.get_agent, agent_id)
    except KnowledgeBaseError as e:
        _raise_http(e)
    return AgentResponse.from_agent(agent)


@kb_router.post("/agents/create", response_model=AgentResponse)
async def create_agent(
    request: CreateAgentRequest,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> AgentResponse:
    """Register a new agent. The generated API key is never returned."""
    try:
        agent = await run_in_threadpool(
            service.create_agent,
            request.id,
            request.name,
            request.description,
            request.tenant_id,
        )
    except KnowledgeBaseError as e:
        logger.error(f"Agent creation failed for {request.id}: {e.error_code}: {e.message}")
        _raise_http(e)

    return AgentResponse.from_agent(agent)


@kb_router.get("/agents/{agent_id}/context", response_model=KnowledgeContextResponse)
async def get_agent_context(
    agent_id: str,
    service: KnowledgeService = Depends(get_knowledge_service),
) -> KnowledgeContextResponse:
    """Assembled knowledge context for an agent; empty when it has no documents."""
    build = await run_in_threadpool(service.get_context, agent_id)
    return KnowledgeContextResponse(
        agent_id=agent_id,
        context=build.context,
        estimated_tokens=build.estimated_tokens,
        truncated=build.truncated,
        documents_included=build.documents_included,
        documents_total=build.documents_total,
    )
