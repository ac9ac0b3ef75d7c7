from fastapi import APIRouter
from app.api.routes.kb import kb_router
from app.core.config import settings

api_router = APIRouter()

if settings.KNOWLEDGE_ENABLED:
    api_router.include_router(kb_router)
