import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import configure_logging
from app.core.tracing import setup_tracing
from app.api.api_router import api_router
from app.kb.service import build_knowledge_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.LOG_LEVEL)
    if settings.TRACING_ENABLED:
        setup_tracing()

    # Tests install their own service before startup
    if getattr(app.state, "knowledge_service", None) is None:
        app.state.knowledge_service = build_knowledge_service(settings)
    logger.info(
        f"Knowledge service ready: storage={app.state.knowledge_service.storage_type}, "
        f"enabled={settings.KNOWLEDGE_ENABLED}"
    )

    yield

    # Shutdown
    app.state.knowledge_service.close()


app = FastAPI(
    title=settings.APP_NAME,
    lifespan=lifespan,
)

# Set all CORS enabled origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALL_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix=settings.API_PREFIX)


@app.get("/healthz")
async def health_check(request: Request):
    """Health check endpoint reporting the configured storage backend."""
    service = getattr(request.app.state, "knowledge_service", None)
    return {
        "status": "healthy" if service is not None else "starting",
        "storage_type": service.storage_type if service is not None else settings.STORAGE_TYPE,
        "knowledge_enabled": settings.KNOWLEDGE_ENABLED,
    }
