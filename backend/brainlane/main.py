"""
Main FastAPI application for Brain Lane.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from brainlane.api.proxy import router as proxy_router
from brainlane.api.routes import router
from brainlane.config import settings
from brainlane.services.completion_engine import CompletionEngine, register_pipeline_processor
from brainlane.services.job_queue import get_job_queue
from brainlane.services.llm_service import close_llm_service, get_llm_service
from brainlane.services.stream_proxy import close_upstream_client
from brainlane.utils.exceptions import ProjectNotFoundError
from brainlane.utils.logging import configure_logging

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown hooks."""
    configure_logging(settings)
    logger.info("🚀 Starting Brain Lane API  env={}", settings.environment)

    queue = get_job_queue()
    register_pipeline_processor(queue, lambda: CompletionEngine(get_llm_service()))
    await queue.start()

    yield

    logger.info("🛑 Shutting down Brain Lane API")
    await queue.stop()
    await close_llm_service()
    await close_upstream_client()


docs_enabled = not settings.is_production

app = FastAPI(
    title="Brain Lane API",
    description="Project diagnosis, AI analysis and completion pipeline",
    version=VERSION,
    lifespan=lifespan,
    debug=settings.debug,
    docs_url="/docs" if docs_enabled else None,
    redoc_url="/redoc" if docs_enabled else None,
)

api_v1 = FastAPI(
    title="Brain Lane API v1",
    version=VERSION,
    debug=settings.debug,
    docs_url="/docs" if docs_enabled else None,
    redoc_url=None,
)

# CORS
api_v1.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else settings.effective_cors_origins,
    allow_credentials=not settings.is_development,
    allow_methods=["*"],
    allow_headers=["*"],
)


@api_v1.exception_handler(ProjectNotFoundError)
async def project_not_found_handler(request: Request, exc: ProjectNotFoundError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)


# Routes
api_v1.include_router(router)
app.include_router(proxy_router)
app.mount("/api/v1", api_v1)


@app.get("/", tags=["meta"])
async def root() -> dict:
    return {"name": "Brain Lane API", "version": VERSION, "status": "running",
            "environment": settings.environment}


@app.get("/health", tags=["meta"])
async def health_check() -> dict:
    return {"status": "healthy", "environment": settings.environment,
            "jobs": get_job_queue().get_status()}


def main() -> None:
    import uvicorn
    uvicorn.run(
        "brainlane.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        workers=1 if settings.api_reload else settings.api_workers,
    )


if __name__ == "__main__":
    main()
