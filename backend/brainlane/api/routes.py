"""
API routes for Brain Lane.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from brainlane.scanner.models import SourceFile
from brainlane.scanner.scanner import ProjectScanner
from brainlane.schemas.requests import CreateProjectRequest, RunPipelineRequest
from brainlane.schemas.responses import JobResponse, ProjectResponse, TaskResponse
from brainlane.services.analysis_service import run_project_analysis
from brainlane.services.completion_engine import queue_pipeline
from brainlane.services.job_queue import JobQueue, get_job_queue
from brainlane.services.llm_service import LLMService, get_llm_service
from brainlane.services.project_store import InMemoryProjectStore, get_project_store
from brainlane.utils.exceptions import AnalysisError, LLMError, ProjectNotFoundError

router = APIRouter()


# ── Dependency helpers ────────────────────────────────────────────────────────

def get_llm() -> LLMService:
    return get_llm_service()


def get_store() -> InMemoryProjectStore:
    return get_project_store()


def get_queue() -> JobQueue:
    return get_job_queue()


async def _load_project(store: InMemoryProjectStore, project_id: str) -> dict[str, Any]:
    project = await store.get_project_async(project_id)
    if project is None:
        raise ProjectNotFoundError(project_id)
    return project


def _source_files(project: dict[str, Any]) -> list[SourceFile]:
    return [SourceFile(path, content or "") for path, content in (project.get("file_contents") or {}).items()]


# ── Projects ──────────────────────────────────────────────────────────────────

@router.get("/projects", response_model=list[ProjectResponse], tags=["projects"])
async def list_projects(store: InMemoryProjectStore = Depends(get_store)) -> list[ProjectResponse]:
    """List all projects."""
    return [ProjectResponse.from_record(p) for p in await store.list_projects()]


@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED, tags=["projects"])
async def create_project(
    request: CreateProjectRequest,
    store: InMemoryProjectStore = Depends(get_store),
) -> ProjectResponse:
    """Create a project from an uploaded file set."""
    # later duplicates win, as in the scanner
    file_contents = {f.path: f.content for f in request.files}
    project = await store.create_project(
        request.name,
        file_contents,
        github_url=request.github_url,
        zip_file_url=request.zip_file_url,
    )
    return ProjectResponse.from_record(project)


@router.get("/projects/{project_id}", response_model=ProjectResponse, tags=["projects"])
async def get_project(project_id: str, store: InMemoryProjectStore = Depends(get_store)) -> ProjectResponse:
    """Get project by ID."""
    return ProjectResponse.from_record(await _load_project(store, project_id))


@router.get("/projects/{project_id}/tasks", response_model=list[TaskResponse], tags=["projects"])
async def list_tasks(project_id: str, store: InMemoryProjectStore = Depends(get_store)) -> list[TaskResponse]:
    """Backlog tasks created by analysis runs."""
    await _load_project(store, project_id)
    return [TaskResponse.model_validate(t) for t in await store.list_tasks(project_id)]


# ── Analysis ──────────────────────────────────────────────────────────────────

@router.post("/projects/{project_id}/scan", tags=["analysis"])
async def scan_project(project_id: str, store: InMemoryProjectStore = Depends(get_store)) -> dict[str, Any]:
    """Run the local scanner only and persist its diagnosis as the project's baseline."""
    project = await _load_project(store, project_id)
    diagnosis = await ProjectScanner().scan(_source_files(project))
    await store.update_project(project_id, {"baseline": diagnosis.to_dict(), "health_score": diagnosis.score})
    return diagnosis.to_dict()


@router.post("/projects/{project_id}/analyze", response_model=ProjectResponse, tags=["analysis"])
async def analyze_project(
    project_id: str,
    store: InMemoryProjectStore = Depends(get_store),
    llm: LLMService = Depends(get_llm),
) -> ProjectResponse:
    """
    Full analysis: local scan first, then the LLM report and backlog.

    LLM failures degrade to the local scan; only a project without files
    (or an LLM failure without any local result) is an error.
    """
    await _load_project(store, project_id)
    try:
        record = await run_project_analysis(project_id, store, llm)
    except AnalysisError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except LLMError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return ProjectResponse.from_record(record)


@router.post(
    "/projects/{project_id}/pipeline",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["analysis"],
)
async def start_pipeline(
    project_id: str,
    request: RunPipelineRequest | None = None,
    store: InMemoryProjectStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
) -> JobResponse:
    """
    Queue the completion pipeline for a project.

    Returns 202 Accepted; the pipeline runs as a background job.
    Poll GET /jobs/{id} for progress and results.
    """
    request = request or RunPipelineRequest()
    project = await _load_project(store, project_id)
    job = queue_pipeline(
        _source_files(project),
        queue,
        priority=request.priority,
        project_id=project_id,
        user_id=request.user_id,
        skip_stages=request.skip_stages,
        stop_after_stage=request.stop_after_stage,
    )
    logger.info("Pipeline queued: project_id={} job_id={}", project_id, job.id)
    await store.update_project(project_id, {"pipeline_job_id": job.id})
    return JobResponse.model_validate(job.to_dict())


@router.get("/projects/{project_id}/jobs", response_model=list[JobResponse], tags=["jobs"])
async def list_project_jobs(
    project_id: str,
    store: InMemoryProjectStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
) -> list[JobResponse]:
    await _load_project(store, project_id)
    return [JobResponse.model_validate(j.to_dict(include_result=False)) for j in queue.jobs_for_project(project_id)]


# ── Jobs ──────────────────────────────────────────────────────────────────────

@router.get("/jobs/{job_id}", response_model=JobResponse, tags=["jobs"])
async def get_job(job_id: str, queue: JobQueue = Depends(get_queue)) -> JobResponse:
    """Get job status, progress and, once complete, its result."""
    job = queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResponse.model_validate(job.to_dict())


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse, tags=["jobs"])
async def cancel_job(job_id: str, queue: JobQueue = Depends(get_queue)) -> JobResponse:
    """Cancel a queued job, or flag a running one for cancellation."""
    job = queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if not queue.cancel(job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is already {job.status.value}",
        )
    return JobResponse.model_validate(job.to_dict())


# ── Meta ──────────────────────────────────────────────────────────────────────

@router.get("/stats", tags=["meta"])
async def get_stats(
    llm: LLMService = Depends(get_llm),
    queue: JobQueue = Depends(get_queue),
) -> dict[str, Any]:
    """Return LLM usage and job queue statistics."""
    return {"llm": llm.get_stats(), "jobs": queue.get_status()}

