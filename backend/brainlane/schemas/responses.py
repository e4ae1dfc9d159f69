"""Response schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict


class ProjectResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    status: str
    file_count: int = 0
    health_score: int | None = None
    summary: str | None = None
    analysis_strategy: str | None = None
    tasks_source: str | None = None
    error_message: str | None = None
    detected_stack: dict[str, Any] | None = None
    baseline: dict[str, Any] | None = None
    created_at: str
    updated_at: str

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ProjectResponse":
        return cls.model_validate({**record, "file_count": len(record.get("file_contents") or {})})


class TaskResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    project_id: str
    title: str
    description: str = ""
    category: str
    priority: str
    estimated_effort: str
    files_affected: list[str] = []
    status: str
    source: str | None = None
    created_at: str


class JobResponse(BaseModel):
    id: str
    type: str
    status: str
    progress: int
    priority: int
    project_id: str | None = None
    user_id: str | None = None
    error: str | None = None
    result: Any = None
    retry_count: int = 0
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    logs: list[dict[str, str]] = []
