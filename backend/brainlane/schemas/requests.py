"""Request schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from brainlane.services.completion_engine import PipelineStage
from brainlane.services.job_queue import JobPriority


class SourceFileIn(BaseModel):
    path: str = Field(..., min_length=1, max_length=1024)
    content: str = ""

    @field_validator("path")
    @classmethod
    def normalise_path(cls, v: str) -> str:
        v = v.strip().replace("\\", "/")
        while v.startswith("./"):
            v = v[2:]
        if not v:
            raise ValueError("path must not be empty")
        return v


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    files: list[SourceFileIn] = Field(default_factory=list)
    github_url: str | None = None
    zip_file_url: str | None = None


class RunPipelineRequest(BaseModel):
    skip_stages: list[PipelineStage] = Field(default_factory=list)
    stop_after_stage: PipelineStage | None = None
    priority: int = Field(default=JobPriority.NORMAL, ge=JobPriority.CRITICAL, le=JobPriority.LOW)
    user_id: str | None = None
