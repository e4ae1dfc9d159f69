"""
Project persistence.

The analysis flow only needs three calls from storage, captured by the
``ProjectStore`` protocol. ``InMemoryProjectStore`` backs the API and the
tests; records are plain dicts and ``update_project`` is a shallow,
last-write-wins merge.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol

from loguru import logger

from brainlane.utils.exceptions import ProjectNotFoundError


class ProjectStatus(str, Enum):
    UPLOADED = "uploaded"
    ANALYZING = "analyzing"
    READY = "ready"
    ERROR = "error"


class ProjectStore(Protocol):
    async def get_project_async(self, project_id: str) -> dict[str, Any] | None: ...

    async def update_project(self, project_id: str, fields: Mapping[str, Any]) -> None: ...

    async def create_task(self, fields: Mapping[str, Any]) -> dict[str, Any]: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryProjectStore:
    """Dict-backed ProjectStore. Reads hand out copies, so callers cannot mutate stored records."""

    def __init__(self) -> None:
        self._projects: dict[str, dict[str, Any]] = {}
        self._tasks: dict[str, list[dict[str, Any]]] = {}

    async def create_project(
        self,
        name: str,
        file_contents: Mapping[str, str],
        *,
        github_url: str | None = None,
        zip_file_url: str | None = None,
    ) -> dict[str, Any]:
        project_id = uuid.uuid4().hex
        record = {
            "id": project_id,
            "name": name,
            "github_url": github_url,
            "zip_file_url": zip_file_url,
            "file_contents": dict(file_contents),
            "status": ProjectStatus.UPLOADED.value,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self._projects[project_id] = record
        self._tasks[project_id] = []
        logger.info("📁 Project created: {} ({} files)", project_id, len(record["file_contents"]))
        return copy.deepcopy(record)

    async def get_project_async(self, project_id: str) -> dict[str, Any] | None:
        record = self._projects.get(project_id)
        return copy.deepcopy(record) if record is not None else None

    async def update_project(self, project_id: str, fields: Mapping[str, Any]) -> None:
        record = self._projects.get(project_id)
        if record is None:
            raise ProjectNotFoundError(project_id)
        record.update(copy.deepcopy(dict(fields)))
        record["updated_at"] = _now()

    async def create_task(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        project_id = fields.get("project_id")
        if project_id not in self._projects:
            raise ProjectNotFoundError(str(project_id))
        task = {
            "status": "pending",
            **copy.deepcopy(dict(fields)),
            "id": uuid.uuid4().hex,
            "created_at": _now(),
        }
        self._tasks[project_id].append(task)
        return copy.deepcopy(task)

    async def list_tasks(self, project_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._tasks.get(project_id, []))

    async def list_projects(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(p) for p in self._projects.values()]


_project_store: InMemoryProjectStore | None = None


def get_project_store() -> InMemoryProjectStore:
    global _project_store
    if _project_store is None:
        _project_store = InMemoryProjectStore()
    return _project_store
