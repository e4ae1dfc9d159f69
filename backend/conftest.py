"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from pydantic import BaseModel

from brainlane.api.routes import get_llm, get_queue, get_store
from brainlane.main import api_v1, app
from brainlane.scanner.models import SourceFile
from brainlane.services.job_queue import JobQueue
from brainlane.services.project_store import InMemoryProjectStore


# ── Scripted LLM ──────────────────────────────────────────────────────────────

class ScriptedLLM:
    """
    LLMInvoker double that answers from a script and records every call.

    Script entries are returned in order: an exception instance is raised, a
    dict is validated against the requested response model, a callable is
    called with the prompt first, anything else is returned as-is.
    """

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        response_model: type[BaseModel] | None = None,
        max_tokens: int | None = None,
        task_type: str = "default",
        temperature: float | None = None,
    ) -> Any:
        self.calls.append({
            "prompt": prompt,
            "system_prompt": system_prompt,
            "response_model": response_model,
            "max_tokens": max_tokens,
            "task_type": task_type,
        })
        if not self.responses:
            raise AssertionError(f"Unexpected LLM call #{len(self.calls)} ({task_type})")

        item = self.responses.pop(0)
        if callable(item):
            item = item(prompt)
        if isinstance(item, BaseException):
            raise item
        if response_model is not None and isinstance(item, dict):
            return response_model.model_validate(item)
        return item

    def get_stats(self) -> dict[str, Any]:
        return {"total_requests": len(self.calls)}


@pytest.fixture
def make_llm() -> Callable[..., ScriptedLLM]:
    return ScriptedLLM


# ── Sample project ────────────────────────────────────────────────────────────

@pytest.fixture
def sample_files() -> list[SourceFile]:
    """A small React app with a couple of detectable issues."""
    return [
        SourceFile("package.json", json.dumps({
            "name": "shop",
            "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0"},
        })),
        SourceFile("README.md", "# Shop\n\nA tiny storefront.\n"),
        SourceFile("src/index.js", "import React from 'react'\nimport App from './App'\n"),
        SourceFile(
            "src/App.jsx",
            "import { useState } from 'react'\n"
            "export default function App() {\n"
            "  console.log('render')\n"
            "  // TODO: cart\n"
            "  return null\n"
            "}\n",
        ),
    ]


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue(concurrency=1, default_timeout=5, default_max_retries=0, retry_base_delay=0)


# ── App test client ───────────────────────────────────────────────────────────

@pytest.fixture
def llm(make_llm: Callable[..., ScriptedLLM]) -> ScriptedLLM:
    return make_llm()


@pytest.fixture
def client(store: InMemoryProjectStore, queue: JobQueue, llm: ScriptedLLM) -> Iterator[TestClient]:
    """FastAPI test client over in-memory state; the lifespan (and job worker) is not started."""
    api_v1.dependency_overrides[get_store] = lambda: store
    api_v1.dependency_overrides[get_queue] = lambda: queue
    api_v1.dependency_overrides[get_llm] = lambda: llm
    try:
        yield TestClient(app)
    finally:
        api_v1.dependency_overrides.clear()
