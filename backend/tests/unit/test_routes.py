"""
API tests over the in-memory store, job queue and a scripted LLM.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from brainlane.api.proxy import get_streaming_proxy, get_upstream
from brainlane.config import settings
from brainlane.main import app
from brainlane.services.stream_proxy import StreamingProxy

FILES = [
    {"path": "./package.json", "content": json.dumps({"dependencies": {"express": "^4.18.0"}})},
    {"path": "src\\server.js", "content": "const express = require('express')\nconsole.log('up')\n"},
]

REPORT = {"summary": "An API server", "tasks": [{"title": "Add auth", "priority": "high"}]}


def _create(client: TestClient, files: list[dict[str, str]] = FILES) -> dict[str, Any]:
    response = client.post("/api/v1/projects", json={"name": "api", "files": files})
    assert response.status_code == 201
    return response.json()


# ── projects ──────────────────────────────────────────────────────────────────

class TestProjects:
    def test_create_get_and_list(self, client: TestClient) -> None:
        project = _create(client)
        assert project["status"] == "uploaded"
        assert project["file_count"] == 2

        fetched = client.get(f"/api/v1/projects/{project['id']}").json()
        assert fetched["id"] == project["id"]
        assert [p["id"] for p in client.get("/api/v1/projects").json()] == [project["id"]]

    def test_paths_are_normalised(self, client: TestClient, store: Any) -> None:
        project = _create(client)
        record = asyncio.run(store.get_project_async(project["id"]))
        assert sorted(record["file_contents"]) == ["package.json", "src/server.js"]

    def test_unknown_project_is_404(self, client: TestClient) -> None:
        response = client.get("/api/v1/projects/nope")
        assert response.status_code == 404
        assert response.json() == {"detail": "Project not found: nope"}

    def test_invalid_body_is_422(self, client: TestClient) -> None:
        assert client.post("/api/v1/projects", json={"files": []}).status_code == 422


# ── analysis ──────────────────────────────────────────────────────────────────

class TestAnalysis:
    def test_scan_persists_baseline(self, client: TestClient) -> None:
        project = _create(client)
        diagnosis = client.post(f"/api/v1/projects/{project['id']}/scan").json()
        assert diagnosis["structure"]["total_files"] == 2
        assert "express" in diagnosis["frameworks"]

        fetched = client.get(f"/api/v1/projects/{project['id']}").json()
        assert fetched["health_score"] == diagnosis["score"]

    def test_analyze_creates_tasks(self, client: TestClient, llm: Any) -> None:
        llm.responses.append(REPORT)
        project = _create(client)

        response = client.post(f"/api/v1/projects/{project['id']}/analyze")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["analysis_strategy"] == "full"
        assert body["summary"] == "An API server"

        tasks = client.get(f"/api/v1/projects/{project['id']}/tasks").json()
        assert [(t["title"], t["priority"], t["source"]) for t in tasks] == [("Add auth", "high", "analysis")]

    def test_analyze_without_files_is_422(self, client: TestClient) -> None:
        project = _create(client, files=[])
        response = client.post(f"/api/v1/projects/{project['id']}/analyze")
        assert response.status_code == 422
        assert "re-upload" in response.json()["detail"]
        assert client.get(f"/api/v1/projects/{project['id']}").json()["status"] == "error"


# ── pipeline jobs ─────────────────────────────────────────────────────────────

class TestPipelineJobs:
    def test_pipeline_is_queued(self, client: TestClient) -> None:
        project = _create(client)
        response = client.post(
            f"/api/v1/projects/{project['id']}/pipeline",
            json={"stop_after_stage": "understanding", "priority": 1},
        )
        assert response.status_code == 202
        job = response.json()
        assert job["status"] == "queued"
        assert job["type"] == "ai_analysis"
        assert job["priority"] == 1
        assert job["project_id"] == project["id"]

        assert client.get(f"/api/v1/jobs/{job['id']}").json()["status"] == "queued"
        listed = client.get(f"/api/v1/projects/{project['id']}/jobs").json()
        assert [j["id"] for j in listed] == [job["id"]]

    def test_invalid_stage_is_422(self, client: TestClient) -> None:
        project = _create(client)
        response = client.post(f"/api/v1/projects/{project['id']}/pipeline", json={"skip_stages": ["deploy"]})
        assert response.status_code == 422

    def test_cancel_job(self, client: TestClient) -> None:
        project = _create(client)
        job = client.post(f"/api/v1/projects/{project['id']}/pipeline").json()

        cancelled = client.post(f"/api/v1/jobs/{job['id']}/cancel")
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert client.post(f"/api/v1/jobs/{job['id']}/cancel").status_code == 409

    def test_unknown_job(self, client: TestClient) -> None:
        assert client.get("/api/v1/jobs/job_missing").status_code == 404
        assert client.post("/api/v1/jobs/job_missing/cancel").status_code == 404

    def test_stats(self, client: TestClient) -> None:
        stats = client.get("/api/v1/stats").json()
        assert stats["llm"] == {"total_requests": 0}
        assert stats["jobs"]["queue_size"] == 0


# ── chat-completion proxy ─────────────────────────────────────────────────────

def _sse(*events: dict[str, Any]) -> str:
    return "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"


@pytest.fixture
def upstream() -> Iterator[Callable[[Callable[[httpx.Request], httpx.Response]], None]]:
    """Route the proxy's upstream client to a MockTransport handler."""

    def install(handler: Callable[[httpx.Request], httpx.Response]) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app.dependency_overrides[get_upstream] = lambda: client

    app.dependency_overrides[get_streaming_proxy] = lambda: StreamingProxy(heartbeat_interval=0.01, deadline=5)
    try:
        yield install
    finally:
        app.dependency_overrides.clear()


class TestProxy:
    def test_preflight(self, client: TestClient) -> None:
        response = client.options("/api/openai")
        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_other_methods_rejected(self, client: TestClient) -> None:
        response = client.get("/api/openai")
        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}

    def test_missing_key(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "openai_api_key", "")
        response = client.post("/api/openai", json={"messages": []})
        assert response.status_code == 500
        assert response.json() == {"error": "OpenAI API key not configured"}

    def test_non_object_body(self, client: TestClient, monkeypatch: pytest.MonkeyPatch, upstream: Any) -> None:
        monkeypatch.setattr(settings, "openai_api_key", "sk-test")
        response = client.post("/api/openai", json=[1, 2])
        assert response.status_code == 400
        assert response.json()["code"] == "BAD_REQUEST"

    def test_upstream_error_passthrough(self, client: TestClient, monkeypatch: pytest.MonkeyPatch,
                                        upstream: Any) -> None:
        monkeypatch.setattr(settings, "openai_api_key", "sk-test")
        upstream(lambda request: httpx.Response(
            401, json={"error": {"message": "Incorrect API key", "code": "invalid_api_key"}},
        ))

        response = client.post("/api/openai", json={"messages": []})
        assert response.status_code == 401
        assert response.json() == {"error": "Incorrect API key", "code": "invalid_api_key"}

    def test_streamed_completion(self, client: TestClient, monkeypatch: pytest.MonkeyPatch,
                                 upstream: Any) -> None:
        monkeypatch.setattr(settings, "openai_api_key", "sk-test")
        sent: list[dict[str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            sent.append(json.loads(request.content))
            return httpx.Response(200, text=_sse(
                {"model": "gpt-4o-mini", "choices": [{"delta": {"role": "assistant", "content": '{"a": 1,'}}]},
                {"choices": [{"delta": {"content": "}"}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
            ))

        upstream(handler)
        response = client.post(
            "/api/openai",
            json={"model": "gpt-4o-mini", "messages": [], "response_format": {"type": "json_object"}},
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        doc = json.loads(response.content)
        assert doc["object"] == "chat.completion"
        assert json.loads(doc["choices"][0]["message"]["content"]) == {"a": 1}
        assert doc["usage"]["total_tokens"] == 5
        assert sent[0]["stream"] is True
        assert sent[0]["stream_options"] == {"include_usage": True}
