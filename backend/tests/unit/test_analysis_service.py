"""
Unit tests for the analysis retry ladder.
"""

from __future__ import annotations

from typing import Any

import pytest

from brainlane.scanner.models import Diagnosis, Recommendation, SourceFile
from brainlane.scanner.scanner import ProjectScanner
from brainlane.services.analysis_service import (
    build_analysis_prompt,
    heuristic_tasks,
    run_project_analysis,
)
from brainlane.services.project_store import InMemoryProjectStore
from brainlane.utils.exceptions import AnalysisError, LLMError, TransientLLMError

REPORT = {
    "summary": "A storefront",
    "detected_stack": {"framework": "react", "language": "javascript"},
    "security_vulnerabilities": [{"title": "XSS", "severity": "HIGH"}],
    "tasks": [
        {"title": "Add checkout", "category": "feature", "priority": "high"},
        {"title": "Escape output", "category": "security", "priority": "critical"},
    ],
}


async def _project(store: InMemoryProjectStore, files: list[SourceFile], **kwargs: Any) -> str:
    record = await store.create_project("shop", {f.path: f.content for f in files}, **kwargs)
    return record["id"]


# ── happy path ────────────────────────────────────────────────────────────────

class TestFullAnalysis:
    @pytest.mark.asyncio
    async def test_full_report_persists_tasks(self, make_llm: Any, store: InMemoryProjectStore,
                                              sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm(REPORT)

        result = await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["status"] == "ready"
        assert stored["analysis_strategy"] == "full"
        assert stored["tasks_source"] == "analysis"
        assert stored["summary"] == "A storefront"
        assert stored["security_vulnerabilities"][0]["severity"] == "high"
        assert stored["baseline"]["structure"]["total_files"] == len(sample_files)
        assert isinstance(stored["health_score"], int)
        assert result["status"] == "ready"

        tasks = await store.list_tasks(project_id)
        assert [t["title"] for t in tasks] == ["Add checkout", "Escape output"]
        assert all(t["status"] == "pending" and t["source"] == "analysis" for t in tasks)
        assert len(llm.calls) == 1


# ── retry ladder ──────────────────────────────────────────────────────────────

class TestRetryLadder:
    @pytest.mark.asyncio
    async def test_context_overflow_uses_fallback_once(self, make_llm: Any, store: InMemoryProjectStore,
                                                       sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm(LLMError("This model's maximum context length is 128000 tokens"), REPORT)

        await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["analysis_strategy"] == "fallback"
        assert stored["status"] == "ready"
        assert len(llm.calls) == 2
        assert len(llm.calls[1]["prompt"]) < len(llm.calls[0]["prompt"])

    @pytest.mark.asyncio
    async def test_second_overflow_degrades_to_baseline(self, make_llm: Any, store: InMemoryProjectStore,
                                                        sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm(LLMError("request too large"), LLMError("request too large"))

        await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert len(llm.calls) == 2
        assert stored["analysis_strategy"] == "baseline"

    @pytest.mark.asyncio
    async def test_other_errors_do_not_trigger_fallback(self, make_llm: Any, store: InMemoryProjectStore,
                                                        sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm(TransientLLMError("upstream 503"))

        await run_project_analysis(project_id, store, llm)

        assert len(llm.calls) == 1
        assert (await store.get_project_async(project_id))["analysis_strategy"] == "baseline"

    @pytest.mark.asyncio
    async def test_zero_tasks_triggers_task_generation(self, make_llm: Any, store: InMemoryProjectStore,
                                                       sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm({**REPORT, "tasks": []}, {"tasks": [{"title": "Write tests", "category": "test"}]})

        await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["tasks_source"] == "task_generation"
        assert stored["analysis_strategy"] == "full"
        assert llm.calls[1]["task_type"] == "task_generation"
        assert "A storefront" in llm.calls[1]["prompt"]
        assert [t["title"] for t in await store.list_tasks(project_id)] == ["Write tests"]

    @pytest.mark.asyncio
    async def test_still_zero_tasks_uses_heuristics(self, make_llm: Any, store: InMemoryProjectStore,
                                                    sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm({**REPORT, "tasks": []}, {"tasks": []})

        await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["tasks_source"] == "heuristic"
        assert stored["summary"] == "A storefront"
        assert len(await store.list_tasks(project_id)) >= 3


# ── baseline floor ────────────────────────────────────────────────────────────

class TestBaselineFloor:
    @pytest.mark.asyncio
    async def test_llm_always_failing_ends_ready(self, make_llm: Any, store: InMemoryProjectStore,
                                                 sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm(*[LLMError("boom")] * 5)

        result = await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["status"] == "ready"
        assert stored["analysis_strategy"] == "baseline"
        assert stored["tasks_source"] == "heuristic"
        assert stored["baseline"]["score"] == stored["health_score"]
        assert stored["summary"] == stored["baseline"]["summary"]
        assert stored["analysis_error"] == "boom"
        assert result["status"] == "ready"
        assert len(await store.list_tasks(project_id)) >= 3

    @pytest.mark.asyncio
    async def test_zero_files_is_an_error(self, make_llm: Any, store: InMemoryProjectStore) -> None:
        project_id = await _project(store, [])
        llm = make_llm()

        with pytest.raises(AnalysisError, match="No files"):
            await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["status"] == "error"
        assert "re-upload" in stored["error_message"]
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_unknown_project(self, make_llm: Any, store: InMemoryProjectStore) -> None:
        with pytest.raises(AnalysisError, match="not found"):
            await run_project_analysis("missing", store, make_llm())

    @pytest.mark.asyncio
    async def test_unexpected_errors_mark_project_failed(self, make_llm: Any, store: InMemoryProjectStore,
                                                         sample_files: list[SourceFile]) -> None:
        project_id = await _project(store, sample_files)
        llm = make_llm(RuntimeError("bug"))

        with pytest.raises(RuntimeError):
            await run_project_analysis(project_id, store, llm)

        stored = await store.get_project_async(project_id)
        assert stored["status"] == "error"
        assert stored["error_message"] == "bug"


# ── helpers ───────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_reduced_prompt_is_smaller(self) -> None:
        contents = {f"src/file{i}.js": "const a = 1\n" * 100 for i in range(200)}
        contents["package.json"] = "{" + " " * 5000 + "}"
        contents["requirements.txt"] = "flask\n"
        project = {"file_contents": contents, "github_url": "https://github.com/o/r"}

        full = build_analysis_prompt(project)
        reduced = build_analysis_prompt(project, reduced=True)

        assert len(reduced) < len(full)
        assert "github.com/o/r" in full
        assert "--- requirements.txt ---" in full
        assert "--- requirements.txt ---" not in reduced
        assert "more files" in reduced

    def test_heuristic_tasks_follow_recommendations(self) -> None:
        baseline = Diagnosis(
            summary="s",
            score=50,
            recommendations=[Recommendation("critical", "security", "Fix Security Vulnerabilities", "d", "a")],
        )
        tasks = heuristic_tasks(baseline)
        assert tasks[0].title == "Fix Security Vulnerabilities"
        assert tasks[0].category == "security"
        assert tasks[0].priority == "critical"
        assert len(tasks) == 3

    def test_heuristic_tasks_without_baseline(self) -> None:
        assert len(heuristic_tasks(None)) == 3

    @pytest.mark.asyncio
    async def test_heuristic_tasks_map_scanner_categories(self) -> None:
        source = "try:\n    run()\nexcept Exception:\n    pass\n" + "print('x')\n" * 6
        baseline = await ProjectScanner().scan([SourceFile("main.py", source)])

        tasks = {t.title: t.category for t in heuristic_tasks(baseline)}
        assert tasks["Improve Error Handling"] == "bugfix"
        assert tasks["Remove Debug Statements"] == "refactor"
