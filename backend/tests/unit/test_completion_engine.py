"""
Unit tests for the completion pipeline.
"""

from __future__ import annotations

from typing import Any

import pytest

from brainlane.scanner.models import SourceFile
from brainlane.services.completion_engine import (
    CompletionEngine,
    Feature,
    FeatureAnalysis,
    PipelineStage,
    PipelineStatus,
    Understanding,
    build_understanding_prompt,
    prioritized_features,
    queue_pipeline,
    register_pipeline_processor,
)
from brainlane.services.job_queue import JobStatus, JobType
from brainlane.utils.exceptions import LLMError, PipelineError

UNDERSTANDING = {
    "purpose": "Online shop",
    "targetUsers": ["shoppers"],
    "tech_stack": {"framework": "React", "language": "JavaScript", "database": "postgres"},
    "confidence": 80,
}

FEATURES = {
    "features": [
        {"name": "Checkout", "status": "missing", "priority": "high", "files": ["src/App.jsx"]},
        {"name": "Catalog", "status": "complete", "priority": "critical"},
        {"name": "Cart", "status": "partial", "priority": "critical"},
        {"name": "Search", "status": "broken", "priority": "whenever"},
    ],
    "criticalPath": ["Cart", "Checkout"],
    "readinessScore": 140,
}


def _files_block(*paths: str) -> str:
    return "\n\n".join(f"FILE: {p}\n```js\nexport const x = '{p}'\n```" for p in paths)


# ── models ────────────────────────────────────────────────────────────────────

class TestModels:
    def test_understanding_accepts_either_casing(self) -> None:
        u = Understanding.model_validate(UNDERSTANDING)
        assert u.target_users == ["shoppers"]
        assert u.tech_stack["framework"] == "React"
        assert u.confidence == pytest.approx(0.8)

    def test_feature_normalisation(self) -> None:
        f = Feature.model_validate({"name": "x", "status": "DONE?", "priority": "urgent", "effort": "huge"})
        assert (f.status, f.priority, f.effort) == ("missing", "low", "medium")

    def test_readiness_clamped(self) -> None:
        assert FeatureAnalysis.model_validate(FEATURES).readiness_score == 100
        assert FeatureAnalysis.model_validate({"readinessScore": "n/a"}).readiness_score == 0

    def test_prioritized_features(self) -> None:
        analysis = FeatureAnalysis.model_validate(FEATURES)
        assert [f.name for f in prioritized_features(analysis, 5)] == ["Cart", "Checkout", "Search"]
        assert [f.name for f in prioritized_features(analysis, 1)] == ["Cart"]


class TestPrompts:
    def test_understanding_prompt_bounds_sources(self) -> None:
        files = [SourceFile(f"src/m{i}.js", "x") for i in range(15)]
        files.append(SourceFile("node_modules/lib/index.js", "vendored"))
        files.append(SourceFile("README.md", "readme body"))
        prompt = build_understanding_prompt(files)
        assert "readme body" in prompt
        assert "src/m9.js" in prompt
        assert "src/m10.js" not in prompt
        assert "node_modules" not in prompt


# ── run_pipeline ──────────────────────────────────────────────────────────────

class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_full_run(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        llm = make_llm(
            UNDERSTANDING,
            FEATURES,
            _files_block("src/cart.js"),
            _files_block("src/checkout.js", "src/cart.js"),
            _files_block("src/search.js"),
            _files_block("Dockerfile", ".env.example"),
        )
        progress: list[tuple[int, str]] = []
        stages: list[PipelineStage] = []
        engine = CompletionEngine(llm)

        def on_progress(percent: int, message: str) -> None:
            progress.append((percent, engine.status.value))

        result = await engine.run_pipeline(
            sample_files,
            on_progress=on_progress,
            on_stage_complete=lambda stage, output: stages.append(stage),
        )

        assert engine.status == PipelineStatus.COMPLETED
        assert progress == [(0, "running"), (25, "running"), (50, "running"), (85, "running"), (100, "completed")]
        assert stages == list(PipelineStage)
        assert result.features.diagnosis.structure.total_files == len(sample_files)
        assert [s.status for s in result.completions.summary] == ["success"] * 3
        assert [f.path for f in result.packaging.deployment_files] == ["Dockerfile", ".env.example"]
        assert [f.path for f in result.packaging.all_generated_files] == [
            "src/checkout.js", "src/cart.js", "src/search.js", "Dockerfile", ".env.example",
        ]
        assert result.packaging.ready_to_build is True
        assert llm.calls[1]["max_tokens"] == 8000
        assert [c["task_type"] for c in llm.calls] == [
            "analysis", "analysis", "refactoring", "refactoring", "refactoring", "documentation",
        ]
        assert "Framework: React" in llm.calls[2]["prompt"]
        assert "Database: postgres" in llm.calls[5]["prompt"]

    @pytest.mark.asyncio
    async def test_feature_failure_is_absorbed(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        llm = make_llm(
            UNDERSTANDING,
            FEATURES,
            LLMError("provider exploded"),
            "no markers here",
            _files_block("src/search.js"),
            "nothing to deploy",
        )
        engine = CompletionEngine(llm)
        result = await engine.run_pipeline(sample_files)

        summary = result.completions.summary
        assert [(s.feature, s.status) for s in summary] == [
            ("Cart", "error"), ("Checkout", "error"), ("Search", "success"),
        ]
        assert summary[0].error == "provider exploded"
        assert summary[1].files_generated == 0
        assert result.packaging.deployment_files == []
        assert [f.path for f in result.packaging.all_generated_files] == ["src/search.js"]
        assert engine.status == PipelineStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_after_stage_pauses(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        llm = make_llm(UNDERSTANDING)
        engine = CompletionEngine(llm)
        result = await engine.run_pipeline(sample_files, stop_after_stage="understanding")
        assert engine.status == PipelineStatus.PAUSED
        assert result.understanding.purpose == "Online shop"
        assert result.features is None
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_skipped_stop_stage_still_pauses(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        llm = make_llm()
        engine = CompletionEngine(llm)
        result = await engine.run_pipeline(
            sample_files,
            skip_stages=[PipelineStage.UNDERSTANDING],
            stop_after_stage="understanding",
        )
        assert engine.status == PipelineStatus.PAUSED
        assert result.understanding is None
        assert result.features is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_rerun_with_seed_and_skips(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        first = CompletionEngine(make_llm(UNDERSTANDING, FEATURES))
        seed = await first.run_pipeline(sample_files, stop_after_stage=PipelineStage.FEATURE_DETECTION)

        llm = make_llm(_files_block("Dockerfile"))
        engine = CompletionEngine(llm)
        result = await engine.run_pipeline(
            sample_files,
            skip_stages=[PipelineStage.UNDERSTANDING, PipelineStage.FEATURE_DETECTION, PipelineStage.FIX_AND_COMPLETE],
            seed=seed,
        )
        assert len(llm.calls) == 1
        assert result.understanding is seed.understanding
        assert [f.path for f in result.packaging.all_generated_files] == ["Dockerfile"]

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_and_propagates(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        engine = CompletionEngine(make_llm(UNDERSTANDING, LLMError("AI returned invalid JSON")))
        with pytest.raises(LLMError):
            await engine.run_pipeline(sample_files)
        assert engine.status == PipelineStatus.FAILED
        assert engine.results.error == "AI returned invalid JSON"
        assert engine.results.understanding is not None

    @pytest.mark.asyncio
    async def test_completion_without_features_fails(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        engine = CompletionEngine(make_llm())
        with pytest.raises(PipelineError):
            await engine.run_pipeline(
                sample_files,
                skip_stages=[PipelineStage.UNDERSTANDING, PipelineStage.FEATURE_DETECTION],
            )
        assert engine.get_status()["status"] == "failed"

    @pytest.mark.asyncio
    async def test_reset(self, make_llm: Any, sample_files: list[SourceFile]) -> None:
        engine = CompletionEngine(make_llm(UNDERSTANDING))
        await engine.run_pipeline(sample_files, stop_after_stage="understanding")
        engine.reset()
        status = engine.get_status()
        assert status["status"] == "idle"
        assert status["current_stage"] is None
        assert status["results"]["understanding"] is None


# ── job integration ───────────────────────────────────────────────────────────

class TestPipelineJob:
    @pytest.mark.asyncio
    async def test_queued_pipeline_runs_as_job(self, make_llm: Any, queue: Any, sample_files: list[SourceFile]) -> None:
        llm = make_llm(UNDERSTANDING)
        register_pipeline_processor(queue, lambda: CompletionEngine(llm))
        job = queue_pipeline(sample_files, queue, project_id="p1", stop_after_stage="understanding")
        assert job.type == JobType.AI_ANALYSIS.value

        await queue.run_next()
        assert job.status == JobStatus.COMPLETE
        assert job.progress == 100
        assert job.result["understanding"]["purpose"] == "Online shop"
        assert any("Stage complete: understanding" in entry["message"] for entry in job.logs)
