"""
Completion Engine - four-stage project completion pipeline.

1. Understanding       - what is this application supposed to do?
2. Feature detection   - local scan + LLM gap analysis against that purpose
3. Fix and complete    - generate files for the most important gaps
4. Packaging           - deployment files, merged with everything generated

One engine instance runs one pipeline at a time; ``results`` only grows
while a run is in progress and is never rolled back on failure.
"""

from __future__ import annotations

import inspect
import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from brainlane.config import settings
from brainlane.scanner.models import PRIORITY_RANK, Diagnosis, SourceFile, as_source_files
from brainlane.scanner.scanner import ProjectScanner
from brainlane.services.file_markers import GeneratedFile, merge_generated_files, parse_generated_files
from brainlane.services.job_queue import Job, JobContext, JobPriority, JobQueue, JobType
from brainlane.services.llm_service import LLMInvoker
from brainlane.utils.exceptions import NoFilesFoundError, PipelineError


class PipelineStage(str, Enum):
    UNDERSTANDING = "understanding"
    FEATURE_DETECTION = "feature_detection"
    FIX_AND_COMPLETE = "fix_and_complete"
    PACKAGING = "packaging"


class PipelineStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


ProgressCallback = Callable[[int, str], Any]
StageCallback = Callable[[PipelineStage, Any], Any]

SOURCE_FILE_PATTERN = re.compile(r"\.(js|jsx|ts|tsx|py|go|rs)$")
MANIFEST_NAMES = ("package.json", "pyproject.toml", "requirements.txt", "go.mod", "Cargo.toml")
MANIFEST_CHARS = 3000
SOURCE_CHARS = 2000
RELATED_FILE_CHARS = 1500
MAX_RELATED_FILES = 3
DIAGNOSIS_ISSUE_LIMIT = 50


# ---------------------------------------------------------------------------
# Structured LLM outputs
# ---------------------------------------------------------------------------

class Understanding(BaseModel):
    model_config = ConfigDict(extra="allow")

    purpose: str = ""
    target_users: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("target_users", "targetUsers")
    )
    core_features: list[Any] = Field(
        default_factory=list, validation_alias=AliasChoices("core_features", "coreFeatures")
    )
    tech_stack: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("tech_stack", "techStack")
    )
    integrations: list[Any] = Field(default_factory=list)
    architecture: str = ""
    confidence: float = 0.0

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        try:
            v = float(v)
        except (TypeError, ValueError):
            return 0.0
        # some models answer in percent
        if v > 1:
            v = v / 100
        return min(max(v, 0.0), 1.0)


class Feature(BaseModel):
    name: str
    status: str = "missing"
    description: str = ""
    current_state: str = Field(
        default="", validation_alias=AliasChoices("current_state", "currentState")
    )
    missing: list[str] = Field(default_factory=list)
    priority: str = "low"
    effort: str = "medium"
    dependencies: list[str] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in ("complete", "partial", "missing", "broken") else "missing"

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in PRIORITY_RANK else "low"

    @field_validator("effort", mode="before")
    @classmethod
    def validate_effort(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in ("small", "medium", "large") else "medium"


class FeatureAnalysis(BaseModel):
    features: list[Feature] = Field(default_factory=list)
    critical_path: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("critical_path", "criticalPath")
    )
    estimated_total_effort: str = Field(
        default="", validation_alias=AliasChoices("estimated_total_effort", "estimatedTotalEffort")
    )
    readiness_score: int = Field(
        default=0, validation_alias=AliasChoices("readiness_score", "readinessScore")
    )

    @field_validator("readiness_score", mode="before")
    @classmethod
    def clamp_readiness(cls, v: Any) -> int:
        try:
            return min(max(int(round(float(v))), 0), 100)
        except (TypeError, ValueError):
            return 0


# ---------------------------------------------------------------------------
# Stage outputs
# ---------------------------------------------------------------------------

@dataclass
class FeatureReport:
    analysis: FeatureAnalysis
    diagnosis: Diagnosis

    def to_dict(self) -> dict[str, Any]:
        return {**self.analysis.model_dump(), "diagnosis": self.diagnosis.to_dict()}


@dataclass
class FeatureCompletion:
    feature: str
    files_generated: int
    status: str
    error: str | None = None


@dataclass
class Completions:
    files: list[GeneratedFile] = field(default_factory=list)
    summary: list[FeatureCompletion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Packaging:
    deployment_files: list[GeneratedFile] = field(default_factory=list)
    all_generated_files: list[GeneratedFile] = field(default_factory=list)
    ready_to_build: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineResult:
    understanding: Understanding | None = None
    features: FeatureReport | None = None
    completions: Completions | None = None
    packaging: Packaging | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "understanding": self.understanding.model_dump() if self.understanding else None,
            "features": self.features.to_dict() if self.features else None,
            "completions": self.completions.to_dict() if self.completions else None,
            "packaging": self.packaging.to_dict() if self.packaging else None,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

UNDERSTANDING_SYSTEM_PROMPT = """\
You are an expert software analyst. Work out what an application is supposed to
do from its codebase: the README, the manifests and its source files.

Determine:
1. The primary purpose of the application
2. Target users and use cases
3. Core features, implemented and implied
4. Architecture and tech stack
5. External integrations it needs

Be specific. Report your confidence between 0 and 1.

Respond with ONLY this JSON structure:
{
  "purpose": "...",
  "target_users": ["..."],
  "core_features": ["..."],
  "tech_stack": {"framework": "...", "language": "...", "database": "..."},
  "integrations": ["..."],
  "architecture": "...",
  "confidence": 0.8
}"""

FEATURE_DETECTION_SYSTEM_PROMPT = """\
You are a senior product engineer. Given what an application should do and a
technical diagnosis of its code, decide what is implemented and what is not.

For each feature assess:
1. status: complete | partial | missing | broken
2. priority: critical | high | medium | low
3. effort: small (<2h) | medium (2-8h) | large (>8h)
4. dependencies on other features

Look for missing API routes, incomplete UI components, broken data flows,
missing error handling, incomplete authentication and missing database
operations."""

FEATURE_DETECTION_SHAPE = """\
Respond with ONLY this JSON structure:
{
  "features": [
    {
      "name": "Feature name",
      "status": "complete|partial|missing|broken",
      "description": "What this feature should do",
      "current_state": "What is implemented today",
      "missing": ["Missing pieces"],
      "priority": "critical|high|medium|low",
      "effort": "small|medium|large",
      "dependencies": ["Other features this depends on"],
      "files": ["Affected files"]
    }
  ],
  "critical_path": ["Features to implement first, in order"],
  "estimated_total_effort": "X hours/days",
  "readiness_score": 0
}"""

GENERATE_FILES_SYSTEM_PROMPT = """\
You are an expert full-stack developer. Generate complete, production-ready
code files that follow the existing code style and patterns of the project,
include every import they need and handle errors properly.

Output every file in exactly this format and nothing else:

FILE: path/relative/to/project/root.ext
```language
complete file content
```"""

PACKAGING_SYSTEM_PROMPT = """\
You are a DevOps expert. Generate deployment configuration files.
Output every file in exactly this format:

FILE: path/relative/to/project/root
```language
complete file content
```"""


def _excerpt(source: SourceFile, limit: int) -> str:
    return f"--- {source.path} ---\n{source.content[:limit]}"


def _depth(path: str) -> int:
    return path.count("/")


def select_readme(files: list[SourceFile]) -> SourceFile | None:
    candidates = [f for f in files if "readme" in f.path.rsplit("/", 1)[-1].lower()]
    return min(candidates, key=lambda f: (_depth(f.path), f.path), default=None)


def select_manifests(files: list[SourceFile]) -> list[SourceFile]:
    by_name: dict[str, SourceFile] = {}
    for source in sorted(files, key=lambda f: (_depth(f.path), f.path)):
        if "node_modules" in source.path:
            continue
        name = source.path.rsplit("/", 1)[-1]
        if name in MANIFEST_NAMES and name not in by_name:
            by_name[name] = source
    return list(by_name.values())


def select_source_files(files: list[SourceFile], limit: int) -> list[SourceFile]:
    sources = [f for f in files if SOURCE_FILE_PATTERN.search(f.path) and "node_modules" not in f.path]
    return sources[:limit]


def related_files(files: list[SourceFile], feature: Feature) -> list[SourceFile]:
    slug = re.sub(r"\s+", "", feature.name.lower())
    related = [
        f for f in files
        if any(ref and ref in f.path for ref in feature.files) or (slug and slug in f.path.lower())
    ]
    return related[:MAX_RELATED_FILES]


def prioritized_features(analysis: FeatureAnalysis, limit: int) -> list[Feature]:
    """Non-complete features, most urgent first; sorted() keeps ties in input order."""
    pending = [f for f in analysis.features if f.status != "complete"]
    pending = sorted(pending, key=lambda f: PRIORITY_RANK.get(f.priority, PRIORITY_RANK["low"]))
    return pending[:limit]


def build_understanding_prompt(files: list[SourceFile]) -> str:
    parts = ["Analyze this application and tell me what it is supposed to do.\n"]

    readme = select_readme(files)
    if readme:
        parts.append(f"README ({readme.path}):\n{readme.content[:MANIFEST_CHARS]}\n")
    for manifest in select_manifests(files):
        parts.append(f"{manifest.path}:\n{manifest.content[:MANIFEST_CHARS]}\n")

    sources = select_source_files(files, settings.pipeline_source_files)
    parts.append("Key source files:")
    parts.append("\n\n".join(_excerpt(f, SOURCE_CHARS) for f in sources) or "(none)")
    return "\n".join(parts)


def _diagnosis_for_prompt(diagnosis: Diagnosis) -> dict[str, Any]:
    data = diagnosis.to_dict()
    data["issues"] = data["issues"][:DIAGNOSIS_ISSUE_LIMIT]
    return data


def build_feature_prompt(understanding: Understanding | None, diagnosis: Diagnosis) -> str:
    understanding_json = json.dumps(understanding.model_dump() if understanding else {}, indent=2)
    return (
        f"Based on this understanding of the app:\n{understanding_json}\n\n"
        f"And this technical diagnosis:\n{json.dumps(_diagnosis_for_prompt(diagnosis), indent=2)}\n\n"
        "Identify all missing, incomplete or broken features.\n\n"
        f"{FEATURE_DETECTION_SHAPE}"
    )


def build_feature_files_prompt(feature: Feature, context: Mapping[str, str], related: list[SourceFile]) -> str:
    references = "\n\n".join(_excerpt(f, RELATED_FILE_CHARS) for f in related) or "(none)"
    return (
        f"Generate the code needed to implement this feature:\n{feature.model_dump_json(indent=2)}\n\n"
        "Project context:\n"
        f"- Framework: {context['framework']}\n"
        f"- Language: {context['language']}\n"
        f"- Style: {context['code_style']}\n\n"
        f"Related existing files for reference:\n{references}\n\n"
        "Generate the complete code for each file needed, each one as a FILE: block."
    )


def build_packaging_prompt(project: Mapping[str, Any]) -> str:
    return (
        "Generate deployment files for this project:\n\n"
        f"Stack: {', '.join(project['stack']) or 'unknown'}\n"
        f"Framework: {project['framework']}\n"
        f"Database: {project['database']}\n\n"
        "Generate:\n"
        "1. Dockerfile (if applicable)\n"
        "2. docker-compose.yml (if applicable)\n"
        "3. Vercel/Netlify config (if frontend)\n"
        "4. Environment variable template (.env.example)\n"
        "5. Build scripts\n\n"
        "Format each file with a FILE: marker."
    )


async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CompletionEngine:
    """
    Runs the completion pipeline over an in-memory file set.

    Only Stage 3 absorbs errors (per feature). Anything else marks the
    engine ``failed``, records the message in ``results.error`` and
    propagates.
    """

    def __init__(self, llm: LLMInvoker, scanner: ProjectScanner | None = None) -> None:
        self.llm = llm
        self.scanner = scanner or ProjectScanner()
        self.status = PipelineStatus.IDLE
        self.current_stage: PipelineStage | None = None
        self.results = PipelineResult()
        self.generated_files: list[GeneratedFile] = []

    async def run_pipeline(
        self,
        files: Iterable[SourceFile | Mapping[str, Any]],
        *,
        on_progress: ProgressCallback | None = None,
        on_stage_complete: StageCallback | None = None,
        skip_stages: Iterable[PipelineStage | str] = (),
        stop_after_stage: PipelineStage | str | None = None,
        seed: PipelineResult | None = None,
    ) -> PipelineResult:
        """
        Run every stage not in ``skip_stages``.

        ``seed`` supplies results of earlier runs, so a re-run can skip the
        stages it already has. ``stop_after_stage`` pauses after the named
        stage and returns what exists so far.
        """
        skipped = {PipelineStage(s) for s in skip_stages}
        stop_after = PipelineStage(stop_after_stage) if stop_after_stage else None

        self.status = PipelineStatus.RUNNING
        self.current_stage = None
        self.results = PipelineResult(
            understanding=seed.understanding if seed else None,
            features=seed.features if seed else None,
            completions=seed.completions if seed else None,
            packaging=seed.packaging if seed else None,
        )
        self.generated_files = list(seed.completions.files) if seed and seed.completions else []

        stages = (
            (PipelineStage.UNDERSTANDING, 0, "Understanding the project...", self._run_understanding),
            (PipelineStage.FEATURE_DETECTION, 25, "Detecting missing features...", self._run_feature_detection),
            (PipelineStage.FIX_AND_COMPLETE, 50, "Generating missing code...", self._run_completion),
            (PipelineStage.PACKAGING, 85, "Preparing deployment package...", self._run_packaging),
        )

        try:
            sources = as_source_files(files)
            logger.info("🧠 Completion pipeline started: {} files", len(sources))

            for stage, percent, message, run in stages:
                if stage not in skipped:
                    self.current_stage = stage
                    await _notify(on_progress, percent, message)

                    output = await run(sources)
                    setattr(self.results, stage_attribute(stage), output)
                    logger.info("✅ Stage complete: {}", stage.value)
                    await _notify(on_stage_complete, stage, output)

                # A skipped stop stage still pauses the run.
                if stage == stop_after:
                    self.status = PipelineStatus.PAUSED
                    logger.info("⏸️ Pipeline paused after {}", stage.value)
                    return self.results
        except Exception as exc:
            self.status = PipelineStatus.FAILED
            self.results.error = str(exc)
            logger.error("❌ Pipeline failed at {}: {}", self.current_stage, exc)
            raise

        self.status = PipelineStatus.COMPLETED
        await _notify(on_progress, 100, "Pipeline complete!")
        return self.results

    def get_status(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "results": self.results.to_dict(),
            "generated_files": [f.to_dict() for f in self.generated_files],
        }

    def reset(self) -> None:
        self.status = PipelineStatus.IDLE
        self.current_stage = None
        self.results = PipelineResult()
        self.generated_files = []

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    async def _run_understanding(self, files: list[SourceFile]) -> Understanding:
        return await self.llm.invoke(
            build_understanding_prompt(files),
            system_prompt=UNDERSTANDING_SYSTEM_PROMPT,
            response_model=Understanding,
            task_type="analysis",
        )

    async def _run_feature_detection(self, files: list[SourceFile]) -> FeatureReport:
        diagnosis = await self.scanner.scan(files)
        analysis = await self.llm.invoke(
            build_feature_prompt(self.results.understanding, diagnosis),
            system_prompt=FEATURE_DETECTION_SYSTEM_PROMPT,
            response_model=FeatureAnalysis,
            max_tokens=settings.pipeline_detection_max_tokens,
            task_type="analysis",
        )
        return FeatureReport(analysis=analysis, diagnosis=diagnosis)

    async def _run_completion(self, files: list[SourceFile]) -> Completions:
        if self.results.features is None:
            raise PipelineError("Feature detection results are required to generate code")

        context = self._project_context()
        completions = Completions()

        for feature in prioritized_features(self.results.features.analysis, settings.pipeline_max_features):
            try:
                response = await self.llm.invoke(
                    build_feature_files_prompt(feature, context, related_files(files, feature)),
                    system_prompt=GENERATE_FILES_SYSTEM_PROMPT,
                    max_tokens=settings.pipeline_feature_max_tokens,
                    task_type="refactoring",
                )
                generated = parse_generated_files(response)
            except Exception as exc:
                logger.warning("Code generation failed for feature '{}': {}", feature.name, exc)
                completions.summary.append(
                    FeatureCompletion(feature=feature.name, files_generated=0, status="error", error=str(exc))
                )
                continue

            completions.files.extend(generated)
            completions.summary.append(
                FeatureCompletion(feature=feature.name, files_generated=len(generated), status="success")
            )

        self.generated_files = merge_generated_files(completions.files)
        return completions

    async def _run_packaging(self, files: list[SourceFile]) -> Packaging:
        tech_stack = self.results.understanding.tech_stack if self.results.understanding else {}
        project = {
            "stack": [str(k) for k in tech_stack],
            "framework": tech_stack.get("framework") or "unknown",
            "database": tech_stack.get("database") or "none",
        }
        response = await self.llm.invoke(
            build_packaging_prompt(project),
            system_prompt=PACKAGING_SYSTEM_PROMPT,
            task_type="documentation",
        )
        try:
            deployment_files = parse_generated_files(response)
        except NoFilesFoundError:
            logger.warning("Packaging response contained no FILE: blocks")
            deployment_files = []

        return Packaging(
            deployment_files=deployment_files,
            all_generated_files=merge_generated_files(self.generated_files, deployment_files),
            ready_to_build=True,
        )

    def _project_context(self) -> dict[str, str]:
        tech_stack = self.results.understanding.tech_stack if self.results.understanding else {}
        diagnosis = self.results.features.diagnosis if self.results.features else None
        framework = tech_stack.get("framework") or (diagnosis.frameworks[0] if diagnosis and diagnosis.frameworks else "unknown")
        language = tech_stack.get("language") or (
            max(diagnosis.languages, key=diagnosis.languages.get) if diagnosis and diagnosis.languages else "unknown"
        )
        return {"framework": str(framework), "language": str(language), "code_style": "match the existing code"}


def stage_attribute(stage: PipelineStage) -> str:
    return {
        PipelineStage.UNDERSTANDING: "understanding",
        PipelineStage.FEATURE_DETECTION: "features",
        PipelineStage.FIX_AND_COMPLETE: "completions",
        PipelineStage.PACKAGING: "packaging",
    }[stage]


# ---------------------------------------------------------------------------
# Background job integration
# ---------------------------------------------------------------------------

def queue_pipeline(
    files: Iterable[SourceFile | Mapping[str, Any]],
    queue: JobQueue,
    *,
    priority: int = JobPriority.NORMAL,
    project_id: str | None = None,
    user_id: str | None = None,
    skip_stages: Iterable[PipelineStage | str] = (),
    stop_after_stage: PipelineStage | str | None = None,
) -> Job:
    """Submit a pipeline run as an AI_ANALYSIS job."""
    data = {
        "files": [asdict(f) for f in as_source_files(files)],
        "options": {
            "skip_stages": [PipelineStage(s).value for s in skip_stages],
            "stop_after_stage": PipelineStage(stop_after_stage).value if stop_after_stage else None,
        },
    }
    return queue.add(
        JobType.AI_ANALYSIS,
        data,
        priority=priority,
        timeout=settings.job_timeout,
        project_id=project_id,
        user_id=user_id,
    )


def register_pipeline_processor(queue: JobQueue, engine_factory: Callable[[], CompletionEngine]) -> None:
    """Run AI_ANALYSIS jobs with a fresh engine each, reporting stage progress to the job."""

    async def process(data: dict[str, Any], context: JobContext) -> dict[str, Any]:
        options = data.get("options") or {}
        engine = engine_factory()
        result = await engine.run_pipeline(
            data["files"],
            on_progress=context.update_progress,
            on_stage_complete=lambda stage, _output: context.log(f"Stage complete: {stage.value}"),
            skip_stages=options.get("skip_stages") or (),
            stop_after_stage=options.get("stop_after_stage"),
        )
        return result.to_dict()

    queue.process(JobType.AI_ANALYSIS, process)
