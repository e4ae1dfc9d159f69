"""
Project Analysis - one-shot "analyze this project" flow.

The local scan always runs first and is persisted as the floor. Every LLM
step above it may fail on its own:

1. full prompt -> AnalysisReport
2. context too large -> one retry with a reduced prompt
3. no tasks -> a separate task-generation call
4. still no tasks -> heuristic tasks built from the local scan
5. LLM unusable -> the project is marked ready with the local scan only
"""

from __future__ import annotations

import json
from typing import Any, Mapping

from loguru import logger
from pydantic import BaseModel, Field, field_validator

from brainlane.config import settings
from brainlane.scanner.models import Diagnosis, Recommendation, SourceFile
from brainlane.scanner.scanner import ProjectScanner
from brainlane.services.llm_service import LLMInvoker
from brainlane.services.project_store import ProjectStatus, ProjectStore
from brainlane.utils.exceptions import AnalysisError, LLMError, ScanError

IMPORTANT_PATHS = ("package.json", "requirements.txt", "README.md", "setup.py", "pyproject.toml")
FALLBACK_IMPORTANT_PATHS = ("package.json", "README.md")
CODE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".py")
SAMPLE_SOURCE_MAX_CHARS = 5000

SEVERITIES = ("critical", "high", "medium", "low")
TASK_CATEGORIES = ("feature", "bugfix", "refactor", "test", "documentation", "security")
EFFORTS = ("small", "medium", "large")


def _one_of(value: Any, allowed: tuple[str, ...], default: str) -> str:
    value = str(value or "").strip().lower()
    return value if value in allowed else default


# ---------------------------------------------------------------------------
# Structured LLM outputs
# ---------------------------------------------------------------------------

class DetectedStack(BaseModel):
    framework: str | None = None
    language: str | None = None
    package_manager: str | None = None
    testing_framework: str | None = None
    database: str | None = None
    additional: list[str] = Field(default_factory=list)


class ArchitectureComponent(BaseModel):
    name: str
    responsibility: str = ""
    files: list[str] = Field(default_factory=list)


class Architecture(BaseModel):
    pattern: str = ""
    components: list[ArchitectureComponent] = Field(default_factory=list)
    external_dependencies: list[str] = Field(default_factory=list)
    data_flow: str = ""


class SecurityVulnerability(BaseModel):
    cwe_id: str = ""
    title: str
    severity: str = "medium"
    file: str | None = None
    line: int | None = None
    description: str = ""
    recommendation: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def validate_severity(cls, v: Any) -> str:
        return _one_of(v, SEVERITIES, "medium")


class CodeSmell(BaseModel):
    type: str = ""
    severity: str = "low"
    file: str | None = None
    description: str = ""
    suggestion: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def validate_severity(cls, v: Any) -> str:
        return _one_of(v, SEVERITIES, "low")


class ReportedIssue(BaseModel):
    type: str = ""
    severity: str = "low"
    file: str | None = None
    line: int | None = None
    description: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def validate_severity(cls, v: Any) -> str:
        return _one_of(v, SEVERITIES, "low")


class TestSuggestion(BaseModel):
    target_file: str = ""
    function_name: str = ""
    test_type: str = "unit"
    description: str = ""
    test_cases: list[str] = Field(default_factory=list)

    @field_validator("test_type", mode="before")
    @classmethod
    def validate_test_type(cls, v: Any) -> str:
        return _one_of(v, ("unit", "integration", "e2e"), "unit")


class PlannedTask(BaseModel):
    title: str
    description: str = ""
    category: str = "feature"
    priority: str = "medium"
    estimated_effort: str = "medium"
    files_affected: list[str] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def validate_category(cls, v: Any) -> str:
        return _one_of(v, TASK_CATEGORIES, "feature")

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> str:
        return _one_of(v, SEVERITIES, "medium")

    @field_validator("estimated_effort", mode="before")
    @classmethod
    def validate_effort(cls, v: Any) -> str:
        return _one_of(v, EFFORTS, "medium")


class AnalysisReport(BaseModel):
    summary: str = ""
    detected_stack: DetectedStack = Field(default_factory=DetectedStack)
    architecture: Architecture = Field(default_factory=Architecture)
    security_vulnerabilities: list[SecurityVulnerability] = Field(default_factory=list)
    code_smells: list[CodeSmell] = Field(default_factory=list)
    issues: list[ReportedIssue] = Field(default_factory=list)
    test_suggestions: list[TestSuggestion] = Field(default_factory=list)
    tasks: list[PlannedTask] = Field(default_factory=list)


class TaskPlan(BaseModel):
    tasks: list[PlannedTask] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

ANALYSIS_INSTRUCTIONS = """\
You are a senior full-stack engineer and security specialist performing a
comprehensive code review.

Provide a detailed analysis covering:
1. summary: what the project does, its purpose and main functionality
2. detected_stack: framework, language, package manager, testing framework, database
3. architecture: pattern, key components and their files, external dependencies, data flow
4. security_vulnerabilities: common CWEs (XSS, SQL injection, hard-coded or weakly
   protected credentials, missing authentication, CSRF, SSRF, unsafe deserialization),
   exposed secrets and missing input validation
5. code_smells: duplication, long functions, dead code, missing error handling,
   performance bottlenecks, poor naming, missing type safety
6. issues: TODOs, incomplete functions, broken imports, failing tests
7. test_suggestions: uncovered code paths with concrete test cases
8. tasks: 10-20 prioritized completion tasks; security fixes first

Be specific and reference exact files and functions.

Respond with ONLY this JSON structure:
{
  "summary": "...",
  "detected_stack": {"framework": "", "language": "", "package_manager": "",
                     "testing_framework": "", "database": "", "additional": []},
  "architecture": {"pattern": "", "components": [{"name": "", "responsibility": "", "files": []}],
                   "external_dependencies": [], "data_flow": ""},
  "security_vulnerabilities": [{"cwe_id": "", "title": "", "severity": "critical|high|medium|low",
                                "file": "", "line": 0, "description": "", "recommendation": ""}],
  "code_smells": [{"type": "", "severity": "critical|high|medium|low", "file": "",
                   "description": "", "suggestion": ""}],
  "issues": [{"type": "", "severity": "critical|high|medium|low", "file": "", "line": 0,
              "description": ""}],
  "test_suggestions": [{"target_file": "", "function_name": "", "test_type": "unit|integration|e2e",
                        "description": "", "test_cases": []}],
  "tasks": [{"title": "", "description": "",
             "category": "feature|bugfix|refactor|test|documentation|security",
             "priority": "critical|high|medium|low", "estimated_effort": "small|medium|large",
             "files_affected": []}]
}"""

TASK_GENERATION_INSTRUCTIONS = """\
Generate 5-15 concrete completion tasks for this project from the findings
below. Security fixes come first.

Respond with ONLY this JSON structure:
{"tasks": [{"title": "", "description": "",
            "category": "feature|bugfix|refactor|test|documentation|security",
            "priority": "critical|high|medium|low", "estimated_effort": "small|medium|large",
            "files_affected": []}]}"""


def build_file_listing(paths: list[str], limit: int) -> str:
    listing = paths[:limit]
    if len(paths) > limit:
        listing.append(f"... and {len(paths) - limit} more files")
    return "\n".join(listing) or "No files extracted"


def collect_important_files(
    file_contents: Mapping[str, str],
    char_limit: int,
    names: tuple[str, ...] = IMPORTANT_PATHS,
) -> str:
    blocks = [
        f"--- {path} ---\n{(content or '')[:char_limit]}"
        for path, content in file_contents.items()
        if path.endswith(names)
    ]
    return "\n\n".join(blocks)


def collect_sample_code(file_contents: Mapping[str, str], max_files: int, char_limit: int) -> str:
    blocks: list[str] = []
    for path, content in file_contents.items():
        if len(blocks) >= max_files:
            break
        if path.endswith(CODE_EXTENSIONS) and content and len(content) < SAMPLE_SOURCE_MAX_CHARS:
            blocks.append(f"--- {path} ---\n{content[:char_limit]}")
    return "\n\n".join(blocks)


def _source_description(project: Mapping[str, Any]) -> str:
    if project.get("github_url") and not project.get("zip_file_url"):
        return f"Analyze the GitHub repository at {project['github_url']} and provide a comprehensive codebase analysis."
    return "Analyze the uploaded project and provide a comprehensive codebase analysis."


def build_analysis_prompt(project: Mapping[str, Any], *, reduced: bool = False) -> str:
    """
    Assemble the analysis prompt.

    ``reduced`` is the context-overflow variant: a shorter file listing, only
    README and package.json excerpts, and fewer, shorter source samples.
    """
    file_contents: Mapping[str, str] = project.get("file_contents") or {}
    if reduced:
        listing = build_file_listing(list(file_contents), settings.analysis_fallback_listed_files)
        important = collect_important_files(
            file_contents, settings.analysis_fallback_excerpt_chars, FALLBACK_IMPORTANT_PATHS
        )
        samples = collect_sample_code(
            file_contents, settings.analysis_fallback_sample_files, settings.analysis_fallback_sample_chars
        )
    else:
        listing = build_file_listing(list(file_contents), settings.analysis_max_listed_files)
        important = collect_important_files(file_contents, settings.analysis_important_file_chars)
        samples = collect_sample_code(
            file_contents, settings.analysis_sample_files, settings.analysis_sample_file_chars
        )

    sections = [_source_description(project), f"FILE STRUCTURE:\n{listing}"]
    if important:
        sections.append(f"CONFIGURATION FILES:\n{important}")
    if samples:
        sections.append(f"SAMPLE SOURCE CODE:\n{samples}")
    sections.append(ANALYSIS_INSTRUCTIONS)
    return "\n\n".join(sections)


def build_task_prompt(report: AnalysisReport, baseline: Diagnosis | None) -> str:
    findings = {
        "summary": report.summary,
        "detected_stack": report.detected_stack.model_dump(),
        "security_vulnerabilities": [v.model_dump() for v in report.security_vulnerabilities[:10]],
        "code_smells": [s.model_dump() for s in report.code_smells[:10]],
        "issues": [i.model_dump() for i in report.issues[:10]],
    }
    if baseline is not None:
        findings["local_scan"] = {
            "score": baseline.score,
            "recommendations": [r.title for r in baseline.recommendations],
        }
    return f"PROJECT FINDINGS:\n{json.dumps(findings, indent=2)}\n\n{TASK_GENERATION_INSTRUCTIONS}"


# ---------------------------------------------------------------------------
# Local fallbacks
# ---------------------------------------------------------------------------

RECOMMENDATION_CATEGORIES: dict[str, str] = {
    "security": "security",
    "architecture": "refactor",
    "dependencies": "bugfix",
    "reliability": "bugfix",
    "cleanup": "refactor",
    "testing": "test",
    "type-safety": "refactor",
}

DEFAULT_HEURISTIC_TASKS: tuple[PlannedTask, ...] = (
    PlannedTask(
        title="Add automated tests for core modules",
        description="Cover the main entry points and business logic with unit tests.",
        category="test",
        priority="high",
        estimated_effort="medium",
    ),
    PlannedTask(
        title="Review error handling",
        description="Make sure failures are caught, logged and reported to the user.",
        category="bugfix",
        priority="medium",
        estimated_effort="medium",
    ),
    PlannedTask(
        title="Document setup and architecture",
        description="Write a README section on installing, configuring and running the project.",
        category="documentation",
        priority="low",
        estimated_effort="small",
    ),
)
MIN_HEURISTIC_TASKS = 3


def _task_from_recommendation(rec: Recommendation) -> PlannedTask:
    return PlannedTask(
        title=rec.title,
        description=f"{rec.description} {rec.action}".strip(),
        category=RECOMMENDATION_CATEGORIES.get(rec.category, "refactor"),
        priority=rec.priority,
        estimated_effort="medium",
    )


def heuristic_tasks(baseline: Diagnosis | None) -> list[PlannedTask]:
    """Tasks from the local scan's recommendations, topped up from a fixed list."""
    tasks = [_task_from_recommendation(r) for r in baseline.recommendations] if baseline else []
    titles = {t.title for t in tasks}
    for default in DEFAULT_HEURISTIC_TASKS:
        if len(tasks) >= MIN_HEURISTIC_TASKS:
            break
        if default.title not in titles:
            tasks.append(default.model_copy())
    return tasks


def _dominant_language(baseline: Diagnosis) -> str | None:
    if not baseline.languages:
        return None
    return max(baseline.languages, key=baseline.languages.get)


def baseline_fields(baseline: Diagnosis) -> dict[str, Any]:
    """Project fields derived from the local scan alone."""
    frameworks = baseline.frameworks
    return {
        "summary": baseline.summary,
        "detected_stack": DetectedStack(
            framework=frameworks[0] if frameworks else None,
            language=_dominant_language(baseline),
            additional=frameworks[1:],
        ).model_dump(),
        "architecture": Architecture().model_dump(),
        "security_vulnerabilities": [],
        "code_smells": [],
        "test_suggestions": [],
        "issues": [
            ReportedIssue(
                type=issue.type,
                severity="low" if issue.severity == "info" else issue.severity,
                file=issue.file,
                line=issue.line,
                description=issue.message,
            ).model_dump()
            for issue in baseline.issues
        ],
    }


# ---------------------------------------------------------------------------
# Ladder
# ---------------------------------------------------------------------------

async def request_analysis(project: Mapping[str, Any], llm: LLMInvoker) -> tuple[AnalysisReport, str]:
    """Full prompt, then exactly one reduced retry when the prompt does not fit."""
    try:
        report = await llm.invoke(
            build_analysis_prompt(project),
            response_model=AnalysisReport,
            task_type="analysis",
        )
        return report, "full"
    except LLMError as exc:
        if not exc.is_context_too_large:
            raise
        logger.warning("⚠️ Analysis prompt too large ({}), retrying with reduced context", exc)

    report = await llm.invoke(
        build_analysis_prompt(project, reduced=True),
        response_model=AnalysisReport,
        task_type="analysis",
    )
    return report, "fallback"


async def resolve_tasks(
    report: AnalysisReport,
    baseline: Diagnosis | None,
    llm: LLMInvoker,
) -> tuple[list[PlannedTask], str]:
    if report.tasks:
        return report.tasks, "analysis"

    logger.info("Analysis returned no tasks, requesting task generation")
    try:
        plan = await llm.invoke(
            build_task_prompt(report, baseline),
            response_model=TaskPlan,
            task_type="task_generation",
        )
        if plan.tasks:
            return plan.tasks, "task_generation"
    except LLMError as exc:
        logger.warning("Task generation failed: {}", exc)

    logger.info("Falling back to heuristic tasks")
    return heuristic_tasks(baseline), "heuristic"


async def _create_tasks(
    store: ProjectStore, project_id: str, tasks: list[PlannedTask], source: str
) -> list[dict[str, Any]]:
    created = []
    for task in tasks:
        created.append(await store.create_task({
            "project_id": project_id,
            **task.model_dump(),
            "status": "pending",
            "source": source,
        }))
    return created


def _file_tree(file_contents: Mapping[str, str]) -> list[dict[str, Any]]:
    return [{"path": path, "type": "file", "size": len(content or "")} for path, content in file_contents.items()]


async def run_project_analysis(
    project_id: str,
    store: ProjectStore,
    llm: LLMInvoker,
    scanner: ProjectScanner | None = None,
) -> dict[str, Any]:
    """
    Analyze one stored project and persist the outcome.

    Returns the project record as persisted. Raises ``AnalysisError`` when
    the project is unknown or has no files, and re-raises the LLM error when
    neither the LLM nor the local scan produced anything.
    """
    project = await store.get_project_async(project_id)
    if project is None:
        raise AnalysisError(f"Project not found: {project_id}")

    file_contents: Mapping[str, str] = project.get("file_contents") or {}
    if not file_contents:
        message = "No files were extracted for this project. Please re-upload the ZIP."
        await store.update_project(project_id, {"status": ProjectStatus.ERROR.value, "error_message": message})
        raise AnalysisError(message)

    logger.info("🧠 Starting analysis of {} ({} files)", project_id, len(file_contents))
    progress: dict[str, Any] = {"status": ProjectStatus.ANALYZING.value, "file_tree": _file_tree(file_contents)}

    baseline: Diagnosis | None = None
    try:
        baseline = await (scanner or ProjectScanner()).scan(
            [SourceFile(path, content or "") for path, content in file_contents.items()]
        )
        progress.update({"baseline": baseline.to_dict(), "health_score": baseline.score})
    except ScanError as exc:
        logger.warning("Local baseline unavailable for {}: {}", project_id, exc)
    await store.update_project(project_id, progress)

    try:
        report, strategy = await request_analysis(project, llm)
        tasks, tasks_source = await resolve_tasks(report, baseline, llm)
    except LLMError as exc:
        if baseline is None:
            await _mark_failed(store, project_id, exc)
            raise
        logger.warning("⚠️ LLM analysis failed for {}, using local baseline: {}", project_id, exc)
        fields = {
            **baseline_fields(baseline),
            "status": ProjectStatus.READY.value,
            "analysis_strategy": "baseline",
            "tasks_source": "heuristic",
            "analysis_error": str(exc),
            "error_message": None,
        }
        await store.update_project(project_id, fields)
        await _create_tasks(store, project_id, heuristic_tasks(baseline), "heuristic")
        return {**project, **progress, **fields}
    except Exception as exc:
        await _mark_failed(store, project_id, exc)
        raise

    fields = {
        **report.model_dump(exclude={"tasks"}),
        "status": ProjectStatus.READY.value,
        "analysis_strategy": strategy,
        "tasks_source": tasks_source,
        "error_message": None,
    }
    await store.update_project(project_id, fields)
    await _create_tasks(store, project_id, tasks, tasks_source)
    logger.info(
        "✅ Analysis complete for {}: strategy={} tasks={} ({})",
        project_id, strategy, len(tasks), tasks_source,
    )
    return {**project, **progress, **fields}


async def _mark_failed(store: ProjectStore, project_id: str, exc: Exception) -> None:
    logger.error("❌ Analysis failed for {}: {}", project_id, exc)
    await store.update_project(
        project_id, {"status": ProjectStatus.ERROR.value, "error_message": str(exc)}
    )
