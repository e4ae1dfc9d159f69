"""
Project Scanner - deterministic local diagnosis.

Turns a set of source files into a Diagnosis: structure, languages and
frameworks, import graph, circular dependencies, code issues,
recommendations and a 0-100 health score. No network, no filesystem: the
scan is synchronous work behind an async signature so progress callbacks
(sync or async) can be awaited between stages.
"""

from __future__ import annotations

import inspect
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from loguru import logger

from brainlane.scanner.graph import build_graph, detect_cycles, find_missing_dependencies
from brainlane.scanner.issues import detect_issues, sort_issues
from brainlane.scanner.languages import language_for
from brainlane.scanner.models import (
    Dependencies,
    Diagnosis,
    Issue,
    Recommendation,
    SourceFile,
    Structure,
    as_source_files,
)
from brainlane.scanner.stack import TEST_FRAMEWORKS, detect_stack
from brainlane.utils.exceptions import ScanError

ProgressCallback = Callable[[int, str], Any]

ENTRY_POINT_NAMES: frozenset[str] = frozenset({
    "index.js", "index.ts", "index.jsx", "index.tsx",
    "main.js", "main.ts", "app.js", "app.ts",
    "main.py", "app.py", "__main__.py",
})

ISSUE_PENALTIES: dict[str, int] = {"high": 10, "medium": 5, "low": 2, "info": 0}
MAX_PENALIZED_ISSUES = 20
CYCLE_PENALTY = 8
MISSING_PENALTY = 5
CRITICAL_RECOMMENDATION_PENALTY = 10

EMPTY_PROJECT_SUMMARY = "No files were provided, so there is nothing to diagnose."


class ScannerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETE = "complete"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def analyze_structure(files: Iterable[SourceFile]) -> Structure:
    directories: set[str] = set()
    entry_points: list[str] = []
    total_files = 0
    total_lines = 0

    for source in files:
        total_files += 1
        directories.add(source.path.rsplit("/", 1)[0] if "/" in source.path else ".")
        total_lines += source.content.count("\n") + 1
        if source.path.rsplit("/", 1)[-1].lower() in ENTRY_POINT_NAMES:
            entry_points.append(source.path)

    return Structure(
        total_files=total_files,
        total_lines=total_lines,
        directories=sorted(directories),
        entry_points=entry_points,
    )


def scan_issues(files: Iterable[SourceFile]) -> list[Issue]:
    issues: list[Issue] = []
    for source in files:
        info = language_for(source.path)
        if info is None:
            continue
        issues.extend(detect_issues(source.content, info.language, source.path))
    return sort_issues(issues)


def generate_recommendations(
    issues: list[Issue],
    circular_deps: list[list[str]],
    missing: list[str],
    structure: Structure,
    languages: Mapping[str, int],
    frameworks: list[str],
) -> list[Recommendation]:
    """Recommendations derived from the diagnosis counts, always in the same order."""
    recs: list[Recommendation] = []

    security = [i for i in issues if i.type == "security"]
    if security:
        recs.append(Recommendation(
            priority="critical",
            category="security",
            title="Fix Security Vulnerabilities",
            description=f"Found {len(security)} potential security issues including hardcoded secrets.",
            action="Review and remove all hardcoded credentials. Use environment variables instead.",
        ))

    if circular_deps:
        recs.append(Recommendation(
            priority="high",
            category="architecture",
            title="Resolve Circular Dependencies",
            description=f"Found {len(circular_deps)} circular dependency chains that can cause issues.",
            action="Refactor to break circular import chains. Consider using dependency injection.",
        ))

    if missing:
        recs.append(Recommendation(
            priority="high",
            category="dependencies",
            title="Fix Missing Dependencies",
            description=f"{len(missing)} imports reference missing files or packages.",
            action="Install missing packages or create missing files.",
        ))

    empty_handlers = [i for i in issues if i.type == "error-handling"]
    if empty_handlers:
        recs.append(Recommendation(
            priority="medium",
            category="reliability",
            title="Improve Error Handling",
            description=f"Found {len(empty_handlers)} empty catch/except blocks.",
            action="Add proper error logging and handling in catch blocks.",
        ))

    debug = [i for i in issues if i.type == "debug"]
    if len(debug) > 5:
        recs.append(Recommendation(
            priority="low",
            category="cleanup",
            title="Remove Debug Statements",
            description=f"Found {len(debug)} console.log/print statements.",
            action="Remove or replace with proper logging before production.",
        ))

    if not TEST_FRAMEWORKS.intersection(frameworks) and structure.total_files > 10:
        recs.append(Recommendation(
            priority="medium",
            category="testing",
            title="Add Test Coverage",
            description="No testing framework detected in the project.",
            action="Add Jest, Vitest, or pytest and write unit tests for critical functionality.",
        ))

    has_js = languages.get("javascript", 0) > 0 or languages.get("javascript-react", 0) > 0
    has_ts = languages.get("typescript", 0) > 0 or languages.get("typescript-react", 0) > 0
    if has_js and not has_ts and structure.total_files > 20:
        recs.append(Recommendation(
            priority="low",
            category="type-safety",
            title="Consider TypeScript",
            description="Large JavaScript project without TypeScript.",
            action="Migrate to TypeScript for better type safety and IDE support.",
        ))

    return recs


def calculate_score(
    issues: Iterable[Issue],
    circular_deps: list[list[str]],
    missing: list[str],
    recommendations: Iterable[Recommendation],
) -> int:
    """
    Health score in [0, 100].

    Only the first MAX_PENALIZED_ISSUES issues (severity order) count, so a
    noisy codebase cannot drown out structural problems.
    """
    score = 100
    for issue in sort_issues(issues)[:MAX_PENALIZED_ISSUES]:
        score -= ISSUE_PENALTIES.get(issue.severity, 0)
    score -= len(circular_deps) * CYCLE_PENALTY
    score -= len(missing) * MISSING_PENALTY
    score -= sum(1 for r in recommendations if r.priority == "critical") * CRITICAL_RECOMMENDATION_PENALTY
    return max(0, min(100, score))


def summarize(score: int, total_files: int) -> str:
    if total_files == 0:
        return EMPTY_PROJECT_SUMMARY
    if score >= 80:
        return "This project is in good shape with minor issues to address."
    if score >= 60:
        return "This project has some issues that should be addressed for production readiness."
    if score >= 40:
        return "This project needs significant work to address security and architecture issues."
    return "This project has critical issues that must be resolved before deployment."


def rescore(diagnosis: Diagnosis) -> int:
    """Recompute the score from a diagnosis' own fields."""
    return calculate_score(
        diagnosis.issues,
        diagnosis.circular_deps,
        diagnosis.dependencies.missing,
        diagnosis.recommendations,
    )


# ---------------------------------------------------------------------------
# Scanner
# ---------------------------------------------------------------------------

class ProjectScanner:
    """
    Stateful wrapper around the pure helpers above.

    One instance per concurrent scan: ``state`` and ``diagnosis`` describe the
    most recent call only.
    """

    def __init__(self) -> None:
        self.state = ScannerState.IDLE
        self.diagnosis: Diagnosis | None = None
        self.last_error: str | None = None

    async def scan(
        self,
        files: Iterable[SourceFile | Mapping[str, Any]],
        on_progress: ProgressCallback | None = None,
    ) -> Diagnosis:
        self.state = ScannerState.SCANNING
        self.diagnosis = None
        self.last_error = None
        try:
            sources = as_source_files(files)
            logger.info("🔍 Scanning project: {} files", len(sources))

            await self._emit(on_progress, 10, "Analyzing folder structure...")
            structure = analyze_structure(sources)

            await self._emit(on_progress, 25, "Detecting languages and frameworks...")
            stack = detect_stack(sources)

            await self._emit(on_progress, 40, "Parsing imports and dependencies...")
            imports = build_graph(sources)
            missing = find_missing_dependencies(sources, imports)

            await self._emit(on_progress, 55, "Detecting circular dependencies...")
            cycles = detect_cycles(imports.graph)

            await self._emit(on_progress, 70, "Scanning for code issues...")
            issues = scan_issues(sources)

            await self._emit(on_progress, 85, "Generating recommendations...")
            recommendations = generate_recommendations(
                issues, cycles, missing, structure, stack.languages, stack.frameworks,
            )

            await self._emit(on_progress, 95, "Calculating project score...")
            score = calculate_score(issues, cycles, missing, recommendations)

            diagnosis = Diagnosis(
                summary=summarize(score, structure.total_files),
                score=score,
                languages=stack.languages,
                frameworks=stack.frameworks,
                structure=structure,
                dependencies=Dependencies(
                    external=imports.external_packages,
                    missing=missing,
                    unused=[],
                ),
                issues=issues,
                circular_deps=cycles,
                recommendations=recommendations,
            )
        except Exception as exc:
            self.state = ScannerState.FAILED
            self.last_error = str(exc)
            logger.exception("Project scan failed: {}", exc)
            raise ScanError(f"Project scan failed: {exc}") from exc

        self.diagnosis = diagnosis
        self.state = ScannerState.COMPLETE
        await self._emit(on_progress, 100, "Diagnosis complete!")
        logger.info(
            "✅ Scan complete: score={} issues={} cycles={} missing={}",
            score, len(issues), len(cycles), len(missing),
        )
        return diagnosis

    @staticmethod
    async def _emit(callback: ProgressCallback | None, percent: int, message: str) -> None:
        if callback is None:
            return
        result = callback(percent, message)
        if inspect.isawaitable(result):
            await result
