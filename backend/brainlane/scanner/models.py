"""
Scanner data model.

Everything here is a frozen dataclass: a Diagnosis is produced once per scan
and replaced wholesale on rescan, never patched in place.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Literal, Mapping

IssueType = Literal[
    "debug", "todo", "error-handling", "security",
    "logic", "unused", "performance", "type-safety",
]
Severity = Literal["high", "medium", "low", "info"]
Priority = Literal["critical", "high", "medium", "low"]

SEVERITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2, "info": 3}
PRIORITY_RANK: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass(frozen=True)
class SourceFile:
    path: str
    content: str


@dataclass(frozen=True)
class Issue:
    type: IssueType
    severity: Severity
    message: str
    file: str
    line: int
    match: str


@dataclass(frozen=True)
class Recommendation:
    priority: Priority
    category: str
    title: str
    description: str
    action: str


@dataclass(frozen=True)
class Structure:
    total_files: int = 0
    total_lines: int = 0
    directories: list[str] = field(default_factory=list)
    entry_points: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Dependencies:
    external: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    unused: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Diagnosis:
    """Result of one ProjectScanner.scan call."""
    summary: str
    score: int
    languages: dict[str, int] = field(default_factory=dict)
    frameworks: list[str] = field(default_factory=list)
    structure: Structure = field(default_factory=Structure)
    dependencies: Dependencies = field(default_factory=Dependencies)
    issues: list[Issue] = field(default_factory=list)
    circular_deps: list[list[str]] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def issue_counts(self) -> dict[str, int]:
        """Number of issues per severity, every severity present."""
        counts = {severity: 0 for severity in SEVERITY_RANK}
        for issue in self.issues:
            counts[issue.severity] = counts.get(issue.severity, 0) + 1
        return counts


def as_source_files(items: Iterable[SourceFile | Mapping[str, Any]]) -> list[SourceFile]:
    """
    Accept SourceFile objects or ``{"path", "content"}`` mappings.

    Later entries win when the same path appears twice, matching how an upload
    that overwrites a file behaves.
    """
    by_path: dict[str, SourceFile] = {}
    for item in items:
        if isinstance(item, SourceFile):
            source = item
        else:
            source = SourceFile(path=str(item["path"]), content=str(item.get("content") or ""))
        by_path[source.path] = source
    return list(by_path.values())
