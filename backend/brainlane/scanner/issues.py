"""
Regex issue detection.

Rule banks are plain tables: each IssueRule says what to look for and how to
report it. Banks are compiled once at import time; a rule whose pattern does
not compile is logged and left out instead of breaking every scan.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable

from loguru import logger

from brainlane.scanner.languages import language_family
from brainlane.scanner.models import SEVERITY_RANK, Issue

MATCH_SNIPPET_LIMIT = 50

MatchCheck = Callable[[re.Match, str], bool]


@dataclass(frozen=True)
class IssueRule:
    pattern: str
    type: str
    severity: str
    message: str
    flags: int = 0
    check: MatchCheck | None = None   # extra predicate on (match, whole content)


@dataclass(frozen=True)
class CompiledRule:
    rule: IssueRule
    regex: re.Pattern[str]


def _declared_once(match: re.Match[str], content: str) -> bool:
    """The declared name never appears anywhere else in the file."""
    name = match.group(1)
    return len(re.findall(rf"(?<![\w$]){re.escape(name)}(?![\w$])", content)) == 1


_SECRET = r"""(api[_-]?key|password|secret|token)\s*[:=]\s*['"][^'"]{8,}['"]"""

JAVASCRIPT_RULES: tuple[IssueRule, ...] = (
    IssueRule(r"console\.(log|debug|info)\(", "debug", "low", "Console statement found"),
    IssueRule(r"//\s*(TODO|FIXME|HACK|XXX)\b", "todo", "info", "TODO/FIXME comment", re.IGNORECASE),
    IssueRule(r"catch\s*(?:\([^)]*\))?\s*\{\s*\}", "error-handling", "medium", "Empty catch block"),
    IssueRule(_SECRET, "security", "high", "Potential hardcoded secret", re.IGNORECASE),
    IssueRule(r"[^=!]==[^=]", "logic", "low", "Loose equality (== instead of ===)"),
    IssueRule(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*=", "unused", "low",
              "Potentially unused variable", check=_declared_once),
    IssueRule(r"\b(alert|confirm|prompt)\s*\(", "debug", "low", "Browser dialog used"),
    IssueRule(r"\.(readFileSync|writeFileSync|existsSync)\(", "performance", "medium",
              "Synchronous file operation"),
    IssueRule(r"\beval\s*\(", "security", "high", "eval() usage is dangerous"),
)

TYPESCRIPT_ONLY_RULES: tuple[IssueRule, ...] = (
    IssueRule(r"@ts-ignore", "type-safety", "medium", "@ts-ignore suppressing type error"),
    IssueRule(r":\s*any\b", "type-safety", "low", 'Using "any" type'),
    IssueRule(r"\w+!(?=[.)\];,])", "type-safety", "low", "Non-null assertion operator"),
)

PYTHON_RULES: tuple[IssueRule, ...] = (
    IssueRule(r"\bprint\s*\(", "debug", "low", "Print statement found"),
    IssueRule(r"#\s*(TODO|FIXME|HACK|XXX)\b", "todo", "info", "TODO/FIXME comment", re.IGNORECASE),
    IssueRule(r"except[^\n]*:[ \t]*\n[ \t]*pass\b", "error-handling", "medium", "Empty except block"),
    IssueRule(_SECRET, "security", "high", "Potential hardcoded secret", re.IGNORECASE),
    IssueRule(r"\beval\s*\(", "security", "high", "eval() usage is dangerous"),
    IssueRule(r"subprocess\.\w+\([^\n]*shell\s*=\s*True", "security", "high",
              "subprocess with shell=True (shell injection risk)"),
    IssueRule(r"\bpickle\.loads?\(", "security", "medium", "Unsafe pickle deserialization"),
)

# JSON / YAML / TOML / .env: only secrets are worth flagging.
CONFIG_RULES: tuple[IssueRule, ...] = (
    IssueRule(r"""(api[_-]?key|password|secret|token)['"]?\s*[:=]\s*['"]?[^'"\s$]{8,}""",
              "security", "high", "Potential hardcoded secret", re.IGNORECASE),
)


def compile_rules(rules: Iterable[IssueRule]) -> tuple[CompiledRule, ...]:
    compiled: list[CompiledRule] = []
    for rule in rules:
        try:
            compiled.append(CompiledRule(rule=rule, regex=re.compile(rule.pattern, rule.flags)))
        except re.error as exc:
            logger.warning("Dropping issue rule {!r}: {}", rule.pattern, exc)
    return tuple(compiled)


RULE_BANKS: dict[str, tuple[CompiledRule, ...]] = {
    "javascript": compile_rules(JAVASCRIPT_RULES),
    "typescript": compile_rules(JAVASCRIPT_RULES + TYPESCRIPT_ONLY_RULES),
    "python": compile_rules(PYTHON_RULES),
    "config": compile_rules(CONFIG_RULES),
}


def detect_issues(content: str, language: str, file_path: str) -> list[Issue]:
    """
    Every match of every rule for the language's family.

    ``line`` is 1-based and points at the line where the match starts;
    ``match`` is cut to MATCH_SNIPPET_LIMIT characters so reports never carry
    a full secret.
    """
    issues: list[Issue] = []
    for compiled in RULE_BANKS.get(language_family(language), ()):
        rule = compiled.rule
        for match in compiled.regex.finditer(content):
            if rule.check is not None and not rule.check(match, content):
                continue
            issues.append(Issue(
                type=rule.type,
                severity=rule.severity,
                message=rule.message,
                file=file_path,
                line=content.count("\n", 0, match.start()) + 1,
                match=match.group(0)[:MATCH_SNIPPET_LIMIT],
            ))
    return issues


def sort_issues(issues: Iterable[Issue]) -> list[Issue]:
    """Stable sort by severity: high, medium, low, info."""
    return sorted(issues, key=lambda issue: SEVERITY_RANK.get(issue.severity, len(SEVERITY_RANK)))
