"""
JSON recovery for LLM output.

Model responses that were asked for a JSON object are not always valid
JSON: they arrive wrapped in Markdown fences, carry smart quotes, trailing
commas or get cut off before the final brace. ``parse_json_content``
reports which of three outcomes happened so callers branch on a type
instead of on exception text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Union

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_FENCE = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class ParsedJson:
    """The text was valid JSON as-is."""
    value: Any
    raw: str


@dataclass(frozen=True)
class RepairedJson:
    """The text parsed only after the repair pass."""
    value: Any
    raw: str
    repaired: str


@dataclass(frozen=True)
class UnparseableJson:
    """Neither the text nor its repaired form parsed."""
    raw: str


JsonOutcome = Union[ParsedJson, RepairedJson, UnparseableJson]


def strip_fences(text: str) -> str:
    """Remove markdown code fences from LLM output."""
    match = _FENCE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def repair_json_text(text: str) -> str:
    """
    Best-effort textual repair of a JSON object.

    Strips control characters, normalises smart quotes, keeps the span from
    the first ``{`` to the last ``}``, drops trailing commas and closes one
    missing brace.
    """
    t = _CONTROL_CHARS.sub("", text)
    t = t.replace("‘", "'").replace("’", "'")
    t = t.replace("“", '"').replace("”", '"')

    first, last = t.find("{"), t.rfind("}")
    if first != -1 and last != -1 and last > first:
        t = t[first:last + 1]

    t = _TRAILING_COMMA.sub(r"\1", t)

    if t.count("}") < t.count("{"):
        t += "}"
    return t


def parse_json_content(text: str | None) -> JsonOutcome:
    raw = text or ""
    try:
        return ParsedJson(value=json.loads(raw), raw=raw)
    except json.JSONDecodeError:
        pass

    if not raw:
        return UnparseableJson(raw=raw)

    repaired = repair_json_text(raw)
    try:
        return RepairedJson(value=json.loads(repaired), raw=raw, repaired=repaired)
    except json.JSONDecodeError:
        return UnparseableJson(raw=raw)
