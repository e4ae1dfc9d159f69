"""
FILE: marker parsing.

LLM responses carry generated files in a fixed textual form::

    FILE: src/routes/users.js
    ```javascript
    ...file body...
    ```

The grammar is line based: a marker line (optionally decorated as a Markdown
heading, bold or inline code), optional blank lines, an opening fence, the
body, and a closing fence at least as long as the opening one. Anything
between blocks is ignored. Errors distinguish "the model sent no files" from
"the model sent a broken block".
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from brainlane.utils.exceptions import MalformedMarkerError, NoFilesFoundError

_MARKER = re.compile(r"^\s*(?:#{1,6}\s*)?(?:[*_`]{1,2}\s*)?FILE:\s*(?P<path>.*?)\s*$")
_FENCE_OPEN = re.compile(r"^(?P<ticks>`{3,})[\w+#.-]*\s*$")
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class GeneratedFile:
    path: str
    content: str
    generated: bool = True
    timestamp: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def normalize_generated_path(raw: str) -> str:
    """
    Clean a path taken from a marker line.

    Decoration (backticks, asterisks, quotes) is stripped, backslashes become
    slashes, ``.`` segments disappear. Absolute paths and any ``..`` segment
    are rejected with ValueError: generated files stay inside the project.
    """
    path = raw.strip().strip("`*'\"").strip().replace("\\", "/")
    if path.startswith("/") or _WINDOWS_DRIVE.match(path):
        raise ValueError(f"absolute path not allowed: {raw!r}")

    parts: list[str] = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise ValueError(f"path escapes the project root: {raw!r}")
        parts.append(part)
    if not parts:
        raise ValueError("empty path")
    return "/".join(parts)


def _marker_path(line: str) -> str | None:
    match = _MARKER.match(line)
    if match is None:
        return None
    return match.group("path").strip().strip("`*_").strip()


def _closes(line: str, ticks: int) -> bool:
    stripped = line.strip()
    return len(stripped) >= ticks and set(stripped) == {"`"}


def parse_generated_files(text: str) -> list[GeneratedFile]:
    """
    Extract every FILE: block from ``text``.

    Raises:
        NoFilesFoundError: No marker line at all.
        MalformedMarkerError: A marker with an empty or unsafe path, not
            followed by a fence, or whose fence is never closed.
    """
    lines = text.splitlines()
    files: list[GeneratedFile] = []
    seen_marker = False
    i = 0

    while i < len(lines):
        raw_path = _marker_path(lines[i])
        if raw_path is None:
            i += 1
            continue

        seen_marker = True
        marker_line = i + 1
        if not raw_path:
            raise MalformedMarkerError(marker_line, "empty path")
        try:
            path = normalize_generated_path(raw_path)
        except ValueError as exc:
            raise MalformedMarkerError(marker_line, str(exc)) from exc

        j = i + 1
        while j < len(lines) and not lines[j].strip():
            j += 1
        fence = _FENCE_OPEN.match(lines[j].strip()) if j < len(lines) else None
        if fence is None:
            raise MalformedMarkerError(marker_line, "expected an opening code fence")

        ticks = len(fence.group("ticks"))
        body: list[str] = []
        k = j + 1
        while k < len(lines) and not _closes(lines[k], ticks):
            body.append(lines[k])
            k += 1
        if k >= len(lines):
            raise MalformedMarkerError(marker_line, "unterminated code fence")

        files.append(GeneratedFile(path=path, content="\n".join(body).strip("\n")))
        i = k + 1

    if not seen_marker:
        raise NoFilesFoundError("No FILE: markers found in response")
    return files


def merge_generated_files(*groups: list[GeneratedFile]) -> list[GeneratedFile]:
    """Concatenate groups; a later file with the same path replaces the earlier one."""
    merged: dict[str, GeneratedFile] = {}
    for group in groups:
        for generated in group:
            merged.pop(generated.path, None)
            merged[generated.path] = generated
    return list(merged.values())
