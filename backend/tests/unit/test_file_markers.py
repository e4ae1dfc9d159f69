"""
Unit tests for FILE: marker parsing.
"""

from __future__ import annotations

import pytest

from brainlane.services.file_markers import (
    GeneratedFile,
    merge_generated_files,
    normalize_generated_path,
    parse_generated_files,
)
from brainlane.utils.exceptions import MalformedMarkerError, NoFilesFoundError


class TestParse:
    def test_multiple_blocks_with_prose(self) -> None:
        text = (
            "Here are the files.\n\n"
            "FILE: src/a.js\n"
            "```javascript\n"
            "export const a = 1\n"
            "```\n"
            "Some commentary.\n"
            "### **FILE: `src/b.py`**\n"
            "\n"
            "```python\n"
            "b = 2\n"
            "```\n"
        )
        files = parse_generated_files(text)
        assert [(f.path, f.content) for f in files] == [
            ("src/a.js", "export const a = 1"),
            ("src/b.py", "b = 2"),
        ]
        assert all(f.generated for f in files)

    def test_longer_fence_allows_inner_backticks(self) -> None:
        text = "FILE: README.md\n````markdown\n```bash\nnpm start\n```\n````\n"
        (readme,) = parse_generated_files(text)
        assert readme.content == "```bash\nnpm start\n```"

    def test_no_markers(self) -> None:
        with pytest.raises(NoFilesFoundError):
            parse_generated_files("I could not generate anything.")

    def test_missing_fence(self) -> None:
        with pytest.raises(MalformedMarkerError) as info:
            parse_generated_files("intro\nFILE: a.js\nconst a = 1\n")
        assert info.value.line == 2

    def test_unterminated_fence(self) -> None:
        with pytest.raises(MalformedMarkerError, match="unterminated"):
            parse_generated_files("FILE: a.js\n```js\nconst a = 1\n")

    def test_unsafe_path(self) -> None:
        with pytest.raises(MalformedMarkerError, match="escapes"):
            parse_generated_files("FILE: ../etc/passwd\n```\nx\n```\n")


class TestPaths:
    @pytest.mark.parametrize("raw,expected", [
        ("src\\app.js", "src/app.js"),
        ("./src/./app.js", "src/app.js"),
        ("`src/app.js`", "src/app.js"),
    ])
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_generated_path(raw) == expected

    @pytest.mark.parametrize("raw", ["/etc/passwd", "C:/x.js", "a/../../b", ""])
    def test_rejects(self, raw: str) -> None:
        with pytest.raises(ValueError):
            normalize_generated_path(raw)


def test_merge_later_wins() -> None:
    first = [GeneratedFile("a", "1"), GeneratedFile("b", "1")]
    second = [GeneratedFile("a", "2")]
    merged = merge_generated_files(first, second)
    assert [(f.path, f.content) for f in merged] == [("b", "1"), ("a", "2")]
