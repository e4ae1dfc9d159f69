"""
Unit tests for JSON recovery of LLM output.
"""

from __future__ import annotations

from brainlane.utils.json_recovery import (
    ParsedJson,
    RepairedJson,
    UnparseableJson,
    parse_json_content,
    repair_json_text,
    strip_fences,
)


class TestParseJsonContent:
    def test_valid_json_is_parsed(self) -> None:
        outcome = parse_json_content('{"a": [1, 2]}')
        assert isinstance(outcome, ParsedJson)
        assert outcome.value == {"a": [1, 2]}

    def test_trailing_comma_is_repaired(self) -> None:
        outcome = parse_json_content('{"a": 1, "b": [1, 2,],}')
        assert isinstance(outcome, RepairedJson)
        assert outcome.value == {"a": 1, "b": [1, 2]}

    def test_truncated_object_is_closed(self) -> None:
        outcome = parse_json_content('{"a": 1')
        assert isinstance(outcome, RepairedJson)
        assert outcome.value == {"a": 1}

    def test_prose_around_object(self) -> None:
        outcome = parse_json_content('Sure! Here it is:\n{"done": true}\nHope that helps.')
        assert isinstance(outcome, RepairedJson)
        assert outcome.value == {"done": True}

    def test_smart_quotes(self) -> None:
        outcome = parse_json_content("{“key”: “value”}")
        assert outcome.value == {"key": "value"}

    def test_unparseable(self) -> None:
        assert isinstance(parse_json_content("definitely not json"), UnparseableJson)
        assert isinstance(parse_json_content(""), UnparseableJson)
        assert isinstance(parse_json_content(None), UnparseableJson)


class TestHelpers:
    def test_strip_fences(self) -> None:
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_fences('  {"a": 1}  ') == '{"a": 1}'

    def test_repair_drops_control_characters(self) -> None:
        assert repair_json_text('{"a":\x00 1}') == '{"a": 1}'
