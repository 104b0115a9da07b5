"""
Unit tests for JSON recovery from model output.

Run: pytest tests/unit/test_json_utils.py -v
"""

import pytest

from exceptions import MalformedResponseError
from utils.json_utils import decode_json, find_json_span, parse_json_strict, strip_code_fences


class TestStripCodeFences:
    """Tests for strip_code_fences()"""

    def test_json_fence(self):
        """Should remove ```json fences."""
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain_fence(self):
        """Should remove bare ``` fences."""
        assert strip_code_fences("```\n[1, 2]\n```") == "[1, 2]"


class TestFindJsonSpan:
    """Tests for find_json_span()"""

    def test_object_inside_prose(self):
        """Should return the first balanced object."""
        text = 'Here you go: {"a": {"b": [1, 2]}} and more {"c": 3}'

        assert find_json_span(text) == '{"a": {"b": [1, 2]}}'

    def test_brackets_inside_strings(self):
        """Should ignore brackets inside string literals."""
        text = 'x {"name": "Rice } [5kg]", "ok": true} y'

        assert find_json_span(text) == '{"name": "Rice } [5kg]", "ok": true}'

    def test_unclosed(self):
        """Should return None when nothing closes."""
        assert find_json_span('{"a": [1, 2') is None

    def test_restarts_after_mismatch(self):
        """Should skip a stray opener and find the next valid span."""
        assert find_json_span('{ ] [1, 2]') == "[1, 2]"

    def test_many_mismatched_openers(self):
        """Should scan long runs of mismatched brackets without recursing."""
        assert find_json_span("{]" * 5000) is None
        assert find_json_span("{]" * 5000 + '{"a": 1}') == '{"a": 1}'


class TestParseJsonStrict:
    """Tests for parse_json_strict()"""

    def test_clean_json(self):
        """Should parse plain JSON."""
        assert parse_json_strict('{"mappings": []}') == {"mappings": []}

    def test_trailing_explanation(self):
        """Should parse JSON followed by prose."""
        assert parse_json_strict('[{"a": 1}]\nI mapped one item.') == [{"a": 1}]

    def test_empty_raises(self):
        """Should raise for an empty response."""
        with pytest.raises(MalformedResponseError):
            parse_json_strict("   ")

    def test_no_json_raises(self):
        """Should raise with a preview when there is no JSON."""
        with pytest.raises(MalformedResponseError) as exc_info:
            parse_json_strict("I cannot help with that.")

        assert exc_info.value.code == "MALFORMED_RESPONSE"
        assert exc_info.value.details["preview"] == "I cannot help with that."

    def test_deep_nesting_raises_malformed(self):
        """Should report over-deep nesting as a malformed response."""
        with pytest.raises(MalformedResponseError):
            parse_json_strict("[" * 100000 + "]" * 100000)


class TestDecodeJson:
    """Tests for decode_json()"""

    def test_returns_parsed_value(self):
        """Should return the decoded value."""
        assert decode_json('```json\n{"items": [1]}\n```', {}) == {"items": [1]}

    def test_returns_fallback(self):
        """Should return the fallback instead of raising."""
        fallback = {"mappings": []}

        assert decode_json("garbage", fallback) is fallback
        assert decode_json(None, fallback) is fallback

    def test_mismatched_bracket_flood_returns_fallback(self):
        """Should return the fallback for thousands of mismatched brackets."""
        assert decode_json("{]" * 2000, "fallback") == "fallback"

    def test_deep_nesting_returns_fallback(self):
        """Should return the fallback when nesting exceeds the decoder's depth."""
        text = "[" * 100000 + "]" * 100000

        assert decode_json(text, "fallback") == "fallback"
