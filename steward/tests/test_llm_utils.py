"""Tests for LLM response parsing helpers."""

import json
import pytest

from steward.common.llm_utils import parse_llm_json_array, strip_code_fences


class TestStripCodeFences:
    def test_plain_text_unchanged(self):
        assert strip_code_fences("  hello  ") == "hello"

    def test_json_fence_removed(self):
        assert strip_code_fences('```json\n[{"a": 1}]\n```') == '[{"a": 1}]'


class TestParseLLMJsonArray:
    def test_fenced_array(self):
        raw = '```json\n[{"type": "fact", "content": "x"}]\n```'
        assert parse_llm_json_array(raw) == [{"type": "fact", "content": "x"}]

    def test_object_returned_for_caller_to_reject(self):
        assert parse_llm_json_array('{"a": 1}') == {"a": 1}

    def test_empty_raises(self):
        with pytest.raises(json.JSONDecodeError):
            parse_llm_json_array("   ")

    def test_invalid_raises(self):
        with pytest.raises(json.JSONDecodeError):
            parse_llm_json_array("[{broken")
