"""Tests for LLM response parsing helpers."""

from livepipe.common.llm_utils import (
    coerce_bool,
    extract_fields,
    extract_json_object,
    has_json_object,
    parse_llm_json,
)


class TestParseLLMJson:
    def test_plain_json(self):
        assert parse_llm_json('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        assert parse_llm_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_preamble(self):
        assert parse_llm_json('Here you go: {"a": 1} hope it helps') == {"a": 1}

    def test_garbage(self):
        assert parse_llm_json("no json here") == {}
        assert parse_llm_json("") == {}

    def test_non_object(self):
        assert parse_llm_json("[1, 2]") == {}


class TestExtractJsonObject:
    def test_ok(self):
        parsed = extract_json_object('{"approved": true}')
        assert parsed.ok
        assert parsed.data == {"approved": True}

    def test_empty_object_is_ok(self):
        parsed = extract_json_object("{}")
        assert parsed.ok
        assert parsed.data == {}

    def test_malformed_keeps_raw(self):
        parsed = extract_json_object('{"approved": tru')
        assert parsed.malformed
        assert parsed.raw == '{"approved": tru'
        assert not has_json_object('{"approved": tru')


class TestExtractFields:
    def test_trailing_comma(self):
        raw = '{"actionable": true, "noteworthy": false, "content": "Pay rent",}'
        assert extract_fields(raw, ("actionable", "noteworthy"), ("content",)) == {
            "actionable": True,
            "noteworthy": False,
            "content": "Pay rent",
        }

    def test_truncated_string(self):
        raw = '{"actionable": true, "content": "Remember to call'
        fields = extract_fields(raw, ("actionable",), ("content",))
        assert fields["content"] == "Remember to call"

    def test_null_and_missing(self):
        raw = '{"due_time": null'
        fields = extract_fields(raw, ("urgent",), ("due_time", "content"))
        assert fields == {"due_time": None}


class TestCoerceBool:
    def test_values(self):
        assert coerce_bool(True) is True
        assert coerce_bool("false") is False
        assert coerce_bool("Yes") is True
        assert coerce_bool(0) is False
        assert coerce_bool(None) is None
        assert coerce_bool("maybe") is None
