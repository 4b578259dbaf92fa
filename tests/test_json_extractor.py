import pytest

from mindmap_agent.llm.json_extractor import (
    PREVIEW_LENGTH,
    extract_and_validate,
    extract_json,
    extract_model,
    validate_json_schema,
)
from mindmap_agent.models import ExpansionDecisionResponse, NamingResponse


def test_extract_plain_json():
    result = extract_json('{"name": "Auth", "description": "Login"}')
    assert result.success
    assert result.data == {"name": "Auth", "description": "Login"}


def test_extract_from_markdown_fence():
    response = 'Here you go:\n```json\n{"shouldMerge": true, "confidence": 0.8}\n```\nThanks'
    result = extract_json(response)
    assert result.success
    assert result.data["shouldMerge"] is True


def test_extract_embedded_object_from_prose():
    result = extract_json('The answer is {"domain": "API Services", "confidence": 0.7} as requested.')
    assert result.success
    assert result.data["domain"] == "API Services"


def test_extract_balanced_span_when_greedy_match_fails():
    response = 'first {"a": 1} then {broken} end'
    result = extract_json(response)
    assert result.success
    assert result.data == {"a": 1}


def test_brackets_inside_strings_are_ignored():
    response = 'noise {"reasoning": "uses } and { inside", "ok": true} tail }'
    result = extract_json(response)
    assert result.success
    assert result.data["ok"] is True


@pytest.mark.parametrize("response", [None, "", "no json at all"])
def test_extract_failures_do_not_raise(response):
    result = extract_json(response)
    assert not result.success
    assert result.error


def test_failure_preview_is_truncated():
    response = "x" * (PREVIEW_LENGTH * 2)
    result = extract_json(response)
    assert not result.success
    assert result.preview.endswith("...")
    assert len(result.preview) == PREVIEW_LENGTH + 3


def test_validate_json_schema_shapes():
    assert validate_json_schema(None, "object") == "Data is null"
    assert validate_json_schema([1], "object").startswith("Expected object")
    assert validate_json_schema({}, "array").startswith("Expected array")
    assert validate_json_schema({"a": 1}, "object", ["b"]) == "Missing required field: b"
    assert validate_json_schema({"a": 1}, "object", ["a"]) is None


def test_extract_and_validate_reports_missing_field():
    result = extract_and_validate('{"name": "x"}', "object", ["description"])
    assert not result.success
    assert "description" in result.error
    assert result.data == {"name": "x"}


def test_extract_model_uses_camel_case_aliases():
    result = extract_model('{"shouldExpand": true, "isAtomic": false, "subThemes": []}', ExpansionDecisionResponse)
    assert result.success
    assert result.data.should_expand is True
    assert result.data.sub_themes == []


def test_extract_model_rejects_wrong_shape():
    result = extract_model('{"description": "no name"}', NamingResponse)
    assert not result.success
    assert "NamingResponse" in result.error
