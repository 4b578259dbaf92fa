"""
Response extraction for Mindmap Agent
Pulls JSON out of free-form model output and validates its shape without raising
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Type, TypeVar

from langchain_core.exceptions import OutputParserException
from langchain_core.utils.json import parse_json_markdown
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200

ModelT = TypeVar("ModelT", bound=BaseModel)

_GREEDY_PATTERNS = (re.compile(r"\{[\s\S]*\}"), re.compile(r"\[[\s\S]*\]"))


@dataclass
class ExtractionResult:
    """Outcome of a JSON extraction attempt"""
    success: bool
    data: Any = None
    error: Optional[str] = None
    original_response: Optional[str] = None

    @property
    def preview(self) -> str:
        text = self.original_response or ""
        if len(text) <= PREVIEW_LENGTH:
            return text
        return text[:PREVIEW_LENGTH] + "..."


def _failure(error: str, response: Optional[str], data: Any = None) -> ExtractionResult:
    return ExtractionResult(success=False, data=data, error=error, original_response=response)


def _find_balanced_candidates(text: str) -> List[str]:
    """Collect top-level balanced {...} and [...] spans, ignoring brackets inside strings"""
    candidates = []
    depth = 0
    start = -1
    in_string = False
    escape_next = False

    for index, char in enumerate(text):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char in "{[":
            if depth == 0:
                start = index
            depth += 1
        elif char in "}]" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                candidates.append(text[start:index + 1])
                start = -1

    return candidates


def extract_json(response: Optional[str]) -> ExtractionResult:
    """
    Extract the first parseable JSON value from model output

    Strategies are tried in order: the whole text, markdown code fences,
    a greedy object/array match, then every balanced bracket span.

    Args:
        response: Raw model output

    Returns:
        ExtractionResult: Parsed data or a typed failure
    """
    if not response or not isinstance(response, str):
        return _failure("Invalid response: empty or non-string input", response)

    trimmed = response.strip()

    try:
        return ExtractionResult(success=True, data=json.loads(trimmed), original_response=response)
    except json.JSONDecodeError:
        pass

    if "```" in trimmed:
        try:
            parsed = parse_json_markdown(trimmed)
            if parsed is not None:
                return ExtractionResult(success=True, data=parsed, original_response=response)
        except (json.JSONDecodeError, OutputParserException, ValueError):
            pass

    for pattern in _GREEDY_PATTERNS:
        match = pattern.search(trimmed)
        if not match:
            continue
        try:
            return ExtractionResult(success=True, data=json.loads(match.group(0)), original_response=response)
        except json.JSONDecodeError:
            continue

    for candidate in _find_balanced_candidates(trimmed):
        try:
            return ExtractionResult(success=True, data=json.loads(candidate), original_response=response)
        except json.JSONDecodeError:
            continue

    return _failure("No valid JSON found in response", response)


def validate_json_schema(
    data: Any,
    expected_shape: str,
    required_fields: Optional[Sequence[str]] = None
) -> Optional[str]:
    """
    Check the top-level shape and required fields of extracted data

    Returns:
        None when valid, otherwise a description of the violation
    """
    if data is None:
        return "Data is null"
    if expected_shape == "array" and not isinstance(data, list):
        return f"Expected array but got {type(data).__name__}"
    if expected_shape == "object" and not isinstance(data, dict):
        return f"Expected object but got {type(data).__name__}"
    if required_fields and expected_shape == "object":
        for field_name in required_fields:
            if field_name not in data:
                return f"Missing required field: {field_name}"
    return None


def extract_and_validate(
    response: Optional[str],
    expected_shape: str = "object",
    required_fields: Optional[Sequence[str]] = None
) -> ExtractionResult:
    """Extract JSON and validate its shape and required fields"""
    result = extract_json(response)
    if not result.success:
        return result

    violation = validate_json_schema(result.data, expected_shape, required_fields)
    if violation:
        return _failure(f"Schema validation failed: {violation}", response, data=result.data)
    return result


def extract_model(response: Optional[str], model: Type[ModelT]) -> ExtractionResult:
    """
    Extract JSON and validate it against a structured response model

    On success ``data`` holds the model instance.
    """
    result = extract_and_validate(response, "object")
    if not result.success:
        return result

    try:
        return ExtractionResult(
            success=True,
            data=model.model_validate(result.data),
            original_response=response
        )
    except ValidationError as e:
        return _failure(
            f"Schema validation failed for {model.__name__}: {e.error_count()} error(s)",
            response,
            data=result.data
        )


def log_extraction_failure(result: ExtractionResult, label: str) -> None:
    """Log a failed extraction with a truncated preview of the offending text"""
    logger.warning(f"{label}: JSON extraction failed: {result.error}")
    if result.original_response:
        logger.debug(f"{label}: original response: {result.preview}")


__all__ = [
    "ExtractionResult",
    "extract_json",
    "validate_json_schema",
    "extract_and_validate",
    "extract_model",
    "log_extraction_failure",
]
