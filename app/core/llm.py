"""Structured-output helpers: strict JSON schemas, fence stripping, validation."""

import copy
import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from app.core.exceptions import StructuredOutputError

T = TypeVar("T", bound=BaseModel)

FIX_SCHEMA_PROMPT = (
    "Schema violation detected. Please output ONLY valid JSON matching {schema_name} "
    "schema with no extra fields or markdown.\n\nValidation error:\n{error}"
)


def strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    # Extract JSON from markdown code fences
    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    # Fallback: strip leading/trailing fences without regex
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _make_strict(node: Any) -> Any:
    """Close every object schema: no extra properties, all properties required."""
    if isinstance(node, dict):
        node.pop("default", None)
        if node.get("type") == "object" and "properties" in node:
            node["additionalProperties"] = False
            node["required"] = list(node["properties"].keys())
        for value in node.values():
            _make_strict(value)
    elif isinstance(node, list):
        for item in node:
            _make_strict(item)
    return node


def strict_json_schema(model: type[BaseModel]) -> dict[str, Any]:
    """Derive a strict-mode JSON Schema from a Pydantic model."""
    schema = copy.deepcopy(model.model_json_schema())
    return _make_strict(schema)


def as_json_schema(
    model: type[BaseModel],
    name: str,
    description: str | None = None,
) -> dict[str, Any]:
    """
    Build an OpenAI `response_format` for schema-constrained output.

    Args:
        model: Pydantic model describing the expected output
        name: Schema name sent to the provider
        description: Optional schema description

    Returns:
        response_format dict with strict json_schema
    """
    json_schema: dict[str, Any] = {
        "name": name,
        "schema": strict_json_schema(model),
        "strict": True,
    }
    if description:
        json_schema["description"] = description
    return {"type": "json_schema", "json_schema": json_schema}


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as "path: msg; path: msg"."""
    parts = []
    for err in error.errors():
        path = ".".join(str(p) for p in err["loc"]) or "(root)"
        parts.append(f"{path}: {err['msg']}")
    return "; ".join(parts)


def parse_structured(raw_output: str, model: type[T]) -> T:
    """
    Parse LLM output as JSON and validate against a Pydantic model.

    Handles common LLM response quirks:
    - Markdown code fences (```json ... ```)
    - Leading/trailing whitespace

    Args:
        raw_output: Raw string from LLM response
        model: Pydantic model class to validate against

    Returns:
        Validated Pydantic model instance

    Raises:
        StructuredOutputError: If the output is not JSON or fails validation
    """
    cleaned = strip_llm_fences(raw_output)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise StructuredOutputError(
            f"Structured output is not valid JSON: {e}", raw_output=raw_output
        ) from e

    try:
        return model.model_validate(parsed)
    except ValidationError as e:
        raise StructuredOutputError(
            f"Structured output validation failed: {format_validation_error(e)}",
            raw_output=raw_output,
        ) from e
