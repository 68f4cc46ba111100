"""Tests for structured-output helpers and the model registry."""

import pytest
from pydantic import BaseModel, Field

from app.core.exceptions import StructuredOutputError, UnknownModelError
from app.core.llm import as_json_schema, parse_structured, strict_json_schema, strip_llm_fences
from app.core.llm_models import get_model_config, model_supports, resolve_model
from app.core.schemas_assistant import PlannerOutput


class Inner(BaseModel):
    name: str
    tags: list[str] = Field(default_factory=list)


class Outer(BaseModel):
    title: str
    inner: Inner
    count: int = 3


class TestStripFences:
    def test_json_fence(self):
        assert strip_llm_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_plain_fence(self):
        assert strip_llm_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_llm_fences('  {"a": 1}  ') == '{"a": 1}'


class TestStrictSchema:
    def test_every_object_closed_and_fully_required(self):
        schema = strict_json_schema(Outer)

        assert schema["additionalProperties"] is False
        assert schema["required"] == ["title", "inner", "count"]
        inner = schema["$defs"]["Inner"]
        assert inner["additionalProperties"] is False
        assert inner["required"] == ["name", "tags"]
        assert "default" not in schema["properties"]["count"]

    def test_planner_schema_response_format(self):
        response_format = as_json_schema(PlannerOutput, "PlannerOutput", "Structured plan")
        json_schema = response_format["json_schema"]
        assert json_schema["name"] == "PlannerOutput"
        assert json_schema["description"] == "Structured plan"
        assert set(json_schema["schema"]["required"]) == set(PlannerOutput.model_fields)


class TestParseStructured:
    def test_valid(self):
        parsed = parse_structured('{"title": "t", "inner": {"name": "n"}}', Outer)
        assert parsed.inner.name == "n"

    def test_invalid_json(self):
        with pytest.raises(StructuredOutputError) as exc_info:
            parse_structured("not json", Outer)
        assert exc_info.value.raw_output == "not json"

    def test_schema_violation_names_field(self):
        with pytest.raises(StructuredOutputError, match="inner"):
            parse_structured('{"title": "t"}', Outer)


class TestModelRegistry:
    def test_known_model(self):
        config = get_model_config("gpt-4o-mini")
        assert config.max_output_tokens == 16_384
        assert model_supports("gpt-4o-mini", "supports_structured_output")

    def test_unknown_model(self):
        with pytest.raises(UnknownModelError):
            get_model_config("gpt-999")

    def test_resolve_model_falls_back(self):
        assert resolve_model("gpt-999", "gpt-4o-mini") == "gpt-4o-mini"
        assert resolve_model("gpt-4o", "gpt-4o-mini") == "gpt-4o"
        assert resolve_model(None, "gpt-4o-mini") == "gpt-4o-mini"
