"""Pydantic schemas for the planner/executor assistant pipeline."""

import re
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

AssistantType = Literal["streamlined_plan", "exec_summary", "financial_overview", "market_analysis"]

FINANCE_ASSISTANTS: tuple[str, ...] = ("exec_summary", "financial_overview")

SOURCES_SECTION = "Sources"

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z]+)")


def _require_non_blank(value: str, field_name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{field_name} is required and cannot be empty")
    return value


def to_snake_case(key: str) -> str:
    """arpuMonthly -> arpu_monthly; snake_case keys pass through."""
    return _CAMEL_RE.sub(r"_\1", key).lower()


def _flatten_errors(error: ValidationError) -> str:
    # Commas, not semicolons: callers split the outer error on "; "
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'extra'}: {err['msg']}" for err in error.errors()
    )


# =======================
# Assistant extras
# =======================


class FinancialInputs(BaseModel):
    """Assumptions for the deterministic finance model."""

    model_config = ConfigDict(extra="forbid")

    arpu_monthly: float | None = Field(default=None, ge=0, description="Monthly revenue per user")
    acv: float | None = Field(default=None, ge=0, description="Annual contract value")
    cogs_pct: float = Field(..., ge=0, le=1, description="COGS as a fraction of revenue")
    variable_cost_per_user: float | None = Field(default=None, ge=0)
    starting_customers: int = Field(..., ge=0)
    new_customers_per_month: float = Field(..., ge=0)
    churn_rate_monthly: float = Field(..., ge=0, le=0.99)
    expansion_pct_monthly: float = Field(default=0, ge=0, le=1)
    sales_marketing_spend_monthly: float = Field(..., ge=0)
    customers_acquired_per_month: float | None = Field(default=None, ge=0)
    assumed_cac: float | None = Field(default=None, ge=0)
    months: int = Field(default=12, ge=1, le=24)

    @model_validator(mode="after")
    def _pricing_required(self) -> "FinancialInputs":
        if self.arpu_monthly is None and self.acv is None:
            raise ValueError("Either arpu_monthly or acv must be provided")
        return self


class NotesExtra(BaseModel):
    """`extra` for streamlined_plan and market_analysis: free-form notes only."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    notes: str | None = Field(default=None, max_length=5_000)


class FinanceExtra(BaseModel):
    """
    `extra` for exec_summary and financial_overview.

    Financial inputs may arrive nested under `financial_inputs` or at the top
    level, in snake_case or camelCase. Any other key is rejected.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    financial_inputs: FinancialInputs | None = None
    notes: str | None = Field(default=None, max_length=5_000)

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        data = {to_snake_case(k): v for k, v in data.items()}
        notes = data.pop("notes", None)
        nested = data.pop("financial_inputs", None)
        if nested is None and data:
            nested, data = data, {}
        if isinstance(nested, dict):
            nested = {to_snake_case(k): v for k, v in nested.items()}
        # Leftover top-level keys next to a nested payload fail extra="forbid"
        return {**data, "financial_inputs": nested, "notes": notes}


AssistantExtra = Union[FinanceExtra, NotesExtra]

EXTRA_MODELS: dict[str, type[BaseModel]] = {
    "streamlined_plan": NotesExtra,
    "exec_summary": FinanceExtra,
    "financial_overview": FinanceExtra,
    "market_analysis": NotesExtra,
}


# =======================
# Requests
# =======================


class PlannerInput(BaseModel):
    """Immutable request envelope handed to the planner."""

    model_config = ConfigDict(frozen=True)

    assistant: AssistantType = Field(..., description="Assistant type")
    input: str = Field(..., min_length=1, max_length=10_000, description="Free-text request")
    tenant_id: str = Field(..., description="Tenant identifier")
    user_id: str = Field(..., description="User identifier")
    extra: AssistantExtra | None = Field(
        default=None, description="Assistant-specific payload, shape set by `assistant`"
    )

    @field_validator("tenant_id", "user_id")
    @classmethod
    def _ids_not_blank(cls, v: str, info) -> str:
        return _require_non_blank(v, info.field_name)

    @field_validator("extra", mode="before")
    @classmethod
    def _extra_for_assistant(cls, v: Any, info: ValidationInfo) -> Any:
        if v is None:
            return None
        model = EXTRA_MODELS.get(info.data.get("assistant"))
        if model is None:
            # assistant failed validation; that error is reported instead
            return None
        if isinstance(v, model):
            return v
        if isinstance(v, BaseModel):
            v = v.model_dump(exclude_none=True)
        try:
            return model.model_validate(v)
        except ValidationError as e:
            raise ValueError(f"invalid {info.data['assistant']} extra: {_flatten_errors(e)}") from e


class AssistantRequest(PlannerInput):
    """Original user request carried through to the executor."""


# =======================
# Planner output
# =======================


class PlannerOutput(BaseModel):
    """Structured plan produced by Stage A and consumed read-only by Stage B."""

    model_config = ConfigDict(extra="forbid")

    task: str = Field(..., description="Assistant task being planned")
    requires_retrieval: bool = Field(..., description="Whether internal documents are needed")
    requires_web_search: bool = Field(..., description="Whether current web data is needed")
    query_terms: list[str] = Field(..., max_length=20, description="Search keywords/phrases")
    sections: list[str] = Field(
        ..., min_length=1, max_length=15, description="Output section headings in order"
    )
    metrics_needed: list[str] = Field(
        ..., max_length=10, description="Finance metrics for deterministic tools"
    )
    escalate_model: bool = Field(..., description="Use the escalation model")

    @model_validator(mode="after")
    def _sources_when_searching(self) -> "PlannerOutput":
        """Plans that retrieve or search always end with a Sources section."""
        if (self.requires_retrieval or self.requires_web_search) and SOURCES_SECTION not in self.sections:
            self.sections = [*self.sections, SOURCES_SECTION]
        return self


class Heuristics(BaseModel):
    """Cheap, deterministic signals derived from the raw request text."""

    requires_retrieval: bool
    requires_web_search: bool
    query_terms: list[str] = Field(default_factory=list)
    sections: list[str] = Field(default_factory=list)
    metrics_needed: list[str] = Field(default_factory=list)


# =======================
# Finance
# =======================


class UnitEconomics(BaseModel):
    arpu_monthly: float
    gross_margin_pct: float
    cac: float
    ltv: float
    payback_months: float
    ltv_cac_ratio: float | None = None


class ProjectionRow(BaseModel):
    month: int
    customers_end: float
    new_customers: float
    churned_customers: float
    revenue: float
    cogs: float
    gross_margin: float
    gross_margin_pct: float
    cac: float


class FinancialModel(BaseModel):
    unit_economics: UnitEconomics
    projections: list[ProjectionRow]
    assumptions: dict[str, Any]


# =======================
# Sources / response
# =======================


class RagSource(BaseModel):
    type: Literal["rag"] = "rag"
    doc_id: str | None = None
    title: str
    snippet: str = ""
    score: float | None = None


class WebSource(BaseModel):
    type: Literal["web"] = "web"
    url: str
    title: str
    snippet: str = ""
    published_at: datetime | None = None


AssistantSource = Annotated[Union[RagSource, WebSource], Field(discriminator="type")]


class ResponseMetadata(BaseModel):
    model: str
    tokens_used: int
    latency_ms: int
    cost: float = Field(..., description="Cost in dollars")


class AssistantResponse(BaseModel):
    """Terminal artifact returned to the caller."""

    assistant: AssistantType
    sections: dict[str, str] = Field(default_factory=dict)
    sources: list[AssistantSource] = Field(default_factory=list)
    raw_model_output: str = ""
    metadata: ResponseMetadata

    def get_section(self, name: str) -> str | None:
        """Case-insensitive section lookup."""
        wanted = name.lower()
        for key, value in self.sections.items():
            if key.lower() == wanted:
                return value
        return None


# =======================
# Usage
# =======================


class ToolInvocations(BaseModel):
    retrieval: int = 0
    web_search: int = 0
    finance: int = 0


class UsageMetric(BaseModel):
    model: str
    tokens_in: int
    tokens_out: int
    cost_cents: float
    latency_ms: int
    tool_invocations: ToolInvocations = Field(default_factory=ToolInvocations)


class UsageRow(BaseModel):
    """Append-only usage record persisted for quota accounting."""

    tenant_id: str
    user_id: str
    assistant: str | None = None
    model: str
    tokens_in: int
    tokens_out: int
    total_tokens: int
    cost_cents: float
    latency_ms: int
    tool_invocations: ToolInvocations = Field(default_factory=ToolInvocations)
    request_id: str | None = None
    meta: dict[str, Any] | None = None
