"""Usage metering: cost calculation, estimation and persisted usage rows."""

from __future__ import annotations

import logging
import math
import random
from typing import Any, Protocol

from app.core.config import Settings, get_settings
from app.core.llm_usage import get_cost_cents
from app.core.logging import get_logger, log_with_context
from app.core.schemas_assistant import ToolInvocations, UsageMetric, UsageRow

logger = get_logger(__name__)

# Tool names as registered with the model -> ToolInvocations field
_TOOL_NAME_FIELDS = {
    "retrieval": "retrieval",
    "web_search": "web_search",
    "finance_calc": "finance",
    "finance": "finance",
}

INPUT_TOKENS_PER_CHAR = 1.5


class UsageStore(Protocol):
    """Persistence for usage rows and the daily sums used by quotas."""

    async def record_usage(self, row: UsageRow) -> None: ...

    async def sum_tokens_by_user(self, user_id: str, since_iso: str) -> int: ...

    async def sum_tokens_by_tenant(self, tenant_id: str, since_iso: str) -> int: ...


def calc_cost_cents(
    model: str,
    tokens_in: int,
    tokens_out: int,
    cached_input_tokens: int = 0,
) -> int:
    """Whole-cent cost, rounded up."""
    return math.ceil(get_cost_cents(model, tokens_in, tokens_out, cached_input_tokens))


def to_tool_invocations(counts: dict[str, int] | ToolInvocations | None) -> ToolInvocations:
    """Map tool-name counts ({"web_search": 2, "finance_calc": 1}) onto ToolInvocations."""
    if isinstance(counts, ToolInvocations):
        return counts
    totals = {"retrieval": 0, "web_search": 0, "finance": 0}
    for name, count in (counts or {}).items():
        field = _TOOL_NAME_FIELDS.get(name)
        if field:
            totals[field] += count
    return ToolInvocations(**totals)


def build_usage_from_client_event(
    model: str,
    tokens_in: int,
    tokens_out: int,
    latency_ms: int,
    cached_input_tokens: int = 0,
    tool_invocations: dict[str, int] | ToolInvocations | None = None,
) -> UsageMetric:
    """Build a UsageMetric from an LLM client usage event."""
    return UsageMetric(
        model=model,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        cost_cents=calc_cost_cents(model, tokens_in, tokens_out, cached_input_tokens),
        latency_ms=latency_ms,
        tool_invocations=to_tool_invocations(tool_invocations),
    )


def estimate_usage(
    model: str,
    input_length: int,
    context_tokens: int,
    max_output_tokens: int,
) -> dict[str, Any]:
    """
    Pessimistic usage estimate for quota preflight.

    Args:
        model: Model that will serve the request
        input_length: Length of the user input in characters
        context_tokens: Tokens of retrieved context that will be added
        max_output_tokens: Output cap for the call

    Returns:
        {"estimated_tokens": int, "estimated_cost_cents": int}
    """
    estimated_in = math.ceil(input_length * INPUT_TOKENS_PER_CHAR) + context_tokens
    estimated_out = max_output_tokens
    return {
        "estimated_tokens": estimated_in + estimated_out,
        "estimated_cost_cents": calc_cost_cents(model, estimated_in, estimated_out),
    }


def format_usage_metrics(metrics: UsageMetric) -> str:
    total = metrics.tokens_in + metrics.tokens_out
    dollars = metrics.cost_cents / 100
    return f"{metrics.model}: {total} tokens (${dollars:.4f}, {metrics.latency_ms}ms)"


def aggregate_usage_metrics(metrics: list[UsageMetric]) -> dict[str, Any]:
    """Sum a batch of metrics (e.g. planner + executor calls of one request)."""
    totals = {
        "tokens_in": 0,
        "tokens_out": 0,
        "total_tokens": 0,
        "cost_cents": 0.0,
        "latency_ms": 0,
        "call_count": len(metrics),
        "tool_invocations": {"retrieval": 0, "web_search": 0, "finance": 0},
    }
    for m in metrics:
        totals["tokens_in"] += m.tokens_in
        totals["tokens_out"] += m.tokens_out
        totals["total_tokens"] += m.tokens_in + m.tokens_out
        totals["cost_cents"] += m.cost_cents
        totals["latency_ms"] += m.latency_ms
        for name, count in m.tool_invocations.model_dump().items():
            totals["tool_invocations"][name] += count
    return totals


class UsageMeter:
    """Writes sampled usage rows to a UsageStore."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: UsageStore | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self._rng = rng or random.Random()

    def should_sample(self) -> bool:
        rate = self.settings.USAGE_SAMPLING_RATE
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        return self._rng.random() < rate

    async def emit_usage(
        self,
        tenant_id: str,
        user_id: str,
        metrics: UsageMetric,
        assistant: str | None = None,
        request_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> UsageRow | None:
        """
        Persist one usage row.

        Returns:
            The recorded row, or None when tracking is off, no store is
            configured or the row was not sampled

        Raises:
            Exception: Store failures, unless USAGE_SOFT_FAIL is set
        """
        if not self.settings.ENABLE_USAGE_TRACKING or self.store is None:
            return None
        if not self.should_sample():
            logger.debug(f"Usage row not sampled for tenant {tenant_id}")
            return None

        row = UsageRow(
            tenant_id=tenant_id,
            user_id=user_id,
            assistant=assistant,
            model=metrics.model,
            tokens_in=metrics.tokens_in,
            tokens_out=metrics.tokens_out,
            total_tokens=metrics.tokens_in + metrics.tokens_out,
            cost_cents=metrics.cost_cents,
            latency_ms=metrics.latency_ms,
            tool_invocations=metrics.tool_invocations,
            request_id=request_id,
            meta=meta,
        )

        try:
            await self.store.record_usage(row)
        except Exception as e:
            logger.error(
                f"Failed to record usage: {e}",
                extra={"tenant_id": tenant_id, "user_id": user_id, "request_id": request_id},
            )
            if not self.settings.USAGE_SOFT_FAIL:
                raise
            return None

        log_with_context(
            logger,
            logging.DEBUG,
            f"Recorded usage: {format_usage_metrics(metrics)}",
            tenant_id=tenant_id,
            user_id=user_id,
            request_id=request_id,
            assistant=assistant,
            total_tokens=row.total_tokens,
        )
        return row
