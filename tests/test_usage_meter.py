"""Tests for usage metering, cost arithmetic and estimates."""

import random

import pytest

from app.core.llm_usage import estimate_cost_cents, format_cost, get_cost_cents, get_model_pricing
from app.core.schemas_assistant import ToolInvocations, UsageMetric
from app.core.usage_meter import (
    UsageMeter,
    aggregate_usage_metrics,
    build_usage_from_client_event,
    calc_cost_cents,
    estimate_usage,
    format_usage_metrics,
    to_tool_invocations,
)
from tests.fakes.fake_stores import InMemoryUsageStore


def _metric(**overrides) -> UsageMetric:
    data = {"model": "gpt-4o-mini", "tokens_in": 1000, "tokens_out": 500, "cost_cents": 1, "latency_ms": 800}
    data.update(overrides)
    return UsageMetric(**data)


class TestPricing:
    def test_cost_cents(self):
        # 1M in + 1M out on gpt-4o: $2.50 + $10.00
        assert get_cost_cents("gpt-4o", 1_000_000, 1_000_000) == 1250.0

    def test_cached_tokens_billed_at_cached_rate(self):
        full = get_cost_cents("gpt-4o", 100_000, 0)
        cached = get_cost_cents("gpt-4o", 100_000, 0, cached_input_tokens=100_000)
        assert cached == full / 2

    def test_dated_variant_uses_prefix_pricing(self):
        assert get_model_pricing("gpt-4o-mini-2024-07-18") == get_model_pricing("gpt-4o-mini")

    def test_unknown_model(self):
        with pytest.raises(ValueError):
            get_model_pricing("claude-unknown")

    def test_estimate_with_caching_is_cheaper(self):
        assert estimate_cost_cents("gpt-4o", 100_000, 0, use_caching=True) < estimate_cost_cents(
            "gpt-4o", 100_000, 0
        )

    def test_format_cost(self):
        assert format_cost(125) == "$1.2500"

    def test_whole_cents_round_up(self):
        # 0.45 cents rounds up to a whole cent
        assert calc_cost_cents("gpt-4o-mini", 10_000, 5_000) == 1
        assert calc_cost_cents("gpt-4o-mini", 0, 0) == 0


class TestToolInvocations:
    def test_maps_tool_names(self):
        counts = to_tool_invocations({"web_search": 2, "finance_calc": 1, "retrieval": 1, "other": 9})
        assert counts == ToolInvocations(retrieval=1, web_search=2, finance=1)

    def test_passthrough_and_empty(self):
        existing = ToolInvocations(web_search=1)
        assert to_tool_invocations(existing) is existing
        assert to_tool_invocations(None) == ToolInvocations()

    def test_client_event(self):
        metric = build_usage_from_client_event("gpt-4o-mini", 10_000, 5_000, 120, tool_invocations={"finance_calc": 1})
        assert metric.cost_cents == 1
        assert metric.tool_invocations.finance == 1


class TestEstimates:
    def test_estimate_usage(self):
        estimate = estimate_usage("gpt-4o-mini", input_length=1000, context_tokens=4000, max_output_tokens=8000)
        assert estimate["estimated_tokens"] == 1500 + 4000 + 8000
        assert estimate["estimated_cost_cents"] >= 1

    def test_aggregate(self):
        totals = aggregate_usage_metrics(
            [_metric(), _metric(tokens_in=10, tokens_out=5, tool_invocations=ToolInvocations(web_search=1))]
        )
        assert totals["total_tokens"] == 1515
        assert totals["call_count"] == 2
        assert totals["tool_invocations"]["web_search"] == 1

    def test_format(self):
        assert format_usage_metrics(_metric()) == "gpt-4o-mini: 1500 tokens ($0.0100, 800ms)"


class TestUsageMeter:
    @pytest.mark.asyncio
    async def test_records_row(self, settings):
        store = InMemoryUsageStore()
        meter = UsageMeter(settings, store)

        row = await meter.emit_usage("t1", "u1", _metric(), assistant="exec_summary", request_id="r1")

        assert store.rows == [row]
        assert row.total_tokens == 1500
        assert row.assistant == "exec_summary"

    @pytest.mark.asyncio
    async def test_tracking_disabled(self, settings):
        settings.ENABLE_USAGE_TRACKING = False
        store = InMemoryUsageStore()
        assert await UsageMeter(settings, store).emit_usage("t1", "u1", _metric()) is None
        assert store.rows == []

    @pytest.mark.asyncio
    async def test_sampling(self, settings):
        settings.USAGE_SAMPLING_RATE = 0.5
        store = InMemoryUsageStore()
        meter = UsageMeter(settings, store, rng=random.Random(7))

        for _ in range(200):
            await meter.emit_usage("t1", "u1", _metric())

        assert 60 < len(store.rows) < 140

    @pytest.mark.asyncio
    async def test_store_failure_raises(self, settings):
        meter = UsageMeter(settings, InMemoryUsageStore(fail=True))
        with pytest.raises(RuntimeError):
            await meter.emit_usage("t1", "u1", _metric())

    @pytest.mark.asyncio
    async def test_store_failure_soft_fail(self, settings):
        settings.USAGE_SOFT_FAIL = True
        meter = UsageMeter(settings, InMemoryUsageStore(fail=True))
        assert await meter.emit_usage("t1", "u1", _metric()) is None
