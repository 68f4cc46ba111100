"""Tests for the planner -> executor assistant graph."""

import pytest

from app.core.exceptions import QuotaError
from app.core.llm_client import LLMClient
from app.core.quota import QuotaEnforcer
from app.core.schemas_assistant import AssistantRequest, PlannerOutput
from app.core.search_providers import WebSearchResult
from app.graphs.assistant_graph import (
    AssistantDeps,
    AssistantRunState,
    _build_graph,
    apply_task_rules,
    run_assistant,
)
from tests.fakes.fake_openai import FakeOpenAI, make_completion, make_json_completion, no_sleep
from tests.fakes.fake_stores import FakeWebSearch, InMemoryUsageStore

WEB_RESULTS = [
    WebSearchResult(title="Dentrix overview", snippet="Dentrix is the largest vendor", url="https://a.com"),
]

ANSWER = "## Competitors\nDentrix is the largest vendor [W1].\n\n## Sources\n[W1] Dentrix overview"


def _plan_payload(task: str, **overrides) -> dict:
    data = {
        "task": task,
        "requires_retrieval": False,
        "requires_web_search": False,
        "query_terms": ["dental software"],
        "sections": ["Competitors"],
        "metrics_needed": [],
        "escalate_model": False,
    }
    data.update(overrides)
    return data


def _field(state, key):
    return state[key] if isinstance(state, dict) else getattr(state, key)


def _request(assistant: str) -> AssistantRequest:
    return AssistantRequest(
        assistant=assistant,
        input="Who competes in dental practice software?",
        tenant_id="tenant-1",
        user_id="user-1",
    )


def _deps(settings, responses, store=None, web=None) -> tuple[AssistantDeps, FakeOpenAI]:
    fake = FakeOpenAI(responses)
    deps = AssistantDeps(
        client=LLMClient(settings, client=fake, sleep=no_sleep),
        settings=settings,
        quota=QuotaEnforcer(settings, store or InMemoryUsageStore()),
        web_search=web,
    )
    return deps, fake


class TestAssistantGraph:
    @pytest.mark.asyncio
    async def test_market_analysis_forces_web_search(self, settings):
        web = FakeWebSearch(WEB_RESULTS)
        deps, fake = _deps(
            settings,
            [make_json_completion(_plan_payload("market_analysis")), make_completion(ANSWER)],
            web=web,
        )

        final_state = await _build_graph(deps).compile().ainvoke(
            AssistantRunState(request=_request("market_analysis"))
        )

        plan = _field(final_state, "plan")
        assert plan.requires_web_search is True
        assert plan.sections == ["Competitors", "Sources"]
        assert _field(final_state, "notes") == ["web_search_forced"]
        assert _field(final_state, "step_count") == 3
        assert len(web.calls) == 1
        assert len(fake.completions.calls) == 2
        assert [s.url for s in _field(final_state, "response").sources] == ["https://a.com"]

    @pytest.mark.asyncio
    async def test_other_assistants_keep_plan(self, settings):
        answer = "## Problem\nClinics lose patients.\n\n## Solution\nAutomated recalls."
        plan_payload = _plan_payload("streamlined_plan", sections=["Problem", "Solution"])
        web = FakeWebSearch(WEB_RESULTS)
        deps, _ = _deps(settings, [make_json_completion(plan_payload), make_completion(answer)], web=web)

        plan, response = await run_assistant(_request("streamlined_plan"), deps)

        assert plan.requires_web_search is False
        assert plan.sections == ["Problem", "Solution"]
        assert web.calls == []
        assert response.sections["Problem"] == "Clinics lose patients."

    @pytest.mark.asyncio
    async def test_run_assistant_returns_plan_and_response(self, settings):
        deps, _ = _deps(
            settings,
            [make_json_completion(_plan_payload("market_analysis")), make_completion(ANSWER)],
            web=FakeWebSearch(WEB_RESULTS),
        )

        plan, response = await run_assistant(_request("market_analysis"), deps)

        assert plan.requires_web_search is True
        assert response.assistant == "market_analysis"
        assert "Disclaimer" in response.sections

    @pytest.mark.asyncio
    async def test_planner_quota_denial_propagates(self, settings):
        store = InMemoryUsageStore(user_tokens=settings.DAILY_TOKEN_QUOTA_PER_USER)
        deps, fake = _deps(settings, [], store=store)

        with pytest.raises(QuotaError):
            await run_assistant(_request("market_analysis"), deps)

        assert fake.completions.calls == []


class TestApplyTaskRules:
    def test_market_analysis_without_search_is_forced(self):
        plan = PlannerOutput(**_plan_payload("market_analysis"))

        forced, notes = apply_task_rules(plan, _request("market_analysis"))

        assert forced.requires_web_search is True
        assert forced.sections == ["Competitors", "Sources"]
        assert notes == ["web_search_forced"]
        assert plan.requires_web_search is False

    def test_plan_already_searching_is_unchanged(self):
        plan = PlannerOutput(**_plan_payload("market_analysis", requires_web_search=True))

        same, notes = apply_task_rules(plan, _request("market_analysis"))

        assert same is plan
        assert notes == []

    def test_other_assistants_unchanged(self):
        plan = PlannerOutput(**_plan_payload("streamlined_plan"))

        same, notes = apply_task_rules(plan, _request("streamlined_plan"))

        assert same is plan
        assert notes == []
