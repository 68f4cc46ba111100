"""Tests for regex planning heuristics."""

import pytest

from app.core.planner_heuristics import (
    CANONICAL_SECTIONS,
    FINANCE_METRICS,
    RegexHeuristics,
    derive_heuristics,
    extract_query_terms,
    with_sources_section,
)
from app.core.schemas_assistant import PlannerInput


def _input(assistant: str, text: str) -> PlannerInput:
    return PlannerInput(assistant=assistant, input=text, tenant_id="t1", user_id="u1")


class TestTriggers:
    def test_market_analysis_always_searches_web(self):
        hints = derive_heuristics(_input("market_analysis", "Tell me about dog walking apps"))
        assert hints.requires_web_search
        assert hints.sections[-1] == "Sources"

    @pytest.mark.parametrize(
        "text",
        [
            "Summarize according to our deck",
            "What did we decide in the last quarter",
            "Use our internal data on retention",
            "Based on the uploaded files",
        ],
    )
    def test_retrieval_triggers(self, text):
        assert derive_heuristics(_input("streamlined_plan", text)).requires_retrieval

    @pytest.mark.parametrize(
        "text",
        ["Who are our competitors?", "What is the TAM for this?", "Show the latest data on churn"],
    )
    def test_web_triggers(self, text):
        assert derive_heuristics(_input("streamlined_plan", text)).requires_web_search

    def test_plain_request_needs_nothing(self):
        hints = derive_heuristics(_input("streamlined_plan", "Write a plan for a bakery"))
        assert not hints.requires_retrieval
        assert not hints.requires_web_search
        assert hints.sections == CANONICAL_SECTIONS["streamlined_plan"]
        assert hints.metrics_needed == []

    def test_finance_assistants_get_metrics(self):
        hints = RegexHeuristics().derive(_input("financial_overview", "Model our SaaS"))
        assert hints.metrics_needed == FINANCE_METRICS
        assert hints.sections[0] == "Financial Overview"


class TestQueryTerms:
    def test_words_and_bigrams(self):
        terms = extract_query_terms("Pricing strategy for enterprise customers")
        assert "pricing" in terms
        assert "pricing strategy" in terms
        assert "enterprise customers" in terms
        assert "for" not in terms

    def test_deduplicated_and_limited(self):
        terms = extract_query_terms("market market market growth growth", limit=3)
        assert len(terms) == 3
        assert len(set(terms)) == 3

    def test_empty(self):
        assert extract_query_terms("") == []


class TestSourcesSection:
    def test_appends_when_needed(self):
        assert with_sources_section(["A"], True) == ["A", "Sources"]

    def test_no_duplicate(self):
        assert with_sources_section(["A", "Sources"], True) == ["A", "Sources"]

    def test_not_needed(self):
        assert with_sources_section(["A"], False) == ["A"]
