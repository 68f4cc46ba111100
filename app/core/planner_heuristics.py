"""Cheap, deterministic planning signals derived from the raw request.

Used as hints in the planner prompt and as the fallback plan when the
planner LLM call fails.
"""

import re
from typing import Protocol

from app.core.schemas_assistant import SOURCES_SECTION, Heuristics, PlannerInput

MAX_QUERY_TERMS = 10
FINANCE_METRICS = ["unit_economics", "twelve_month_projection"]

RETRIEVAL_TRIGGERS = [
    re.compile(
        r"\b(according to|from|in) (our|the|my) "
        r"(doc|document|report|pdf|file|presentation|deck)\b",
        re.IGNORECASE,
    ),
    re.compile(r"\b(last|previous|recent) (sprint|quarter|meeting|review)\b", re.IGNORECASE),
    re.compile(r"\b(internal|company|proprietary) (data|research|analysis)\b", re.IGNORECASE),
    re.compile(r"\buploaded\b", re.IGNORECASE),
    re.compile(r"\bingested\b", re.IGNORECASE),
]

WEB_SEARCH_TRIGGERS = [
    re.compile(
        r"\b(markets?|industry|competitors?|competitive|pricing|trends?|forecasts?)\b", re.IGNORECASE
    ),
    re.compile(
        r"\b(latest|current|recent|up-to-date) (data|information|news|report)\b", re.IGNORECASE
    ),
    re.compile(r"\bTAM\b|\bSAM\b|\bSOM\b", re.IGNORECASE),
    re.compile(r"\b(market size|market share|growth rate)\b", re.IGNORECASE),
]

STOPWORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "can", "her",
        "was", "one", "our", "out", "day", "get", "has", "him", "his", "how",
        "man", "new", "now", "old", "see", "two", "way", "who", "boy", "did",
        "its", "let", "put", "say", "she", "too", "use", "what", "when", "where",
        "which", "with", "about", "would", "there", "their", "these", "those",
        "could", "should",
    }
)

CANONICAL_SECTIONS: dict[str, list[str]] = {
    "streamlined_plan": [
        "Problem",
        "Solution",
        "ICP",
        "GTM",
        "90-day Milestones",
        "Risks & Mitigations",
        "KPIs",
        "Next Actions",
    ],
    "exec_summary": [
        "Executive Summary",
        "Business Model",
        "Unit Economics",
        "Financial Projections",
        "Key Risks",
        "Recommendations",
    ],
    "financial_overview": [
        "Financial Overview",
        "Revenue Model",
        "Unit Economics",
        "Projections (12-24 Months)",
        "Cost Structure",
        "Key Metrics & Ratios",
        "Financial Risks",
    ],
    "market_analysis": [
        "Market Definition",
        "Sizing (TAM/SAM/SOM)",
        "Target Segments",
        "Competitors",
        "Pricing Bands",
        "GTM Angles",
        "Assumptions & Data Freshness",
    ],
}

METRICS_BY_ASSISTANT: dict[str, list[str]] = {
    "exec_summary": FINANCE_METRICS,
    "financial_overview": FINANCE_METRICS,
}


class HeuristicsStrategy(Protocol):
    """Pluggable source of planning hints."""

    def derive(self, planner_input: PlannerInput) -> Heuristics: ...


def extract_query_terms(text: str, limit: int = MAX_QUERY_TERMS) -> list[str]:
    """
    Single words longer than 4 chars plus bigrams, stopwords skipped.

    Returns an insertion-ordered, de-duplicated list of at most `limit` terms.
    """
    words = [w for w in re.sub(r"[^\w\s-]", " ", text).split() if len(w) > 2]

    terms: dict[str, None] = {}
    for i, raw in enumerate(words):
        word = raw.lower()
        if word in STOPWORDS:
            continue
        if len(word) > 4:
            terms[word] = None
        if i < len(words) - 1:
            next_word = words[i + 1].lower()
            if next_word not in STOPWORDS:
                terms[f"{word} {next_word}"] = None

    return list(terms)[:limit]


def with_sources_section(sections: list[str], needed: bool) -> list[str]:
    """Append "Sources" when retrieval or web search is needed and it is missing."""
    if needed and SOURCES_SECTION not in sections:
        return [*sections, SOURCES_SECTION]
    return list(sections)


class RegexHeuristics:
    """Keyword/regex heuristics over the request text."""

    def derive(self, planner_input: PlannerInput) -> Heuristics:
        text = planner_input.input
        assistant = planner_input.assistant

        requires_retrieval = any(p.search(text) for p in RETRIEVAL_TRIGGERS)
        requires_web_search = assistant == "market_analysis" or any(
            p.search(text) for p in WEB_SEARCH_TRIGGERS
        )

        sections = with_sources_section(
            CANONICAL_SECTIONS.get(assistant, []),
            requires_retrieval or requires_web_search,
        )

        return Heuristics(
            requires_retrieval=requires_retrieval,
            requires_web_search=requires_web_search,
            query_terms=extract_query_terms(text),
            sections=sections,
            metrics_needed=list(METRICS_BY_ASSISTANT.get(assistant, [])),
        )


def derive_heuristics(planner_input: PlannerInput) -> Heuristics:
    return RegexHeuristics().derive(planner_input)
