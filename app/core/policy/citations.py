"""Citation checks: Sources section, marker-to-source mapping, section lookup."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal, Sequence

from app.core.schemas_assistant import AssistantResponse, RagSource, WebSource

Severity = Literal["warning", "error"]

# [R1] / [W2] are supported; any other letter prefix is flagged
ANY_MARKER_RE = re.compile(r"\[([A-Z])(\d+)\]")
SUPPORTED_MARKER_RE = re.compile(r"\[([RW]\d+)\]")

SECTION_NAME_VARIATIONS: dict[str, list[str]] = {
    "ideal customer profile": ["icp", "customer profile", "target customer", "customer persona"],
    "go-to-market strategy": ["gtm strategy", "gtm", "market strategy", "go to market"],
    "key performance indicators": ["kpis", "performance indicators", "metrics"],
    "executive summary": ["summary", "overview", "executive overview"],
    "competitive analysis": ["competition", "competitive landscape", "market competition"],
    "financial projections": ["financials", "financial forecast", "projections"],
    "market analysis": ["market research", "market overview", "industry analysis"],
    "value proposition": ["value prop", "unique value proposition", "uvp"],
    "business model": ["revenue model", "business model canvas"],
}


@dataclass
class ValidationIssue:
    code: str
    message: str
    severity: Severity
    meta: dict[str, Any] = field(default_factory=dict)


def has_sources_section(response: AssistantResponse) -> bool:
    return any(key.lower() == "sources" for key in response.sections)


def extract_citation_markers(text: str, supported_only: bool = True) -> list[str]:
    """
    Markers without brackets ("R1", "W2"), de-duplicated in first-use order.

    With supported_only=False every `[<Letter><n>]` marker is returned.
    """
    if supported_only:
        found = SUPPORTED_MARKER_RE.findall(text or "")
    else:
        found = [f"{letter}{num}" for letter, num in ANY_MARKER_RE.findall(text or "")]
    return list(dict.fromkeys(found))


def validate_citation_mapping(
    raw_text: str,
    rag_sources: Sequence[RagSource],
    web_sources: Sequence[WebSource],
) -> list[ValidationIssue]:
    """
    Every marker must resolve to a source of its type.

    UNMAPPED_CITATION_MARKER (error) for an out-of-range index,
    MISSING_CITATION_TARGET (warning) for a source without title/doc id or URL,
    UNSUPPORTED_SOURCE_TYPE (error) for prefixes other than R and W.
    """
    issues: list[ValidationIssue] = []

    for marker in extract_citation_markers(raw_text, supported_only=False):
        prefix, index = marker[0], int(marker[1:]) - 1

        if prefix == "R":
            if index < 0 or index >= len(rag_sources):
                issues.append(
                    ValidationIssue(
                        code="UNMAPPED_CITATION_MARKER",
                        message=(
                            f"Citation marker [{marker}] references non-existent RAG source "
                            f"(have {len(rag_sources)} RAG sources)"
                        ),
                        severity="error",
                        meta={"marker": marker, "type": "rag", "index": index,
                              "available": len(rag_sources)},
                    )
                )
            elif not rag_sources[index].title and not rag_sources[index].doc_id:
                issues.append(
                    ValidationIssue(
                        code="MISSING_CITATION_TARGET",
                        message=f"RAG source at index {index} missing title/doc_id",
                        severity="warning",
                        meta={"marker": marker, "index": index},
                    )
                )
        elif prefix == "W":
            if index < 0 or index >= len(web_sources):
                issues.append(
                    ValidationIssue(
                        code="UNMAPPED_CITATION_MARKER",
                        message=(
                            f"Citation marker [{marker}] references non-existent web source "
                            f"(have {len(web_sources)} web sources)"
                        ),
                        severity="error",
                        meta={"marker": marker, "type": "web", "index": index,
                              "available": len(web_sources)},
                    )
                )
            elif not web_sources[index].url:
                issues.append(
                    ValidationIssue(
                        code="MISSING_CITATION_TARGET",
                        message=f"Web source at index {index} missing URL",
                        severity="warning",
                        meta={"marker": marker, "index": index},
                    )
                )
        else:
            issues.append(
                ValidationIssue(
                    code="UNSUPPORTED_SOURCE_TYPE",
                    message=(
                        f"Citation marker [{marker}] has unsupported type '{prefix}' "
                        f"(expected R or W)"
                    ),
                    severity="error",
                    meta={"marker": marker, "type": prefix},
                )
            )

    return issues


def validate_per_section_citations(response: AssistantResponse) -> list[ValidationIssue]:
    """Each non-Sources section must cite at least once when sources exist."""
    if not response.sources:
        return []

    issues = []
    for name, content in response.sections.items():
        if name.lower() == "sources":
            continue
        if not SUPPORTED_MARKER_RE.search(content):
            issues.append(
                ValidationIssue(
                    code="MISSING_SECTION_CITATION",
                    message=(
                        f"Section '{name}' must include at least one source citation "
                        f"when retrieval/web search is used"
                    ),
                    severity="error",
                    meta={"section": name},
                )
            )
    return issues


def validate_citations(
    response: AssistantResponse,
    rag_sources: Sequence[RagSource],
    web_sources: Sequence[WebSource],
    require_sources_section: bool,
    require_per_section_citations: bool = False,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    if require_sources_section and not has_sources_section(response):
        issues.append(
            ValidationIssue(
                code="NO_SOURCES_SECTION",
                message="Response missing required Sources section",
                severity="error",
            )
        )

    issues.extend(validate_citation_mapping(response.raw_model_output, rag_sources, web_sources))

    if require_per_section_citations:
        issues.extend(validate_per_section_citations(response))

    return issues


def fuzzy_match_section_name(expected: str, actual: str) -> bool:
    """Match section names across case, containment and known abbreviations (ICP, GTM...)."""
    want = expected.lower().strip()
    got = actual.lower().strip()

    if want == got:
        return True
    if want in got or got in want:
        return True

    variations = SECTION_NAME_VARIATIONS.get(want, [])
    if any(v in got or got in v for v in variations):
        return True

    for known, known_variations in SECTION_NAME_VARIATIONS.items():
        if got == known or got in known_variations:
            if want == known or any(v == want or v in want for v in known_variations):
                return True

    return False


def find_section(response: AssistantResponse, name: str) -> str | None:
    """Exact case-insensitive lookup first, then fuzzy."""
    exact = response.get_section(name)
    if exact is not None:
        return exact
    for key, value in response.sections.items():
        if fuzzy_match_section_name(name, key):
            return value
    return None
