"""Policy validation orchestrator for executor output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

from app.core.config import Settings, get_settings
from app.core.logging import get_logger
from app.core.policy.citations import ValidationIssue, find_section, validate_citations
from app.core.policy.disclaimers import build_disclaimer
from app.core.policy.injection import strip_injection, validate_sources_for_injection
from app.core.policy.numbers import validate_numbers
from app.core.schemas_assistant import AssistantResponse, FinancialModel, RagSource, WebSource

logger = get_logger(__name__)

RECENCY_PATTERNS = [
    re.compile(r"\bcurrent\b"),
    re.compile(r"\bnow\b"),
    re.compile(r"\blatest\b"),
    re.compile(r"\brecent\b"),
    re.compile(r"\btrends?\b"),
    re.compile(r"202[0-9]"),
]

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")


@dataclass
class ValidationContext:
    """What the executor knew when producing the response."""

    assistant: str
    rag_sources: Sequence[RagSource] = ()
    web_sources: Sequence[WebSource] = ()
    finance_model: FinancialModel | None = None
    requires_retrieval: bool = False
    requires_web_search: bool = False
    required_sections: Sequence[str] = ()


@dataclass
class PolicyValidationResult:
    valid: bool
    issues: list[ValidationIssue] = field(default_factory=list)
    appended_disclaimer: str | None = None

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]


def validate_recency(
    response: AssistantResponse,
    web_sources: Sequence[WebSource],
    requires_web_search: bool,
    recent_months: int,
) -> list[ValidationIssue]:
    if not requires_web_search or not web_sources:
        return []

    text = response.raw_model_output.lower()
    if not any(p.search(text) for p in RECENCY_PATTERNS):
        return []

    return [
        ValidationIssue(
            code="UNSUPPORTED_RECENCY",
            message=(
                f"Response contains current/recent claims but source dates are not verified "
                f"(requires sources within {recent_months} months)"
            ),
            severity="warning",
            meta={"recent_months": recent_months},
        )
    ]


def validate_pii(response: AssistantResponse, block_pii: bool) -> list[ValidationIssue]:
    if not block_pii:
        return []

    text = response.raw_model_output
    issues = []

    emails = EMAIL_RE.findall(text)
    if emails:
        issues.append(
            ValidationIssue(
                code="PII_LEAKAGE",
                message=f"Found {len(emails)} email address(es) in output",
                severity="warning",
                meta={"type": "email", "count": len(emails)},
            )
        )

    phones = PHONE_RE.findall(text)
    if phones:
        issues.append(
            ValidationIssue(
                code="PII_LEAKAGE",
                message=f"Found {len(phones)} phone number(s) in output",
                severity="warning",
                meta={"type": "phone", "count": len(phones)},
            )
        )

    return issues


def validate_required_sections(
    response: AssistantResponse,
    required_sections: Sequence[str],
) -> list[ValidationIssue]:
    issues = []
    for required in required_sections:
        content = find_section(response, required)
        if not content or not content.strip():
            issues.append(
                ValidationIssue(
                    code="EMPTY_REQUIRED_SECTION",
                    message=f"Required section '{required}' is missing or empty",
                    severity="warning",
                    meta={"section_name": required},
                )
            )
    return issues


def validate_output(
    response: AssistantResponse,
    context: ValidationContext,
    settings: Settings | None = None,
) -> PolicyValidationResult:
    """
    Run all policy checks over an executor response.

    Order: citations, numbers, injection, recency, PII, required sections.
    The response is valid when no issue has severity "error".

    Args:
        response: Parsed executor response
        context: Candidate sources, finance model and plan flags
        settings: Policy settings (defaults to app settings)

    Returns:
        PolicyValidationResult with issues and the disclaimer text to append
    """
    settings = settings or get_settings()
    issues: list[ValidationIssue] = []

    needs_sources = context.requires_retrieval or context.requires_web_search
    issues.extend(
        validate_citations(
            response,
            context.rag_sources,
            context.web_sources,
            require_sources_section=settings.POLICY_REQUIRE_SOURCES and needs_sources,
        )
    )

    finance_json = context.finance_model.model_dump() if context.finance_model else None
    issues.extend(
        validate_numbers(
            context.assistant,
            response.raw_model_output,
            finance_json,
            settings.POLICY_STRICT_NUMBERS,
        )
    )

    issues.extend(validate_sources_for_injection([*context.rag_sources, *context.web_sources]))

    issues.extend(
        validate_recency(
            response,
            context.web_sources,
            context.requires_web_search,
            settings.POLICY_RECENT_MONTHS,
        )
    )

    issues.extend(validate_pii(response, settings.POLICY_BLOCK_PII_IN_OUTPUT))

    if context.required_sections:
        issues.extend(validate_required_sections(response, context.required_sections))

    valid = not any(i.severity == "error" for i in issues)
    disclaimer = build_disclaimer(
        context.assistant,
        issues,
        web_sources=context.web_sources,
        has_finance_data=context.finance_model is not None,
    )

    if issues:
        logger.info(
            f"Policy validation found {len(issues)} issue(s), valid={valid}",
            extra={"codes": sorted({i.code for i in issues})},
        )

    return PolicyValidationResult(
        valid=valid,
        issues=issues,
        appended_disclaimer=disclaimer or None,
    )


def sanitize_response(response: AssistantResponse) -> AssistantResponse:
    """Copy of the response with injection markers stripped from sections and raw output."""
    return response.model_copy(
        update={
            "sections": {k: strip_injection(v) for k, v in response.sections.items()},
            "raw_model_output": strip_injection(response.raw_model_output),
        }
    )
