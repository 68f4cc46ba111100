"""Disclaimer and quality-notice text appended to assistant responses."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from app.core.policy.citations import ValidationIssue
from app.core.schemas_assistant import FINANCE_ASSISTANTS, WebSource

FINANCIAL_DISCLAIMER = """**Financial Disclaimer**

This document contains forward-looking financial projections and estimates{basis}. \
Actual results may vary significantly. This analysis is for informational purposes only \
and does not constitute financial, investment, or legal advice.

Key limitations:
- Projections are based on assumptions that may not materialize
- Market conditions, competition, and execution risks may differ from expectations
- Past performance and industry benchmarks do not guarantee future results

Consult qualified financial, legal, and accounting professionals before making business decisions."""

MARKET_DISCLAIMER = """**Market Research Disclaimer**

This market analysis is based on publicly available information and third-party research.\
{freshness}

Key limitations:
- Market sizes and growth rates are estimates subject to uncertainty
- Competitive landscape evolves rapidly; information may become outdated
- Sources may have varying methodologies and definitions
- Geographic and segment-specific dynamics may differ from aggregated data

Verify critical figures with primary research and industry experts before making strategic decisions."""

ISSUE_SUMMARIES = {
    "NO_SOURCES_SECTION": "Missing Sources section",
    "UNMAPPED_CITATION_MARKER": "{count} citation{s} reference non-existent sources",
    "UNGROUNDED_NUMBER": "{count} number{s} not found in provided calculations",
    "SUSPICIOUS_MAGNITUDE": "{count} number{s} with unusual magnitudes",
    "PROMPT_INJECTION_DETECTED": "{count} source{s} contain potential prompt injection",
    "UNSUPPORTED_RECENCY": "Current claims without recent sources",
    "PII_LEAKAGE": "Potential PII detected in {count} location{s}",
    "EMPTY_REQUIRED_SECTION": "{count} required section{s} missing or empty",
}

DAYS_PER_MONTH = 30


def _plural(count: int) -> str:
    return "s" if count > 1 else ""


def build_financial_disclaimer(has_finance_data: bool) -> str:
    basis = " based on provided assumptions" if has_finance_data else ""
    return FINANCIAL_DISCLAIMER.format(basis=basis)


def find_latest_source_date(web_sources: Sequence[WebSource]) -> datetime | None:
    """Latest published date across web sources; None when no source carries one."""
    dates = [s.published_at for s in web_sources if getattr(s, "published_at", None)]
    return max(dates) if dates else None


def build_market_disclaimer(web_sources: Sequence[WebSource]) -> str:
    latest = find_latest_source_date(web_sources)
    if latest:
        freshness = f" Market data current as of {latest.strftime('%Y-%m-%d')}."
    else:
        freshness = " Market data freshness varies by source."
    return MARKET_DISCLAIMER.format(freshness=freshness)


def issue_summary(code: str, count: int) -> str:
    template = ISSUE_SUMMARIES.get(code, "{count} {code} issue{s}")
    return template.format(count=count, s=_plural(count), code=code)


def build_issue_warning(issues: Sequence[ValidationIssue]) -> str:
    """Quality notice with error/warning counts and one line per issue code."""
    errors = sum(1 for i in issues if i.severity == "error")
    warnings = sum(1 for i in issues if i.severity == "warning")
    if errors == 0 and warnings == 0:
        return ""

    parts = ["**Quality Notice**"]
    if errors:
        parts.append(f"This response has {errors} error{_plural(errors)} that should be addressed:")
    if warnings:
        lead = "Additionally, there are" if errors else "There are"
        parts.append(f"{lead} {warnings} warning{_plural(warnings)}:")

    grouped: dict[str, int] = {}
    for issue in issues:
        grouped[issue.code] = grouped.get(issue.code, 0) + 1
    for code, count in grouped.items():
        parts.append(f"- {issue_summary(code, count)}")

    parts.append("\nPlease review and verify information before use.")
    return "\n".join(parts)


def build_disclaimer(
    assistant: str,
    issues: Sequence[ValidationIssue],
    web_sources: Sequence[WebSource] = (),
    has_finance_data: bool = False,
) -> str:
    """
    Build the disclaimer for an assistant response.

    Args:
        assistant: Assistant type
        issues: Validation issues found in the response
        web_sources: Web sources used for the answer
        has_finance_data: Whether deterministic finance numbers were provided

    Returns:
        Disclaimer text, or "" when nothing applies
    """
    parts = []
    if assistant in FINANCE_ASSISTANTS:
        parts.append(build_financial_disclaimer(has_finance_data))
    elif assistant == "market_analysis":
        parts.append(build_market_disclaimer(web_sources))

    if issues:
        parts.append(build_issue_warning(issues))

    return "\n\n".join(p for p in parts if p)


def build_freshness_note(
    web_sources: Sequence[WebSource],
    recency_months: int = 9,
    now: datetime | None = None,
) -> str:
    if not web_sources:
        return ""

    latest = find_latest_source_date(web_sources)
    if latest is None:
        return "**Data Freshness**: Source dates vary; verify currency of market data."

    now = now or datetime.now(timezone.utc)
    if latest.tzinfo is None:
        latest = latest.replace(tzinfo=timezone.utc)
    months_ago = int((now - latest).days // DAYS_PER_MONTH)
    if months_ago > recency_months:
        return (
            f"**Data Freshness**: Latest source is {months_ago} months old. "
            f"Market conditions may have changed."
        )
    return f"**Data Freshness**: Market data current as of {latest.strftime('%Y-%m-%d')}."
