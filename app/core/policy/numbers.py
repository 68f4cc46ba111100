"""Number checks: grounding against the finance model and magnitude sanity."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any

from app.core.policy.citations import ValidationIssue
from app.core.schemas_assistant import FINANCE_ASSISTANTS

CONTEXT_CHARS = 30
CAPTURE_PROXIMITY = 5

_CURRENCY_RE = re.compile(r"\$([0-9,]+(?:\.[0-9]+)?)([KMB])?", re.IGNORECASE)
_PERCENT_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*%")
_PLAIN_RE = re.compile(r"\b((?:[0-9]{1,3}(?:,[0-9]{3})+|[0-9]{2,})(?:\.[0-9]+)?)\b")

_MULTIPLIERS = {"K": 1_000, "M": 1_000_000, "B": 1_000_000_000}

# Tolerances by candidate magnitude
PERCENTAGE_PP = 0.5
COUNT_PCT = 0.01
CURRENCY_PCT = 0.02


@dataclass
class ExtractedNumber:
    value: float
    text: str
    context: str
    start: int
    section: str | None = None


def _context(text: str, match: re.Match) -> str:
    start = max(0, match.start() - CONTEXT_CHARS)
    end = min(len(text), match.end() + CONTEXT_CHARS)
    return text[start:end]


def _to_float(raw: str) -> float | None:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


def extract_numbers(text: str, section: str | None = None) -> list[ExtractedNumber]:
    """
    Currency ($1.2M), percentages (25%) and plain numbers >= 100.

    Plain numbers within a few chars of an already captured currency or
    percentage are skipped.
    """
    numbers: list[ExtractedNumber] = []

    for match in _CURRENCY_RE.finditer(text):
        value = _to_float(match.group(1))
        if value is None:
            continue
        suffix = (match.group(2) or "").upper()
        value *= _MULTIPLIERS.get(suffix, 1)
        numbers.append(ExtractedNumber(value, match.group(0), _context(text, match), match.start(), section))

    for match in _PERCENT_RE.finditer(text):
        value = _to_float(match.group(1))
        if value is None:
            continue
        numbers.append(ExtractedNumber(value, match.group(0), _context(text, match), match.start(), section))

    captured = [n.start for n in numbers]
    for match in _PLAIN_RE.finditer(text):
        if any(abs(match.start() - start) < CAPTURE_PROXIMITY for start in captured):
            continue
        value = _to_float(match.group(1))
        if value is None or value < 100:
            continue
        numbers.append(ExtractedNumber(value, match.group(0), _context(text, match), match.start(), section))

    return numbers


def _flatten_numbers(obj: Any) -> list[float]:
    if isinstance(obj, bool):
        return []
    if isinstance(obj, (int, float)):
        return [] if math.isnan(obj) else [float(obj)]
    if isinstance(obj, dict):
        return [n for value in obj.values() for n in _flatten_numbers(value)]
    if isinstance(obj, (list, tuple)):
        return [n for item in obj for n in _flatten_numbers(item)]
    return []


def _tolerance(candidate: float) -> float:
    if candidate < 1:
        return PERCENTAGE_PP / 100
    if candidate < 100:
        return 1.0
    if candidate < 1000:
        return candidate * COUNT_PCT
    return candidate * CURRENCY_PCT


def is_number_grounded(value: float, finance_json: Any) -> bool:
    """True when the value is within tolerance of any number in the finance model."""
    if not finance_json:
        return False
    return any(
        abs(value - candidate) <= _tolerance(candidate)
        for candidate in _flatten_numbers(finance_json)
    )


def is_suspicious_magnitude(value: float, context: str) -> bool:
    """Implausible values for prices, market sizes, growth rates or margins."""
    ctx = context.lower()

    if any(word in ctx for word in ("price", "cost", "arpu")) and (value <= 0 or value >= 1_000_000):
        return True
    if any(word in ctx for word in ("market", "tam", "sam", "som")) and (
        value < 1000 or value > 100_000_000_000_000
    ):
        return True
    if any(word in ctx for word in ("growth", "rate", "change")) and (value < -100 or value > 1000):
        return True
    if any(word in ctx for word in ("margin", "profit")) and (value < -50 or value > 100):
        return True
    return False


def validate_financial_numbers(
    text: str,
    finance_json: Any,
    strict_mode: bool = True,
) -> list[ValidationIssue]:
    """UNGROUNDED_NUMBER warnings for significant numbers missing from the finance model."""
    if not strict_mode or not finance_json:
        return []

    issues = []
    for num in extract_numbers(text):
        if num.value < 0.01 or is_number_grounded(num.value, finance_json):
            continue
        issues.append(
            ValidationIssue(
                code="UNGROUNDED_NUMBER",
                message=(
                    f"Number {num.text} in section {num.section or 'unknown'} "
                    f"not found in finance calculations"
                ),
                severity="warning",
                meta={"value": num.value, "text": num.text, "context": num.context,
                      "section": num.section},
            )
        )
    return issues


def validate_general_numbers(text: str) -> list[ValidationIssue]:
    issues = []
    for num in extract_numbers(text):
        if is_suspicious_magnitude(num.value, num.context):
            issues.append(
                ValidationIssue(
                    code="SUSPICIOUS_MAGNITUDE",
                    message=f"Number {num.text} has suspicious magnitude given context",
                    severity="warning",
                    meta={"value": num.value, "text": num.text, "context": num.context,
                          "section": num.section},
                )
            )
    return issues


def validate_numbers(
    assistant: str,
    text: str,
    finance_json: Any = None,
    strict_mode: bool = True,
) -> list[ValidationIssue]:
    """Strict grounding for finance assistants, magnitude sanity checks otherwise."""
    if assistant in FINANCE_ASSISTANTS:
        return validate_financial_numbers(text, finance_json, strict_mode)
    return validate_general_numbers(text)
