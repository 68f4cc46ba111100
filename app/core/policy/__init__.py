"""Output policy checks for executor responses.

Validates a parsed response across six checks:
- Citations: Sources section, marker-to-source mapping
- Numbers: finance grounding or magnitude sanity
- Injection: suspicious instructions inside retrieved content
- Recency: current claims backed by web search
- PII: emails and phone numbers in output
- Required sections: present and non-empty

Usage:
    from app.core.policy import ValidationContext, validate_output

    result = validate_output(response, ValidationContext(assistant="market_analysis"))
    print(f"Valid: {result.valid} ({len(result.issues)} issues)")
"""

from app.core.policy.citations import ValidationIssue, find_section
from app.core.policy.disclaimers import build_disclaimer, build_freshness_note
from app.core.policy.injection import sanitize_snippet, strip_injection
from app.core.policy.validator import (
    PolicyValidationResult,
    ValidationContext,
    sanitize_response,
    validate_output,
)

__all__ = [
    "validate_output",
    "sanitize_response",
    "ValidationContext",
    "PolicyValidationResult",
    "ValidationIssue",
    "find_section",
    "build_disclaimer",
    "build_freshness_note",
    "sanitize_snippet",
    "strip_injection",
]
