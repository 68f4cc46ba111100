"""Prompt-injection detection and mitigation for RAG and web content."""

import re
from typing import Sequence

from app.core.policy.citations import ValidationIssue
from app.core.schemas_assistant import AssistantSource

MAX_SNIPPET_CHARS = 500

INJECTION_PATTERNS = [
    # Direct instructions
    re.compile(r"ignore\s+(all\s+)?(prior|previous|earlier)\s+(instructions?|prompts?|commands?)", re.I),
    re.compile(r"disregard\s+(all\s+)?(prior|previous|earlier)", re.I),
    re.compile(r"forget\s+(all\s+)?(prior|previous|earlier)", re.I),
    # Role manipulation
    re.compile(r"act\s+as\s+(system|admin|root|assistant)", re.I),
    re.compile(r"you\s+are\s+(now\s+)?(a\s+)?(system|admin|root)", re.I),
    re.compile(r"switch\s+to\s+(system|admin)\s+mode", re.I),
    # Role markers
    re.compile(r"<\s*(system|assistant|user)\s*>", re.I),
    re.compile(r"\[?\s*(system|assistant|user)\s*\]?:", re.I),
    # Prompt exfiltration
    re.compile(r"repeat\s+(your|the)\s+(instructions?|prompt|system\s+message)", re.I),
    re.compile(r"show\s+me\s+(your|the)\s+(instructions?|prompt)", re.I),
    re.compile(r"what\s+(are|is)\s+your\s+(instructions?|prompt)", re.I),
    # Overrides
    re.compile(r"override\s+(all\s+)?(instructions?|settings?|rules?)", re.I),
    re.compile(r"bypass\s+(all\s+)?(security|safety|checks?)", re.I),
    # Role switching
    re.compile(r"/assistant\s*$", re.I),
    re.compile(r"/system\s*$", re.I),
    re.compile(r"new\s+conversation", re.I),
]

_DANGEROUS_PHRASES = [
    re.compile(r"ignore\s+(all\s+)?(prior|previous)\s+instructions?", re.I),
    re.compile(r"disregard\s+(all\s+)?(prior|previous)", re.I),
    re.compile(r"forget\s+(all\s+)?(prior|previous)", re.I),
]

_LEAKAGE_PATTERNS = [
    re.compile(r"you are the (stage-a|stage-b|business track)", re.I),
    re.compile(r"your role is to (analyze|generate|produce)", re.I),
    re.compile(r"critical rules?:", re.I),
    re.compile(r"never fabricate", re.I),
    re.compile(r"always cite sources", re.I),
]

_ROLE_TAG_RE = re.compile(r"<(system|assistant|user)>", re.I)


def detect_injection(text: str) -> list[str]:
    """Pattern sources that match the text."""
    return [p.pattern for p in INJECTION_PATTERNS if p.search(text or "")]


def validate_sources_for_injection(sources: Sequence[AssistantSource]) -> list[ValidationIssue]:
    issues = []
    for i, source in enumerate(sources):
        snippet = source.snippet or ""
        detected = detect_injection(snippet)
        if not detected:
            continue

        title = getattr(source, "title", None)
        url = getattr(source, "url", None)
        issues.append(
            ValidationIssue(
                code="PROMPT_INJECTION_DETECTED",
                message=(
                    f"Potential prompt injection detected in {source.type} source: "
                    f"{title or url or 'unknown'}"
                ),
                severity="warning",
                meta={
                    "source_index": i,
                    "source_type": source.type,
                    "source_title": title,
                    "source_url": url,
                    "doc_id": getattr(source, "doc_id", None),
                    "patterns": detected,
                    "snippet": snippet[:100],
                },
            )
        )
    return issues


def strip_injection(text: str) -> str:
    """Remove role markers and neutralize "ignore previous instructions" phrases."""
    cleaned = re.sub(r"<\s*(system|assistant|user)\s*>", "", text, flags=re.I)
    cleaned = re.sub(r"\[\s*(system|assistant|user)\s*\]", "", cleaned, flags=re.I)
    cleaned = re.sub(r"^\s*(system|assistant|user)\s*:", "", cleaned, flags=re.I | re.M)
    cleaned = re.sub(r"/\s*(system|assistant|user)\s*$", "", cleaned, flags=re.I | re.M)

    for pattern in _DANGEROUS_PHRASES:
        cleaned = pattern.sub("[removed]", cleaned)

    return cleaned


def has_system_prompt_leakage(text: str) -> bool:
    return any(p.search(text) for p in _LEAKAGE_PATTERNS)


def sanitize_snippet(snippet: str) -> str:
    """Truncate, strip injection markers and collapse whitespace before prompting."""
    sanitized = snippet or ""
    if len(sanitized) > MAX_SNIPPET_CHARS:
        sanitized = sanitized[:MAX_SNIPPET_CHARS] + "..."
    sanitized = strip_injection(sanitized)
    return re.sub(r"\s+", " ", sanitized).strip()


def score_injection_risk(text: str) -> float:
    """
    Risk score in [0, 1].

    0.2 per matched pattern, 0.3 for system prompt leakage, and up to 0.3
    for explicit role tags.
    """
    score = len(detect_injection(text)) * 0.2
    if has_system_prompt_leakage(text):
        score += 0.3
    score += min(len(_ROLE_TAG_RE.findall(text)) * 0.1, 0.3)
    return min(score, 1.0)
