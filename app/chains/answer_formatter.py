"""Executor message assembly and response parsing with citation mapping."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Sequence

from app.chains.assistant_prompts import (
    EXECUTOR_DEVELOPER_V1,
    EXECUTOR_INSTRUCTIONS,
    EXECUTOR_SYSTEM_V1,
)
from app.core.policy.citations import extract_citation_markers
from app.core.policy.injection import sanitize_snippet, strip_injection
from app.core.retrieval_format import PackedContext
from app.core.reranker import RetrievedChunk
from app.core.schemas_assistant import (
    AssistantRequest,
    AssistantSource,
    FinancialModel,
    PlannerOutput,
    RagSource,
    WebSource,
)
from app.core.search_providers import WebSearchResult

SECTION_HEADING_RE = re.compile(r"^##\s+(.+)$")
RAG_SNIPPET_CHARS = 200


@dataclass
class ExecutorContext:
    """Prepared inputs for the executor model call."""

    chunks: list[RetrievedChunk] = field(default_factory=list)
    packed: PackedContext | None = None
    web_results: list[WebSearchResult] = field(default_factory=list)
    finance_model: FinancialModel | None = None


@dataclass
class ParsedExecutorResponse:
    sections: dict[str, str]
    sources: list[AssistantSource]
    raw_output: str
    dropped_markers: list[str] = field(default_factory=list)


# =============================================================================
# Message assembly
# =============================================================================


def build_executor_system_prompt() -> str:
    return EXECUTOR_SYSTEM_V1


def build_executor_developer_prompt(plan: PlannerOutput) -> str:
    requirements = []
    if plan.metrics_needed:
        requirements.append(f"- Include financial metrics: {', '.join(plan.metrics_needed)}")
    if plan.requires_retrieval:
        requirements.append("- Prioritize information from RAG_CONTEXT (internal sources)")
    if plan.requires_web_search:
        requirements.append("- Include current market data from WEB_CONTEXT")

    return EXECUTOR_DEVELOPER_V1.format(
        section_list="\n".join(f"- {s}" for s in plan.sections),
        section_names=", ".join(f'"{s}"' for s in plan.sections),
        content_requirements="\n".join(requirements),
    )


def _marker_range(prefix: str, count: int) -> str:
    return ", ".join(f"[{prefix}{i}]" for i in range(1, count + 1))


def build_executor_user_message(
    request: AssistantRequest,
    plan: PlannerOutput,
    context: ExecutorContext,
) -> str:
    """
    User message with REQUEST, PLANNER OUTPUT, RAG_CONTEXT, WEB_CONTEXT,
    FINANCE_JSON and INSTRUCTIONS blocks. Retrieved text is sanitized
    before it is embedded.
    """
    parts = [
        "=== REQUEST ===",
        json.dumps(
            {
                "assistant": request.assistant,
                "input": request.input,
                "extra": request.extra.model_dump(exclude_none=True) if request.extra is not None else {},
            },
            indent=2,
            default=str,
        ),
        "",
        "=== PLANNER OUTPUT ===",
        json.dumps(
            {
                "sections": plan.sections,
                "query_terms": plan.query_terms,
                "metrics_needed": plan.metrics_needed,
            },
            indent=2,
        ),
        "",
    ]

    packed = context.packed
    if packed and packed.context:
        rag_count = len(packed.citations)
        parts.append("=== RAG_CONTEXT (Internal Sources) ===")
        parts.append(strip_injection(packed.context))
        parts.append("")
        if rag_count:
            parts.append(
                f"IMPORTANT: You have {rag_count} RAG source(s) available: "
                f"{_marker_range('R', rag_count)}"
            )
            parts.append(
                f"Do NOT use citation markers beyond this range "
                f"(e.g., do NOT use [R{rag_count + 1}] or higher)."
            )
        parts.append("")
    else:
        parts.extend(
            [
                "=== RAG_CONTEXT ===",
                "No internal documents available. Do NOT use [R#] citations.",
                "",
            ]
        )

    if context.web_results:
        web_count = len(context.web_results)
        parts.append("=== WEB_CONTEXT (External Sources) ===")
        for i, result in enumerate(context.web_results, start=1):
            parts.append(f"[W{i}] {sanitize_snippet(result.title)}")
            parts.append(f"URL: {result.url}")
            parts.append(f"Snippet: {sanitize_snippet(result.snippet)}")
            parts.append("")
        parts.append(
            f"IMPORTANT: You have {web_count} web source(s) available: "
            f"{_marker_range('W', web_count)}"
        )
        parts.append(
            f"Do NOT use citation markers beyond this range "
            f"(e.g., do NOT use [W{web_count + 1}] or higher)."
        )
        parts.append("")
    elif plan.requires_web_search:
        parts.extend(
            [
                "=== WEB_CONTEXT ===",
                "No web search results available. Use general knowledge but mark as assumptions.",
                "Do NOT use [W#] citations.",
                "",
            ]
        )

    if context.finance_model:
        parts.extend(
            [
                "=== FINANCE_JSON (Pre-computed Metrics) ===",
                context.finance_model.model_dump_json(indent=2),
                "",
                "Use these numbers in your financial sections. "
                "You may also call finance_calc tool for variations.",
                "",
            ]
        )

    parts.append(EXECUTOR_INSTRUCTIONS.format(assistant=request.assistant))
    return "\n".join(parts)


def build_executor_messages(
    request: AssistantRequest,
    plan: PlannerOutput,
    context: ExecutorContext,
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": build_executor_system_prompt()},
        {"role": "developer", "content": build_executor_developer_prompt(plan)},
        {"role": "user", "content": build_executor_user_message(request, plan, context)},
    ]


# =============================================================================
# Response parsing
# =============================================================================


def parse_sections(raw_output: str) -> dict[str, str]:
    """Split markdown on `## Heading` lines. Text before the first heading is ignored."""
    sections: dict[str, str] = {}
    current: str | None = None
    lines: list[str] = []

    for line in raw_output.split("\n"):
        match = SECTION_HEADING_RE.match(line)
        if match:
            if current is not None:
                sections[current] = "\n".join(lines).strip()
            current = match.group(1).strip()
            lines = []
        elif current is not None:
            lines.append(line)

    if current is not None:
        sections[current] = "\n".join(lines).strip()

    return sections


def build_rag_sources(context: ExecutorContext) -> list[RagSource]:
    """One RAG source per packed citation, in retrieval order ([R1] is the first)."""
    if not context.packed or not context.packed.citations:
        return []

    sources = []
    for i, citation in enumerate(context.packed.citations):
        chunk = context.chunks[i] if i < len(context.chunks) else None
        if chunk is not None:
            snippet = chunk.content[:RAG_SNIPPET_CHARS]
            if len(chunk.content) > RAG_SNIPPET_CHARS:
                snippet += "..."
        else:
            snippet = citation.excerpt or ""
        sources.append(
            RagSource(
                title=citation.source,
                doc_id=chunk.metadata.document_id if chunk else None,
                snippet=snippet,
                score=chunk.score if chunk else None,
            )
        )
    return sources


def build_web_sources(results: Sequence[WebSearchResult]) -> list[WebSource]:
    return [WebSource(url=r.url, title=r.title, snippet=r.snippet) for r in results]


def map_citations_to_sources(
    raw_output: str,
    rag_sources: Sequence[RagSource],
    web_sources: Sequence[WebSource],
) -> tuple[list[AssistantSource], list[str]]:
    """
    Resolve [R#]/[W#] markers to sources in first-use order.

    Returns:
        (cited sources, markers with no matching source). Unmatched markers
        are dropped, never turned into sources.
    """
    used: list[AssistantSource] = []
    dropped: list[str] = []
    seen: set[str] = set()

    for marker in extract_citation_markers(raw_output):
        prefix, index = marker[0], int(marker[1:]) - 1
        pool: Sequence[AssistantSource] = rag_sources if prefix == "R" else web_sources
        if index < 0 or index >= len(pool):
            dropped.append(marker)
            continue

        source = pool[index]
        key = f"{source.type}:{getattr(source, 'url', None) or source.title or ''}"
        if key not in seen:
            seen.add(key)
            used.append(source)

    return used, dropped


def parse_executor_response(
    raw_output: str,
    context: ExecutorContext,
    fallback_all_sources: bool = False,
) -> ParsedExecutorResponse:
    """
    Sections plus the sources actually cited.

    With fallback_all_sources, every candidate source is returned when the
    output cites none.
    """
    rag_sources = build_rag_sources(context)
    web_sources = build_web_sources(context.web_results)
    sources, dropped = map_citations_to_sources(raw_output, rag_sources, web_sources)

    if fallback_all_sources and not sources and not extract_citation_markers(raw_output):
        sources = [*rag_sources, *web_sources]

    return ParsedExecutorResponse(
        sections=parse_sections(raw_output),
        sources=sources,
        raw_output=raw_output,
        dropped_markers=dropped,
    )


def validate_sections(sections: dict[str, str], required: Sequence[str]) -> tuple[bool, list[str]]:
    """Case-insensitive presence check. Returns (valid, missing)."""
    present = {name.lower() for name in sections}
    missing = [name for name in required if name.lower() not in present]
    return not missing, missing
