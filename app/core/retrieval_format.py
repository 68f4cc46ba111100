"""Token estimation and greedy context packing for retrieved chunks."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

from app.core.reranker import RetrievedChunk

HEADER = "=== Retrieved Context ===\n\n"
FOOTER_TITLE = "\n=== Sources ===\n"
TOKENS_PER_WORD = 1.3
TOKENS_PER_PUNCT = 0.5
EXCERPT_CHARS = 100
MIN_PARTIAL_TOKENS = 50
MIN_PARTIAL_CHARS = 100
PARTIAL_BUFFER_TOKENS = 10

_PUNCT_RE = re.compile(r"[.,;:!?(){}\[\]\"'`]")


@dataclass
class Citation:
    id: str
    source: str
    page: int | None = None
    section: str | None = None
    url: str | None = None
    excerpt: str | None = None


@dataclass
class PackedContext:
    """
    Context text plus citations.

    Invariants: token_count <= max_tokens and
    chunks_used + chunks_truncated == number of input chunks.
    """

    context: str = ""
    citations: list[Citation] = field(default_factory=list)
    token_count: int = 0
    chunks_used: int = 0
    chunks_truncated: int = 0


def estimate_tokens(text: str) -> int:
    """~1.3 tokens per whitespace word plus 0.5 per punctuation mark."""
    if not text:
        return 0
    words = len(text.split())
    punctuation = len(_PUNCT_RE.findall(text))
    return math.ceil(words * TOKENS_PER_WORD + punctuation * TOKENS_PER_PUNCT)


def build_citation(chunk: RetrievedChunk, index: int) -> Citation:
    """Citation `[index]` with a 100-char excerpt."""
    excerpt = None
    if chunk.content:
        excerpt = chunk.content[:EXCERPT_CHARS]
        if len(chunk.content) > EXCERPT_CHARS:
            excerpt += "..."
    return Citation(
        id=f"[{index}]",
        source=chunk.metadata.document_name,
        page=chunk.metadata.page,
        section=chunk.metadata.section or None,
        excerpt=excerpt,
    )


def _format_chunk(chunk: RetrievedChunk, index: int) -> str:
    page = f" (p. {chunk.metadata.page})" if chunk.metadata.page else ""
    return f"[{index}] {chunk.metadata.document_name}{page}:\n{chunk.content}\n"


def _format_citation_line(citation: Citation) -> str:
    line = f"{citation.id} {citation.source}"
    if citation.page is not None:
        line += f", p. {citation.page}"
    if citation.section:
        line += f", §{citation.section}"
    if citation.url:
        line += f" - {citation.url}"
    return line


def _partial_chunk(chunk: RetrievedChunk, index: int, remaining: int) -> str | None:
    """Largest truncated rendering of a chunk that fits in `remaining` tokens."""
    chunk_header = f"[{index}] {chunk.metadata.document_name}:\n"
    header_tokens = estimate_tokens(chunk_header)
    if header_tokens >= remaining:
        return None

    content_budget = remaining - header_tokens - PARTIAL_BUFFER_TOKENS
    approx_chars = math.floor(content_budget / TOKENS_PER_WORD * 4)
    while approx_chars > MIN_PARTIAL_CHARS:
        partial = f"{chunk_header}{chunk.content[:approx_chars]}...\n"
        if estimate_tokens(partial) <= remaining:
            return partial
        approx_chars //= 2
    return None


def pack_context(
    chunks: list[RetrievedChunk],
    max_tokens: int,
    reserve_tokens: int = 100,
) -> PackedContext:
    """
    Greedily pack rank-ordered chunks under a token budget.

    Full chunks are added while they fit in max_tokens - reserve_tokens; the
    first chunk that does not fit may be added partially when more than 50
    tokens remain. The sources footer is appended only if it still fits.

    Args:
        chunks: Chunks sorted by rank
        max_tokens: Hard cap on token_count
        reserve_tokens: Tokens held back for formatting

    Returns:
        PackedContext (chunks_used counts full chunks only)
    """
    if not chunks:
        return PackedContext()

    header_tokens = estimate_tokens(HEADER)
    if header_tokens > max_tokens:
        return PackedContext(chunks_truncated=len(chunks))

    budget = max_tokens - reserve_tokens
    packed = [HEADER]
    citations: list[Citation] = []
    token_count = header_tokens
    chunks_used = 0

    for i, chunk in enumerate(chunks):
        index = i + 1
        formatted = _format_chunk(chunk, index)
        chunk_tokens = estimate_tokens(formatted)

        if token_count + chunk_tokens <= budget:
            packed.append(formatted)
            citations.append(build_citation(chunk, index))
            token_count += chunk_tokens
            chunks_used += 1
            continue

        remaining = budget - token_count
        if remaining > MIN_PARTIAL_TOKENS:
            partial = _partial_chunk(chunk, index, remaining)
            if partial is not None:
                packed.append(partial)
                citations.append(build_citation(chunk, index))
                token_count += estimate_tokens(partial)
        break

    if citations:
        footer = FOOTER_TITLE + "\n".join(_format_citation_line(c) for c in citations)
        footer_tokens = estimate_tokens(footer)
        if token_count + footer_tokens <= max_tokens:
            packed.append(footer)
            token_count += footer_tokens

    return PackedContext(
        context="\n".join(packed),
        citations=citations,
        token_count=token_count,
        chunks_used=chunks_used,
        chunks_truncated=len(chunks) - chunks_used,
    )


def validate_chunks(chunks: list[RetrievedChunk]) -> list[str]:
    """Structural checks before packing. Returns a list of error strings."""
    errors: list[str] = []

    for i, chunk in enumerate(chunks):
        if not chunk.id:
            errors.append(f"Chunk {i}: missing id")
        if not chunk.content or not isinstance(chunk.content, str):
            errors.append(f"Chunk {i}: missing or invalid content")
        if chunk.metadata is None:
            errors.append(f"Chunk {i}: missing metadata")
        else:
            if not chunk.metadata.document_id:
                errors.append(f"Chunk {i}: missing metadata.document_id")
            if not chunk.metadata.document_name:
                errors.append(f"Chunk {i}: missing metadata.document_name")
        if not isinstance(chunk.score, (int, float)):
            errors.append(f"Chunk {i}: missing or invalid score")
        if not isinstance(chunk.rank, int):
            errors.append(f"Chunk {i}: missing or invalid rank")

    for i in range(1, len(chunks)):
        if chunks[i].rank < chunks[i - 1].rank:
            errors.append(
                f"Chunks not sorted by rank: chunk {i} has rank {chunks[i].rank} "
                f"< chunk {i - 1} rank {chunks[i - 1].rank}"
            )
            break

    return errors
