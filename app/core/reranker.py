"""Fusion and reranking for hybrid retrieval.

Combines BM25 and vector rankings with Reciprocal Rank Fusion (RRF) or a
weighted score sum, then dedupes, thresholds and truncates to top K.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal

from app.core.logging import get_logger

logger = get_logger(__name__)

FusionMethod = Literal["rrf", "weighted"]


@dataclass(frozen=True)
class ChunkMetadata:
    document_id: str
    document_name: str
    chunk_index: int
    page: int | None = None
    section: str | None = None
    timestamp: str | None = None


@dataclass(frozen=True)
class SearchResult:
    """One hit from a single retrieval method, sorted by score desc."""

    id: str
    score: float
    content: str
    metadata: ChunkMetadata

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SearchResult:
        meta = data.get("metadata") or {}
        return cls(
            id=str(data["id"]),
            score=float(data.get("score", 0.0)),
            content=data.get("content") or "",
            metadata=ChunkMetadata(
                document_id=str(meta.get("document_id", "")),
                document_name=meta.get("document_name", ""),
                chunk_index=int(meta.get("chunk_index", 0)),
                page=meta.get("page"),
                section=meta.get("section"),
                timestamp=meta.get("timestamp"),
            ),
        )


@dataclass(frozen=True)
class RetrievedChunk:
    """Fused chunk; rank is 1-indexed after the final sort."""

    id: str
    content: str
    metadata: ChunkMetadata
    score: float
    rank: int


@dataclass(frozen=True)
class RRFConfig:
    k: int = 60
    bm25_weight: float = 0.5
    vector_weight: float = 0.5


DEFAULT_RRF_CONFIG = RRFConfig()


@dataclass(frozen=True)
class RerankConfig:
    method: FusionMethod = "rrf"
    rrf: RRFConfig = field(default_factory=RRFConfig)
    bm25_weight: float = 0.3
    vector_weight: float = 0.7
    score_threshold: float = 0.01
    top_k: int = 20


def coerce_results(results: list[SearchResult | dict[str, Any]]) -> list[SearchResult]:
    """Accept SearchResult objects or plain dict rows from a query function."""
    return [r if isinstance(r, SearchResult) else SearchResult.from_dict(r) for r in results]


def _collect(
    bm25_results: list[SearchResult],
    vector_results: list[SearchResult],
) -> dict[str, SearchResult]:
    """Union of results keyed by id, BM25 first then vector (insertion order)."""
    all_results: dict[str, SearchResult] = {}
    for result in bm25_results:
        all_results.setdefault(result.id, result)
    for result in vector_results:
        all_results.setdefault(result.id, result)
    return all_results


def _to_ranked(all_results: dict[str, SearchResult], scores: dict[str, float]) -> list[RetrievedChunk]:
    # sorted() is stable: ties keep insertion order
    ordered = sorted(all_results, key=lambda chunk_id: scores[chunk_id], reverse=True)
    return [
        RetrievedChunk(
            id=chunk_id,
            content=all_results[chunk_id].content,
            metadata=all_results[chunk_id].metadata,
            score=scores[chunk_id],
            rank=i + 1,
        )
        for i, chunk_id in enumerate(ordered)
    ]


def fuse_rrf(
    bm25_results: list[SearchResult],
    vector_results: list[SearchResult],
    config: RRFConfig = DEFAULT_RRF_CONFIG,
) -> list[RetrievedChunk]:
    """
    Reciprocal Rank Fusion: score = sum(weight / (k + rank)), ranks 1-indexed.

    Args:
        bm25_results: BM25 hits sorted by score desc
        vector_results: Vector hits sorted by score desc
        config: k and per-method weights

    Returns:
        Fused chunks sorted by RRF score desc with ranks 1..n
    """
    bm25_ranks = {}
    for i, result in enumerate(bm25_results):
        bm25_ranks.setdefault(result.id, i + 1)
    vector_ranks = {}
    for i, result in enumerate(vector_results):
        vector_ranks.setdefault(result.id, i + 1)

    all_results = _collect(bm25_results, vector_results)
    scores: dict[str, float] = {}
    for chunk_id in all_results:
        score = 0.0
        if chunk_id in bm25_ranks:
            score += config.bm25_weight / (config.k + bm25_ranks[chunk_id])
        if chunk_id in vector_ranks:
            score += config.vector_weight / (config.k + vector_ranks[chunk_id])
        scores[chunk_id] = score

    return _to_ranked(all_results, scores)


def fuse_weighted(
    bm25_results: list[SearchResult],
    vector_results: list[SearchResult],
    bm25_weight: float = 0.3,
    vector_weight: float = 0.7,
) -> list[RetrievedChunk]:
    """Weighted sum of raw scores; a method that missed a chunk contributes 0."""
    bm25_scores = {r.id: r.score for r in bm25_results}
    vector_scores = {r.id: r.score for r in vector_results}

    all_results = _collect(bm25_results, vector_results)
    scores = {
        chunk_id: bm25_weight * bm25_scores.get(chunk_id, 0.0)
        + vector_weight * vector_scores.get(chunk_id, 0.0)
        for chunk_id in all_results
    }
    return _to_ranked(all_results, scores)


def deduplicate_chunks(chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
    """Keep the first (highest-ranked) occurrence of each id."""
    seen: set[str] = set()
    deduplicated = []
    for chunk in chunks:
        if chunk.id not in seen:
            deduplicated.append(chunk)
            seen.add(chunk.id)
    return deduplicated


def apply_score_threshold(chunks: list[RetrievedChunk], threshold: float = 0.01) -> list[RetrievedChunk]:
    return [chunk for chunk in chunks if chunk.score >= threshold]


def truncate_top_k(chunks: list[RetrievedChunk], top_k: int) -> list[RetrievedChunk]:
    """Keep the first top_k chunks and re-assign ranks 1..n."""
    return [replace(chunk, rank=i + 1) for i, chunk in enumerate(chunks[:top_k])]


def normalize_scores(results: list[SearchResult]) -> list[SearchResult]:
    """Min-max normalize to [0, 1]; identical scores all become 1.0."""
    if not results:
        return []

    scores = [r.score for r in results]
    min_score, max_score = min(scores), max(scores)
    if max_score == min_score:
        return [replace(r, score=1.0) for r in results]

    span = max_score - min_score
    return [replace(r, score=(r.score - min_score) / span) for r in results]


def rerank_pipeline(
    bm25_results: list[SearchResult],
    vector_results: list[SearchResult],
    config: RerankConfig | None = None,
) -> list[RetrievedChunk]:
    """Fuse, dedupe, threshold, truncate. Output is ready for packing."""
    config = config or RerankConfig()

    if config.method == "rrf":
        fused = fuse_rrf(bm25_results, vector_results, config.rrf)
    else:
        fused = fuse_weighted(bm25_results, vector_results, config.bm25_weight, config.vector_weight)

    processed = deduplicate_chunks(fused)
    processed = apply_score_threshold(processed, config.score_threshold)
    processed = truncate_top_k(processed, config.top_k)

    logger.debug(
        f"Rerank: {len(fused)} fused -> {len(processed)} kept ({config.method})",
        extra={"fused": len(fused), "kept": len(processed)},
    )
    return processed
