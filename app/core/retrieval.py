"""Hybrid retrieval: BM25 + vector search fused with RRF and packed for the LLM.

Query functions are injected so any store can back retrieval:

    packed = await retrieve_hybrid(
        tenant_id="t1",
        query="pricing strategy",
        bm25_query_fn=bm25_search,
        vector_query_fn=vector_search,
        embed_fn=embed_query,
    )
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from app.core.exceptions import RetrievalValidationError
from app.core.logging import get_logger
from app.core.reranker import (
    RerankConfig,
    RetrievedChunk,
    RRFConfig,
    SearchResult,
    coerce_results,
    rerank_pipeline,
)
from app.core.retrieval_format import PackedContext, pack_context

logger = get_logger(__name__)

BM25QueryFn = Callable[[str, str, int], Awaitable[list[Any]]]
VectorQueryFn = Callable[[str, list[float], int], Awaitable[list[Any]]]
EmbeddingFn = Callable[[str], Awaitable[list[float]]]

FUSION_METHODS = ("rrf", "weighted")


@dataclass
class HybridRetrievalOptions:
    top_k: int = 20
    bm25_limit: int = 50
    vector_limit: int = 50
    method: str = "rrf"
    rrf: RRFConfig = field(default_factory=RRFConfig)
    bm25_weight: float = 0.3
    vector_weight: float = 0.7
    context_max_tokens: int = 4000
    score_threshold: float = 0.01


@dataclass
class RetrievalStats:
    bm25_results: int = 0
    vector_results: int = 0
    fused_results: int = 0
    chunks_used: int = 0
    chunks_truncated: int = 0
    total_tokens: int = 0
    latency_ms: int = 0


@dataclass
class HybridRetrievalResult:
    chunks: list[RetrievedChunk]
    packed: PackedContext
    stats: RetrievalStats


def validate_retrieval_options(options: HybridRetrievalOptions) -> list[str]:
    """Return a list of option errors (empty when valid)."""
    errors = []
    if options.top_k <= 0:
        errors.append("top_k must be positive")
    if options.bm25_limit <= 0:
        errors.append("bm25_limit must be positive")
    if options.vector_limit <= 0:
        errors.append("vector_limit must be positive")
    if options.context_max_tokens <= 0:
        errors.append("context_max_tokens must be positive")
    if options.method not in FUSION_METHODS:
        errors.append(f"method must be one of: {', '.join(FUSION_METHODS)}")
    for name, weight in (
        ("bm25_weight", options.bm25_weight),
        ("vector_weight", options.vector_weight),
        ("rrf.bm25_weight", options.rrf.bm25_weight),
        ("rrf.vector_weight", options.rrf.vector_weight),
    ):
        if not 0 <= weight <= 1:
            errors.append(f"{name} must be between 0 and 1")
    if options.rrf.k <= 0:
        errors.append("rrf.k must be positive")
    if options.score_threshold < 0:
        errors.append("score_threshold must be non-negative")
    return errors


def _require(tenant_id: str, query: str, options: HybridRetrievalOptions) -> None:
    if not tenant_id or not tenant_id.strip():
        raise RetrievalValidationError("tenant_id is required for retrieval")
    if not query or not query.strip():
        raise RetrievalValidationError("query is required for retrieval")
    errors = validate_retrieval_options(options)
    if errors:
        raise RetrievalValidationError(f"Invalid retrieval options: {'; '.join(errors)}")


def _rerank_config(options: HybridRetrievalOptions) -> RerankConfig:
    return RerankConfig(
        method=options.method,
        rrf=options.rrf,
        bm25_weight=options.bm25_weight,
        vector_weight=options.vector_weight,
        score_threshold=options.score_threshold,
        top_k=options.top_k,
    )


async def retrieve_hybrid(
    tenant_id: str,
    query: str,
    bm25_query_fn: BM25QueryFn,
    vector_query_fn: VectorQueryFn,
    embed_fn: EmbeddingFn,
    options: HybridRetrievalOptions | None = None,
) -> HybridRetrievalResult:
    """
    Run BM25 and vector search concurrently, fuse, and pack under a token budget.

    Args:
        tenant_id: Tenant whose documents are searched
        query: Natural-language query
        bm25_query_fn: async (tenant_id, query, limit) -> results
        vector_query_fn: async (tenant_id, embedding, limit) -> results
        embed_fn: async (text) -> embedding
        options: Limits, fusion method and budgets

    Returns:
        HybridRetrievalResult with ranked chunks, packed context and stats

    Raises:
        RetrievalValidationError: Blank tenant/query or invalid options
    """
    options = options or HybridRetrievalOptions()
    _require(tenant_id, query, options)
    start = time.monotonic()

    embedding = await embed_fn(query)
    bm25_raw, vector_raw = await asyncio.gather(
        bm25_query_fn(tenant_id, query, options.bm25_limit),
        vector_query_fn(tenant_id, embedding, options.vector_limit),
    )
    bm25_results = coerce_results(bm25_raw)
    vector_results = coerce_results(vector_raw)

    chunks = rerank_pipeline(bm25_results, vector_results, _rerank_config(options))
    packed = pack_context(chunks, options.context_max_tokens)

    stats = RetrievalStats(
        bm25_results=len(bm25_results),
        vector_results=len(vector_results),
        fused_results=len(chunks),
        chunks_used=packed.chunks_used,
        chunks_truncated=packed.chunks_truncated,
        total_tokens=packed.token_count,
        latency_ms=int((time.monotonic() - start) * 1000),
    )
    logger.info(
        f"Hybrid retrieval: {stats.bm25_results} bm25 + {stats.vector_results} vector "
        f"-> {stats.fused_results} fused, {stats.total_tokens} tokens in {stats.latency_ms}ms",
        extra={"tenant_id": tenant_id},
    )
    return HybridRetrievalResult(chunks=chunks, packed=packed, stats=stats)


async def retrieve_vector_only(
    tenant_id: str,
    query: str,
    vector_query_fn: VectorQueryFn,
    embed_fn: EmbeddingFn,
    options: HybridRetrievalOptions | None = None,
) -> HybridRetrievalResult:
    """Vector-only variant for callers without a BM25 index."""
    options = options or HybridRetrievalOptions()
    _require(tenant_id, query, options)
    start = time.monotonic()

    embedding = await embed_fn(query)
    vector_results: list[SearchResult] = coerce_results(
        await vector_query_fn(tenant_id, embedding, options.vector_limit)
    )

    chunks = rerank_pipeline([], vector_results, _rerank_config(options))
    packed = pack_context(chunks, options.context_max_tokens)

    stats = RetrievalStats(
        vector_results=len(vector_results),
        fused_results=len(chunks),
        chunks_used=packed.chunks_used,
        chunks_truncated=packed.chunks_truncated,
        total_tokens=packed.token_count,
        latency_ms=int((time.monotonic() - start) * 1000),
    )
    return HybridRetrievalResult(chunks=chunks, packed=packed, stats=stats)
