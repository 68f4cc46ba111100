"""Tests for hybrid retrieval orchestration."""

import pytest

from app.core.exceptions import RetrievalValidationError
from app.core.retrieval import (
    HybridRetrievalOptions,
    retrieve_hybrid,
    retrieve_vector_only,
    validate_retrieval_options,
)
from tests.fakes.fake_stores import chunk_row


def _query_fns(bm25_rows, vector_rows):
    calls = {"bm25": [], "vector": [], "embed": []}

    async def bm25(tenant_id, query, limit):
        calls["bm25"].append((tenant_id, query, limit))
        return bm25_rows

    async def vector(tenant_id, embedding, limit):
        calls["vector"].append((tenant_id, embedding, limit))
        return vector_rows

    async def embed(text):
        calls["embed"].append(text)
        return [0.1, 0.2, 0.3]

    return bm25, vector, embed, calls


@pytest.mark.asyncio
async def test_retrieve_hybrid_fuses_and_packs():
    bm25_rows = [chunk_row("a", "Enterprise tier is $99 per seat.", 3.2), chunk_row("b", "Churn is 3%.", 2.1)]
    vector_rows = [chunk_row("b", "Churn is 3%.", 0.91), chunk_row("c", "We sell to SMBs.", 0.85)]
    bm25, vector, embed, calls = _query_fns(bm25_rows, vector_rows)

    result = await retrieve_hybrid(
        "tenant-1",
        "pricing and churn",
        bm25,
        vector,
        embed,
        HybridRetrievalOptions(top_k=5, score_threshold=0.001, bm25_limit=20, vector_limit=30),
    )

    assert [c.id for c in result.chunks] == ["b", "a", "c"]
    assert result.stats.bm25_results == 2
    assert result.stats.vector_results == 2
    assert result.stats.fused_results == 3
    assert result.packed.chunks_used == 3
    assert calls["bm25"] == [("tenant-1", "pricing and churn", 20)]
    assert calls["vector"] == [("tenant-1", [0.1, 0.2, 0.3], 30)]
    assert calls["embed"] == ["pricing and churn"]


@pytest.mark.asyncio
async def test_retrieve_vector_only():
    _, vector, embed, calls = _query_fns([], [chunk_row("c", "We sell to SMBs.", 0.85)])

    result = await retrieve_vector_only(
        "tenant-1", "segments", vector, embed, HybridRetrievalOptions(score_threshold=0.0)
    )

    assert [c.id for c in result.chunks] == ["c"]
    assert result.stats.bm25_results == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant_id,query", [("", "pricing"), ("   ", "pricing"), ("t1", ""), ("t1", "  ")])
async def test_blank_tenant_or_query_rejected(tenant_id, query):
    bm25, vector, embed, calls = _query_fns([], [])

    with pytest.raises(RetrievalValidationError):
        await retrieve_hybrid(tenant_id, query, bm25, vector, embed)

    assert calls["embed"] == []


def test_validate_retrieval_options():
    errors = validate_retrieval_options(
        HybridRetrievalOptions(top_k=0, method="bogus", bm25_weight=1.5, score_threshold=-1)
    )
    assert "top_k must be positive" in errors
    assert any(e.startswith("method must be one of") for e in errors)
    assert "bm25_weight must be between 0 and 1" in errors
    assert "score_threshold must be non-negative" in errors
    assert validate_retrieval_options(HybridRetrievalOptions()) == []
