"""Tenant-scoped chunk search for hybrid retrieval (full-text and pgvector).

Both functions match the executor's injected query signatures:
    bm25_search(tenant_id, query, limit)
    vector_search(tenant_id, embedding, limit)
"""

import asyncio
import re
from typing import Any

from app.core.logging import get_logger
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

BM25_RPC = "search_document_chunks_bm25"
VECTOR_RPC = "match_document_chunks"


def to_tsquery(query: str) -> str:
    """AND-join of the query words, special characters removed."""
    words = re.sub(r"[^\w\s-]", " ", query.strip()).split()
    return " & ".join(words)


def _to_search_results(rows: list[dict[str, Any]], score_key: str) -> list[dict[str, Any]]:
    return [
        {
            "id": row["chunk_id"],
            "content": row.get("content") or "",
            "score": float(row.get(score_key) or 0),
            "metadata": {
                "document_id": row.get("document_id") or "",
                "document_name": row.get("document_title") or "Untitled",
                "chunk_index": i,
                "page": row.get("page"),
                "section": row.get("section"),
                "timestamp": row.get("created_at"),
            },
        }
        for i, row in enumerate(rows)
    ]


async def bm25_search(tenant_id: str, query: str, limit: int = 50) -> list[dict[str, Any]]:
    """
    Full-text search over the tenant's chunks, ranked by ts_rank.

    Raises:
        ValueError: Blank tenant/query or non-positive limit
        Exception: If the RPC call fails
    """
    if not tenant_id or not tenant_id.strip():
        raise ValueError("tenant_id is required")
    if not query or not query.strip():
        raise ValueError("query is required")
    if limit <= 0:
        raise ValueError("limit must be positive")

    ts_query = to_tsquery(query)
    if not ts_query:
        return []

    def _call() -> Any:
        return get_supabase().rpc(
            BM25_RPC,
            {"filter_tenant_id": tenant_id, "ts_query": ts_query, "match_count": limit},
        ).execute()

    try:
        response = await asyncio.to_thread(_call)
    except Exception as e:
        logger.error(f"BM25 search failed: {e}", extra={"tenant_id": tenant_id})
        raise

    return _to_search_results(response.data or [], "score")


async def vector_search(tenant_id: str, embedding: list[float], limit: int = 50) -> list[dict[str, Any]]:
    """
    Cosine-similarity search over the tenant's chunk embeddings.

    Raises:
        ValueError: Blank tenant, empty embedding or non-positive limit
        Exception: If the RPC call fails
    """
    if not tenant_id or not tenant_id.strip():
        raise ValueError("tenant_id is required")
    if not embedding:
        raise ValueError("embedding must be a non-empty list")
    if limit <= 0:
        raise ValueError("limit must be positive")

    def _call() -> Any:
        return get_supabase().rpc(
            VECTOR_RPC,
            {"filter_tenant_id": tenant_id, "query_embedding": embedding, "match_count": limit},
        ).execute()

    try:
        response = await asyncio.to_thread(_call)
    except Exception as e:
        logger.error(f"Vector search failed: {e}", extra={"tenant_id": tenant_id})
        raise

    return _to_search_results(response.data or [], "similarity")
