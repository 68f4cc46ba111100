"""Tests for RRF/weighted fusion and the rerank pipeline."""

import pytest

from app.core.reranker import (
    ChunkMetadata,
    RerankConfig,
    RetrievedChunk,
    RRFConfig,
    SearchResult,
    apply_score_threshold,
    coerce_results,
    deduplicate_chunks,
    fuse_rrf,
    fuse_weighted,
    normalize_scores,
    rerank_pipeline,
    truncate_top_k,
)


def _result(chunk_id: str, score: float = 1.0) -> SearchResult:
    return SearchResult(
        id=chunk_id,
        score=score,
        content=f"content {chunk_id}",
        metadata=ChunkMetadata(document_id=f"doc-{chunk_id}", document_name=f"Doc {chunk_id}", chunk_index=0),
    )


def _chunk(chunk_id: str, score: float, rank: int) -> RetrievedChunk:
    return RetrievedChunk(
        id=chunk_id,
        content="x",
        metadata=ChunkMetadata(document_id="d", document_name="D", chunk_index=0),
        score=score,
        rank=rank,
    )


class TestFuseRRF:
    def test_is_deterministic(self):
        bm25 = [_result("a"), _result("b"), _result("c")]
        vector = [_result("c"), _result("d")]

        first = fuse_rrf(bm25, vector)
        second = fuse_rrf(bm25, vector)

        assert [(c.id, c.score, c.rank) for c in first] == [(c.id, c.score, c.rank) for c in second]

    def test_mirrored_rankings_tie_and_keep_bm25_order(self):
        fused = fuse_rrf([_result("a"), _result("b")], [_result("b"), _result("a")])

        assert [c.id for c in fused] == ["a", "b"]
        assert fused[0].score == pytest.approx(fused[1].score)
        expected = 0.5 / 61 + 0.5 / 62
        assert fused[0].score == pytest.approx(expected)
        assert [c.rank for c in fused] == [1, 2]

    def test_chunk_found_by_both_methods_wins(self):
        fused = fuse_rrf([_result("a"), _result("b")], [_result("b")])
        assert fused[0].id == "b"

    def test_weights_and_k_apply(self):
        fused = fuse_rrf([_result("a")], [], RRFConfig(k=10, bm25_weight=1.0, vector_weight=0.0))
        assert fused[0].score == pytest.approx(1 / 11)

    def test_empty_inputs(self):
        assert fuse_rrf([], []) == []


class TestFuseWeighted:
    def test_missing_method_contributes_zero(self):
        fused = fuse_weighted([_result("a", 1.0)], [_result("b", 1.0)], bm25_weight=0.3, vector_weight=0.7)
        assert [c.id for c in fused] == ["b", "a"]
        assert fused[0].score == pytest.approx(0.7)
        assert fused[1].score == pytest.approx(0.3)


class TestPipelineSteps:
    def test_deduplicate_keeps_first(self):
        chunks = [_chunk("a", 0.9, 1), _chunk("a", 0.5, 2), _chunk("b", 0.4, 3)]
        assert [c.score for c in deduplicate_chunks(chunks)] == [0.9, 0.4]

    def test_threshold_is_inclusive(self):
        chunks = [_chunk("a", 0.02, 1), _chunk("b", 0.01, 2), _chunk("c", 0.009, 3)]
        assert [c.id for c in apply_score_threshold(chunks, 0.01)] == ["a", "b"]

    def test_truncate_reassigns_ranks(self):
        chunks = [_chunk("a", 0.9, 3), _chunk("b", 0.8, 5), _chunk("c", 0.7, 9)]
        truncated = truncate_top_k(chunks, 2)
        assert [(c.id, c.rank) for c in truncated] == [("a", 1), ("b", 2)]

    def test_normalize_scores(self):
        normalized = normalize_scores([_result("a", 10), _result("b", 5), _result("c", 0)])
        assert [r.score for r in normalized] == [1.0, 0.5, 0.0]
        assert [r.score for r in normalize_scores([_result("a", 3), _result("b", 3)])] == [1.0, 1.0]
        assert normalize_scores([]) == []

    def test_rerank_pipeline_applies_top_k(self):
        bm25 = [_result(str(i)) for i in range(10)]
        config = RerankConfig(top_k=3, score_threshold=0.0)

        ranked = rerank_pipeline(bm25, [], config)

        assert [c.id for c in ranked] == ["0", "1", "2"]
        assert [c.rank for c in ranked] == [1, 2, 3]

    def test_default_threshold_drops_single_method_rrf_scores(self):
        # 0.5 / 61 is below the 0.01 default
        assert rerank_pipeline([_result("a")], []) == []


class TestCoerceResults:
    def test_accepts_dict_rows(self):
        rows = [
            {
                "id": 7,
                "score": "0.5",
                "content": "hello",
                "metadata": {"document_id": "d1", "document_name": "Deck", "chunk_index": 2, "page": 4},
            }
        ]
        result = coerce_results(rows)[0]
        assert result.id == "7"
        assert result.score == 0.5
        assert result.metadata.document_name == "Deck"
        assert result.metadata.page == 4
