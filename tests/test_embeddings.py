"""Tests for query embeddings with a mocked OpenAI client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.core import embeddings
from app.core.embeddings import embed_query, embed_texts


def _response(indices: list[int], dimension: int = 4):
    response = MagicMock()
    response.data = []
    for i in indices:
        item = MagicMock()
        item.index = i
        item.embedding = [float(i)] * dimension
        response.data.append(item)
    return response


@pytest.fixture
def mock_client():
    """Patch the shared client with an AsyncMock embeddings endpoint."""
    client = MagicMock()
    client.embeddings.create = AsyncMock()
    with patch("app.core.embeddings._get_client", return_value=client):
        yield client


@pytest.mark.asyncio
async def test_embed_texts_empty_skips_api(mock_client):
    assert await embed_texts([]) == []
    mock_client.embeddings.create.assert_not_called()


@pytest.mark.asyncio
async def test_embed_texts_restores_input_order(mock_client):
    """Vectors are reordered by the response index."""
    mock_client.embeddings.create.return_value = _response([2, 0, 1])

    vectors = await embed_texts(["a", "b", "c"])

    assert [v[0] for v in vectors] == [0.0, 1.0, 2.0]


@pytest.mark.asyncio
async def test_embed_texts_batches_large_inputs(mock_client, monkeypatch):
    monkeypatch.setattr(embeddings, "MAX_BATCH", 2)
    mock_client.embeddings.create.side_effect = [_response([0, 1]), _response([0])]

    vectors = await embed_texts(["a", "b", "c"])

    assert len(vectors) == 3
    batches = [call.kwargs["input"] for call in mock_client.embeddings.create.call_args_list]
    assert batches == [["a", "b"], ["c"]]


@pytest.mark.asyncio
async def test_embed_texts_uses_configured_model(mock_client, settings):
    mock_client.embeddings.create.return_value = _response([0])

    with patch("app.core.embeddings.get_settings", return_value=settings):
        await embed_texts(["pricing"])

    assert mock_client.embeddings.create.call_args.kwargs["model"] == settings.EMBEDDING_MODEL


@pytest.mark.asyncio
async def test_embed_texts_count_mismatch(mock_client):
    mock_client.embeddings.create.return_value = _response([0])

    with pytest.raises(ValueError, match="Embedding count mismatch"):
        await embed_texts(["a", "b"], model="text-embedding-3-small")


@pytest.mark.asyncio
async def test_embed_texts_api_failure(mock_client):
    mock_client.embeddings.create.side_effect = RuntimeError("API Error")

    with pytest.raises(RuntimeError, match="API Error"):
        await embed_texts(["a"], model="text-embedding-3-small")


@pytest.mark.asyncio
async def test_embed_query_strips_and_returns_vector(mock_client):
    mock_client.embeddings.create.return_value = _response([0], dimension=3)

    vector = await embed_query("  churn drivers  ")

    assert vector == [0.0, 0.0, 0.0]
    assert mock_client.embeddings.create.call_args.kwargs["input"] == ["churn drivers"]


@pytest.mark.asyncio
async def test_embed_query_rejects_blank(mock_client):
    with pytest.raises(ValueError):
        await embed_query("   ")
    mock_client.embeddings.create.assert_not_called()
