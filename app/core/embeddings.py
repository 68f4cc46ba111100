"""OpenAI query embeddings for vector retrieval."""

from functools import lru_cache

from openai import AsyncOpenAI

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# OpenAI accepts up to 2048 inputs per request
MAX_BATCH = 256


@lru_cache
def _get_client() -> AsyncOpenAI:
    """Shared async OpenAI client for embedding calls."""
    settings = get_settings()
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY)


async def embed_texts(texts: list[str], model: str | None = None) -> list[list[float]]:
    """
    Embed texts in batches, preserving input order.

    Args:
        texts: Strings to embed
        model: Override for EMBEDDING_MODEL

    Returns:
        One vector per input text

    Raises:
        ValueError: If the API returns a different number of vectors than inputs
        Exception: If the OpenAI call fails
    """
    if not texts:
        return []

    model = model or get_settings().EMBEDDING_MODEL
    client = _get_client()
    vectors: list[list[float]] = []

    try:
        for start in range(0, len(texts), MAX_BATCH):
            batch = texts[start : start + MAX_BATCH]
            response = await client.embeddings.create(model=model, input=batch)
            # data carries an index; order is not guaranteed
            ordered = sorted(response.data, key=lambda item: item.index)
            if len(ordered) != len(batch):
                raise ValueError(
                    f"Embedding count mismatch: expected {len(batch)}, got {len(ordered)}"
                )
            vectors.extend(item.embedding for item in ordered)
    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}", extra={"model": model})
        raise

    logger.debug(
        f"Generated {len(vectors)} embeddings using {model}",
        extra={"model": model, "count": len(vectors)},
    )
    return vectors


async def embed_query(text: str) -> list[float]:
    """Embed a single retrieval query."""
    query = text.strip()
    if not query:
        raise ValueError("Cannot embed an empty query")
    vectors = await embed_texts([query])
    return vectors[0]
