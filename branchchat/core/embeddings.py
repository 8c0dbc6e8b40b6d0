"""OpenAI embeddings generation with validation."""

import asyncio

from openai import OpenAI

from branchchat.core.config import get_settings
from branchchat.core.errors import UpstreamError
from branchchat.core.logging import get_logger

logger = get_logger(__name__)


def _get_client() -> OpenAI:
    """Get OpenAI client instance."""
    settings = get_settings()
    return OpenAI(api_key=settings.OPENAI_API_KEY)


def embed_texts(texts: list[str]) -> list[list[float]]:
    """
    Generate embeddings for a list of texts using OpenAI.

    Args:
        texts: List of text strings to embed

    Returns:
        List of embedding vectors, one per input text, in input order

    Raises:
        UpstreamError: If the provider call fails, returns the wrong number of vectors,
            or a vector's dimension doesn't match EMBEDDING_DIM
    """
    if not texts:
        return []

    settings = get_settings()
    client = _get_client()

    try:
        response = client.embeddings.create(
            model=settings.EMBEDDING_MODEL,
            input=texts,
        )
    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}")
        raise UpstreamError(f"Embedding request failed: {e}") from e

    if len(response.data) != len(texts):
        raise UpstreamError(
            f"Embedding count mismatch: expected {len(texts)}, got {len(response.data)}"
        )

    embeddings = []
    for i, embedding_obj in enumerate(response.data):
        embedding = embedding_obj.embedding

        # Validate dimension
        if len(embedding) != settings.EMBEDDING_DIM:
            raise UpstreamError(
                f"Embedding dimension mismatch for text {i}: "
                f"expected {settings.EMBEDDING_DIM}, got {len(embedding)}"
            )

        embeddings.append(embedding)

    logger.info(
        f"Generated {len(embeddings)} embeddings using {settings.EMBEDDING_MODEL}",
        extra={"model": settings.EMBEDDING_MODEL, "count": len(embeddings)},
    )

    return embeddings


async def embed_texts_async(texts: list[str]) -> list[list[float]]:
    """Async wrapper around embed_texts using thread pool."""
    return await asyncio.to_thread(embed_texts, texts)


async def embed_query(text: str) -> list[float]:
    """Embed a single retrieval query (one provider call)."""
    [embedding] = await embed_texts_async([text])
    return embedding
