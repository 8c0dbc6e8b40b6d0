"""
Embedding similarity for retrieval ranking.

Cosine similarity is computed in one vectorized pass per collection rather than per
stored item. Vectors whose dimension differs from the query are the caller's to skip.

Usage:
    from branchchat.core.similarity import cosine_similarities

    scores = cosine_similarities(query_embedding, [chunk.embedding for chunk in chunks])
"""

from collections.abc import Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity


def cosine_similarities(
    query: Sequence[float] | np.ndarray,
    vectors: Sequence[Sequence[float]] | np.ndarray,
) -> list[float]:
    """
    Score every vector against the query.

    Args:
        query: Query embedding
        vectors: Stored embeddings, all with the query's dimension

    Returns:
        Cosine similarity per vector, in input order (0.0 for zero vectors)
    """
    if len(vectors) == 0:
        return []

    q = np.asarray(query, dtype=float).reshape(1, -1)
    matrix = np.asarray(vectors, dtype=float)
    return [float(score) for score in cosine_similarity(q, matrix)[0]]
