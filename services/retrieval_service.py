"""
Nearest-neighbor retrieval over the in-memory catalog.

Brute-force cosine similarity; the catalog is expected to fit in one
process, so no external index is kept.
"""

import math
from typing import Sequence

from models.catalog import ProductRecord


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    dot(a, b) / (|a| * |b|).

    Vectors of different length are compared over their common prefix.
    A zero vector scores 0.0.
    """
    length = min(len(a), len(b))
    if length == 0:
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for i in range(length):
        x = a[i]
        y = b[i]
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def rank_by_similarity(
    query_vector: Sequence[float],
    catalog: Sequence[ProductRecord]
) -> list[tuple[float, ProductRecord]]:
    """All indexed records with their similarity, best first."""
    if not query_vector:
        return []

    scored = [
        (cosine_similarity(query_vector, record.embedding), record)
        for record in catalog
        if record.embedding
    ]
    # Stable sort keeps catalog order for ties
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return scored


def nearest(
    query_vector: Sequence[float],
    catalog: Sequence[ProductRecord],
    k: int = 5
) -> list[ProductRecord]:
    """
    Return the k catalog records most similar to the query.

    Args:
        query_vector: Query embedding; empty means the query could not be embedded
        catalog: Catalog records, indexed or not
        k: Maximum number of records

    Returns:
        Up to k records, most similar first. Empty when the query is empty
        or no record has an embedding.
    """
    if k <= 0:
        return []
    return [record for _, record in rank_by_similarity(query_vector, catalog)[:k]]
