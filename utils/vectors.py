"""Vector math shared by the relationship, clustering and decision services."""

import math
from typing import Sequence


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 for missing, empty or mismatched vectors and whenever either
    vector has zero magnitude. The result is clamped to [-1, 1].
    """
    if not a or not b or len(a) != len(b):
        return 0.0

    dot_product = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot_product += x * y
        norm_a += x * x
        norm_b += y * y

    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0:
        return 0.0

    return max(-1.0, min(1.0, dot_product / magnitude))


def calculate_centroid(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean of the given vectors ([] for no input)."""
    if not vectors:
        return []

    dim = len(vectors[0])
    centroid = [0.0] * dim
    for vector in vectors:
        for i in range(dim):
            centroid[i] += vector[i]

    count = len(vectors)
    return [value / count for value in centroid]
