"""Cosine similarity and thresholded ranking over embedding vectors."""

from typing import Iterable, Sequence

import numpy as np

from config import DEFAULT_LIMIT, DEFAULT_THRESHOLD


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between a and b. Zero-norm input scores 0.0.

    Raises ValueError if the vectors differ in length.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        raise ValueError(f"Vectors must be the same length (a: {va.size}, b: {vb.size})")

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank(
    query: Sequence[float],
    candidates: Iterable[tuple[str, Sequence[float]]],
    threshold: float = DEFAULT_THRESHOLD,
    limit: int = DEFAULT_LIMIT,
) -> list[tuple[str, float]]:
    """Score every candidate against query and return the best matches.

    Candidates scoring below threshold are dropped. The rest are sorted by
    descending score; equal scores keep their input order. At most limit
    entries are returned.
    """
    if limit <= 0:
        return []

    scored = []
    for item_id, vector in candidates:
        score = cosine_similarity(query, vector)
        if score >= threshold:
            scored.append((item_id, score))

    # sorted() is stable, so ties stay in candidate order
    scored = sorted(scored, key=lambda x: x[1], reverse=True)
    return scored[:limit]
