"""
Similarity math: cosine similarity, normalisation and the brute-force
ranking used whenever a backend has no native vector index.

The scan is exhaustive and deterministic: every candidate is scored, so the
cost grows linearly with the collection. That is the known scaling limit of
the fallback path.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np

from polystore.errors import DimensionMismatch
from polystore.models import Record, VectorSearchResult
from polystore.query import get_path

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| * |b|); 0.0 when either vector has zero norm."""
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))
    a_arr = np.asarray(a, dtype=np.float64)
    b_arr = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(a_arr) * np.linalg.norm(b_arr)
    if norm == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / norm)


def normalize(vector: Sequence[float]) -> list[float]:
    """Scale to unit length. The zero vector is returned unchanged."""
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return arr.tolist()
    return (arr / norm).tolist()


def rank_by_similarity(
    records: Iterable[Record],
    field: str,
    query: Sequence[float],
    limit: int,
    min_score: float,
) -> list[VectorSearchResult]:
    """
    Score every record holding a vector at `field` against `query`.

    Records whose vector length differs from the query are skipped. Results
    keep score >= min_score, sorted by descending score; ties keep the
    order in which the records were encountered.
    """
    scored: list[VectorSearchResult] = []
    skipped = 0
    for record in records:
        vector = get_path(record, field)
        if vector is None or not isinstance(vector, (list, tuple)):
            continue
        try:
            score = cosine_similarity(query, vector)
        except (ValueError, TypeError):
            # Mismatched dimension or non-numeric data
            skipped += 1
            continue
        if score >= min_score:
            scored.append(VectorSearchResult(item=record, score=score))

    if skipped:
        logger.debug("rank_by_similarity: skipped %d unusable vectors", skipped)

    scored.sort(key=lambda r: r.score, reverse=True)
    return scored[:limit]
