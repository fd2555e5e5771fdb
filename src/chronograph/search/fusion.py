"""Score fusion helpers: cosine, recency, weighted sum, RRF and MMR."""

from __future__ import annotations

import math
from typing import Callable


def cosine_similarity(vec_a: list[float], vec_b: list[float]) -> float:
    """Calculate cosine similarity between two vectors."""
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0

    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = sum(a * a for a in vec_a) ** 0.5
    norm_b = sum(b * b for b in vec_b) ** 0.5

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot / (norm_a * norm_b)


def recency_score(timestamp: float | None, reference: float, decay_rate: float) -> float:
    """exp(-decay_rate * age_in_days). Future timestamps score 1."""
    if timestamp is None:
        return 0.0
    age_days = max(0.0, reference - timestamp) / 86400.0
    return math.exp(-decay_rate * age_days)


def rank_by(scores: dict[str, float]) -> list[str]:
    """Ids by descending score, ties by id."""
    return [item_id for item_id, _ in sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))]


def reciprocal_rank_fusion(rankings: list[list[str]], k: int = 60) -> dict[str, float]:
    """Sum of 1/(k + rank) over every ranking an id appears in (rank is 1-based)."""
    fused: dict[str, float] = {}
    for ranking in rankings:
        for position, item_id in enumerate(ranking, start=1):
            fused[item_id] = fused.get(item_id, 0.0) + 1.0 / (k + position)
    return fused


def weighted_sum(signals: dict[str, float], weights: dict[str, float]) -> float:
    """Linear combination of the signals that have a weight."""
    return sum(weights.get(name, 0.0) * value for name, value in signals.items())


def mmr(
    relevance: dict[str, float],
    similarity: Callable[[str, str], float],
    lambda_: float = 0.7,
    limit: int | None = None,
) -> list[str]:
    """Maximal marginal relevance ordering.

    Repeatedly picks the candidate maximizing
    ``lambda * relevance - (1 - lambda) * max similarity to picked``.
    """
    if not 0.0 <= lambda_ <= 1.0:
        raise ValueError("lambda must be within [0, 1]")
    remaining = rank_by(relevance)
    wanted = len(remaining) if limit is None else min(limit, len(remaining))
    picked: list[str] = []
    while remaining and len(picked) < wanted:
        best_id = remaining[0]
        best_score = -math.inf
        for candidate in remaining:
            redundancy = max((similarity(candidate, p) for p in picked), default=0.0)
            score = lambda_ * relevance[candidate] - (1 - lambda_) * redundancy
            if score > best_score:
                best_id, best_score = candidate, score
        picked.append(best_id)
        remaining.remove(best_id)
    return picked
