"""Reciprocal Rank Fusion (RRF) of ranked result lists.

Each item at zero-based rank ``r`` of a list contributes ``1 / (k + r + 1)``.
Contributions accumulate per key across every list, so an item found by
several retrievers outranks one found by a single retriever. Passing the same
list twice doubles its weight.
"""

from collections.abc import Callable, Hashable, Sequence
from dataclasses import replace
from typing import TypeVar

from loguru import logger

from .models import ScoredResult

# Reciprocal Rank Fusion (RRF) smoothing constant
# Default k=60 is standard in literature for balancing ranked lists
RRF_K = 60

# Fused scores are mapped onto a distance-like range of [0, MAX_FUSED_DISTANCE]
MAX_FUSED_DISTANCE = 0.8

T = TypeVar("T")


def reciprocal_rank_fusion(
    lists: Sequence[Sequence[T]],
    key_fn: Callable[[T], Hashable],
    k_rrf: int = RRF_K,
) -> list[tuple[T, float]]:
    """Merge ranked lists into one ranking by accumulated RRF score.

    Args:
        lists: Ranked lists, best first
        key_fn: Identity of an item across lists
        k_rrf: Smoothing constant

    Returns:
        (item, score) pairs sorted by score descending. The item kept for a key
        is the first one seen; ties keep first-seen order.
    """
    items: dict[Hashable, T] = {}
    scores: dict[Hashable, float] = {}

    for ranked in lists:
        for rank, item in enumerate(ranked):
            key = key_fn(item)
            if key not in items:
                items[key] = item
                scores[key] = 0.0
            scores[key] += 1.0 / (k_rrf + rank + 1)

    ordered = sorted(scores, key=lambda key: scores[key], reverse=True)
    return [(items[key], scores[key]) for key in ordered]


def normalize_fused_scores(fused: list[tuple[ScoredResult, float]]) -> list[ScoredResult]:
    """Turn raw RRF scores into [0, 1] scores comparable with vector scores.

    Scores are min-max normalized, mapped to ``distance = (1 - n) * 0.8`` and
    then to ``score = 1 / (1 + distance)``, the same mapping used for native
    vector distances.
    """
    if not fused:
        return []

    raw = [score for _, score in fused]
    low, high = min(raw), max(raw)
    spread = (high - low) or 1.0

    results = []
    for result, score in fused:
        normalized = (score - low) / spread
        distance = (1.0 - normalized) * MAX_FUSED_DISTANCE
        results.append(
            replace(
                result,
                score=max(0.0, min(1.0, 1.0 / (1.0 + distance))),
                distance=distance,
            )
        )
    return results


def fuse_results(
    lists: Sequence[Sequence[ScoredResult]], k_rrf: int = RRF_K
) -> list[ScoredResult]:
    """RRF over ``ScoredResult`` lists keyed by ``source::text``, normalized."""
    non_empty = [lst for lst in lists if lst]
    fused = reciprocal_rank_fusion(non_empty, key_fn=lambda r: r.chunk.key, k_rrf=k_rrf)
    logger.debug(
        f"RRF fused {len(non_empty)} lists "
        f"({sum(len(lst) for lst in non_empty)} entries) into {len(fused)} results"
    )
    return normalize_fused_scores(fused)
