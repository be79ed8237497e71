"""Relevance threshold filtering and source scoping of search results."""

import math

from loguru import logger

from .models import ScoredResult
from .path_utils import source_matches

MIN_CONFIDENT_RESULTS = 3
RELAXATION_STEP = 0.15
RELAXED_FLOOR = 0.1


def filter_by_relevance(
    results: list[ScoredResult],
    threshold: float,
    threshold_low: float | None = None,
) -> list[ScoredResult]:
    """Keep results above ``threshold``, relaxing rather than returning too little.

    1. strict: ``score >= threshold``
    2. fewer than 3 left: ``score >= max(floor, threshold - 0.15)``, used if
       that yields at least 3
    3. otherwise: top ``max(5, ceil(n * 0.3))`` by score, threshold ignored

    Args:
        results: Candidates
        threshold: Strict threshold
        threshold_low: Floor for the relaxed threshold (default 0.1)
    """
    if not results:
        return results

    strict = [r for r in results if r.score >= threshold]
    if len(strict) >= MIN_CONFIDENT_RESULTS:
        logger.debug(
            f"Relevance filter kept {len(strict)}/{len(results)} at threshold {threshold:.2f}"
        )
        return strict

    floor = RELAXED_FLOOR if threshold_low is None else threshold_low
    relaxed_threshold = max(floor, threshold - RELAXATION_STEP)
    relaxed = [r for r in results if r.score >= relaxed_threshold]
    if len(relaxed) >= MIN_CONFIDENT_RESULTS:
        logger.debug(
            f"Using relaxed threshold {relaxed_threshold:.2f}: {len(relaxed)} results"
        )
        return relaxed

    top_n = max(5, math.ceil(len(results) * 0.3))
    top = sorted(results, key=lambda r: r.score, reverse=True)[:top_n]
    logger.debug(
        f"Threshold {threshold:.2f} too strict; returning top {len(top)} by score"
    )
    return top


def filter_results_by_source(
    results: list[ScoredResult], sources: list[str] | None
) -> list[ScoredResult]:
    """Keep results whose source matches one of ``sources`` (all when empty)."""
    if not sources:
        return results
    return [r for r in results if source_matches(r.source, sources)]


def filter_results_by_tags(
    results: list[ScoredResult], tags: list[str] | None
) -> list[ScoredResult]:
    """Keep results carrying at least one of ``tags`` (all when empty)."""
    if not tags:
        return results
    wanted = set(tags)
    return [r for r in results if wanted.intersection(r.chunk.metadata.tags)]
