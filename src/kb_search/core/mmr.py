"""Maximal Marginal Relevance (MMR) for diverse search results.

MMR balances relevance and diversity by reranking candidates to minimize
redundancy while keeping the most relevant passages.

Algorithm:
    Score = λ * relevance(doc) - (1-λ) * max_similarity(doc, selected_docs)

Similarity is Jaccard overlap of lower-cased whitespace tokens, so MMR works
on text alone; vectors are not carried past the retrieval stage.
"""

from collections import OrderedDict

from loguru import logger

from .models import ScoredResult


def text_tokens(text: str) -> frozenset[str]:
    """Lower-cased whitespace tokens longer than one character."""
    return frozenset(w for w in text.lower().split() if len(w) > 1)


def jaccard_similarity(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 0.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def mmr_rerank(
    results: list[ScoredResult],
    k: int,
    lambda_param: float = 0.7,
) -> list[ScoredResult]:
    """Select up to ``k`` results balancing score against redundancy.

    Args:
        results: Candidates with relevance scores
        k: Number of results to return
        lambda_param: Balance between relevance and diversity
            - 1.0: Pure relevance (same as original ranking)
            - 0.7: Balanced (default)
            - 0.0: Pure diversity

    Returns:
        Selected results in pick order. The input is returned unchanged when
        it already has ``k`` or fewer items.
    """
    if len(results) <= k:
        return results
    if k <= 0:
        return []

    tokens = [text_tokens(r.text) for r in results]
    remaining = list(range(len(results)))

    first = max(remaining, key=lambda idx: results[idx].score)
    selected = [first]
    remaining.remove(first)

    while len(selected) < k and remaining:
        best_idx = remaining[0]
        best_score = float("-inf")
        for idx in remaining:
            max_sim = max(jaccard_similarity(tokens[idx], tokens[s]) for s in selected)
            mmr_score = lambda_param * results[idx].score - (1.0 - lambda_param) * max_sim
            if mmr_score > best_score:
                best_idx, best_score = idx, mmr_score
        selected.append(best_idx)
        remaining.remove(best_idx)

    logger.debug(
        f"MMR reranking complete: selected {len(selected)} from {len(results)} candidates "
        f"(lambda={lambda_param:.2f})"
    )
    return [results[idx] for idx in selected]


def diversify_by_source(results: list[ScoredResult], k: int) -> list[ScoredResult]:
    """Round-robin across sources, best-first within each source."""
    groups: OrderedDict[str, list[ScoredResult]] = OrderedDict()
    for result in results:
        groups.setdefault(result.source, []).append(result)

    picked: list[ScoredResult] = []
    depth = 0
    while len(picked) < k:
        added = False
        for group in groups.values():
            if depth < len(group):
                picked.append(group[depth])
                added = True
                if len(picked) >= k:
                    break
        if not added:
            break
        depth += 1
    return picked
