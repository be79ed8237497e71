"""Per-query parameter planning: intent, complexity, adaptive K and fetch breadth."""

import math
import re

from loguru import logger

from ..config.settings import SearchSettings
from .models import QueryIntent, QueryPlan

INTENT_KEYWORDS: dict[QueryIntent, tuple[str, ...]] = {
    QueryIntent.DEFINITION: (
        "是什么", "定义", "解释", "meaning", "definition", "explain", "what is", "define",
    ),
    QueryIntent.SUMMARY: ("总结", "概括", "汇总", "overview", "summary", "summarize"),
    QueryIntent.COMPARISON: ("比较", "对比", "差异", "vs", "difference", "compare"),
}  # fmt: skip

PUNCTUATION_RE = re.compile(r"[，。？！?,.!;:]")


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def classify_intent(query: str) -> QueryIntent:
    """First matching bucket wins, checked in definition, summary, comparison order."""
    q = query.lower()
    for intent, keywords in INTENT_KEYWORDS.items():
        if any(k in q for k in keywords):
            return intent
    return QueryIntent.OTHER


def estimate_complexity(query: str) -> float:
    """Heuristic complexity in [0, 1] from length, words, distinct words and punctuation."""
    words = query.split()
    length_score = min(1.0, len(query) / 200)
    token_score = min(1.0, len(words) / 30)
    distinct_score = min(1.0, len({w.lower() for w in words}) / 30)
    punctuation_score = min(1.0, len(PUNCTUATION_RE.findall(query)) / 10)
    return min(
        1.0,
        0.4 * length_score
        + 0.3 * token_score
        + 0.2 * distinct_score
        + 0.1 * punctuation_score,
    )


class QueryPlanner:
    """Chooses how many results to return and how many candidates to fetch.

    Example:
        planner = QueryPlanner(SearchSettings())
        plan = planner.plan("对比 LanceDB 和 Milvus 的索引", k=6, doc_count=4000, is_global=True)
        plan.intent       # QueryIntent.COMPARISON
        plan.adaptive_k   # >= round(6 * 1.6)
    """

    def __init__(self, settings: SearchSettings | None = None) -> None:
        self.settings = settings or SearchSettings()

    def base_k(self, k: int, intent: QueryIntent) -> int:
        if intent is QueryIntent.DEFINITION:
            return max(3, round_half_up(k * 0.8))
        if intent is QueryIntent.SUMMARY:
            return round_half_up(k * 1.5)
        if intent is QueryIntent.COMPARISON:
            return round_half_up(k * 1.6)
        return k

    def adaptive_k(self, base_k: int, complexity: float) -> int:
        s = self.settings
        return min(
            s.max_k, max(base_k, round_half_up(base_k + complexity * s.default_k))
        )

    def fetch_k(self, k: int, doc_count: int, is_global: bool) -> int:
        """Candidates to retrieve before fusion and filtering."""
        s = self.settings
        if is_global:
            corpus_share = math.floor(doc_count * s.global_fetch_ratio)
            bounded = min(s.max_fetch_k, max(s.min_fetch_k, corpus_share))
            base = max(k * s.global_fetch_multiplier, bounded)
        else:
            base = max(k * s.filtered_fetch_multiplier, s.min_fetch_k)
        return max(base, k * 10)

    def plan(
        self, query: str, k: int | None, doc_count: int, is_global: bool
    ) -> QueryPlan:
        k = k or self.settings.default_k
        intent = classify_intent(query)
        complexity = estimate_complexity(query)
        adaptive = self.adaptive_k(self.base_k(k, intent), complexity)
        fetch = round_half_up(
            self.fetch_k(adaptive, doc_count, is_global) * (1 + complexity * 0.5)
        )

        logger.debug(
            f"Query plan: intent={intent.value} complexity={complexity:.2f} "
            f"k={adaptive} fetch_k={fetch} global={is_global}"
        )
        return QueryPlan(
            intent=intent,
            complexity=complexity,
            adaptive_k=adaptive,
            fetch_k=fetch,
            is_global=is_global,
        )
