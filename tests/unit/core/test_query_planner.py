"""Tests for intent classification and result/fetch sizing."""

import pytest

from kb_search.config.settings import SearchSettings
from kb_search.core.models import QueryIntent
from kb_search.core.query_planner import (
    QueryPlanner,
    classify_intent,
    estimate_complexity,
    round_half_up,
)


@pytest.fixture
def planner():
    return QueryPlanner(SearchSettings())


class TestIntent:
    @pytest.mark.parametrize(
        ("query", "intent"),
        [
            ("RAG是什么", QueryIntent.DEFINITION),
            ("explain vector quantization", QueryIntent.DEFINITION),
            ("总结一下会议纪要", QueryIntent.SUMMARY),
            ("对比 LanceDB 和 Milvus", QueryIntent.COMPARISON),
            ("compare IVF and HNSW", QueryIntent.COMPARISON),
            ("budget numbers for march", QueryIntent.OTHER),
        ],
    )
    def test_classify(self, query, intent):
        assert classify_intent(query) is intent

    def test_definition_wins_over_summary(self):
        """Buckets are checked in order, so the first match decides."""
        assert classify_intent("总结: RAG是什么") is QueryIntent.DEFINITION


class TestComplexity:
    def test_bounded(self):
        assert estimate_complexity("") == 0.0
        assert 0.0 < estimate_complexity("word, " * 500) <= 1.0

    def test_longer_queries_are_more_complex(self):
        assert estimate_complexity("a b c d e f g h") > estimate_complexity("a")


def test_round_half_up_rounds_halves_upward():
    assert round_half_up(2.5) == 3
    assert round_half_up(4.8) == 5
    assert round_half_up(9.6) == 10


class TestSizing:
    def test_base_k_by_intent(self, planner):
        assert planner.base_k(6, QueryIntent.DEFINITION) == 5
        assert planner.base_k(2, QueryIntent.DEFINITION) == 3
        assert planner.base_k(6, QueryIntent.SUMMARY) == 9
        assert planner.base_k(6, QueryIntent.COMPARISON) == 10
        assert planner.base_k(6, QueryIntent.OTHER) == 6

    def test_adaptive_k_grows_with_complexity_and_is_capped(self, planner):
        assert planner.adaptive_k(6, 0.0) == 6
        assert planner.adaptive_k(6, 1.0) == 12
        assert planner.adaptive_k(28, 1.0) == 30

    def test_global_fetch_uses_corpus_share(self, planner):
        assert planner.fetch_k(6, 4000, is_global=True) == 400
        assert planner.fetch_k(6, 100_000, is_global=True) == 500
        assert planner.fetch_k(6, 10, is_global=True) == 300

    def test_filtered_fetch(self, planner):
        assert planner.fetch_k(6, 4000, is_global=False) == 120
        assert planner.fetch_k(2, 4000, is_global=False) == 100

    def test_plan(self, planner):
        plan = planner.plan("budget numbers", k=6, doc_count=1000, is_global=True)
        assert plan.intent is QueryIntent.OTHER
        assert plan.adaptive_k == 6
        assert plan.fetch_k >= 300
        assert plan.is_global
