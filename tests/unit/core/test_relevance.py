"""Tests for the tiered relevance threshold and result filters."""

from kb_search.core.relevance import (
    filter_by_relevance,
    filter_results_by_source,
    filter_results_by_tags,
)
from tests.helpers import make_result


def _scored(*scores):
    return [make_result(f"text {i}", s, f"/{i}.md") for i, s in enumerate(scores)]


class TestFilterByRelevance:
    def test_strict_threshold_when_enough_results(self):
        kept = filter_by_relevance(_scored(0.9, 0.8, 0.7, 0.2), threshold=0.25)
        assert [r.score for r in kept] == [0.9, 0.8, 0.7]

    def test_relaxed_threshold_when_strict_is_too_few(self):
        kept = filter_by_relevance(_scored(0.9, 0.2, 0.15, 0.05), threshold=0.25)
        assert [r.score for r in kept] == [0.9, 0.2, 0.15]

    def test_falls_back_to_top_share(self):
        scores = [0.9] + [0.01] * 19
        kept = filter_by_relevance(_scored(*scores), threshold=0.25)
        assert len(kept) == 6
        assert kept[0].score == 0.9

    def test_never_empties_a_non_empty_list(self):
        kept = filter_by_relevance(_scored(0.01, 0.02), threshold=0.9)
        assert len(kept) == 2

    def test_empty(self):
        assert filter_by_relevance([], threshold=0.25) == []


def test_filter_by_source_matches_any_spelling():
    results = [make_result("a", 0.5, "C:\\docs\\a.txt"), make_result("b", 0.5, "/x/b.txt")]
    kept = filter_results_by_source(results, ["c:/docs/a.txt"])
    assert [r.text for r in kept] == ["a"]
    assert filter_results_by_source(results, None) == results


def test_filter_by_tags_needs_one_shared_tag():
    results = [
        make_result("a", 0.5, tags=["finance", "2024"]),
        make_result("b", 0.5, "/b.md", tags=["hr"]),
        make_result("c", 0.5, "/c.md"),
    ]
    kept = filter_results_by_tags(results, ["2024", "legal"])
    assert [r.text for r in kept] == ["a"]
