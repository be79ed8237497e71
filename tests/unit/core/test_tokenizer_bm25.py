"""Tests for the mixed-language tokenizer and the BM25 backend."""

import pytest

from kb_search.core.bm25_backend import BM25Backend
from kb_search.core.tokenizer import analyze, cjk_ngrams, tokenize
from tests.helpers import make_chunk


class TestTokenizer:
    def test_cjk_run_expands_to_ngrams(self):
        tokens = cjk_ngrams("向量数据库")
        for expected in ("向量", "数据库", "向量数据", "向量数据库"):
            assert expected in tokens

    def test_tokenize_mixes_scripts_and_numbers(self):
        tokens = tokenize("LanceDB 向量 2024")
        assert "lancedb" in tokens
        assert "向量" in tokens
        assert "2024" in tokens

    def test_analyze_drops_stop_words_and_single_characters(self):
        assert analyze("the vector of a DB") == ["vector", "db"]


class TestBM25Backend:
    @pytest.fixture
    def backend(self):
        backend = BM25Backend()
        backend.build_index(
            [
                make_chunk("向量数据库用于检索嵌入", "/docs/vec.md"),
                make_chunk("indexing vectors with IVF partitions", "/docs/ivf.md"),
                make_chunk("budget meeting notes", "/docs/meeting.txt"),
            ]
        )
        return backend

    def test_exact_term_ranks_first(self, backend):
        results = backend.search("数据库", top_k=3)
        assert results
        assert results[0][0].source == "/docs/vec.md"

    def test_partial_match_scores_substring_terms(self, backend):
        """A query term contained in a document token still scores."""
        results = backend.search("index", top_k=3)
        assert [chunk.source for chunk, _ in results] == ["/docs/ivf.md"]
        assert results[0][1] > 0

    def test_source_path_is_searchable(self, backend):
        results = backend.search("meeting", top_k=3)
        assert results[0][0].source == "/docs/meeting.txt"

    def test_search_multiple_keeps_best_score_per_passage(self, backend):
        single = dict((c.text, s) for c, s in backend.search("budget", 3))
        merged = backend.search_multiple(["budget", "budget meeting notes"], 3)
        texts = [c.text for c, _ in merged]
        assert texts.count("budget meeting notes") == 1
        assert merged[0][1] >= single["budget meeting notes"]

    def test_empty_index(self):
        backend = BM25Backend()
        backend.build_index([])
        assert not backend.is_built()
        assert backend.search("anything") == []
        assert backend.get_stats()["documents"] == 0

    def test_stop_word_only_query_returns_nothing(self, backend):
        assert backend.search("the of and") == []
