"""Tests for file-name keyword extraction and matching."""

from kb_search.core.keywords import extract_filename_keywords, match_by_filename


class TestExtractKeywords:
    def test_chinese_query_with_aliases(self):
        keywords = extract_filename_keywords("人工智能的现状报告")
        assert "人工智能" in keywords
        assert "AI" in keywords

    def test_english_question_words_removed(self):
        keywords = extract_filename_keywords("what is the LanceDB roadmap")
        assert "LanceDB" in keywords
        assert "roadmap" in keywords
        assert "what" not in keywords
        assert "the" not in keywords

    def test_common_words_and_digits_dropped(self):
        keywords = extract_filename_keywords("summary 2024")
        assert keywords == []

    def test_alias_maps_back_to_chinese(self):
        assert "机器学习" in extract_filename_keywords("ML pipeline")


def test_match_by_filename_buckets():
    rows = [
        {"source": "/d/other.md", "text": "lancedb roadmap details"},
        {"source": "/d/z.md", "text": "mentions lancedb once"},
        {"source": "/d/LanceDB-guide.md", "text": "x"},
        {"source": "/d/none.md", "text": "nothing here"},
    ]
    matched = match_by_filename(rows, ["LanceDB", "roadmap"], limit=10)
    assert [r["source"] for r in matched] == [
        "/d/LanceDB-guide.md",
        "/d/other.md",
        "/d/z.md",
    ]
    assert match_by_filename(rows, ["LanceDB"], limit=1)[0]["source"] == "/d/LanceDB-guide.md"
    assert match_by_filename(rows, [], limit=10) == []
