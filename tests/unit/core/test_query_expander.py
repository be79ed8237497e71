"""Tests for synonym expansion and cross-language query variants."""

from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from kb_search.core.exceptions import QueryExpansionError
from kb_search.core.query_expander import (
    CrossLanguageExpander,
    QueryExpander,
    detect_language,
    extract_core_keywords,
    generate_query_expansions,
)


class TestLanguage:
    @pytest.mark.parametrize(
        ("text", "language"),
        [
            ("向量数据库是什么", "zh"),
            ("what is a vector database", "en"),
            ("LanceDB 的向量索引怎么建", "zh"),
            ("configure LanceDB index 索引", "en"),
            ("12345 !!", "mixed"),
        ],
    )
    def test_detect(self, text, language):
        assert detect_language(text) == language


def test_core_keywords_skip_question_words():
    keywords = extract_core_keywords("请问向量数据库是什么")
    assert "请问" not in keywords
    assert any("向量" in k for k in keywords)


def test_static_expansions_start_with_query():
    expansions = generate_query_expansions("项目预算 审批流程")
    assert expansions[0] == "项目预算 审批流程"
    assert "项目预算" in expansions
    assert "审批流程" in expansions
    assert "项目预算 审批流程" in expansions
    assert "关于项目预算" in expansions
    assert len(expansions) == len(set(expansions))


def test_static_expansions_without_keywords():
    assert generate_query_expansions("hello") == ["hello"]


class TestQueryExpander:
    def test_latin_terms_match_whole_words(self):
        variants = QueryExpander().expand("project cost report")
        assert variants[0] == "project cost report"
        assert "project price report" in variants
        assert not any("costume" in v for v in variants)

    def test_reverse_synonym_maps_back_to_key(self):
        assert "quarterly summary" in QueryExpander().expand("quarterly overview")

    def test_chinese_terms_match_as_substrings(self):
        variants = QueryExpander().expand("项目费用明细")
        assert "项目成本明细" in variants

    def test_max_variants(self):
        assert len(QueryExpander().expand("cost summary method", max_variants=3)) == 3

    def test_blank_query(self):
        assert QueryExpander().expand("  ") == ["  "]

    def test_custom_synonyms_are_merged(self, tmp_path):
        path = tmp_path / "synonyms.json"
        path.write_bytes(orjson.dumps({"kb": ["knowledge base"]}))
        expander = QueryExpander(path)
        assert "search the knowledge base" in expander.expand("search the kb")
        assert expander.get_stats()["custom_groups"] == 1

    def test_broken_custom_file_is_ignored(self, tmp_path):
        path = tmp_path / "synonyms.json"
        path.write_text("{broken")
        assert QueryExpander(path).get_synonyms("kb") == []


def _llm(rewrites=None, translation=None, error=None):
    client = MagicMock()
    client.is_configured = True
    client.rewrite_query = AsyncMock(return_value=rewrites or [], side_effect=error)
    client.translate_query = AsyncMock(return_value=translation, side_effect=error)
    return client


class TestCrossLanguageExpander:
    @pytest.mark.asyncio
    async def test_non_chinese_query_is_passed_through(self):
        client = _llm(["x"])
        expander = CrossLanguageExpander(client)
        assert await expander.expand_query("vector database") == ["vector database"]
        client.rewrite_query.assert_not_called()

    @pytest.mark.asyncio
    async def test_variant_order_and_cap(self):
        client = _llm(["向量库原理", "向量检索方法"], translation="what is a vector database")
        expander = CrossLanguageExpander(client, max_variants=4)

        variants = await expander.expand_query("向量数据库是什么")

        assert variants == [
            "向量数据库是什么",
            "what is a vector database",
            "向量库原理",
            "向量检索方法",
        ]

    @pytest.mark.asyncio
    async def test_short_translation_is_rejected(self):
        client = _llm([], translation="x")
        variants = await CrossLanguageExpander(client).expand_query("向量数据库的索引结构是什么")
        assert "x" not in variants

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_static_variants(self):
        client = _llm(error=QueryExpansionError("rate limited"))
        variants = await CrossLanguageExpander(client).expand_query("项目预算 审批流程")
        assert variants[0] == "项目预算 审批流程"
        assert "项目预算" in variants

    @pytest.mark.asyncio
    async def test_without_client(self):
        variants = await CrossLanguageExpander(None).expand_query("项目预算 审批流程")
        assert variants[0] == "项目预算 审批流程"
        assert len(variants) <= 4

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_original(self):
        client = _llm()
        client.translate_query = AsyncMock(side_effect=RuntimeError("bug"))
        assert await CrossLanguageExpander(client).expand_query("向量数据库") == ["向量数据库"]
