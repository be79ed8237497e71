"""Query expansion: synonym variants and cross-language rewrites.

``QueryExpander`` substitutes synonyms from a static table, one per variant.
``CrossLanguageExpander`` turns a Chinese query into a handful of variants
(LLM rewrites, an English translation and keyword-only forms) so documents
written in another language or phrased differently are still retrieved.
"""

import re
from pathlib import Path
from typing import Any, Literal

import orjson
from loguru import logger

from .exceptions import QueryExpansionError
from .llm_client import LLMClient

Language = Literal["zh", "en", "mixed"]

_CJK_CHAR_RE = re.compile(r"[一-龥]")
_LATIN_CHAR_RE = re.compile(r"[a-zA-Z]")
_QUESTION_PARTICLES_RE = re.compile(r"[是什么谁干啥做的吗呢吧呀哪里怎么样如何为什么？?！!。，,、]")
_CORE_KEYWORD_RE = re.compile(r"[一-龥]{2,4}")

CORE_KEYWORD_STOP_WORDS = frozenset(
    {
        "介绍", "内容", "什么", "哪些", "怎样", "如何", "为什么", "关于", "请问", "告诉",
        "说说", "讲讲", "一下", "可以", "简历", "资料", "信息", "文档", "文件", "报告",
    }
)  # fmt: skip

# Document-domain synonyms, both Chinese and English
DOCUMENT_SYNONYMS: dict[str, list[str]] = {
    "总结": ["概括", "摘要", "汇总", "归纳"],
    "方法": ["方案", "办法", "途径", "策略"],
    "问题": ["难点", "挑战", "风险"],
    "优点": ["优势", "长处", "好处"],
    "缺点": ["劣势", "不足", "短板"],
    "原因": ["因素", "缘由", "起因"],
    "结果": ["结论", "成果", "效果"],
    "流程": ["步骤", "过程", "程序"],
    "要求": ["规定", "标准", "规范"],
    "费用": ["成本", "价格", "开销", "预算"],
    "summary": ["overview", "abstract", "recap", "synopsis"],
    "method": ["approach", "technique", "procedure", "strategy"],
    "issue": ["problem", "challenge", "risk", "defect"],
    "cost": ["price", "expense", "budget", "fee"],
    "result": ["outcome", "conclusion", "finding"],
    "requirement": ["specification", "standard", "rule"],
    "guide": ["tutorial", "manual", "handbook", "howto"],
    "meeting": ["minutes", "discussion", "review"],
    "contract": ["agreement", "deal", "terms"],
    "plan": ["roadmap", "schedule", "proposal"],
}  # fmt: skip


def detect_language(text: str) -> Language:
    """Classify a query as Chinese, English or neither.

    When both scripts appear the one with more characters wins; text with
    neither counts as ``"mixed"``.
    """
    cjk = len(_CJK_CHAR_RE.findall(text))
    latin = len(_LATIN_CHAR_RE.findall(text))
    if cjk and latin:
        return "zh" if cjk > latin else "en"
    if cjk:
        return "zh"
    if latin:
        return "en"
    return "mixed"


def extract_core_keywords(query: str) -> list[str]:
    """Chinese runs of 2 to 4 characters left after stripping question words."""
    clean = _QUESTION_PARTICLES_RE.sub(" ", query).strip()
    return [
        kw
        for kw in _CORE_KEYWORD_RE.findall(clean)
        if kw not in CORE_KEYWORD_STOP_WORDS and len(kw) >= 2
    ]


def generate_query_expansions(query: str) -> list[str]:
    """Static variants: the query, up to three keywords, a pair, and ``关于<kw>``."""
    expansions = [query]
    keywords = extract_core_keywords(query)
    if not keywords:
        return expansions

    for keyword in keywords[:3]:
        if keyword not in expansions:
            expansions.append(keyword)

    if len(keywords) >= 2:
        combined = " ".join(keywords[:2])
        if combined not in expansions:
            expansions.append(combined)

    about = f"关于{keywords[0]}"
    if about not in expansions:
        expansions.append(about)

    return expansions


def _dedupe(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        value = value.strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


class QueryExpander:
    """Synonym substitution for the keyword side of search.

    Each variant swaps exactly one term for a synonym. Latin terms are matched
    as whole tokens; Chinese terms are matched as substrings since Chinese has
    no word separators. Custom synonym groups can be merged in from a JSON file
    of ``{"term": ["synonym", ...]}``.
    """

    def __init__(self, custom_synonyms_path: Path | None = None) -> None:
        self.synonyms: dict[str, list[str]] = {
            key: list(values) for key, values in DOCUMENT_SYNONYMS.items()
        }
        self.reverse_synonyms: dict[str, str] = {}
        for key, synonyms in self.synonyms.items():
            for synonym in synonyms:
                self.reverse_synonyms.setdefault(synonym, key)

        if custom_synonyms_path and custom_synonyms_path.exists():
            self._load_custom_synonyms(custom_synonyms_path)

    def _load_custom_synonyms(self, path: Path) -> None:
        try:
            custom: dict[str, list[str]] = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning(f"Failed to load custom synonyms from {path}: {e}")
            return

        for key, synonyms in custom.items():
            self.synonyms.setdefault(key, []).extend(synonyms)
            for synonym in synonyms:
                self.reverse_synonyms[synonym] = key
        logger.debug(f"Loaded {len(custom)} custom synonym groups from {path}")

    def expand(self, query: str, max_variants: int = 10) -> list[str]:
        """Return the query followed by single-substitution variants."""
        if not query.strip():
            return [query]

        variants = [query]
        lowered = query.lower()

        for key, synonyms in self.synonyms.items():
            if _CJK_CHAR_RE.search(key):
                if key in query:
                    variants.extend(query.replace(key, s, 1) for s in synonyms)
                continue
            pattern = re.compile(rf"\b{re.escape(key)}\b", re.IGNORECASE)
            if pattern.search(lowered):
                variants.extend(
                    pattern.sub(lambda _m, s=s: s, query, count=1) for s in synonyms
                )

        for synonym, key in self.reverse_synonyms.items():
            if _CJK_CHAR_RE.search(synonym):
                if synonym in query:
                    variants.append(query.replace(synonym, key, 1))
                continue
            pattern = re.compile(rf"\b{re.escape(synonym)}\b", re.IGNORECASE)
            if pattern.search(lowered):
                variants.append(pattern.sub(lambda _m, k=key: k, query, count=1))

        variants = _dedupe(variants)[:max_variants]
        logger.debug(f"Query expansion: '{query}' -> {len(variants)} variants")
        return variants

    def get_synonyms(self, key: str) -> list[str]:
        return self.synonyms.get(key, [])

    def get_stats(self) -> dict[str, Any]:
        total_synonyms = sum(len(v) for v in self.synonyms.values())
        return {
            "total_synonym_groups": len(self.synonyms),
            "total_synonyms": total_synonyms,
            "built_in_groups": len(DOCUMENT_SYNONYMS),
            "custom_groups": len(set(self.synonyms) - set(DOCUMENT_SYNONYMS)),
        }


class CrossLanguageExpander:
    """Builds retrieval variants for Chinese queries.

    Variants are, in priority order: the original query, an English
    translation, LLM rewrites and the static keyword variants. Without an LLM
    (no key, timeout, HTTP error, malformed output) only the static variants
    are used. ``expand_query`` never raises.
    """

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        max_variants: int = 4,
        translate: bool = True,
    ) -> None:
        self.llm_client = llm_client
        self.max_variants = max_variants
        self.translate = translate

    async def _llm_variants(self, query: str, count: int) -> list[str]:
        if self.llm_client is None or not self.llm_client.is_configured:
            return []

        variants: list[str] = []
        if self.translate:
            try:
                translated = await self.llm_client.translate_query(query, "en")
                # A translation much shorter than the query is usually a refusal
                if translated and translated != query and len(translated) >= len(query) * 0.3:
                    variants.append(translated)
            except QueryExpansionError as e:
                logger.warning(f"Query translation failed, skipping: {e}")

        try:
            variants.extend(await self.llm_client.rewrite_query(query, count))
        except QueryExpansionError as e:
            logger.warning(f"Query rewrite failed, using static variants: {e}")
        return variants

    async def expand_query(self, query: str, count: int = 4) -> list[str]:
        """Return up to ``max_variants`` queries, the original first."""
        try:
            if detect_language(query) != "zh":
                return [query]

            static = generate_query_expansions(query)
            llm = await self._llm_variants(query, count)
            variants = _dedupe([query, *llm, *static])[: self.max_variants]
            logger.debug(f"Cross-language expansion: '{query}' -> {variants}")
            return variants or [query]
        except Exception as e:
            logger.warning(f"Query expansion failed, using original query: {e}")
            return [query]
