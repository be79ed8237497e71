"""File-name keyword extraction and file-name matching.

Users often ask about a document by (part of) its title. The keywords pulled
from the query here drive a cheap scan that boosts chunks whose file name or
text contains them, and also serve as extra BM25 query variants.
"""

import re
from collections.abc import Iterable
from typing import Any

from loguru import logger

# Aliases in both directions: Chinese terms to English/Japanese/Korean spellings
# and common English acronyms back to Chinese.
TERM_MAPPINGS: dict[str, list[str]] = {
    "人工智能": ["AI", "artificial", "intelligence", "アイ", "인공지능", "state-of-ai", "state of ai"],
    "机器学习": ["ML", "machine", "learning", "機械学習", "머신러닝"],
    "深度学习": ["DL", "deep", "learning", "ディープラーニング", "딥러닝", "neural"],
    "大模型": ["LLM", "GPT", "model", "large", "language", "foundation"],
    "大语言模型": ["LLM", "large", "language", "model", "GPT", "Claude", "Llama", "Gemini", "ChatGPT"],
    "自然语言": ["NLP", "natural", "language", "processing", "NLU", "NLG"],
    "神经网络": ["neural", "network", "NN", "ニューラルネットワーク", "CNN", "RNN", "transformer"],
    "计算机视觉": ["CV", "computer", "vision", "image", "recognition", "detection"],
    "强化学习": ["RL", "reinforcement", "learning", "reward", "agent"],
    "生成式": ["generative", "GenAI", "generation", "AIGC", "diffusion"],
    "向量": ["vector", "embedding", "ベクトル", "embeddings"],
    "检索": ["retrieval", "search", "RAG", "retrieval-augmented"],
    "推理": ["inference", "reasoning", "CoT", "chain-of-thought"],
    "微调": ["fine-tune", "finetuning", "RLHF", "SFT", "lora", "adapter"],
    "预训练": ["pretrain", "pretraining", "foundation", "base model"],
    "多模态": ["multimodal", "vision-language", "VLM", "image-text"],
    "智能体": ["agent", "autonomous", "agentic", "multi-agent"],
    "提示词": ["prompt", "prompting", "instruction", "few-shot"],
    "数据库": ["database", "DB", "SQL", "データベース", "NoSQL", "vector database"],
    "云计算": ["cloud", "computing", "AWS", "Azure", "GCP", "serverless"],
    "区块链": ["blockchain", "crypto", "ブロックチェーン", "web3", "ethereum"],
    "网络安全": ["cybersecurity", "security", "サイバーセキュリティ", "infosec"],
    "容器": ["container", "docker", "kubernetes", "k8s"],
    "微服务": ["microservice", "service", "API", "REST"],
    "市场分析": ["market", "analysis", "マーケット分析", "research"],
    "财务报告": ["financial", "report", "finance", "財務報告", "annual report"],
    "战略": ["strategy", "strategic", "戦略", "planning"],
    "现状": ["status", "state", "current", "overview", "landscape"],
    "分析": ["analysis", "analyze", "analytics", "insight"],
    "报告": ["report", "paper", "whitepaper", "document"],
    "研究": ["research", "study", "investigation", "survey"],
    "趋势": ["trend", "forecast", "prediction", "outlook"],
    "AI": ["人工智能", "智能", "artificial intelligence"],
    "machine learning": ["机器学习", "ML"],
    "deep learning": ["深度学习", "DL", "neural network"],
    "state of ai": ["人工智能现状", "AI发展", "AI现状", "state-of-ai"],
    "GPT": ["大模型", "LLM", "大语言模型", "ChatGPT"],
    "LLM": ["大语言模型", "大模型", "language model"],
    "NLP": ["自然语言处理", "自然语言", "natural language"],
    "computer vision": ["计算机视觉", "CV", "图像识别"],
    "neural network": ["神经网络", "NN", "深度学习"],
    "RAG": ["检索增强", "检索", "retrieval"],
    "embedding": ["向量", "嵌入", "vector"],
}  # fmt: skip

COMMON_WORDS = frozenset(
    {
        "介绍", "内容", "什么", "哪些", "怎样", "如何", "为什么", "关于", "请问",
        "告诉", "说说", "讲讲", "现状", "分析", "研究", "报告", "文档", "资料",
        "the", "of", "and", "to", "in", "is", "a", "an", "for", "on", "with",
        "about", "this", "that", "these", "those", "some", "any", "all",
        "introduction", "overview", "summary", "document", "report", "analysis",
        "について", "とは", "です", "ます",
    }
)  # fmt: skip

_PARTICLES_RE = re.compile(r"[是什么谁干啥做的吗呢吧呀哪里怎么样如何为什么？?！!。，,的了和与]")
_QUESTION_WORDS_RE = re.compile(
    r"\b(what|who|how|why|when|where|which|is|are|was|were|the|a|an|of|to|in|for|on|with)\b",
    re.IGNORECASE,
)
_CHINESE_RE = re.compile(r"[\u4e00-\u9fa5]{2,8}")
_JAPANESE_RE = re.compile(r"[\u3040-\u30ff\u4e00-\u9fa5]{2,10}")
_KOREAN_RE = re.compile(r"[\uac00-\ud7af]{2,10}")
_ENGLISH_RE = re.compile(r"[a-zA-Z][a-zA-Z0-9_-]{1,24}")
_FILENAME_SPLIT_RE = re.compile(r"[\\/]")


def _mapped_aliases(clean_query: str) -> list[str]:
    mapped: list[str] = []
    lowered = clean_query.lower()
    for term, aliases in TERM_MAPPINGS.items():
        if term in clean_query:
            mapped.extend(aliases)
        for alias in aliases:
            if alias.lower() in lowered:
                mapped.append(term)
                mapped.extend(a for a in aliases if a != alias)
    return mapped


def extract_filename_keywords(query: str) -> list[str]:
    """Multilingual keywords likely to appear in a document's file name."""
    clean = _PARTICLES_RE.sub(" ", query)
    clean = _QUESTION_WORDS_RE.sub(" ", clean).strip()

    candidates = [
        *_CHINESE_RE.findall(clean),
        *_JAPANESE_RE.findall(clean),
        *_KOREAN_RE.findall(clean),
        *_ENGLISH_RE.findall(clean),
        *_mapped_aliases(clean),
    ]

    unique: dict[str, None] = {}
    for keyword in candidates:
        if keyword.lower() in COMMON_WORDS or len(keyword) < 2 or keyword.isdigit():
            continue
        unique.setdefault(keyword, None)

    keywords = list(unique)
    logger.debug(f"Extracted {len(keywords)} filename keywords: {keywords[:10]}")
    return keywords


def match_by_filename(
    rows: Iterable[dict[str, Any]], keywords: list[str], limit: int
) -> list[dict[str, Any]]:
    """Rank rows by keyword hits in their file name, then in their text.

    Buckets, in order: any keyword in the file name; keywords covering at
    least half the list (and at least two) in the text; any keyword in the
    text. Rows with no hit are dropped.
    """
    if not keywords or limit <= 0:
        return []

    lowered = [kw.lower() for kw in keywords]
    content_needed = max(2, -(-len(keywords) // 2))

    exact: list[dict[str, Any]] = []
    content: list[dict[str, Any]] = []
    partial: list[dict[str, Any]] = []
    for row in rows:
        source = (row.get("source") or "").lower()
        text = (row.get("text") or "").lower()
        file_name = _FILENAME_SPLIT_RE.split(source)[-1]

        if any(kw in file_name for kw in lowered):
            exact.append(row)
            continue

        content_hits = sum(1 for kw in lowered if kw in text)
        if content_hits >= content_needed:
            content.append(row)
        elif content_hits > 0:
            partial.append(row)

    logger.debug(
        f"Filename search: {len(exact)} file-name, {len(content)} content, "
        f"{len(partial)} partial matches"
    )
    return (exact + content + partial)[:limit]
