"""Mixed Chinese/English tokenizer for keyword search.

Chinese has no whitespace word boundaries, so every CJK run is expanded into
its single characters, its 2-, 3- and 4-grams, and the whole run. Any real
word of up to four characters is then guaranteed to appear as a token without
needing a segmentation dictionary.
"""

import re

ENGLISH_WORD_RE = re.compile(r"[a-z][a-z0-9-]*")
CJK_SEGMENT_RE = re.compile(r"[\u4e00-\u9fa5]+")
NUMBER_RE = re.compile(r"\d+")

STOP_WORDS = frozenset(
    {
        # English
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "may", "might", "must", "this", "that", "these",
        "those", "it", "its", "as", "if", "then", "than", "so",
        # Chinese
        "的", "了", "和", "是", "在", "有", "与", "为", "对", "等", "及", "或",
        "也", "不", "就", "都", "而", "着", "把", "被", "让", "给", "向", "从",
        "到", "以", "于",
    }
)  # fmt: skip


def cjk_ngrams(segment: str) -> list[str]:
    """Expand one CJK run into characters, 2/3/4-grams and the whole run."""
    tokens = list(segment)
    n = len(segment)
    for i in range(n - 1):
        tokens.append(segment[i : i + 2])
        if i < n - 2:
            tokens.append(segment[i : i + 3])
        if i < n - 3:
            tokens.append(segment[i : i + 4])
    if n >= 2:
        tokens.append(segment)
    return tokens


def tokenize(text: str) -> list[str]:
    """Split text into lower-cased English words, CJK n-grams and numbers."""
    normalized = text.lower()

    tokens = ENGLISH_WORD_RE.findall(normalized)
    for segment in CJK_SEGMENT_RE.findall(normalized):
        tokens.extend(cjk_ngrams(segment))
    tokens.extend(NUMBER_RE.findall(normalized))
    return tokens


def remove_stop_words(tokens: list[str]) -> list[str]:
    """Drop stop words and single-character tokens."""
    return [t for t in tokens if len(t) > 1 and t not in STOP_WORDS]


def analyze(text: str) -> list[str]:
    """Tokenize and filter; the analyzer used for both corpus and queries."""
    return remove_stop_words(tokenize(text))
