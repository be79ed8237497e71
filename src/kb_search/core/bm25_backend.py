"""BM25 backend for keyword-based search using rank_bm25.

This module provides BM25 (Best Matching 25) keyword search as a complement
to vector similarity search over the document chunks.

Key features:
- Mixed Chinese/English analyzer (see ``tokenizer``)
- Smoothed idf that never goes negative for very common terms
- Substring fallback so short or partial CJK queries still score
- Multi-query search keeping the best score per passage

The index is corpus-wide and always rebuilt from a snapshot; callers drop it
after every add/remove instead of patching it.
"""

import math
from collections.abc import Callable

import numpy as np
from loguru import logger
from rank_bm25 import BM25Okapi

from .exceptions import DatabaseError
from .models import Chunk
from .tokenizer import analyze

BM25_K1 = 1.5
BM25_B = 0.75


class KeywordBM25(BM25Okapi):
    """BM25Okapi with ``ln((N - df + 0.5)/(df + 0.5) + 1)`` idf and partial matching.

    A query term of two or more characters that never occurs in a document
    still counts once (tf=1) if one of the document's tokens contains it or is
    contained in it. Terms unknown to the corpus then use ``ln(N + 1)`` as idf.
    """

    def __init__(self, corpus: list[list[str]], k1: float = BM25_K1, b: float = BM25_B):
        super().__init__(corpus, k1=k1, b=b)

    def _calc_idf(self, nd: dict[str, int]) -> None:
        n = self.corpus_size
        self.idf = {
            term: math.log((n - df + 0.5) / (df + 0.5) + 1) for term, df in nd.items()
        }

    def get_scores(self, query: list[str]) -> np.ndarray:
        scores = np.zeros(self.corpus_size)
        if self.corpus_size == 0:
            return scores

        doc_len = np.array(self.doc_len, dtype=float)
        avgdl = self.avgdl or 1.0
        length_norm = self.k1 * (1 - self.b + self.b * doc_len / avgdl)
        fallback_idf = math.log(self.corpus_size + 1)

        for term in query:
            tf = np.array([doc.get(term, 0) for doc in self.doc_freqs], dtype=float)
            if len(term) >= 2:
                for idx in np.flatnonzero(tf == 0):
                    if any(term in tok or tok in term for tok in self.doc_freqs[idx]):
                        tf[idx] = 1.0

            idf = self.idf.get(term, 0.0)
            effective_idf = idf if idf > 0 else fallback_idf
            scores += effective_idf * (tf * (self.k1 + 1) / (tf + length_norm))

        return scores


class BM25Backend:
    """BM25 keyword search over document chunks.

    Example:
        backend = BM25Backend()
        backend.build_index(chunks)
        results = backend.search("向量数据库 索引", top_k=10)
        # Returns: [(chunk, score), ...]
    """

    def __init__(self) -> None:
        self._bm25: KeywordBM25 | None = None
        self._chunks: list[Chunk] = []

    def build_index(
        self,
        chunks: list[Chunk],
        progress_callback: Callable[[int, int], None] | None = None,
    ) -> None:
        """Build the BM25 index from a corpus snapshot.

        Each document is the chunk text followed by its source path, so path
        fragments and file names are searchable too.

        Args:
            chunks: Corpus snapshot
            progress_callback: Optional callable invoked with (current, total)
                every 500 chunks and once at completion.

        Raises:
            DatabaseError: If index building fails
        """
        if not chunks:
            logger.debug("No chunks provided for BM25 indexing")
            self._bm25 = None
            self._chunks = []
            return

        try:
            corpus = []
            for idx, chunk in enumerate(chunks):
                corpus.append(analyze(f"{chunk.text} {chunk.source}"))
                if progress_callback and (idx + 1) % 500 == 0:
                    progress_callback(idx + 1, len(chunks))

            if progress_callback:
                progress_callback(len(chunks), len(chunks))

            self._bm25 = KeywordBM25(corpus)
            self._chunks = list(chunks)

            logger.debug(
                f"Built BM25 index with {len(corpus)} chunks "
                f"({len(self._bm25.idf)} unique terms, avg {self._bm25.avgdl:.1f} tokens)"
            )
        except Exception as e:
            logger.error(f"Failed to build BM25 index: {e}")
            raise DatabaseError(f"BM25 index building failed: {e}") from e

    def search(self, query: str, top_k: int = 10) -> list[tuple[Chunk, float]]:
        """Search using BM25 keyword matching.

        Args:
            query: Search query
            top_k: Maximum number of results

        Returns:
            (chunk, score) tuples with positive scores, best first
        """
        if self._bm25 is None or top_k <= 0:
            return []

        query_tokens = analyze(query)
        if not query_tokens:
            return []

        scores = self._bm25.get_scores(query_tokens)
        ranked = sorted(
            (idx for idx in range(len(scores)) if scores[idx] > 0),
            key=lambda idx: scores[idx],
            reverse=True,
        )
        return [(self._chunks[idx], float(scores[idx])) for idx in ranked[:top_k]]

    def search_multiple(
        self, queries: list[str], top_k: int = 10
    ) -> list[tuple[Chunk, float]]:
        """Search several query variants, keeping the best score per passage."""
        best: dict[str, tuple[Chunk, float]] = {}
        for query in queries:
            for chunk, score in self.search(query, top_k):
                existing = best.get(chunk.text)
                if existing is None or score > existing[1]:
                    best[chunk.text] = (chunk, score)

        merged = sorted(best.values(), key=lambda item: item[1], reverse=True)
        return merged[:top_k]

    def is_built(self) -> bool:
        return self._bm25 is not None

    def get_stats(self) -> dict[str, int | float]:
        if self._bm25 is None:
            return {"documents": 0, "terms": 0, "avg_doc_length": 0.0}
        return {
            "documents": len(self._chunks),
            "terms": len(self._bm25.idf),
            "avg_doc_length": round(float(self._bm25.avgdl), 2),
        }

    def __len__(self) -> int:
        return len(self._chunks)
