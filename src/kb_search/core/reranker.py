"""Cross-encoder reranking for higher precision search results.

Cross-encoders process (query, passage) pairs jointly, producing more accurate
relevance scores than bi-encoder (embedding) similarity. Reranking is an
optional stage after fusion and threshold filtering; if it fails or times
out the previous order is kept.
"""

import asyncio
from pathlib import Path
from typing import Any

from loguru import logger

from ..config.defaults import DEFAULT_RERANKER_MODEL
from .embeddings import ModelLoader
from .progress import ProgressSink


class CrossEncoderReranker:
    """Reranks passages using a sentence-transformers ``CrossEncoder``.

    Usage:
        reranker = CrossEncoderReranker()
        results = await reranker.arerank(
            query="向量索引如何构建",
            documents=["IVF 索引先做聚类...", "会议纪要...", "HNSW 图索引..."],
            top_k=2,
        )
        # Returns: [(0, 0.95), (2, 0.61)] - (index, score) tuples
    """

    def __init__(
        self,
        model_name: str | None = None,
        timeout: float = 30.0,
        loader: ModelLoader | None = None,
        cache_dir: Path | None = None,
        load_timeout: float = 600.0,
        max_retries: int = 2,
        progress: ProgressSink | None = None,
    ) -> None:
        """Initialize the reranker.

        Args:
            model_name: Cross-encoder model name
            timeout: Timeout in seconds for one rerank call
            loader: Preconfigured model loader (tests inject one)
            cache_dir: Model download cache, cleaned between corrupt-download retries
            load_timeout: Timeout in seconds for download and load
            max_retries: Corruption retries
            progress: Sink for model download progress
        """
        self._model_name = model_name or DEFAULT_RERANKER_MODEL
        self.timeout = timeout
        self._loader = loader or ModelLoader(
            self._model_name,
            self._load_model,
            task="reranker",
            cache_dir=cache_dir,
            max_retries=max_retries,
            timeout=load_timeout,
            progress=progress,
        )

    def _load_model(self, model_name: str, cache_dir: str | None) -> Any:
        from sentence_transformers import CrossEncoder

        from .embeddings import _detect_device

        logger.debug(f"Loading cross-encoder model: {model_name}")
        return CrossEncoder(model_name, device=_detect_device(), cache_folder=cache_dir)

    def rerank(
        self,
        model: Any,
        query: str,
        documents: list[str],
        top_k: int | None = None,
    ) -> list[tuple[int, float]]:
        """Score (query, document) pairs with a loaded model.

        Returns:
            List of (original_index, score) tuples, sorted by score descending
        """
        if not documents:
            return []

        scores = model.predict([(query, doc) for doc in documents])
        indexed_scores = [(i, float(scores[i])) for i in range(len(documents))]
        indexed_scores.sort(key=lambda x: x[1], reverse=True)
        if top_k:
            indexed_scores = indexed_scores[:top_k]

        logger.debug(
            f"Cross-encoder reranked {len(documents)} documents, "
            f"top score: {indexed_scores[0][1]:.3f}"
        )
        return indexed_scores

    async def arerank(
        self,
        query: str,
        documents: list[str],
        top_k: int | None = None,
    ) -> list[tuple[int, float]] | None:
        """Rerank in a worker thread with a timeout.

        Returns:
            Ranked (index, score) tuples, or None if the stage should be skipped
        """
        if not documents:
            return []
        try:
            model = await self._loader.get()
            return await asyncio.wait_for(
                asyncio.to_thread(self.rerank, model, query, documents, top_k),
                timeout=self.timeout,
            )
        except TimeoutError:
            logger.warning(f"Rerank timed out after {self.timeout}s, keeping order")
        except Exception as e:
            logger.warning(f"Rerank failed, keeping order: {e}")
        return None

    @property
    def model_name(self) -> str:
        """Get the model name used by this reranker."""
        return self._model_name
