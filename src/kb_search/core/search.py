"""Hybrid search engine for the knowledge base."""

import asyncio
import time
from collections.abc import Callable
from dataclasses import replace
from enum import Enum
from typing import Any

from loguru import logger

from ..config.settings import SearchSettings
from .bm25_backend import BM25Backend
from .embeddings import EmbeddingProvider
from .exceptions import DatabaseError, EmptyIndexError
from .fusion import fuse_results
from .keywords import extract_filename_keywords, match_by_filename
from .lancedb_backend import DocumentStore, distance_to_score
from .mmr import diversify_by_source, mmr_rerank
from .models import Chunk, QueryIntent, QueryPlan, ScoredResult
from .path_utils import build_in_clause, escape_sql_literal, normalize_path, source_variants
from .progress import ProgressMessage, ProgressSink, ProgressStatus, TaskType, emit
from .query_cache import LRUCache
from .query_expander import CrossLanguageExpander, QueryExpander
from .query_planner import QueryPlanner
from .relevance import filter_by_relevance, filter_results_by_source, filter_results_by_tags
from .reranker import CrossEncoderReranker

DOC_COUNT_KEY = "doc_count"
DIVERSITY_INTENTS = (QueryIntent.SUMMARY, QueryIntent.COMPARISON)


class SearchState(str, Enum):
    """Stages of one ``search()`` call."""

    PLANNING = "planning"
    RETRIEVING = "retrieving"
    FUSING = "fusing"
    THRESHOLD_FILTERING = "threshold_filtering"
    DIVERSIFYING = "diversifying"
    DONE = "done"
    FALLBACK = "fallback"


def build_where_clause(
    sources: list[str] | None = None, tags: list[str] | None = None
) -> str | None:
    """LanceDB predicate restricting search to ``sources`` (any spelling) and ``tags``."""
    clauses = []
    if sources:
        variants: dict[str, None] = {}
        for source in sources:
            for variant in source_variants(source):
                variants.setdefault(variant, None)
        clauses.append(build_in_clause("source", variants))
    if tags:
        quoted = ", ".join(f"'{escape_sql_literal(t)}'" for t in tags)
        clauses.append(f"array_has_any(tags, make_array({quoted}))")
    if not clauses:
        return None
    return " AND ".join(f"({c})" for c in clauses)


class HybridSearchEngine:
    """Hybrid retrieval over one knowledge base.

    Combines dense vector search (with cross-language query variants), BM25
    keyword search and file-name matching through Reciprocal Rank Fusion, then
    applies the relevance threshold and MMR diversification or cross-encoder
    reranking. The engine owns all of its caches; nothing is module-global.

    Every successful write goes through ``add_documents`` or
    ``remove_sources`` so the BM25 index and the document-count cache are
    invalidated in the same call.
    """

    def __init__(
        self,
        store: DocumentStore,
        embedding_function: EmbeddingProvider,
        settings: SearchSettings | None = None,
        expander: CrossLanguageExpander | None = None,
        query_expander: QueryExpander | None = None,
        reranker: CrossEncoderReranker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the search engine.

        Args:
            store: Document store (initialized by ``initialize()``)
            embedding_function: Produces query and document vectors
            settings: Tunables (defaults when omitted)
            expander: Cross-language expander; without one only the query itself is embedded
            query_expander: Synonym expander for BM25 query variants
            reranker: Cross-encoder for the rerank stage; without one the stage is skipped
            clock: Time source for the caches
        """
        self.store = store
        self.embedding_function = embedding_function
        self.settings = settings or SearchSettings()
        self.expander = expander
        self.query_expander = query_expander
        self._reranker = reranker
        self.planner = QueryPlanner(self.settings)

        self._query_cache: LRUCache[str, list[float]] = LRUCache(
            max_size=self.settings.query_cache_size,
            ttl_seconds=self.settings.query_cache_ttl,
            clock=clock,
        )
        self._doc_count_cache: LRUCache[str, int] = LRUCache(
            max_size=1, ttl_seconds=self.settings.doc_count_cache_ttl, clock=clock
        )

        self._bm25 = BM25Backend()
        self._bm25_stale = True
        self._bm25_rows = -1
        self._bm25_lock = asyncio.Lock()

        self.state_history: list[SearchState] = []

    async def initialize(self) -> None:
        await self.store.initialize()

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def invalidate_caches(self) -> None:
        """Drop the BM25 index and the document count after a write."""
        self._bm25_stale = True
        self._doc_count_cache.clear()

    def clear_caches(self) -> None:
        self.invalidate_caches()
        self._query_cache.clear()

    def prune_expired_caches(self) -> int:
        return self._query_cache.prune() + self._doc_count_cache.prune()

    async def get_doc_count(self) -> int:
        """Number of stored chunks, cached for ``doc_count_cache_ttl`` seconds."""
        cached = self._doc_count_cache.get(DOC_COUNT_KEY)
        if cached is not None:
            return cached
        count = await self.store.count_rows()
        self._doc_count_cache.set(DOC_COUNT_KEY, count)
        return count

    async def _query_vector(self, text: str) -> list[float]:
        vector = self._query_cache.get(text)
        if vector is None:
            vector = await self.embedding_function.embed_query(text)
            self._query_cache.set(text, vector)
        return vector

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_documents(
        self,
        chunks: list[Chunk],
        progress: ProgressSink | None = None,
        append_mode: bool = True,
    ) -> int:
        """Embed and store chunks.

        The first batch is written with ``append_mode``; later batches always
        append, so ``append_mode=False`` replaces the table with exactly
        ``chunks``.

        Returns:
            Number of chunks stored
        """
        if not chunks:
            return 0

        batch_size = self.settings.embedding_batch_size
        total = len(chunks)
        written = 0
        try:
            for start in range(0, total, batch_size):
                batch = chunks[start : start + batch_size]
                vectors = await self.embedding_function.embed_documents(
                    [chunk.text for chunk in batch]
                )
                await self.store.add_chunks(
                    batch, vectors, append_mode=append_mode or start > 0
                )
                written += len(batch)
                emit(
                    progress,
                    ProgressMessage(
                        TaskType.EMBEDDING_GENERATION,
                        ProgressStatus.PROCESSING,
                        f"Embedded {written}/{total} chunks",
                        progress=100.0 * written / total,
                        processed_count=written,
                        total_count=total,
                    ),
                )
        finally:
            if written:
                self.invalidate_caches()

        emit(
            progress,
            ProgressMessage(
                TaskType.EMBEDDING_GENERATION,
                ProgressStatus.COMPLETED,
                f"Stored {written} chunks",
                progress=100.0,
                processed_count=written,
                total_count=total,
            ),
        )
        logger.info(f"Added {written} chunks to the knowledge base")
        return written

    async def remove_source(self, path: str) -> int:
        return await self.remove_sources([path])

    async def remove_sources(self, paths: list[str]) -> int:
        """Delete every chunk of the given sources, whatever spelling they were stored under.

        Returns:
            Number of chunks removed
        """
        paths = [p for p in paths if p]
        if not paths:
            return 0

        variants: dict[str, None] = {}
        for path in paths:
            for variant in source_variants(path):
                variants.setdefault(variant, None)

        # Stored spellings that differ only in separators or case
        requested = {normalize_path(p) for p in paths}
        try:
            for stored in await self.store.list_sources():
                if normalize_path(stored) in requested:
                    variants.setdefault(stored, None)
        except DatabaseError as e:
            logger.warning(f"Could not list stored sources, deleting by variants only: {e}")

        removed = await self.store.delete_by_sources(list(variants))
        self.invalidate_caches()
        logger.info(f"Removed {removed} chunks for {len(paths)} source(s)")
        return removed

    async def reset(self) -> None:
        """Drop every stored chunk (start of a full rebuild)."""
        await self.store.reset()
        self.clear_caches()

    # ------------------------------------------------------------------
    # Retrieval stages
    # ------------------------------------------------------------------

    async def _store_search(
        self, vector: list[float], k: int, where: str | None, sources: list[str] | None
    ) -> list[ScoredResult]:
        try:
            return await self.store.search(vector, k, where)
        except DatabaseError as e:
            if where is None:
                raise
            # Retry without the tag predicate; tags are post-filtered anyway
            logger.warning(f"Filtered vector search failed, retrying: {e}")
            return await self.store.search(vector, k, build_where_clause(sources))

    async def _vector_search(
        self,
        query: str,
        fetch_k: int,
        where: str | None,
        sources: list[str] | None,
    ) -> list[ScoredResult]:
        variants = [query]
        if self.expander is not None and self.settings.cross_language_enabled:
            variants = await self.expander.expand_query(
                query, self.settings.max_cross_language_variants
            )

        vectors = await asyncio.gather(*(self._query_vector(v) for v in variants))
        lists = await asyncio.gather(
            *(self._store_search(vector, fetch_k, where, sources) for vector in vectors)
        )
        if len(lists) == 1:
            return lists[0]

        logger.debug(
            f"Vector search over {len(variants)} query variants: "
            f"{[len(lst) for lst in lists]} hits"
        )
        return fuse_results(lists, self.settings.rrf_k)[:fetch_k]

    async def _ensure_bm25(self) -> None:
        async with self._bm25_lock:
            rows = await self.store.count_rows()
            if not self._bm25_stale and rows == self._bm25_rows:
                return
            chunks = await self.store.scan_chunks()
            await asyncio.to_thread(self._bm25.build_index, chunks)
            self._bm25_rows = rows
            self._bm25_stale = False

    async def _bm25_search(
        self, query: str, keywords: list[str], fetch_k: int
    ) -> list[ScoredResult]:
        try:
            await self._ensure_bm25()
            queries = [query, *keywords[:3]]
            if self.query_expander is not None:
                queries.extend(self.query_expander.expand(query)[1:3])
            hits = self._bm25.search_multiple(queries, fetch_k)
        except Exception as e:
            logger.warning(f"BM25 search failed, skipping: {e}")
            return []

        return [
            ScoredResult(
                chunk=chunk,
                score=distance_to_score(1.0 / (score + 1.0)),
                distance=1.0 / (score + 1.0),
            )
            for chunk, score in hits
        ]

    async def _filename_search(
        self, keywords: list[str], fetch_k: int
    ) -> list[ScoredResult]:
        if not keywords:
            return []
        try:
            rows = await self.store.scan(limit=self.settings.filename_scan_limit)
            matched = match_by_filename(rows, keywords, fetch_k)
        except Exception as e:
            logger.warning(f"Filename search failed, skipping: {e}")
            return []
        return [
            ScoredResult(chunk=Chunk.from_record(row), score=1.0, distance=0.0)
            for row in matched
            if row.get("text")
        ]

    async def _retrieve(
        self,
        query: str,
        plan: QueryPlan,
        sources: list[str] | None,
        tags: list[str] | None,
    ) -> list[list[ScoredResult]]:
        where = build_where_clause(sources, tags)
        if not plan.is_global:
            return [await self._vector_search(query, plan.fetch_k, where, sources)]

        keywords = extract_filename_keywords(query)
        vector_hits, bm25_hits, filename_hits = await asyncio.gather(
            self._vector_search(query, plan.fetch_k, where, sources),
            self._bm25_search(query, keywords, plan.fetch_k),
            self._filename_search(keywords, plan.fetch_k),
        )
        logger.debug(
            f"Retrieved {len(vector_hits)} vector, {len(bm25_hits)} BM25, "
            f"{len(filename_hits)} filename candidates"
        )
        # File-name hits are a strong signal and count twice in fusion
        lists = [vector_hits, bm25_hits, filename_hits, filename_hits]
        return [lst for lst in lists if lst]

    async def _rerank(
        self, query: str, results: list[ScoredResult], k: int
    ) -> list[ScoredResult] | None:
        if self._reranker is None:
            logger.debug("Rerank requested but no reranker is configured, skipping")
            return None

        candidates = results[: self.settings.rerank_top_n]
        ranked = await self._reranker.arerank(
            query, [r.text for r in candidates], top_k=k
        )
        if ranked is None:
            return None
        return [
            replace(candidates[idx], score=max(0.0, min(1.0, score)))
            for idx, score in ranked
        ]

    async def _diversify(
        self,
        query: str,
        results: list[ScoredResult],
        plan: QueryPlan,
        use_rerank: bool,
        use_mmr: bool,
    ) -> list[ScoredResult]:
        if use_rerank:
            reranked = await self._rerank(query, results, plan.adaptive_k)
            if reranked is not None:
                return reranked

        wants_diversity = plan.intent in DIVERSITY_INTENTS
        if use_mmr and len(results) > plan.adaptive_k:
            lambda_param = self.settings.mmr_lambda
            if wants_diversity:
                lambda_param = max(0.0, lambda_param - 0.1)
            return mmr_rerank(results, plan.adaptive_k, lambda_param)
        if wants_diversity:
            return diversify_by_source(results, plan.adaptive_k)
        return results

    async def _fallback_search(
        self, query: str, k: int, sources: list[str] | None, doc_count: int
    ) -> list[ScoredResult]:
        """Plain vector search with position-based scores."""
        try:
            fetch_k = self.planner.fetch_k(k, doc_count, not sources)
            vector = await self._query_vector(query)
            hits = await self.store.search(vector, fetch_k)
        except Exception as e:
            logger.error(f"Fallback search also failed: {e}")
            return []

        hits = filter_results_by_source(hits, sources)
        n = max(len(hits), 1)
        return [
            replace(hit, score=1.0 - i / n) for i, hit in enumerate(hits[:k])
        ]

    def _enter(self, state: SearchState) -> None:
        self.state_history.append(state)

    # ------------------------------------------------------------------
    # Public search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        k: int | None = None,
        sources: list[str] | None = None,
        tags: list[str] | None = None,
        use_rerank: bool | None = None,
        use_mmr: bool | None = None,
    ) -> list[ScoredResult]:
        """Search the knowledge base.

        Args:
            query: Natural-language query, any language
            k: Results wanted (``default_k`` when omitted)
            sources: Restrict to these sources (any path spelling)
            tags: Keep only chunks carrying at least one of these tags
            use_rerank: Override ``rerank_enabled``
            use_mmr: Override ``mmr_enabled``

        Returns:
            At most ``k`` results, best first; empty if the store could not be opened

        Raises:
            EmptyIndexError: If the store is open but nothing has been indexed yet
        """
        start = time.perf_counter()
        k = k or self.settings.default_k
        self.state_history = []
        self.prune_expired_caches()

        if not self.store.is_available:
            logger.warning(
                f"Document store at {self.store.persist_directory} is unavailable, "
                "returning no results"
            )
            self._enter(SearchState.DONE)
            return []

        doc_count = await self.get_doc_count()
        if doc_count == 0:
            raise EmptyIndexError(query=query)

        use_rerank = self.settings.rerank_enabled if use_rerank is None else use_rerank
        use_mmr = self.settings.mmr_enabled if use_mmr is None else use_mmr

        try:
            self._enter(SearchState.PLANNING)
            plan = self.planner.plan(query, k, doc_count, is_global=not sources)

            self._enter(SearchState.RETRIEVING)
            lists = await self._retrieve(query, plan, sources, tags)

            self._enter(SearchState.FUSING)
            if len(lists) > 1:
                merged = fuse_results(lists, self.settings.rrf_k)[: plan.fetch_k]
            else:
                merged = lists[0] if lists else []
            merged = filter_results_by_source(merged, sources)
            merged = filter_results_by_tags(merged, tags)
            merged.sort(key=lambda r: r.score, reverse=True)

            self._enter(SearchState.THRESHOLD_FILTERING)
            filtered = filter_by_relevance(
                merged,
                self.settings.relevance_threshold,
                self.settings.relevance_threshold_low,
            )

            self._enter(SearchState.DIVERSIFYING)
            final = await self._diversify(query, filtered, plan, use_rerank, use_mmr)
            results = final[:k]
        except Exception as e:
            logger.error(f"Hybrid search failed, falling back to vector search: {e}")
            self._enter(SearchState.FALLBACK)
            results = await self._fallback_search(query, k, sources, doc_count)

        self._enter(SearchState.DONE)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Search '{query[:50]}' returned {len(results)} results in {elapsed_ms:.0f}ms"
        )
        return results

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        stats = await self.store.get_stats()
        stats["query_cache"] = self._query_cache.get_stats()
        stats["doc_count_cache"] = self._doc_count_cache.get_stats()
        stats["bm25"] = self._bm25.get_stats()
        stats["embedding_model"] = self.embedding_function.model_name
        stats["embedding_dimension"] = getattr(self.embedding_function, "dimension", None)
        return stats

    async def close(self) -> None:
        self.clear_caches()
        await self.store.close()
