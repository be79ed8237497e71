"""Integration tests for the LanceDB document store and the hybrid search engine."""

import pytest
import pytest_asyncio

from kb_search.config.settings import SearchSettings
from kb_search.config.defaults import VECTOR_INDEX_NAME
from kb_search.core.exceptions import (
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    EmptyIndexError,
    IndexCorruptionError,
    SchemaMismatchError,
)
from kb_search.core.lancedb_backend import DocumentStore
from kb_search.core.search import HybridSearchEngine, SearchState, build_where_clause
from tests.helpers import HashingEmbedder, make_chunk

GUIDE = "/kb/lancedb-guide.md"
MEETING = "/kb/meeting.txt"
RECIPES = "/kb/recipes.md"


class RejectingAppends:
    """Table wrapper whose appends fail, as on a schema drift."""

    def __init__(self, table):
        self._table = table

    def add(self, records):
        raise RuntimeError("Append failed: field 'heading_text' not found in schema")

    def __getattr__(self, name):
        return getattr(self._table, name)


class RecordingIndexTable:
    """Table wrapper that records index builds instead of training one."""

    def __init__(self, table, fail=False):
        self._table = table
        self.fail = fail
        self.index_calls = []

    def list_indices(self):
        return []

    def create_index(self, **kwargs):
        self.index_calls.append(kwargs)
        if self.fail:
            raise RuntimeError("not enough rows to train partitions")

    def __getattr__(self, name):
        return getattr(self._table, name)


async def _fill(store, chunks):
    vectors = await HashingEmbedder().embed_documents([c.text for c in chunks])
    return await store.add_chunks(chunks, vectors)


def _corpus():
    return [
        make_chunk("LanceDB stores vectors in Arrow tables", GUIDE, ["tech"]),
        make_chunk("An IVF index partitions vectors for fast search", GUIDE, ["tech"]),
        make_chunk("Budget meeting notes about project cost", MEETING, ["finance"]),
        make_chunk("Quarterly cost review and approved budget", MEETING, ["finance"]),
        make_chunk("Tomato soup recipe with basil and garlic", RECIPES, ["food"]),
    ]


@pytest_asyncio.fixture
async def store(tmp_path):
    async with DocumentStore(tmp_path / "lancedb") as s:
        yield s


@pytest_asyncio.fixture
async def engine(tmp_path):
    store = DocumentStore(tmp_path / "lancedb")
    eng = HybridSearchEngine(store, HashingEmbedder(), settings=SearchSettings())
    await eng.initialize()
    yield eng
    await eng.close()


class TestDocumentStore:
    """Write paths, deletes and reads against a real LanceDB table."""

    @pytest.mark.asyncio
    async def test_first_write_creates_table_then_appends(self, store):
        embedder = HashingEmbedder()
        chunks = _corpus()
        vectors = await embedder.embed_documents([c.text for c in chunks])

        assert await store.add_chunks(chunks[:2], vectors[:2]) == "rebuild"
        assert await store.add_chunks(chunks[2:], vectors[2:]) == "append"
        assert await store.count_rows() == 5
        assert store.table_dimension() == 64

    @pytest.mark.asyncio
    async def test_append_mode_false_replaces_rows(self, store):
        embedder = HashingEmbedder()
        chunks = _corpus()
        vectors = await embedder.embed_documents([c.text for c in chunks])
        await store.add_chunks(chunks, vectors)

        await store.add_chunks(chunks[:1], vectors[:1], append_mode=False)

        assert await store.count_rows() == 1

    @pytest.mark.asyncio
    async def test_dimension_change_recreates_table(self, store):
        chunk = make_chunk("dimension test")
        await store.add_chunks([chunk], [[1.0] + [0.0] * 63])
        await store.add_chunks([make_chunk("smaller")], [[1.0] + [0.0] * 31])

        assert store.table_dimension() == 32
        assert await store.count_rows() == 1

    @pytest.mark.asyncio
    async def test_search_returns_nearest_with_metadata(self, store):
        embedder = HashingEmbedder()
        chunks = _corpus()
        await store.add_chunks(chunks, await embedder.embed_documents([c.text for c in chunks]))

        query = await embedder.embed_query("Tomato soup recipe with basil and garlic")
        hits = await store.search(query, k=3)

        assert hits[0].source == RECIPES
        assert hits[0].score == pytest.approx(1.0, abs=1e-3)
        assert hits[0].chunk.metadata.tags == ["food"]
        assert hits[0].chunk.metadata.file_name == "recipes.md"

    @pytest.mark.asyncio
    async def test_search_with_source_predicate(self, store):
        embedder = HashingEmbedder()
        chunks = _corpus()
        await store.add_chunks(chunks, await embedder.embed_documents([c.text for c in chunks]))

        query = await embedder.embed_query("vectors")
        hits = await store.search(query, k=10, where=build_where_clause([MEETING]))

        assert hits
        assert {h.source for h in hits} == {MEETING}

    @pytest.mark.asyncio
    async def test_delete_by_sources_handles_quotes(self, store):
        odd = "/kb/o'brien notes.md"
        chunks = [make_chunk("quoted path text", odd), make_chunk("other text", GUIDE)]
        await store.add_chunks(chunks, await HashingEmbedder().embed_documents([c.text for c in chunks]))

        removed = await store.delete_by_sources([odd])

        assert removed == 1
        assert await store.list_sources() == [GUIDE]

    @pytest.mark.asyncio
    async def test_delete_unknown_source_is_not_an_error(self, store):
        assert await store.delete_by_sources(["/nowhere.md"]) == 0

    @pytest.mark.asyncio
    async def test_reset_drops_table(self, store):
        chunks = _corpus()
        await store.add_chunks(chunks, await HashingEmbedder().embed_documents([c.text for c in chunks]))

        await store.reset()

        assert await store.count_rows() == 0
        assert await store.search([0.1] * 64, k=5) == []

    @pytest.mark.asyncio
    async def test_stats(self, store):
        chunks = _corpus()
        await store.add_chunks(chunks, await HashingEmbedder().embed_documents([c.text for c in chunks]))

        stats = await store.get_stats()

        assert stats["total_chunks"] == 5
        assert stats["total_sources"] == 3
        assert stats["vector_dim"] == 64
        assert stats["available"] is True

    @pytest.mark.asyncio
    async def test_write_before_initialize_raises(self, tmp_path):
        store = DocumentStore(tmp_path / "lancedb")
        with pytest.raises(DatabaseNotInitializedError):
            await store.add_chunks([make_chunk("x")], [[1.0]])


class TestStoreFailures:
    """Fallback paths for failed appends, failed connections and corrupt tables."""

    @pytest.mark.asyncio
    async def test_failed_append_falls_back_to_rebuild(self, store):
        chunks = _corpus()
        await _fill(store, chunks[:2])
        store._table = RejectingAppends(store._table)

        assert await _fill(store, chunks[2:]) == "rebuild"

        assert not isinstance(store._table, RejectingAppends)
        assert await store.count_rows() == 5
        assert await store.list_sources() == sorted([GUIDE, MEETING, RECIPES])

    @pytest.mark.asyncio
    async def test_failed_rebuild_after_append_raises_schema_mismatch(self, store, monkeypatch):
        chunks = _corpus()
        await _fill(store, chunks[:2])
        store._table = RejectingAppends(store._table)

        def refuse(records, vector_dim):
            raise RuntimeError("schema mismatch: column 'heading_text' missing")

        monkeypatch.setattr(store, "_rebuild", refuse)

        with pytest.raises(SchemaMismatchError) as excinfo:
            await _fill(store, chunks[2:])

        assert "append_error" in excinfo.value.context
        assert await store.count_rows() == 2

    @pytest.mark.asyncio
    async def test_connection_is_retried_once(self, tmp_path, monkeypatch):
        store = DocumentStore(tmp_path / "lancedb")
        connect = store._connect
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("database is locked")
            connect()

        monkeypatch.setattr(store, "_connect", flaky)
        await store.initialize()

        assert len(attempts) == 2
        assert store.is_available
        await store.close()

    @pytest.mark.asyncio
    async def test_unreachable_store_reads_as_empty(self, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("plain file", encoding="utf-8")
        store = DocumentStore(blocker / "lancedb")

        await store.initialize()

        assert not store.is_available
        assert await store.count_rows() == 0
        assert await store.search([0.1] * 64, k=5) == []
        with pytest.raises(DatabaseInitializationError):
            await store.add_chunks([make_chunk("x")], [[1.0]])

    @pytest.mark.asyncio
    async def test_corrupt_table_is_removed_on_search(self, store, monkeypatch):
        await _fill(store, _corpus())

        def missing_fragment(vector, k, where):
            raise OSError("Not found: documents.lance/data/0a1b.lance fragment")

        monkeypatch.setattr(store, "_search_sync", missing_fragment)

        assert await store.search([0.1] * 64, k=5) == []
        assert store._table is None
        assert not (store.persist_directory / "documents.lance").exists()

    @pytest.mark.asyncio
    async def test_unrecoverable_corruption_raises(self, store, monkeypatch):
        await _fill(store, _corpus())

        def missing_fragment(vector, k, where):
            raise OSError("Not found: documents.lance/data/0a1b.lance fragment")

        def cannot_delete(path, *args, **kwargs):
            raise PermissionError(f"read-only: {path}")

        monkeypatch.setattr(store, "_search_sync", missing_fragment)
        monkeypatch.setattr("kb_search.core.lancedb_backend.shutil.rmtree", cannot_delete)

        with pytest.raises(IndexCorruptionError):
            await store.search([0.1] * 64, k=5)


class TestVectorIndex:
    @pytest.mark.asyncio
    async def test_index_built_once_threshold_is_reached(self, store):
        await _fill(store, _corpus())
        store.vector_index_min_rows = 5
        store._table = RecordingIndexTable(store._table)

        assert await store.maybe_create_vector_index() is True

        (call,) = store._table.index_calls
        assert call["metric"] == "cosine"
        assert call["index_type"] == "IVF_HNSW_SQ"
        assert call["num_partitions"] == 1
        assert call["name"] == VECTOR_INDEX_NAME

    @pytest.mark.asyncio
    async def test_no_index_below_threshold(self, store):
        await _fill(store, _corpus())
        store.vector_index_min_rows = 6
        store._table = RecordingIndexTable(store._table)

        assert await store.maybe_create_vector_index() is False
        assert store._table.index_calls == []

    @pytest.mark.asyncio
    async def test_index_failure_is_not_fatal(self, store):
        await _fill(store, _corpus())
        store.vector_index_min_rows = 5
        store._table = RecordingIndexTable(store._table, fail=True)

        assert await store.maybe_create_vector_index() is False
        assert await store.count_rows() == 5


class TestHybridSearchEngine:
    """End-to-end search over a small corpus with a deterministic embedder."""

    @pytest.mark.asyncio
    async def test_empty_index_raises(self, engine):
        with pytest.raises(EmptyIndexError):
            await engine.search("anything")

    @pytest.mark.asyncio
    async def test_unreachable_store_returns_no_results(self, tmp_path):
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("plain file", encoding="utf-8")
        eng = HybridSearchEngine(DocumentStore(blocker / "lancedb"), HashingEmbedder())
        await eng.initialize()

        assert await eng.search("anything") == []
        assert eng.state_history == [SearchState.DONE]

    @pytest.mark.asyncio
    async def test_rerank_without_reranker_keeps_pipeline_order(self, engine):
        await engine.add_documents(_corpus())

        results = await engine.search("IVF index partitions", k=2, use_rerank=True)

        assert results
        assert SearchState.FALLBACK not in engine.state_history

    @pytest.mark.asyncio
    async def test_add_documents_batches_embeddings(self, tmp_path):
        embedder = HashingEmbedder()
        store = DocumentStore(tmp_path / "lancedb")
        eng = HybridSearchEngine(
            store, embedder, settings=SearchSettings(embedding_batch_size=2)
        )
        await eng.initialize()

        written = await eng.add_documents(_corpus())

        assert written == 5
        assert embedder.document_calls == 3
        assert await eng.get_doc_count() == 5
        await eng.close()

    @pytest.mark.asyncio
    async def test_global_search_ranks_matching_document_first(self, engine):
        await engine.add_documents(_corpus())

        results = await engine.search("tomato soup basil recipe", k=3)

        assert 0 < len(results) <= 3
        assert results[0].source == RECIPES
        assert all(0.0 <= r.score <= 1.0 for r in results)
        assert engine.state_history[-1] is SearchState.DONE
        assert SearchState.FALLBACK not in engine.state_history

    @pytest.mark.asyncio
    async def test_source_filter(self, engine):
        await engine.add_documents(_corpus())

        results = await engine.search("vectors and cost", sources=[MEETING])

        assert results
        assert {r.source for r in results} == {MEETING}

    @pytest.mark.asyncio
    async def test_tag_filter(self, engine):
        await engine.add_documents(_corpus())

        results = await engine.search("budget cost vectors soup", tags=["finance"])

        assert results
        assert all("finance" in r.chunk.metadata.tags for r in results)

    @pytest.mark.asyncio
    async def test_query_vectors_are_cached(self, engine):
        await engine.add_documents(_corpus())
        embedder = engine.embedding_function

        await engine.search("arrow tables")
        calls = embedder.query_calls
        await engine.search("arrow tables")

        assert embedder.query_calls == calls

    @pytest.mark.asyncio
    async def test_failed_pipeline_falls_back_to_vector_search(self, engine, monkeypatch):
        await engine.add_documents(_corpus())

        async def broken(*args, **kwargs):
            raise RuntimeError("retrieval exploded")

        monkeypatch.setattr(engine, "_retrieve", broken)
        results = await engine.search("IVF index partitions", k=2)

        assert SearchState.FALLBACK in engine.state_history
        assert len(results) == 2
        assert results[0].score == 1.0
        assert results[1].score < results[0].score

    @pytest.mark.asyncio
    async def test_remove_sources_matches_any_path_spelling(self, engine):
        windows_chunk = make_chunk("Windows stored report text", "C:\\Docs\\Report.md")
        await engine.add_documents([windows_chunk, *_corpus()])

        removed = await engine.remove_sources(["c:/docs/report.md"])

        assert removed == 1
        assert await engine.get_doc_count() == 5
        assert "C:\\Docs\\Report.md" not in await engine.store.list_sources()

    @pytest.mark.asyncio
    async def test_writes_invalidate_document_count(self, engine):
        await engine.add_documents(_corpus()[:2])
        assert await engine.get_doc_count() == 2

        await engine.add_documents(_corpus()[2:])
        assert await engine.get_doc_count() == 5

        await engine.reset()
        assert await engine.get_doc_count() == 0

    @pytest.mark.asyncio
    async def test_bm25_index_rebuilt_after_write(self, engine):
        await engine.add_documents(_corpus()[:2])
        await engine.search("arrow tables")
        assert len(engine._bm25) == 2

        await engine.add_documents(_corpus()[2:])
        await engine.search("arrow tables")
        assert len(engine._bm25) == 5

    @pytest.mark.asyncio
    async def test_results_are_truncated_to_k(self, engine):
        await engine.add_documents(_corpus())

        results = await engine.search("cost budget vectors soup index", k=2)

        assert len(results) <= 2
