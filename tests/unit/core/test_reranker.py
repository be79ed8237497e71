"""Tests for cross-encoder reranking with a stand-in model."""

import inspect
import time

import pytest

from kb_search.core.embeddings import ModelLoader
from kb_search.core.progress import TaskType
from kb_search.core.reranker import CrossEncoderReranker


class OverlapCrossEncoder:
    """Scores a pair by the share of query words found in the passage."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay

    def predict(self, pairs):
        time.sleep(self.delay)
        scores = []
        for query, passage in pairs:
            words = query.lower().split()
            scores.append(sum(w in passage.lower() for w in words) / len(words))
        return scores


def _reranker(model, timeout=5.0):
    loader = ModelLoader("fake/cross-encoder", lambda name, cache_dir: model, task="reranker")
    return CrossEncoderReranker("fake/cross-encoder", timeout=timeout, loader=loader)


DOCUMENTS = [
    "Meeting notes from Monday",
    "How to build an IVF vector index",
    "Vector index tuning guide",
]


@pytest.mark.asyncio
async def test_rerank_orders_by_model_score():
    ranked = await _reranker(OverlapCrossEncoder()).arerank("build vector index", DOCUMENTS)

    assert [idx for idx, _ in ranked] == [1, 2, 0]
    assert ranked[0][1] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_top_k_limits_results():
    ranked = await _reranker(OverlapCrossEncoder()).arerank(
        "build vector index", DOCUMENTS, top_k=1
    )
    assert ranked == [(1, pytest.approx(1.0))]


@pytest.mark.asyncio
async def test_no_documents():
    assert await _reranker(OverlapCrossEncoder()).arerank("query", []) == []


@pytest.mark.asyncio
async def test_timeout_skips_stage():
    reranker = _reranker(OverlapCrossEncoder(delay=0.5), timeout=0.05)
    assert await reranker.arerank("vector index", DOCUMENTS) is None


@pytest.mark.asyncio
async def test_load_failure_skips_stage():
    def broken(name, cache_dir):
        raise OSError("no network")

    loader = ModelLoader("fake/cross-encoder", broken, task="reranker", max_retries=0)
    reranker = CrossEncoderReranker("fake/cross-encoder", loader=loader)

    assert await reranker.arerank("vector index", DOCUMENTS) is None


class CorruptOnceReranker(CrossEncoderReranker):
    """Fails the first load the way a truncated download does."""

    def __init__(self, model, **kwargs):
        self.model = model
        self.load_calls = 0
        super().__init__("org/cross-encoder", **kwargs)

    def _load_model(self, model_name, cache_dir):
        self.load_calls += 1
        if self.load_calls == 1:
            raise RuntimeError("Protobuf parsing failed")
        return self.model


@pytest.mark.asyncio
async def test_corrupt_download_cleans_cache_before_retry(tmp_path):
    stale = tmp_path / "models--org--cross-encoder"
    stale.mkdir()
    (stale / "model.safetensors").write_bytes(b"truncated")
    messages = []
    reranker = CorruptOnceReranker(
        OverlapCrossEncoder(), cache_dir=tmp_path, max_retries=1, progress=messages.append
    )

    ranked = await reranker.arerank("build vector index", DOCUMENTS)

    assert [idx for idx, _ in ranked] == [1, 2, 0]
    assert reranker.load_calls == 2
    assert not stale.exists()
    assert messages[-1].task_type is TaskType.RERANKER_DOWNLOAD


def test_cross_encoder_accepts_cache_folder():
    from sentence_transformers import CrossEncoder

    assert "cache_folder" in inspect.signature(CrossEncoder.__init__).parameters
