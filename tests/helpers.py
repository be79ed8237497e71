"""Test helpers: a deterministic embedder and chunk builders."""

import math
import zlib

from kb_search.core.models import Chunk, ChunkMetadata, ScoredResult
from kb_search.core.tokenizer import analyze

FAKE_DIMENSION = 64


class HashingEmbedder:
    """Bag-of-tokens embedder: texts sharing words get similar unit vectors."""

    def __init__(self, model_name: str = "test/hashing-embedder") -> None:
        self._model_name = model_name
        self.document_calls = 0
        self.query_calls = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * FAKE_DIMENSION
        for token in analyze(text) or [text.lower()]:
            vector[zlib.crc32(token.encode("utf-8")) % FAKE_DIMENSION] += 1.0
        norm = math.sqrt(sum(v * v for v in vector)) or 1.0
        return [v / norm for v in vector]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.document_calls += 1
        return [self._vector(t) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        self.query_calls += 1
        return self._vector(text)


def make_chunk(text: str, source: str = "/docs/a.md", tags: list[str] | None = None) -> Chunk:
    return Chunk(
        text=text,
        metadata=ChunkMetadata(source=source, file_type="markdown", tags=tags or []),
    )


def make_result(
    text: str, score: float, source: str = "/docs/a.md", tags: list[str] | None = None
) -> ScoredResult:
    return ScoredResult(chunk=make_chunk(text, source, tags), score=score)
