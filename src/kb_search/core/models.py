"""Data models for kb-search."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class SourceType(str, Enum):
    """Where a chunk's source came from."""

    FILE = "file"
    URL = "url"


class QueryIntent(str, Enum):
    """Heuristic query intent used to size and diversify results."""

    DEFINITION = "definition"
    SUMMARY = "summary"
    COMPARISON = "comparison"
    OTHER = "other"


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ChunkMetadata:
    """Flattened, typed metadata stored alongside every chunk.

    ``extra`` is an escape hatch for loader-specific values; it is kept in
    memory only and never written as store columns.
    """

    source: str = ""
    file_name: str = ""
    file_type: str = ""
    page_number: int | None = None
    position: int | None = None
    source_type: SourceType = SourceType.FILE
    imported_at: str = ""
    chunk_index: int = 0
    tags: list[str] = field(default_factory=list)
    block_types: list[str] = field(default_factory=list)
    has_heading: bool = False
    heading_text: str = ""
    chunking_strategy: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Chunk:
    """A passage of text derived from one source, optionally with its embedding."""

    text: str
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    embedding: list[float] | None = None

    def __post_init__(self) -> None:
        if not self.text or not self.text.strip():
            raise ValueError("Chunk text must be non-empty")
        if not self.metadata.file_name and self.metadata.source:
            self.metadata.file_name = Path(
                self.metadata.source.replace("\\", "/")
            ).name

    @property
    def source(self) -> str:
        return self.metadata.source

    @property
    def key(self) -> str:
        """Fingerprint used to merge the same passage across ranked lists."""
        return f"{self.metadata.source}::{self.text}"

    def to_record(self, vector: list[float]) -> dict[str, Any]:
        """Flatten into a LanceDB row."""
        meta = self.metadata
        return {
            "vector": [float(v) for v in vector],
            "text": self.text,
            "source": meta.source,
            "tags": list(meta.tags),
            "file_name": meta.file_name,
            "file_type": meta.file_type,
            "page_number": meta.page_number,
            "position": meta.position,
            "source_type": SourceType(meta.source_type).value,
            "imported_at": meta.imported_at or utc_now(),
            "chunk_index": meta.chunk_index,
            "block_types": list(meta.block_types),
            "has_heading": meta.has_heading,
            "heading_text": meta.heading_text,
            "chunking_strategy": meta.chunking_strategy,
        }

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "Chunk":
        """Rebuild a chunk from a LanceDB row (search hit or scan)."""
        source_type = row.get("source_type") or SourceType.FILE.value
        metadata = ChunkMetadata(
            source=row.get("source") or "",
            file_name=row.get("file_name") or "",
            file_type=row.get("file_type") or "",
            page_number=row.get("page_number"),
            position=row.get("position"),
            source_type=SourceType(source_type),
            imported_at=row.get("imported_at") or "",
            chunk_index=row.get("chunk_index") or 0,
            tags=list(row.get("tags") or []),
            block_types=list(row.get("block_types") or []),
            has_heading=bool(row.get("has_heading")),
            heading_text=row.get("heading_text") or "",
            chunking_strategy=row.get("chunking_strategy") or "",
        )
        return cls(text=row["text"], metadata=metadata)


@dataclass
class ScoredResult:
    """A chunk with its relevance score in [0, 1]."""

    chunk: Chunk
    score: float
    distance: float | None = None

    @property
    def source(self) -> str:
        return self.chunk.metadata.source

    @property
    def text(self) -> str:
        return self.chunk.text

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.chunk.text,
            "source": self.source,
            "file_name": self.chunk.metadata.file_name,
            "page_number": self.chunk.metadata.page_number,
            "tags": self.chunk.metadata.tags,
            "score": self.score,
            "distance": self.distance,
        }


@dataclass
class QueryPlan:
    """Per-query search parameters chosen by the planner."""

    intent: QueryIntent
    complexity: float
    adaptive_k: int
    fetch_k: int
    is_global: bool


@dataclass
class IndexedFileRecord:
    """Registry entry for one imported file or URL."""

    path: str
    normalized_path: str
    source_type: SourceType = SourceType.FILE
    size: int | None = None
    mtime: float | None = None
    file_hash: str | None = None
    chunk_count: int = 0
    updated_at: str = field(default_factory=utc_now)
    tags: list[str] = field(default_factory=list)
    collection_ids: list[str] = field(default_factory=list)

    def clear_fingerprint(self) -> None:
        """Forget mtime, hash and chunk count so the next refresh re-indexes."""
        self.mtime = None
        self.file_hash = None
        self.chunk_count = 0
        self.updated_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "normalized_path": self.normalized_path,
            "source_type": SourceType(self.source_type).value,
            "size": self.size,
            "mtime": self.mtime,
            "file_hash": self.file_hash,
            "chunk_count": self.chunk_count,
            "updated_at": self.updated_at,
            "tags": list(self.tags),
            "collection_ids": list(self.collection_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexedFileRecord":
        return cls(
            path=data["path"],
            normalized_path=data["normalized_path"],
            source_type=SourceType(data.get("source_type", SourceType.FILE.value)),
            size=data.get("size"),
            mtime=data.get("mtime"),
            file_hash=data.get("file_hash"),
            chunk_count=data.get("chunk_count", 0),
            updated_at=data.get("updated_at") or utc_now(),
            tags=list(data.get("tags", [])),
            collection_ids=list(data.get("collection_ids", [])),
        )


@dataclass
class Collection:
    """A named group of registered files."""

    id: str
    name: str
    description: str = ""
    file_paths: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "file_paths": list(self.file_paths),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Collection":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            file_paths=list(data.get("file_paths", [])),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
        )


@dataclass
class RefreshReport:
    """Outcome of one knowledge-base refresh."""

    mode: str
    unchanged: int = 0
    changed: int = 0
    missing: int = 0
    failed: int = 0
    chunks_written: int = 0
    elapsed_seconds: float = 0.0
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def embedded_files(self) -> int:
        return self.changed - self.failed
