"""LanceDB document store.

LanceDB provides:
- Serverless architecture (no separate server process)
- Built on Apache Arrow for fast columnar operations
- Native support for vector search with ANN indices
- SQL ``WHERE`` predicates over flat scalar and list columns

All chunks live in one ``documents`` table. Metadata is stored as flat
columns (never a nested struct) so sources and tags can be filtered natively.
"""

import asyncio
import math
import shutil
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa
from loguru import logger

from ..config.defaults import DOCUMENTS_TABLE, VECTOR_INDEX_NAME
from .exceptions import (
    DatabaseError,
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    DocumentAdditionError,
    IndexCorruptionError,
    SchemaMismatchError,
)
from .models import Chunk, ScoredResult
from .path_utils import build_in_clause, escape_sql_literal

METADATA_COLUMNS = [
    "text",
    "source",
    "tags",
    "file_name",
    "file_type",
    "page_number",
    "position",
    "source_type",
    "imported_at",
    "chunk_index",
    "block_types",
    "has_heading",
    "heading_text",
    "chunking_strategy",
]


def _create_lance_schema(vector_dim: int) -> pa.Schema:
    """Create PyArrow schema with dynamic vector dimension.

    Args:
        vector_dim: Embedding vector dimension (e.g., 384, 768, 1024)

    Returns:
        PyArrow schema for the documents table
    """
    return pa.schema(
        [
            pa.field("vector", pa.list_(pa.float32(), vector_dim)),
            pa.field("text", pa.string()),
            pa.field("source", pa.string()),
            pa.field("tags", pa.list_(pa.string())),
            pa.field("file_name", pa.string()),
            pa.field("file_type", pa.string()),
            pa.field("page_number", pa.int32()),
            pa.field("position", pa.int32()),
            pa.field("source_type", pa.string()),
            pa.field("imported_at", pa.string()),
            pa.field("chunk_index", pa.int32()),
            pa.field("block_types", pa.list_(pa.string())),
            pa.field("has_heading", pa.bool_()),
            pa.field("heading_text", pa.string()),
            pa.field("chunking_strategy", pa.string()),
        ]
    )


def distance_to_score(distance: float) -> float:
    """Map a vector distance to a similarity score in [0, 1]."""
    return max(0.0, min(1.0, 1.0 / (1.0 + distance)))


class DocumentStore:
    """LanceDB-backed chunk store with an append-or-rebuild write path.

    Features:
    - Async context manager support (__aenter__, __aexit__)
    - Connection retried once; a store that still cannot be opened reads as empty
    - Append first, rebuild the whole table with an explicit schema on failure
    - ANN index created once the table is large enough to benefit

    Example:
        async with DocumentStore(data_dir / "lancedb") as store:
            await store.add_chunks(chunks, vectors)
            hits = await store.search(query_vector, k=20)
    """

    def __init__(
        self,
        persist_directory: Path,
        table_name: str = DOCUMENTS_TABLE,
        vector_index_min_rows: int = 500,
    ) -> None:
        self.persist_directory = Path(persist_directory)
        self.table_name = table_name
        self.vector_index_min_rows = vector_index_min_rows
        self._db: Any = None
        self._table: Any = None
        self._unavailable = False

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _list_table_names(self) -> list[str]:
        """Return table names from LanceDB, handling API variations."""
        if hasattr(self._db, "list_tables"):
            tables_response = self._db.list_tables()
            if hasattr(tables_response, "tables"):
                return list(tables_response.tables)
            return list(tables_response)
        return list(self._db.table_names())

    def _connect(self) -> None:
        self.persist_directory.mkdir(parents=True, exist_ok=True)
        self._db = lancedb.connect(str(self.persist_directory))
        if self.table_name in self._list_table_names():
            try:
                self._table = self._db.open_table(self.table_name)
            except Exception as e:
                if not self._handle_corrupt_table(e):
                    raise
        else:
            self._table = None

    async def initialize(self) -> None:
        """Connect to LanceDB and open the documents table if it exists.

        A failed connection is retried once with a fresh connection. If that
        also fails the store is marked unavailable and behaves as empty.
        """
        for attempt in (1, 2):
            try:
                self._connect()
                self._unavailable = False
                logger.debug(
                    f"LanceDB store ready at {self.persist_directory} "
                    f"(table {'present' if self._table is not None else 'absent'})"
                )
                return
            except Exception as e:
                self._db = None
                self._table = None
                if attempt == 1:
                    logger.warning(f"LanceDB connection failed, retrying once: {e}")
                else:
                    logger.error(
                        f"LanceDB unavailable at {self.persist_directory}, "
                        f"treating store as empty: {e}"
                    )
                    self._unavailable = True

    @property
    def is_available(self) -> bool:
        return self._db is not None and not self._unavailable

    def _require_db(self) -> None:
        if self._unavailable:
            raise DatabaseInitializationError(
                f"Document store at {self.persist_directory} could not be opened",
                {"path": str(self.persist_directory)},
            )
        if self._db is None:
            raise DatabaseNotInitializedError("Document store not initialized")

    def _is_corruption_error(self, error: Exception) -> bool:
        """Check if error indicates corrupted LanceDB data fragments.

        Schema mismatches mention fields or columns and are not corruption.
        """
        error_msg = str(error).lower()
        is_fragment_error = (
            "not found" in error_msg or "no such file" in error_msg
        ) and ("fragment" in error_msg or "data/" in error_msg)
        is_schema_error = (
            "schema" in error_msg
            or "field" in error_msg
            or "column" in error_msg
            or "type mismatch" in error_msg
        )
        return is_fragment_error and not is_schema_error

    def _handle_corrupt_table(self, error: Exception) -> bool:
        """Delete a table whose data fragments are missing so it can be rebuilt.

        Returns:
            True if the table was recognized as corrupt and removed
        """
        if not self._is_corruption_error(error):
            return False

        try:
            table_path = self.persist_directory / f"{self.table_name}.lance"
            if table_path.exists():
                logger.warning(
                    f"Detected corrupted {self.table_name} table (missing data fragment). "
                    f"Auto-recovering by deleting: {table_path}"
                )
                shutil.rmtree(table_path)
            self._table = None
            return True
        except Exception as e:
            logger.error(f"Failed to recover from corruption: {e}")
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def table_dimension(self) -> int | None:
        """Vector size of the current table, or None when there is no table."""
        if self._table is None:
            return None
        vector_type = self._table.schema.field("vector").type
        return getattr(vector_type, "list_size", None)

    def _rebuild(self, records: list[dict[str, Any]], vector_dim: int) -> None:
        self._table = self._db.create_table(
            self.table_name,
            data=records,
            schema=_create_lance_schema(vector_dim),
            mode="overwrite",
        )
        logger.info(
            f"Created LanceDB table '{self.table_name}' with {len(records)} rows "
            f"(dim={vector_dim})"
        )

    def ensure_table(
        self, records: list[dict[str, Any]], append_mode: bool = True
    ) -> str:
        """Write records through the append path, or rebuild the table.

        Append is used when the table exists, ``append_mode`` is set and the
        vector dimension matches. If append fails the table is rebuilt once
        from its existing rows plus the new ones. The rebuild path on its own
        (missing table, dimension change, ``append_mode=False``) overwrites the
        table with just ``records``.

        Returns:
            "append" or "rebuild", whichever path stored the records

        Raises:
            SchemaMismatchError: If the rebuild fallback also fails
        """
        self._require_db()
        vector_dim = len(records[0]["vector"])
        current_dim = self.table_dimension()

        if self._table is not None and append_mode and current_dim == vector_dim:
            try:
                self._table.add(records)
                return "append"
            except Exception as e:
                logger.warning(
                    f"Append to '{self.table_name}' failed, rebuilding table: {e}"
                )
                try:
                    existing = self._table.to_arrow().to_pylist()
                    self._rebuild(existing + records, vector_dim)
                    return "rebuild"
                except Exception as rebuild_error:
                    logger.error(f"Table rebuild after failed append failed: {rebuild_error}")
                    raise SchemaMismatchError(
                        f"Could not write {len(records)} records to '{self.table_name}': "
                        f"{rebuild_error}",
                        {"append_error": str(e)},
                    ) from rebuild_error

        if current_dim is not None and current_dim != vector_dim:
            logger.warning(
                f"Embedding dimension changed ({current_dim} -> {vector_dim}), "
                f"recreating '{self.table_name}'"
            )
        self._rebuild(records, vector_dim)
        return "rebuild"

    async def add_chunks(
        self,
        chunks: list[Chunk],
        embeddings: list[list[float]],
        append_mode: bool = True,
    ) -> str:
        """Add embedded chunks to the store.

        Raises:
            DatabaseNotInitializedError: If the store is not connected
            DatabaseInitializationError: If connecting failed twice at startup
            SchemaMismatchError: If neither write path could store the rows
            DocumentAdditionError: For any other write failure
        """
        self._require_db()
        if not chunks:
            return "noop"

        records = [
            chunk.to_record(vector)
            for chunk, vector in zip(chunks, embeddings, strict=True)
        ]
        try:
            path = await asyncio.to_thread(self.ensure_table, records, append_mode)
        except SchemaMismatchError:
            raise
        except Exception as e:
            logger.error(f"Failed to add chunks to LanceDB: {e}")
            raise DocumentAdditionError(f"Failed to add chunks: {e}") from e

        logger.debug(f"Stored {len(records)} chunks via {path} path")
        await self.maybe_create_vector_index()
        return path

    async def maybe_create_vector_index(self) -> bool:
        """Create the ANN index once the table has enough rows.

        Failures are logged and ignored; brute-force KNN stays correct.

        Returns:
            True if an index was (re)built
        """
        if self._table is None:
            return False

        try:
            row_count = self._table.count_rows()
            if row_count < self.vector_index_min_rows:
                return False

            existing = [
                getattr(idx, "name", "") for idx in self._table.list_indices()
            ]
            if VECTOR_INDEX_NAME in existing:
                return False

            num_partitions = max(1, min(256, math.ceil(row_count / 100)))
            self._table.create_index(
                metric="cosine",
                num_partitions=num_partitions,
                vector_column_name="vector",
                index_type="IVF_HNSW_SQ",
                replace=True,
                name=VECTOR_INDEX_NAME,
            )
            logger.info(
                f"Built vector index on {row_count} rows ({num_partitions} partitions)"
            )
            return True
        except Exception as e:
            logger.warning(f"Vector index creation failed (search still works): {e}")
            return False

    async def delete_by_sources(self, variants: list[str]) -> int:
        """Delete every chunk whose ``source`` is one of ``variants``.

        One ``IN (...)`` delete is tried first; if it fails each variant is
        deleted on its own. Matching nothing is not an error.

        Returns:
            Number of rows removed
        """
        if self._table is None or not variants:
            return 0

        before = self._table.count_rows()
        try:
            self._table.delete(build_in_clause("source", variants))
        except Exception as e:
            logger.warning(f"Batch delete failed, deleting per source: {e}")
            for variant in variants:
                try:
                    self._table.delete(f"source = '{escape_sql_literal(variant)}'")
                except Exception as single_error:
                    logger.debug(f"Delete for {variant!r} failed: {single_error}")

        removed = before - self._table.count_rows()
        logger.debug(f"Deleted {removed} chunks for {len(variants)} source variants")
        return removed

    async def reset(self) -> None:
        """Drop the documents table."""
        self._require_db()
        if self.table_name in self._list_table_names():
            self._db.drop_table(self.table_name)
            logger.info(f"Dropped LanceDB table '{self.table_name}'")
        self._table = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def count_rows(self) -> int:
        if self._table is None:
            return 0
        try:
            return int(self._table.count_rows())
        except Exception as e:
            if self._handle_corrupt_table(e):
                return 0
            logger.warning(f"Row count failed: {e}")
            return 0

    def _search_sync(
        self, vector: list[float], k: int, where: str | None
    ) -> list[dict[str, Any]]:
        query = self._table.search(vector).metric("cosine").limit(k)
        if where:
            query = query.where(where, prefilter=True)
        return query.to_list()

    async def search(
        self, vector: list[float], k: int, where: str | None = None
    ) -> list[ScoredResult]:
        """Nearest-neighbour search by cosine distance.

        Returns:
            Results in store order (best first) with ``score = 1/(1+distance)``

        Raises:
            IndexCorruptionError: If the table is corrupt and could not be removed
            DatabaseError: If the query fails for any other reason
        """
        if self._table is None or k <= 0:
            return []

        try:
            rows = await asyncio.to_thread(self._search_sync, vector, k, where)
        except Exception as e:
            if self._is_corruption_error(e):
                if self._handle_corrupt_table(e):
                    logger.error(f"Table '{self.table_name}' corrupted; reindex required")
                    return []
                raise IndexCorruptionError(
                    f"Table '{self.table_name}' is corrupted and could not be removed: {e}",
                    {"path": str(self.persist_directory)},
                ) from e
            logger.error(f"LanceDB search failed: {e}")
            raise DatabaseError(f"Search failed: {e}") from e

        results = []
        for row in rows:
            if not row.get("text"):
                continue
            distance = float(row.get("_distance", 0.0))
            results.append(
                ScoredResult(
                    chunk=Chunk.from_record(row),
                    score=distance_to_score(distance),
                    distance=distance,
                )
            )
        return results

    def _scan_sync(
        self, limit: int | None, columns: list[str] | None
    ) -> list[dict[str, Any]]:
        columns = columns or METADATA_COLUMNS
        if limit is None:
            return self._table.to_arrow().select(columns).to_pylist()
        return self._table.search().select(columns).limit(limit).to_list()

    async def scan(
        self, limit: int | None = None, columns: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """Read rows without a vector query (all rows when ``limit`` is None)."""
        if self._table is None:
            return []
        try:
            return await asyncio.to_thread(self._scan_sync, limit, columns)
        except Exception as e:
            logger.error(f"LanceDB scan failed: {e}")
            raise DatabaseError(f"Scan failed: {e}") from e

    async def scan_chunks(self, limit: int | None = None) -> list[Chunk]:
        rows = await self.scan(limit)
        return [Chunk.from_record(row) for row in rows if row.get("text")]

    async def list_sources(self) -> list[str]:
        rows = await self.scan(columns=["source"])
        return sorted({row["source"] for row in rows if row.get("source")})

    async def get_stats(self) -> dict[str, Any]:
        """Row count, distinct sources, vector dimension and on-disk size."""
        total = await self.count_rows()
        sources = await self.list_sources() if total else []
        size_bytes = sum(
            p.stat().st_size for p in self.persist_directory.rglob("*") if p.is_file()
        ) if self.persist_directory.exists() else 0
        return {
            "total_chunks": total,
            "total_sources": len(sources),
            "vector_dim": self.table_dimension(),
            "available": self.is_available,
            "database_size_bytes": size_bytes,
        }

    async def close(self) -> None:
        self._table = None
        self._db = None
        logger.debug("LanceDB connections closed")

    async def __aenter__(self) -> "DocumentStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
