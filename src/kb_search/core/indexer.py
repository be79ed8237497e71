"""Incremental knowledge-base indexer.

Keeps the vector store in step with the file registry. An incremental refresh
re-embeds only files whose content changed (size and mtime first, SHA-256 when
those disagree); a rebuild drops the table and indexes everything again.

Replacing a file's chunks is delete-then-add and not transactional. The
registry record loses its fingerprint before anything is deleted and gets a
new one only after the chunks are stored, so a failed or interrupted write is
picked up again by the next refresh.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

import aiofiles
from loguru import logger

from ..config.settings import SearchSettings
from .exceptions import IndexingError
from .loader import DocumentLoader, TextDocumentLoader
from .models import Chunk, IndexedFileRecord, RefreshReport, SourceType, utc_now
from .path_utils import is_url, normalize_path
from .progress import ProgressMessage, ProgressSink, ProgressStatus, TaskType, emit
from .registry import FileRegistry
from .search import HybridSearchEngine

HASH_BLOCK_SIZE = 1024 * 1024


class FileState(str, Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    MISSING = "missing"


@dataclass
class FileProbe:
    """Current on-disk fingerprint of a registered source."""

    state: FileState
    size: int | None = None
    mtime: float | None = None
    file_hash: str | None = None


async def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while block := await f.read(HASH_BLOCK_SIZE):
            digest.update(block)
    return digest.hexdigest()


class KnowledgeBaseIndexer:
    """Imports, refreshes and removes knowledge-base files.

    All mutating operations are serialized by one ``asyncio.Lock`` so a
    refresh never interleaves with an import of the same files.
    """

    def __init__(
        self,
        engine: HybridSearchEngine,
        registry: FileRegistry,
        loader: DocumentLoader | None = None,
        settings: SearchSettings | None = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.settings = settings or engine.settings
        self.loader = loader or TextDocumentLoader(
            chunk_size=self.settings.chunk_size,
            chunk_overlap=self.settings.chunk_overlap,
        )
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    async def probe(self, record: IndexedFileRecord) -> FileProbe:
        """Compare a record's stored fingerprint with the file on disk.

        URLs cannot be fingerprinted and are always reported as changed. For
        files, a size difference means changed and equal size and mtime mean
        unchanged. Only when the size matches but the mtime differs (or was
        never recorded) is the content hashed.
        """
        if record.source_type is SourceType.URL or is_url(record.path):
            return FileProbe(FileState.CHANGED)

        path = Path(record.path)
        try:
            stat = await asyncio.to_thread(path.stat)
        except OSError:
            return FileProbe(FileState.MISSING)

        size, mtime = stat.st_size, stat.st_mtime
        if record.size != size:
            return FileProbe(FileState.CHANGED, size, mtime)
        if record.mtime is not None and record.mtime == mtime:
            return FileProbe(FileState.UNCHANGED, size, mtime, record.file_hash)

        file_hash = await file_sha256(path)
        if record.file_hash is not None and record.file_hash == file_hash:
            return FileProbe(FileState.UNCHANGED, size, mtime, file_hash)
        return FileProbe(FileState.CHANGED, size, mtime, file_hash)

    async def detect_change(self, record: IndexedFileRecord) -> FileState:
        return (await self.probe(record)).state

    async def _fingerprint(self, source: str, probe: FileProbe | None = None) -> FileProbe:
        if is_url(source):
            return FileProbe(FileState.CHANGED)
        if probe is not None and probe.size is not None and probe.file_hash is not None:
            return probe
        path = Path(source)
        stat = await asyncio.to_thread(path.stat)
        return FileProbe(
            FileState.CHANGED, stat.st_size, stat.st_mtime, await file_sha256(path)
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(
        self,
        progress: ProgressSink | None = None,
        incremental: bool = True,
        mode: str = "incremental",
    ) -> RefreshReport:
        """Bring the index up to date with the registered files.

        Args:
            progress: Sink for progress messages
            incremental: False forces a full rebuild
            mode: "incremental" or "rebuild"

        Returns:
            Counts of unchanged, changed, missing and failed files
        """
        if mode not in ("incremental", "rebuild"):
            raise IndexingError(f"Unknown refresh mode: {mode}")
        rebuild = not incremental or mode == "rebuild"

        async with self._lock:
            start = time.perf_counter()
            if rebuild:
                report = await self._rebuild(progress)
            else:
                report = await self._incremental(progress)
            await self.prune_collections_for_missing_files()
            report.elapsed_seconds = time.perf_counter() - start

        emit(
            progress,
            ProgressMessage(
                TaskType.KNOWLEDGE_BASE_BUILD,
                ProgressStatus.COMPLETED,
                f"Refresh finished: {report.changed} changed, {report.unchanged} "
                f"unchanged, {report.missing} missing, {report.failed} failed",
                progress=100.0,
            ),
        )
        logger.info(
            f"Knowledge base {report.mode} refresh: {report.changed} changed, "
            f"{report.unchanged} unchanged, {report.missing} missing, "
            f"{report.failed} failed, {report.chunks_written} chunks in "
            f"{report.elapsed_seconds:.1f}s"
        )
        return report

    async def _replace_source(
        self, record: IndexedFileRecord, probe: FileProbe
    ) -> IndexedFileRecord:
        """Delete a source's chunks, then load, embed and store it again.

        A registered record is saved with its fingerprint cleared before the
        delete, so a failure or crash before the new chunks are stored leaves
        the file marked changed for the next refresh.
        """
        if record.path in self.registry:
            record.clear_fingerprint()
            await self.registry.upsert(record)
        await self.engine.remove_source(record.path)
        chunks = await self.loader.load(record.path, record.tags)
        written = await self.engine.add_documents(chunks) if chunks else 0
        fingerprint = await self._fingerprint(record.path, probe)
        record.chunk_count = written
        record.size = fingerprint.size
        record.mtime = fingerprint.mtime
        record.file_hash = fingerprint.file_hash
        record.updated_at = utc_now()
        return record

    async def _incremental(self, progress: ProgressSink | None) -> RefreshReport:
        report = RefreshReport(mode="incremental")
        records = self.registry.all_records()
        kept: list[IndexedFileRecord] = []
        total = len(records)

        for processed, record in enumerate(records, start=1):
            probe = await self.probe(record)
            if probe.state is FileState.MISSING:
                report.missing += 1
                await self.engine.remove_source(record.path)
                logger.info(f"Dropping missing file from index: {record.path}")
            elif probe.state is FileState.UNCHANGED:
                report.unchanged += 1
                record.mtime = probe.mtime
                record.file_hash = probe.file_hash
                kept.append(record)
            else:
                report.changed += 1
                try:
                    kept.append(await self._replace_source(record, probe))
                    report.chunks_written += record.chunk_count
                except Exception as e:
                    report.failed += 1
                    report.errors[record.path] = str(e)
                    logger.error(f"Failed to re-index {record.path}: {e}")
                    kept.append(record)

            emit(
                progress,
                ProgressMessage(
                    TaskType.DOCUMENT_PARSE,
                    ProgressStatus.PROCESSING,
                    f"Checking for changes ({processed}/{total})",
                    progress=100.0 * processed / total,
                    file_name=Path(record.path).name,
                    processed_count=processed,
                    total_count=total,
                ),
            )

        await self.registry.replace_all(kept)
        return report

    async def _rebuild(self, progress: ProgressSink | None) -> RefreshReport:
        report = RefreshReport(mode="rebuild")
        records = self.registry.all_records()
        total = len(records)
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_files)
        parsed = 0

        # Persisted before the table is dropped: an interrupted rebuild leaves
        # every file marked changed for the next refresh.
        for record in records:
            record.clear_fingerprint()
        await self.registry.replace_all(records)
        await self.engine.reset()

        async def load_one(
            record: IndexedFileRecord,
        ) -> tuple[IndexedFileRecord, list[Chunk]] | None:
            nonlocal parsed
            async with semaphore:
                try:
                    probe = await self.probe(record)
                    if probe.state is FileState.MISSING:
                        report.missing += 1
                        return None
                    report.changed += 1
                    chunks = await self.loader.load(record.path, record.tags)
                    fingerprint = await self._fingerprint(record.path, probe)
                    # The registry keeps the cleared record until the rebuild is stored
                    loaded = replace(
                        record,
                        size=fingerprint.size,
                        mtime=fingerprint.mtime,
                        file_hash=fingerprint.file_hash,
                        chunk_count=len(chunks),
                        updated_at=utc_now(),
                    )
                    return loaded, chunks
                except Exception as e:
                    report.failed += 1
                    report.errors[record.path] = str(e)
                    logger.error(f"Failed to load {record.path}: {e}")
                    return record, []
                finally:
                    parsed += 1
                    emit(
                        progress,
                        ProgressMessage(
                            TaskType.DOCUMENT_PARSE,
                            ProgressStatus.PROCESSING,
                            f"Parsing documents ({parsed}/{total})",
                            progress=round(parsed / total * 30),
                            file_name=Path(record.path).name,
                            processed_count=parsed,
                            total_count=total,
                        ),
                    )

        loaded = await asyncio.gather(*(load_one(r) for r in records))

        kept: list[IndexedFileRecord] = []
        pending: list[Chunk] = []
        for item in loaded:
            if item is None:
                continue
            record, chunks = item
            kept.append(record)
            pending.extend(chunks)

        emit(
            progress,
            ProgressMessage(
                TaskType.DOCUMENT_SPLIT,
                ProgressStatus.COMPLETED,
                f"Split {len(kept)} documents into {len(pending)} chunks",
                progress=30.0,
                processed_count=len(kept),
                total_count=total,
            ),
        )

        batch_size = self.settings.document_batch_size
        for start in range(0, len(pending), batch_size):
            batch = pending[start : start + batch_size]
            report.chunks_written += await self.engine.add_documents(
                batch, append_mode=start > 0
            )
            done = start + len(batch)
            emit(
                progress,
                ProgressMessage(
                    TaskType.INDEX_REBUILD,
                    ProgressStatus.PROCESSING,
                    f"Indexing chunks ({done}/{len(pending)})",
                    progress=30 + round(done / len(pending) * 70),
                    processed_count=done,
                    total_count=len(pending),
                ),
            )

        emit(
            progress,
            ProgressMessage(
                TaskType.INDEX_REBUILD,
                ProgressStatus.COMPLETED,
                "Rebuild complete",
                progress=100.0,
            ),
        )
        await self.registry.replace_all(kept)
        return report

    # ------------------------------------------------------------------
    # Import / remove
    # ------------------------------------------------------------------

    async def import_files(
        self,
        paths: list[str],
        tags: list[str] | None = None,
        collection_id: str | None = None,
        progress: ProgressSink | None = None,
    ) -> RefreshReport:
        """Index new files (or re-index registered ones) and register them."""
        report = RefreshReport(mode="import")
        imported: list[str] = []
        start = time.perf_counter()

        async with self._lock:
            for processed, path in enumerate(paths, start=1):
                existing = self.registry.get(path)
                merged_tags = sorted({*(existing.tags if existing else []), *(tags or [])})
                record = IndexedFileRecord(
                    path=path,
                    normalized_path=normalize_path(path),
                    source_type=SourceType.URL if is_url(path) else SourceType.FILE,
                    tags=merged_tags,
                )
                report.changed += 1
                try:
                    if not is_url(path) and not Path(path).is_file():
                        raise IndexingError(f"Not a file: {path}", {"path": path})
                    await self._replace_source(record, FileProbe(FileState.CHANGED))
                    await self.registry.upsert(record)
                    report.chunks_written += record.chunk_count
                    imported.append(path)
                except Exception as e:
                    report.failed += 1
                    report.errors[path] = str(e)
                    logger.error(f"Failed to import {path}: {e}")

                emit(
                    progress,
                    ProgressMessage(
                        TaskType.DOCUMENT_PARSE,
                        ProgressStatus.PROCESSING,
                        f"Importing ({processed}/{len(paths)})",
                        progress=100.0 * processed / len(paths),
                        file_name=Path(path).name,
                        processed_count=processed,
                        total_count=len(paths),
                    ),
                )

            if collection_id and imported:
                await self.registry.add_to_collection(collection_id, imported)
            model_name = self.engine.embedding_function.model_name
            if imported and self.registry.embedding_model != model_name:
                await self.registry.set_embedding_model(model_name)

        report.elapsed_seconds = time.perf_counter() - start
        logger.info(
            f"Imported {report.embedded_files} of {len(paths)} files "
            f"({report.chunks_written} chunks)"
        )
        return report

    async def reindex_file(self, path: str) -> IndexedFileRecord:
        """Re-index one registered file regardless of its fingerprint.

        Raises:
            IndexingError: If the file is not registered
        """
        async with self._lock:
            record = self.registry.get(path)
            if record is None:
                raise IndexingError(f"File is not in the knowledge base: {path}")
            await self._replace_source(record, FileProbe(FileState.CHANGED))
            await self.registry.upsert(record)
        return record

    async def remove_files(self, paths: list[str]) -> int:
        """Remove files from the index and the registry.

        Returns:
            Number of chunks removed
        """
        async with self._lock:
            removed = await self.engine.remove_sources(paths)
            await self.registry.remove(paths)
        return removed

    async def delete_collection(
        self, collection_id: str, remove_files: bool = True
    ) -> list[str]:
        """Delete a collection, optionally removing files that were only in it.

        Returns:
            Paths that belonged only to the deleted collection
        """
        orphaned = await self.registry.delete_collection(collection_id)
        if remove_files and orphaned:
            await self.remove_files(orphaned)
        return orphaned

    async def prune_collections_for_missing_files(self) -> int:
        return await self.registry.prune_collections()
