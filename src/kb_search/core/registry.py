"""Registry of indexed files and document collections.

The registry is one JSON document next to the vector store::

    {
      "version": "0.3.0",
      "embedding_model": "...",
      "updated_at": "...",
      "files": [IndexedFileRecord, ...],
      "collections": [Collection, ...]
    }

Records are keyed by normalized path, so ``C:\\docs\\a.txt`` and
``c:/docs/a.txt`` are the same file.
"""

import asyncio
import os
import uuid
from collections import Counter
from pathlib import Path
from typing import Any

import orjson
from loguru import logger

from .. import __version__
from .exceptions import RegistryError
from .models import Collection, IndexedFileRecord, utc_now
from .path_utils import normalize_path


class FileRegistry:
    """Persistent file/collection registry with atomic, serialized writes.

    Reads are served from memory after ``load()``. Every mutation rewrites the
    whole file through a temporary file and ``os.replace`` while holding an
    ``asyncio.Lock``.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._records: dict[str, IndexedFileRecord] = {}
        self._collections: dict[str, Collection] = {}
        self.embedding_model: str | None = None
        self._lock = asyncio.Lock()
        self._loaded = False

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Read the registry file (a missing file is an empty registry).

        Raises:
            RegistryError: If the file exists but cannot be parsed
        """
        self._records.clear()
        self._collections.clear()
        self._loaded = True
        if not self.path.exists():
            return

        try:
            data = orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise RegistryError(f"Cannot read registry {self.path}: {e}") from e

        for raw in data.get("files", []):
            record = IndexedFileRecord.from_dict(raw)
            record.normalized_path = normalize_path(record.path)
            self._records[record.normalized_path] = record
        for raw in data.get("collections", []):
            collection = Collection.from_dict(raw)
            self._collections[collection.id] = collection
        self.embedding_model = data.get("embedding_model")

        logger.debug(
            f"Loaded registry with {len(self._records)} files and "
            f"{len(self._collections)} collections"
        )

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _write(self) -> None:
        payload: dict[str, Any] = {
            "version": __version__,
            "embedding_model": self.embedding_model,
            "updated_at": utc_now(),
            "files": [r.to_dict() for r in self._records.values()],
            "collections": [c.to_dict() for c in self._collections.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp_path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write registry {self.path}: {e}")
            raise RegistryError(f"Cannot write registry {self.path}: {e}") from e

    # ------------------------------------------------------------------
    # File records
    # ------------------------------------------------------------------

    def get(self, path: str) -> IndexedFileRecord | None:
        self._ensure_loaded()
        return self._records.get(normalize_path(path))

    def all_records(self) -> list[IndexedFileRecord]:
        self._ensure_loaded()
        return list(self._records.values())

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and self.get(path) is not None

    def __len__(self) -> int:
        self._ensure_loaded()
        return len(self._records)

    async def upsert(self, record: IndexedFileRecord) -> IndexedFileRecord:
        """Insert or replace the record for ``record.path``."""
        self._ensure_loaded()
        record.normalized_path = normalize_path(record.path)
        async with self._lock:
            self._records[record.normalized_path] = record
            self._sync_memberships()
            self._write()
        return record

    async def replace_all(self, records: list[IndexedFileRecord]) -> None:
        """Replace every file record at once (used after a refresh)."""
        self._ensure_loaded()
        async with self._lock:
            self._records = {}
            for record in records:
                record.normalized_path = normalize_path(record.path)
                self._records[record.normalized_path] = record
            self._sync_memberships()
            self._write()

    async def remove(self, paths: list[str]) -> list[IndexedFileRecord]:
        """Drop records and their collection memberships.

        Returns:
            The records that were removed
        """
        self._ensure_loaded()
        wanted = {normalize_path(p) for p in paths}
        async with self._lock:
            removed = [self._records.pop(p) for p in list(wanted) if p in self._records]
            for collection in self._collections.values():
                kept = [f for f in collection.file_paths if normalize_path(f) not in wanted]
                if len(kept) != len(collection.file_paths):
                    collection.file_paths = kept
                    collection.updated_at = utc_now()
            self._sync_memberships()
            if removed:
                self._write()
        return removed

    async def set_embedding_model(self, model_name: str) -> None:
        self._ensure_loaded()
        async with self._lock:
            self.embedding_model = model_name
            self._write()

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def _sanitize_files(self, files: list[str] | None) -> list[str]:
        """Keep only registered files, de-duplicated by normalized path."""
        seen: dict[str, str] = {}
        for path in files or []:
            normalized = normalize_path(path)
            if normalized in self._records:
                seen.setdefault(normalized, path)
        return list(seen.values())

    def collections(self) -> list[Collection]:
        self._ensure_loaded()
        return list(self._collections.values())

    def get_collection(self, collection_id: str) -> Collection:
        self._ensure_loaded()
        try:
            return self._collections[collection_id]
        except KeyError:
            raise RegistryError(
                f"Collection not found: {collection_id}", {"id": collection_id}
            ) from None

    async def create_collection(
        self, name: str, description: str = "", files: list[str] | None = None
    ) -> Collection:
        self._ensure_loaded()
        async with self._lock:
            collection = Collection(
                id=str(uuid.uuid4()),
                name=name.strip() or f"Collection {len(self._collections) + 1}",
                description=description.strip(),
                file_paths=self._sanitize_files(files),
            )
            self._collections[collection.id] = collection
            self._sync_memberships()
            self._write()
        logger.info(f"Created collection '{collection.name}' ({collection.id})")
        return collection

    async def update_collection(
        self,
        collection_id: str,
        name: str | None = None,
        description: str | None = None,
        files: list[str] | None = None,
    ) -> Collection:
        """Update fields that are not None.

        Raises:
            RegistryError: If the collection does not exist
        """
        collection = self.get_collection(collection_id)
        async with self._lock:
            if name is not None and name.strip():
                collection.name = name.strip()
            if description is not None:
                collection.description = description.strip()
            if files is not None:
                collection.file_paths = self._sanitize_files(files)
            collection.updated_at = utc_now()
            self._sync_memberships()
            self._write()
        return collection

    async def add_to_collection(self, collection_id: str, files: list[str]) -> Collection:
        collection = self.get_collection(collection_id)
        return await self.update_collection(
            collection_id, files=[*collection.file_paths, *files]
        )

    async def delete_collection(self, collection_id: str) -> list[str]:
        """Delete a collection.

        Returns:
            Paths that belonged to this collection and to no other one; the
            caller decides whether to remove them from the index
        """
        collection = self.get_collection(collection_id)
        async with self._lock:
            del self._collections[collection_id]
            still_used = {
                normalize_path(f)
                for other in self._collections.values()
                for f in other.file_paths
            }
            orphaned = [
                f for f in collection.file_paths if normalize_path(f) not in still_used
            ]
            self._sync_memberships()
            self._write()
        logger.info(
            f"Deleted collection '{collection.name}' ({len(orphaned)} files only in it)"
        )
        return orphaned

    async def prune_collections(self) -> int:
        """Remove collection entries for files that are no longer registered.

        Returns:
            Number of collection entries removed
        """
        self._ensure_loaded()
        removed = 0
        async with self._lock:
            for collection in self._collections.values():
                kept = [
                    f for f in collection.file_paths if normalize_path(f) in self._records
                ]
                removed += len(collection.file_paths) - len(kept)
                collection.file_paths = kept
            self._sync_memberships()
            if removed:
                self._write()
        return removed

    def _sync_memberships(self) -> None:
        memberships: dict[str, list[str]] = {key: [] for key in self._records}
        for collection in self._collections.values():
            for path in collection.file_paths:
                normalized = normalize_path(path)
                if normalized in memberships:
                    memberships[normalized].append(collection.id)
        for key, record in self._records.items():
            record.collection_ids = memberships[key]

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """Files, collections and the tag histogram, for display."""
        self._ensure_loaded()
        tag_counts: Counter[str] = Counter()
        for record in self._records.values():
            tag_counts.update(record.tags)
        return {
            "files": [r.to_dict() for r in self._records.values()],
            "collections": [c.to_dict() for c in self._collections.values()],
            "available_tags": [
                {"name": name, "count": count} for name, count in tag_counts.most_common()
            ],
        }
