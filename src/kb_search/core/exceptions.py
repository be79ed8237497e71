"""Typed exception hierarchy for kb-search.

Hierarchy
---------
KBSearchError (base)
├── DatabaseError          – LanceDB / storage layer errors
│   ├── DatabaseInitializationError
│   ├── DatabaseNotInitializedError
│   ├── DocumentAdditionError
│   ├── SchemaMismatchError
│   └── IndexCorruptionError
├── SearchError            – search-time failures
│   ├── EmptyIndexError    – the store holds no documents at all
│   └── QueryExpansionError
├── IndexingError          – refresh / import failures
│   └── DocumentLoadError
├── EmbeddingError         – embedding generation and model loading
│   └── ModelCorruptionError
├── RegistryError          – file/collection registry errors
└── ConfigError            – configuration / validation errors

``EmptyIndexError`` is raised instead of returning ``[]`` so callers can tell
"nothing indexed yet" apart from "nothing relevant".
"""

from typing import Any


class KBSearchError(Exception):
    """Base exception for kb-search."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# ── Database layer ──────────────────────────────────────────────────────


class DatabaseError(KBSearchError):
    """Database-related errors (LanceDB / storage layer)."""

    pass


class DatabaseInitializationError(DatabaseError):
    """Database initialization failed."""

    pass


class DatabaseNotInitializedError(DatabaseError):
    """Operation attempted on uninitialized database."""

    pass


class DocumentAdditionError(DatabaseError):
    """Failed to add documents to database."""

    pass


class SchemaMismatchError(DocumentAdditionError):
    """Records could not be written by either the append or the rebuild path."""

    pass


class IndexCorruptionError(DatabaseError):
    """Index corruption detected."""

    pass


# ── Search layer ────────────────────────────────────────────────────────


class SearchError(KBSearchError):
    """Search operation failed."""

    pass


class EmptyIndexError(SearchError):
    """Search was attempted against a store with zero documents."""

    def __init__(self, message: str = "Knowledge base is empty", **kwargs: Any) -> None:
        super().__init__(message, kwargs or None)


class QueryExpansionError(SearchError):
    """Query expansion / rewriting failed."""

    pass


# ── Indexing layer ──────────────────────────────────────────────────────


class IndexingError(KBSearchError):
    """Indexing operation failed.

    Named ``IndexingError`` (not ``IndexError``) to avoid shadowing
    the Python built-in ``IndexError``.
    """

    pass


class DocumentLoadError(IndexingError):
    """A source file could not be read or split into chunks."""

    pass


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(KBSearchError):
    """Embedding generation errors."""

    pass


class ModelCorruptionError(EmbeddingError):
    """Model files stayed corrupted after all cleanup-and-retry attempts."""

    pass


# ── Registry / configuration ────────────────────────────────────────────


class RegistryError(KBSearchError):
    """File/collection registry could not be read or written."""

    pass


class ConfigError(KBSearchError):
    """Configuration / validation errors."""

    pass
