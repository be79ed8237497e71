"""Core functionality for kb-search."""

from .exceptions import (
    ConfigError,
    DatabaseError,
    DatabaseInitializationError,
    DatabaseNotInitializedError,
    DocumentAdditionError,
    DocumentLoadError,
    EmbeddingError,
    EmptyIndexError,
    IndexCorruptionError,
    IndexingError,
    KBSearchError,
    ModelCorruptionError,
    QueryExpansionError,
    RegistryError,
    SchemaMismatchError,
    SearchError,
)

__all__ = [
    "ConfigError",
    "DatabaseError",
    "DatabaseInitializationError",
    "DatabaseNotInitializedError",
    "DocumentAdditionError",
    "DocumentLoadError",
    "EmbeddingError",
    "EmptyIndexError",
    "IndexCorruptionError",
    "IndexingError",
    "KBSearchError",
    "ModelCorruptionError",
    "QueryExpansionError",
    "RegistryError",
    "SchemaMismatchError",
    "SearchError",
]
