"""Tests for the exception hierarchy."""

import pytest

from kb_search.core.exceptions import (
    ConfigError,
    DatabaseError,
    DocumentAdditionError,
    DocumentLoadError,
    EmbeddingError,
    EmptyIndexError,
    IndexingError,
    KBSearchError,
    ModelCorruptionError,
    SchemaMismatchError,
    SearchError,
)


@pytest.mark.parametrize(
    "error_type,parent",
    [
        (SchemaMismatchError, DocumentAdditionError),
        (DocumentAdditionError, DatabaseError),
        (EmptyIndexError, SearchError),
        (DocumentLoadError, IndexingError),
        (ModelCorruptionError, EmbeddingError),
        (ConfigError, KBSearchError),
    ],
)
def test_hierarchy(error_type, parent):
    assert issubclass(error_type, parent)
    assert issubclass(error_type, KBSearchError)


def test_context_defaults_to_empty_dict():
    error = IndexingError("boom")
    assert str(error) == "boom"
    assert error.context == {}


def test_empty_index_error_keeps_keyword_context():
    error = EmptyIndexError(query="vector database")
    assert str(error) == "Knowledge base is empty"
    assert error.context == {"query": "vector database"}
