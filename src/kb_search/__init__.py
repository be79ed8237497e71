"""kb-search - hybrid retrieval and incremental indexing for document knowledge bases."""

__version__ = "0.3.0"

from .core.exceptions import EmptyIndexError, KBSearchError

__all__ = ["EmptyIndexError", "KBSearchError", "__version__"]
