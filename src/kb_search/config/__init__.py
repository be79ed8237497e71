"""Configuration for kb-search."""

from .settings import SearchSettings

__all__ = ["SearchSettings"]
