"""Search and indexing settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from ..core.exceptions import ConfigError

ENV_PREFIX = "KB_SEARCH_"


@dataclass(frozen=True)
class SearchSettings:
    """Every tunable of the retrieval and indexing pipeline."""

    # Result counts
    default_k: int = 6
    max_k: int = 30

    # Relevance filter
    relevance_threshold: float = 0.25
    relevance_threshold_low: float = 0.1

    # Candidate breadth before fusion/filtering
    global_fetch_multiplier: int = 50
    filtered_fetch_multiplier: int = 20
    min_fetch_k: int = 100
    max_fetch_k: int = 500
    global_fetch_ratio: float = 0.10

    # Fusion / diversification
    rrf_k: int = 60
    mmr_enabled: bool = True
    mmr_lambda: float = 0.7

    # Caches
    query_cache_size: int = 256
    query_cache_ttl: float = 300.0
    doc_count_cache_ttl: float = 60.0

    # Query expansion and rerank
    cross_language_enabled: bool = True
    max_cross_language_variants: int = 4
    rerank_enabled: bool = False
    rerank_top_n: int = 50

    # Indexing
    embedding_batch_size: int = 64
    max_concurrent_files: int = 10
    document_batch_size: int = 50
    vector_index_min_rows: int = 500
    filename_scan_limit: int = 2000
    chunk_size: int = 800
    chunk_overlap: int = 100

    # Timeouts (seconds) and retries
    llm_timeout: float = 30.0
    model_load_timeout: float = 600.0
    rerank_timeout: float = 30.0
    model_max_retries: int = 2

    def __post_init__(self) -> None:
        if self.default_k <= 0 or self.max_k < self.default_k:
            raise ConfigError(
                f"Invalid result counts: default_k={self.default_k}, max_k={self.max_k}"
            )
        if not 0.0 <= self.relevance_threshold <= 1.0:
            raise ConfigError(
                f"relevance_threshold must be in [0, 1], got {self.relevance_threshold}"
            )
        if not 0.0 <= self.mmr_lambda <= 1.0:
            raise ConfigError(f"mmr_lambda must be in [0, 1], got {self.mmr_lambda}")
        if self.min_fetch_k > self.max_fetch_k:
            raise ConfigError(
                f"min_fetch_k ({self.min_fetch_k}) exceeds max_fetch_k ({self.max_fetch_k})"
            )
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigError("chunk_overlap must be smaller than chunk_size")

    def with_overrides(self, **overrides: Any) -> SearchSettings:
        """Return a copy with the given fields replaced (``None`` values ignored)."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    @classmethod
    def load(cls, path: Path) -> SearchSettings:
        """Load settings from a YAML file, then apply environment overrides.

        Args:
            path: Path to YAML settings file

        Returns:
            SearchSettings instance (defaults when the file does not exist)
        """
        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid settings file {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Settings file {path} must contain a mapping")

        return cls.from_dict(data).from_env()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SearchSettings:
        """Create settings from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        try:
            return cls(**{k: v for k, v in data.items() if k in known})
        except TypeError as e:
            raise ConfigError(f"Invalid settings: {e}") from e

    def from_env(self, environ: dict[str, str] | None = None) -> SearchSettings:
        """Apply ``KB_SEARCH_<FIELD>`` environment overrides.

        Example:
            KB_SEARCH_DEFAULT_K=8 KB_SEARCH_MMR_ENABLED=false
        """
        environ = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for f in fields(self):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.name, raw, type(getattr(self, f.name)))
        return self.with_overrides(**overrides)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(name: str, raw: str, target: type) -> Any:
    if target is bool:
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    try:
        return target(raw)
    except ValueError as e:
        raise ConfigError(
            f"{ENV_PREFIX}{name.upper()} must be {target.__name__}, got {raw!r}"
        ) from e
