"""Shared fixtures."""

from pathlib import Path

import pytest

from tests.helpers import HashingEmbedder


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    """A few small documents on disk."""
    root = tmp_path / "docs"
    root.mkdir()
    (root / "lancedb-guide.md").write_text(
        "# LanceDB guide\n\nLanceDB stores vectors in Arrow tables.\n\n"
        "## Indexing\n\nAn IVF index partitions vectors for fast search.\n",
        encoding="utf-8",
    )
    (root / "meeting-notes.txt").write_text(
        "Budget meeting notes. The project cost was reviewed and approved.\n",
        encoding="utf-8",
    )
    (root / "向量数据库.md").write_text(
        "# 向量数据库\n\n向量数据库用于存储和检索嵌入向量。检索速度很快。\n",
        encoding="utf-8",
    )
    return root
