"""Default configurations for kb-search."""

from pathlib import Path

# Directory (relative to the knowledge-base root) holding the store and registry
DATA_DIR_NAME = ".kb-search"

# LanceDB table holding every chunk
DOCUMENTS_TABLE = "documents"

# Name of the ANN index built on the vector column
VECTOR_INDEX_NAME = "vector_idx"

# File extensions the built-in text loader understands
DEFAULT_FILE_EXTENSIONS = [
    ".txt",
    ".md",
    ".markdown",
    ".rst",
    ".csv",
    ".log",
    ".json",
    ".html",
    ".htm",
]

# File type labels stored on each chunk
FILE_TYPE_MAPPINGS: dict[str, str] = {
    ".txt": "text",
    ".md": "markdown",
    ".markdown": "markdown",
    ".rst": "text",
    ".csv": "csv",
    ".log": "text",
    ".json": "json",
    ".html": "html",
    ".htm": "html",
}

# Default embedding models by use case
DEFAULT_EMBEDDING_MODELS = {
    "multilingual": "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
    "fast": "sentence-transformers/all-MiniLM-L6-v2",
    "precise": "BAAI/bge-m3",
}

DEFAULT_EMBEDDING_MODEL = DEFAULT_EMBEDDING_MODELS["multilingual"]

# Cross-encoder rerank models
DEFAULT_RERANKER_MODELS = {
    "base": "BAAI/bge-reranker-base",
    "v2-m3": "BAAI/bge-reranker-v2-m3",
}

DEFAULT_RERANKER_MODEL = DEFAULT_RERANKER_MODELS["base"]

# Known vector sizes, used before a model is loaded
MODEL_DIMENSIONS: dict[str, int] = {
    "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2": 384,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "BAAI/bge-m3": 1024,
}


def get_default_data_path(root: Path) -> Path:
    """Get the data directory for a knowledge-base root."""
    return root / DATA_DIR_NAME


def get_default_index_path(root: Path) -> Path:
    """Get the LanceDB directory for a knowledge-base root."""
    return root / DATA_DIR_NAME / "lancedb"


def get_default_registry_path(root: Path) -> Path:
    """Get the registry file path for a knowledge-base root."""
    return root / DATA_DIR_NAME / "registry.json"


def get_default_model_cache_path(root: Path) -> Path:
    """Get the model cache directory for a knowledge-base root."""
    return root / DATA_DIR_NAME / "models"


def get_default_config_path(root: Path) -> Path:
    """Get the YAML settings path for a knowledge-base root."""
    return root / DATA_DIR_NAME / "settings.yaml"


def get_file_type(extension: str) -> str:
    """Get the file type label from a file extension."""
    return FILE_TYPE_MAPPINGS.get(extension.lower(), "text")
