"""Component factory wiring a knowledge base together."""

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from ..config.defaults import (
    get_default_config_path,
    get_default_data_path,
    get_default_index_path,
    get_default_model_cache_path,
    get_default_registry_path,
)
from ..config.settings import SearchSettings
from .embeddings import EmbeddingProvider, create_embedding_function
from .indexer import KnowledgeBaseIndexer
from .lancedb_backend import DocumentStore
from .llm_client import LLMClient
from .loader import DocumentLoader
from .progress import ProgressSink
from .query_expander import CrossLanguageExpander, QueryExpander
from .registry import FileRegistry
from .reranker import CrossEncoderReranker
from .search import HybridSearchEngine

SYNONYMS_FILE = "synonyms.json"


@dataclass
class ComponentBundle:
    """Everything a command needs to search or index one knowledge base."""

    root: Path
    settings: SearchSettings
    store: DocumentStore
    embedding_function: EmbeddingProvider
    engine: HybridSearchEngine
    registry: FileRegistry
    indexer: KnowledgeBaseIndexer

    async def close(self) -> None:
        await self.engine.close()


async def create_components(
    root: Path,
    settings: SearchSettings | None = None,
    embedding_function: EmbeddingProvider | None = None,
    loader: DocumentLoader | None = None,
    llm_client: LLMClient | None = None,
    reranker: CrossEncoderReranker | None = None,
    progress: ProgressSink | None = None,
) -> ComponentBundle:
    """Create and initialize the standard components for ``root``.

    Args:
        root: Directory holding the ``.kb-search`` data directory
        settings: Tunables; read from ``.kb-search/settings.yaml`` when omitted
        embedding_function: Embedder; the sentence-transformers default when omitted
        loader: Document loader; the text loader when omitted
        llm_client: Client for query rewriting; configured from the environment when omitted
        reranker: Cross-encoder; the default model with the shared model cache when omitted
        progress: Sink for model download and indexing progress

    Returns:
        Initialized bundle (the store is connected, the registry loaded)
    """
    root = Path(root).resolve()
    settings = settings or SearchSettings.load(get_default_config_path(root))

    model_cache = get_default_model_cache_path(root)
    if embedding_function is None:
        embedding_function = create_embedding_function(
            cache_dir=model_cache,
            batch_size=settings.embedding_batch_size,
            load_timeout=settings.model_load_timeout,
            max_retries=settings.model_max_retries,
            progress=progress,
        )

    if reranker is None:
        reranker = CrossEncoderReranker(
            timeout=settings.rerank_timeout,
            cache_dir=model_cache,
            load_timeout=settings.model_load_timeout,
            max_retries=settings.model_max_retries,
            progress=progress,
        )

    store = DocumentStore(
        persist_directory=get_default_index_path(root),
        vector_index_min_rows=settings.vector_index_min_rows,
    )

    expander = None
    if settings.cross_language_enabled:
        expander = CrossLanguageExpander(
            llm_client or LLMClient(timeout=settings.llm_timeout),
            max_variants=settings.max_cross_language_variants,
        )

    engine = HybridSearchEngine(
        store,
        embedding_function,
        settings=settings,
        expander=expander,
        query_expander=QueryExpander(get_default_data_path(root) / SYNONYMS_FILE),
        reranker=reranker,
    )
    await engine.initialize()

    registry = FileRegistry(get_default_registry_path(root))
    registry.load()
    if registry.embedding_model and registry.embedding_model != embedding_function.model_name:
        logger.warning(
            f"Index was built with '{registry.embedding_model}' but "
            f"'{embedding_function.model_name}' is configured; run a rebuild"
        )

    indexer = KnowledgeBaseIndexer(engine, registry, loader=loader, settings=settings)
    return ComponentBundle(
        root=root,
        settings=settings,
        store=store,
        embedding_function=embedding_function,
        engine=engine,
        registry=registry,
        indexer=indexer,
    )
