"""Embedding generation and model lifecycle.

Model loading is single-flight: concurrent callers await the same load
instead of starting duplicate downloads. A load that fails with a known
"file is corrupt" signature goes through an explicit retry state machine::

    FRESH -> DOWNLOADING -> VERIFYING -> READY
                 ^              |
                 |          CORRUPTED -> CLEANUP --+
                 +---------------------------------+   (at most max_retries)
    any other failure, or retries exhausted -> FAILED
"""

import asyncio
import os
import shutil
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import numpy as np
from loguru import logger

from ..config.defaults import DEFAULT_EMBEDDING_MODEL, MODEL_DIMENSIONS
from .exceptions import EmbeddingError, ModelCorruptionError
from .progress import (
    Done,
    Error,
    Initiate,
    ProgressEvent,
    ProgressSink,
    Ready,
    TaskType,
    emit,
    event_to_message,
)

CORRUPTION_SIGNATURES = (
    "protobuf parsing failed",
    "failed to parse",
    "unexpected end of file",
    "invalid load key",
    "error while deserializing",
    "safetensors_rust.safetensorerror",
    "incomplete metadata",
)


def is_corruption_error(error: BaseException) -> bool:
    """True if the error looks like a truncated or corrupt model file."""
    message = f"{type(error).__name__}: {error}".lower()
    return any(signature in message for signature in CORRUPTION_SIGNATURES)


def _detect_device() -> str:
    """Detect optimal compute device (MPS > CUDA > CPU).

    Environment Variables:
        KB_SEARCH_DEVICE: Override device selection ("cpu", "cuda", or "mps")
    """
    import torch

    env_device = os.environ.get("KB_SEARCH_DEVICE", "").lower()
    if env_device in ("cpu", "cuda", "mps"):
        logger.info(f"Using device from environment override: {env_device}")
        return env_device

    if torch.backends.mps.is_available() and torch.backends.mps.is_built():
        logger.info("Apple Silicon detected. Using MPS for GPU-accelerated inference.")
        return "mps"

    if torch.cuda.is_available():
        gpu_name = torch.cuda.get_device_name(0)
        logger.info(f"Using CUDA backend for GPU acceleration ({gpu_name})")
        return "cuda"

    logger.info("Using CPU backend (no GPU acceleration)")
    return "cpu"


class ModelLoadState(str, Enum):
    FRESH = "fresh"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    READY = "ready"
    CORRUPTED = "corrupted"
    CLEANUP = "cleanup"
    FAILED = "failed"


ModelLoadFn = Callable[[str, str | None], Any]
ModelVerifyFn = Callable[[Any], None]


class ModelLoader:
    """Loads one model at most once, with bounded cleanup-and-retry on corruption.

    ``load_fn(model_name, cache_dir)`` and ``verify_fn(model)`` are blocking and
    run in a worker thread. ``get()`` may be awaited from any number of
    coroutines; they all share one in-flight load.
    """

    def __init__(
        self,
        model_name: str,
        load_fn: ModelLoadFn,
        task: str = "embedding",
        cache_dir: Path | None = None,
        verify_fn: ModelVerifyFn | None = None,
        max_retries: int = 2,
        timeout: float = 600.0,
        progress: ProgressSink | None = None,
    ) -> None:
        self.model_name = model_name
        self.cache_dir = cache_dir
        self.max_retries = max_retries
        self.timeout = timeout
        self.progress = progress
        self._load_fn = load_fn
        self._verify_fn = verify_fn
        self._task_type = (
            TaskType.RERANKER_DOWNLOAD if task == "reranker" else TaskType.MODEL_DOWNLOAD
        )
        self._model: Any = None
        self._inflight: asyncio.Future[Any] | None = None
        self._lock = asyncio.Lock()
        self.state = ModelLoadState.FRESH
        self.attempt = 0
        self.history: list[ModelLoadState] = [ModelLoadState.FRESH]

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    def _transition(self, state: ModelLoadState) -> None:
        logger.debug(f"Model {self.model_name}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def _emit(self, event: ProgressEvent) -> None:
        emit(self.progress, event_to_message(event, self._task_type))

    async def get(self) -> Any:
        """Return the loaded model, loading it on first use."""
        if self._model is not None:
            return self._model

        async with self._lock:
            if self._model is not None:
                return self._model
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.ensure_future(self._run())
            inflight = self._inflight

        return await asyncio.shield(inflight)

    def _cleanup_cache(self) -> None:
        """Remove cached files for this model so the next attempt re-downloads."""
        if self.cache_dir is None:
            logger.warning(f"No cache directory for {self.model_name}; retrying as-is")
            return
        slug = self.model_name.replace("/", "--")
        candidates = [
            self.cache_dir / f"models--{slug}",
            self.cache_dir / self.model_name.replace("/", "_"),
            self.cache_dir / self.model_name,
        ]
        for path in candidates:
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
                logger.info(f"Removed possibly corrupt model cache: {path}")

    async def _run(self) -> Any:
        cache_dir = str(self.cache_dir) if self.cache_dir else None
        self.attempt = 0

        while True:
            self._transition(ModelLoadState.DOWNLOADING)
            self._emit(Initiate(file=self.model_name))
            try:
                model = await asyncio.wait_for(
                    asyncio.to_thread(self._load_fn, self.model_name, cache_dir),
                    timeout=self.timeout,
                )
                self._transition(ModelLoadState.VERIFYING)
                if self._verify_fn is not None:
                    await asyncio.wait_for(
                        asyncio.to_thread(self._verify_fn, model), timeout=self.timeout
                    )
            except TimeoutError as e:
                self._fail(f"Loading {self.model_name} timed out after {self.timeout}s")
                raise EmbeddingError(
                    f"Model load timed out after {self.timeout}s",
                    {"model": self.model_name},
                ) from e
            except Exception as e:
                if is_corruption_error(e) and self.attempt < self.max_retries:
                    self.attempt += 1
                    self._transition(ModelLoadState.CORRUPTED)
                    logger.warning(
                        f"Model files for {self.model_name} look corrupt ({e}); "
                        f"cleaning cache and retrying ({self.attempt}/{self.max_retries})"
                    )
                    self._transition(ModelLoadState.CLEANUP)
                    await asyncio.to_thread(self._cleanup_cache)
                    continue

                if is_corruption_error(e):
                    message = (
                        f"Model {self.model_name} is still corrupted after "
                        f"{self.max_retries} re-downloads. Delete the model cache "
                        "and check your network connection."
                    )
                    self._fail(message)
                    raise ModelCorruptionError(message, {"model": self.model_name}) from e

                self._fail(f"Failed to load {self.model_name}: {e}")
                raise EmbeddingError(f"Failed to load model {self.model_name}: {e}") from e

            self._transition(ModelLoadState.READY)
            self._model = model
            self._emit(Done(file=self.model_name))
            self._emit(Ready(model=self.model_name))
            logger.info(f"Model {self.model_name} ready (attempt {self.attempt + 1})")
            return model

    def _fail(self, message: str) -> None:
        self._transition(ModelLoadState.FAILED)
        logger.error(message)
        self._emit(Error(message=message))


class EmbeddingProvider(Protocol):
    """What the search engine needs from an embedding backend."""

    @property
    def model_name(self) -> str: ...

    async def embed_documents(self, texts: list[str]) -> list[list[float]]: ...

    async def embed_query(self, text: str) -> list[float]: ...


class SentenceTransformerEmbeddingFunction:
    """Embeddings from a sentence-transformers model, loaded lazily and once."""

    def __init__(
        self,
        model_name: str | None = None,
        cache_dir: Path | None = None,
        batch_size: int = 64,
        timeout: float = 300.0,
        load_timeout: float = 600.0,
        max_retries: int = 2,
        progress: ProgressSink | None = None,
    ) -> None:
        """Initialize embedding function.

        Args:
            model_name: Name of the sentence transformer model
            cache_dir: Model download cache directory
            batch_size: Texts per encode call
            timeout: Timeout in seconds for one batch
            load_timeout: Timeout in seconds for download and load
            max_retries: Corruption retries (each with cache cleanup)
            progress: Sink for model download progress

        Environment Variables:
            KB_SEARCH_EMBEDDING_MODEL: Override embedding model (highest priority)
        """
        env_model = os.environ.get("KB_SEARCH_EMBEDDING_MODEL")
        if env_model:
            model_name = env_model
            logger.info(f"Using embedding model from environment: {model_name}")

        self._model_name = model_name or DEFAULT_EMBEDDING_MODEL
        self.batch_size = batch_size
        self.timeout = timeout
        self._dimension: int | None = None
        self._device: str | None = None
        self.loader = ModelLoader(
            self._model_name,
            self._load_model,
            task="embedding",
            cache_dir=cache_dir,
            verify_fn=self._verify_model,
            max_retries=max_retries,
            timeout=load_timeout,
            progress=progress,
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int | None:
        """Vector size: measured once the model has loaded, looked up before that."""
        return self._dimension or MODEL_DIMENSIONS.get(self._model_name)

    def _load_model(self, model_name: str, cache_dir: str | None) -> Any:
        from sentence_transformers import SentenceTransformer

        self._device = _detect_device()
        return SentenceTransformer(
            model_name, device=self._device, cache_folder=cache_dir
        )

    def _verify_model(self, model: Any) -> None:
        probe = model.encode(["ping"], convert_to_numpy=True, show_progress_bar=False)
        self._dimension = int(probe.shape[1])
        logger.info(
            f"Loaded embedding model {self._model_name} on {self._device} "
            f"with {self._dimension} dimensions"
        )

    def _encode(self, model: Any, texts: list[str]) -> list[list[float]]:
        vectors = model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype=np.float32).tolist()

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in a worker thread.

        Raises:
            EmbeddingError: On load failure, timeout or encode failure
        """
        if not texts:
            return []
        model = await self.loader.get()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._encode, model, texts), timeout=self.timeout
            )
        except TimeoutError as e:
            logger.error(
                f"Embedding generation timed out after {self.timeout}s "
                f"for batch of {len(texts)} texts"
            )
            raise EmbeddingError(
                f"Embedding generation timed out after {self.timeout}s"
            ) from e
        except Exception as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise EmbeddingError(f"Failed to generate embeddings: {e}") from e

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed_documents([text]))[0]


def create_embedding_function(
    model_name: str | None = None,
    cache_dir: Path | None = None,
    batch_size: int = 64,
    load_timeout: float = 600.0,
    max_retries: int = 2,
    progress: ProgressSink | None = None,
) -> SentenceTransformerEmbeddingFunction:
    """Create the default embedding function.

    Environment Variables:
        KB_SEARCH_EMBEDDING_MODEL: Override embedding model (highest priority)
    """
    return SentenceTransformerEmbeddingFunction(
        model_name,
        cache_dir=cache_dir,
        batch_size=batch_size,
        load_timeout=load_timeout,
        max_retries=max_retries,
        progress=progress,
    )
