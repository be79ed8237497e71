"""Progress reporting for model downloads, parsing, embedding and index builds.

``ProgressMessage`` is the one status contract shared by every consumer (UI
progress bars, the CLI, logs). Producers either emit messages directly or, for
model workers, emit a closed set of ``ProgressEvent`` variants that are decoded
once by ``event_to_message``.

Consumers subscribe through ``ProgressStream``, an asyncio fan-out where each
subscriber gets its own queue and optional filter (``quiet`` keeps only
terminal statuses). Anywhere a stream is accepted, a plain callable works too.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from loguru import logger
from rich.console import Console


class TaskType(str, Enum):
    MODEL_DOWNLOAD = "model_download"
    RERANKER_DOWNLOAD = "reranker_download"
    DOCUMENT_PARSE = "document_parse"
    DOCUMENT_SPLIT = "document_split"
    EMBEDDING_GENERATION = "embedding_generation"
    INDEX_REBUILD = "index_rebuild"
    KNOWLEDGE_BASE_BUILD = "knowledge_base_build"
    UNKNOWN = "unknown"


class ProgressStatus(str, Enum):
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    READY = "ready"


TERMINAL_STATUSES = frozenset(
    {ProgressStatus.COMPLETED, ProgressStatus.ERROR, ProgressStatus.READY}
)


@dataclass(frozen=True)
class ProgressMessage:
    """One progress update. ``progress`` is a percentage in [0, 100]."""

    task_type: TaskType
    status: ProgressStatus
    message: str
    progress: float | None = None
    file_name: str | None = None
    step: str | None = None
    processed_count: int | None = None
    total_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["task_type"] = self.task_type.value
        data["status"] = self.status.value
        return {k: v for k, v in data.items() if v is not None}


# ── Worker events ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class Initiate:
    file: str
    total: int | None = None


@dataclass(frozen=True)
class Download:
    file: str
    loaded: int
    total: int | None = None

    @property
    def percent(self) -> float | None:
        if not self.total:
            return None
        return min(100.0, 100.0 * self.loaded / self.total)


@dataclass(frozen=True)
class Done:
    file: str


@dataclass(frozen=True)
class Ready:
    model: str | None = None


@dataclass(frozen=True)
class Error:
    message: str


ProgressEvent = Initiate | Download | Done | Ready | Error


def event_to_message(event: ProgressEvent, task_type: TaskType) -> ProgressMessage:
    """Decode a worker event into the shared progress contract."""
    if isinstance(event, Initiate):
        return ProgressMessage(
            task_type,
            ProgressStatus.DOWNLOADING,
            f"Starting {event.file}",
            progress=0.0,
            file_name=event.file,
            total_count=event.total,
        )
    if isinstance(event, Download):
        percent = event.percent
        suffix = f" ({percent:.0f}%)" if percent is not None else ""
        return ProgressMessage(
            task_type,
            ProgressStatus.DOWNLOADING,
            f"Downloading {event.file}{suffix}",
            progress=percent,
            file_name=event.file,
            processed_count=event.loaded,
            total_count=event.total,
        )
    if isinstance(event, Done):
        return ProgressMessage(
            task_type,
            ProgressStatus.COMPLETED,
            f"Finished {event.file}",
            progress=100.0,
            file_name=event.file,
        )
    if isinstance(event, Ready):
        label = event.model or "model"
        return ProgressMessage(
            task_type, ProgressStatus.READY, f"{label} ready", progress=100.0
        )
    if isinstance(event, Error):
        return ProgressMessage(task_type, ProgressStatus.ERROR, event.message)
    raise TypeError(f"Unknown progress event: {event!r}")


# ── Delivery ────────────────────────────────────────────────────────────

ProgressSink = Callable[[ProgressMessage], Any]
ProgressFilter = Callable[[ProgressMessage], bool]


def quiet(message: ProgressMessage) -> bool:
    """Filter keeping only completed, error and ready messages."""
    return message.status in TERMINAL_STATUSES


def emit(sink: ProgressSink | None, message: ProgressMessage) -> None:
    """Deliver ``message`` to ``sink``; a failing sink never breaks the caller."""
    if sink is None:
        return
    try:
        sink(message)
    except Exception as e:
        logger.warning(f"Progress sink failed: {e}")


class _Closed:
    pass


_CLOSED = _Closed()


class ProgressSubscription:
    """Async iterator over the messages one subscriber accepted."""

    def __init__(
        self, stream: "ProgressStream", message_filter: ProgressFilter | None
    ) -> None:
        self._stream = stream
        self._filter = message_filter
        self._queue: asyncio.Queue[ProgressMessage | _Closed] = asyncio.Queue()

    def _offer(self, message: ProgressMessage) -> None:
        if self._filter is None or self._filter(message):
            self._queue.put_nowait(message)

    def _close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    def drain(self) -> list[ProgressMessage]:
        """Return every message queued so far without waiting."""
        drained = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, _Closed):
                self._queue.put_nowait(item)
                break
            drained.append(item)
        return drained

    def unsubscribe(self) -> None:
        self._stream._remove(self)
        self._close()

    def __aiter__(self) -> AsyncIterator[ProgressMessage]:
        return self

    async def __anext__(self) -> ProgressMessage:
        item = await self._queue.get()
        if isinstance(item, _Closed):
            self._queue.put_nowait(item)
            raise StopAsyncIteration
        return item


class ProgressStream:
    """Broadcasts progress messages to any number of asyncio subscribers.

    Example:
        stream = ProgressStream()
        updates = stream.subscribe(quiet)
        await indexer.refresh(progress=stream)
        stream.close()
        async for message in updates:
            print(message.status, message.message)
    """

    def __init__(self) -> None:
        self._subscriptions: list[ProgressSubscription] = []
        self._closed = False

    def subscribe(
        self, message_filter: ProgressFilter | None = None
    ) -> ProgressSubscription:
        subscription = ProgressSubscription(self, message_filter)
        if self._closed:
            subscription._close()
        else:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: ProgressSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, message: ProgressMessage) -> None:
        if self._closed:
            return
        for subscription in list(self._subscriptions):
            subscription._offer(message)

    __call__ = publish

    def close(self) -> None:
        """End every subscription's iteration once its queue is drained."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription._close()
        self._subscriptions.clear()

    @property
    def closed(self) -> bool:
        return self._closed


class ConsoleProgressReporter:
    """Prints progress messages to a rich console.

    Without ``verbose`` only terminal statuses and every tenth percent of a
    task are printed, so large rebuilds stay readable.
    """

    def __init__(self, console: Console, verbose: bool = False) -> None:
        self.console = console
        self.verbose = verbose
        self._last_bucket: dict[TaskType, int] = {}

    def __call__(self, message: ProgressMessage) -> None:
        if message.status is ProgressStatus.ERROR:
            self.console.print(f"  [red]✗[/red] {message.message}")
            return
        if message.status in TERMINAL_STATUSES:
            self.console.print(f"  [green]✓[/green] {message.message}")
            return

        if not self.verbose and message.progress is not None:
            bucket = int(message.progress // 10)
            if self._last_bucket.get(message.task_type) == bucket:
                return
            self._last_bucket[message.task_type] = bucket

        percent = f"{message.progress:5.1f}%" if message.progress is not None else "  ... "
        self.console.print(
            f"  [dim]{percent}[/dim] [cyan]{message.task_type.value}[/cyan] {message.message}"
        )
