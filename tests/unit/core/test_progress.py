"""Tests for progress events, the fan-out stream and the console reporter."""

import io

import pytest
from rich.console import Console

from kb_search.core.progress import (
    ConsoleProgressReporter,
    Done,
    Download,
    Error,
    Initiate,
    ProgressMessage,
    ProgressStatus,
    ProgressStream,
    Ready,
    TaskType,
    emit,
    event_to_message,
    quiet,
)


class TestEventDecoding:
    def test_download_percent(self):
        message = event_to_message(Download("model.bin", 50, 200), TaskType.MODEL_DOWNLOAD)
        assert message.status is ProgressStatus.DOWNLOADING
        assert message.progress == 25.0
        assert message.file_name == "model.bin"
        assert "25%" in message.message

    def test_download_without_total_has_no_percent(self):
        message = event_to_message(Download("model.bin", 50), TaskType.MODEL_DOWNLOAD)
        assert message.progress is None

    @pytest.mark.parametrize(
        ("event", "status"),
        [
            (Initiate("model.bin"), ProgressStatus.DOWNLOADING),
            (Done("model.bin"), ProgressStatus.COMPLETED),
            (Ready("bge-m3"), ProgressStatus.READY),
            (Error("boom"), ProgressStatus.ERROR),
        ],
    )
    def test_status_mapping(self, event, status):
        assert event_to_message(event, TaskType.RERANKER_DOWNLOAD).status is status

    def test_to_dict_omits_empty_fields(self):
        data = ProgressMessage(TaskType.INDEX_REBUILD, ProgressStatus.PROCESSING, "x").to_dict()
        assert data == {"task_type": "index_rebuild", "status": "processing", "message": "x"}


def _message(status: ProgressStatus, text: str = "m") -> ProgressMessage:
    return ProgressMessage(TaskType.DOCUMENT_PARSE, status, text)


class TestProgressStream:
    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_message(self):
        stream = ProgressStream()
        first = stream.subscribe()
        second = stream.subscribe()
        stream.publish(_message(ProgressStatus.PROCESSING, "a"))
        stream(_message(ProgressStatus.COMPLETED, "b"))
        stream.close()

        assert [m.message async for m in first] == ["a", "b"]
        assert [m.message async for m in second] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_quiet_filter_keeps_terminal_statuses(self):
        stream = ProgressStream()
        updates = stream.subscribe(quiet)
        for status in (ProgressStatus.PROCESSING, ProgressStatus.ERROR, ProgressStatus.READY):
            stream.publish(_message(status))
        stream.close()

        statuses = [m.status async for m in updates]
        assert statuses == [ProgressStatus.ERROR, ProgressStatus.READY]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        stream = ProgressStream()
        updates = stream.subscribe()
        updates.unsubscribe()
        stream.publish(_message(ProgressStatus.PROCESSING))
        assert [m async for m in updates] == []

    @pytest.mark.asyncio
    async def test_subscribe_after_close_ends_immediately(self):
        stream = ProgressStream()
        stream.close()
        assert stream.closed
        assert [m async for m in stream.subscribe()] == []

    @pytest.mark.asyncio
    async def test_drain_returns_queued_messages(self):
        stream = ProgressStream()
        updates = stream.subscribe()
        stream.publish(_message(ProgressStatus.PROCESSING, "a"))
        assert [m.message for m in updates.drain()] == ["a"]
        assert updates.drain() == []


def test_emit_ignores_failing_sink():
    def broken(message):
        raise RuntimeError("sink down")

    emit(broken, _message(ProgressStatus.PROCESSING))
    emit(None, _message(ProgressStatus.PROCESSING))


def test_console_reporter_throttles_to_ten_percent_steps():
    buffer = io.StringIO()
    reporter = ConsoleProgressReporter(Console(file=buffer, width=200), verbose=False)
    for percent in (1.0, 2.0, 3.0, 15.0):
        reporter(
            ProgressMessage(
                TaskType.EMBEDDING_GENERATION,
                ProgressStatus.PROCESSING,
                f"step {percent}",
                progress=percent,
            )
        )
    reporter(_message(ProgressStatus.COMPLETED, "all done"))

    output = buffer.getvalue()
    assert "step 1.0" in output
    assert "step 2.0" not in output
    assert "step 15.0" in output
    assert "all done" in output
