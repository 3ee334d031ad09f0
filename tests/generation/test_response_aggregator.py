"""Tests for streamed and whole-string reply aggregation."""

from __future__ import annotations

import asyncio
import contextvars
import json

import pytest

from questiongen.schemas.generation import ProgressEvent
from questiongen.services.generation.exceptions import (
    GenerationCancelled,
    ProviderUnknownError,
)
from questiongen.services.generation.response_aggregator import (
    RawResponseBuffer,
    ResponseAggregator,
    extract_delta,
)


async def _chunks(*items):
    for item in items:
        yield item


def _ndjson(*lines: dict) -> str:
    return "".join(json.dumps(line) + "\n" for line in lines)


@pytest.mark.asyncio
async def test_whole_string_reply_is_returned_as_is():
    aggregator = ResponseAggregator(provider="anthropic")

    assert await aggregator.aggregate('{"sections": []}') == '{"sections": []}'
    assert aggregator.terminal_metadata is None


@pytest.mark.asyncio
async def test_chunks_split_mid_line_are_reframed():
    payload = _ndjson(
        {"message": {"content": '{"sec'}, "done": False},
        {"response": 'tions": '},
        {"delta": "[]}"},
        {"done": True, "eval_count": 42},
    )
    pieces = [payload[i : i + 7] for i in range(0, len(payload), 7)]

    aggregator = ResponseAggregator(provider="ollama")
    text = await aggregator.aggregate(_chunks(*pieces))

    assert text == '{"sections": []}'
    assert aggregator.terminal_metadata == {"eval_count": 42}


@pytest.mark.asyncio
async def test_merged_lines_and_bytes_chunks():
    payload = _ndjson({"delta": "héllo "}, {"delta": "wörld"}, {"done": True}).encode()
    # Split inside a multi-byte character.
    split = payload.index("é".encode()) + 1

    aggregator = ResponseAggregator()
    text = await aggregator.aggregate(_chunks(payload[:split], payload[split:]))

    assert text == "héllo wörld"
    assert aggregator.buffer.chunk_count == 2


@pytest.mark.asyncio
async def test_undecodable_lines_are_skipped():
    stream = _chunks("not json\n", '["list"]\n', _ndjson({"delta": "ok"}, {"done": True}))

    aggregator = ResponseAggregator()

    assert await aggregator.aggregate(stream) == "ok"
    assert aggregator.skipped_lines == 2


@pytest.mark.asyncio
async def test_stream_without_done_marker_returns_buffer(caplog):
    aggregator = ResponseAggregator(provider="gemini")

    text = await aggregator.aggregate(_chunks('{"delta": "{\\"a\\""}\n', '{"delta": ": 1"}'))

    assert text == '{"a": 1'
    assert aggregator.terminal_metadata is None
    assert "without a done marker" in caplog.text


@pytest.mark.asyncio
async def test_lines_after_done_are_ignored():
    stream = _chunks(_ndjson({"delta": "a"}, {"done": True}, {"delta": "ignored"}))

    assert await ResponseAggregator().aggregate(stream) == "a"


@pytest.mark.asyncio
async def test_error_line_raises_provider_error():
    stream = _chunks(_ndjson({"delta": "partial"}, {"error": "model overloaded"}))

    with pytest.raises(ProviderUnknownError) as exc_info:
        await ResponseAggregator().aggregate(stream)
    assert "model overloaded" in exc_info.value.message


@pytest.mark.asyncio
async def test_progress_events_report_received_chars():
    events: list[ProgressEvent] = []
    stream = _chunks(_ndjson({"delta": "abc"}, {"delta": "de"}, {"done": True}))

    aggregator = ResponseAggregator(provider="ollama", attempt=2, progress_sink=events.append)
    await aggregator.aggregate(stream)

    assert [e.received_chars for e in events] == [3, 5]
    assert all(e.status == "streaming" and e.attempt == 2 for e in events)
    assert events[0].provider == "ollama"


@pytest.mark.asyncio
async def test_failing_sink_is_disabled_without_failing_the_stream(caplog):
    calls = 0

    async def sink(event):
        nonlocal calls
        calls += 1
        raise RuntimeError("connection closed")

    stream = _chunks(_ndjson({"delta": "a"}, {"delta": "b"}, {"done": True}))

    text = await ResponseAggregator(progress_sink=sink).aggregate(stream)

    assert text == "ab"
    assert calls == 1
    assert "disabling notifications" in caplog.text


@pytest.mark.asyncio
async def test_cancellation_mid_stream_stops_reading_and_closes_stream():
    cancel_event = asyncio.Event()
    first_delta = asyncio.Event()
    closed = False
    events: list[ProgressEvent] = []

    async def stream():
        nonlocal closed
        try:
            yield _ndjson({"delta": '{"sections": ['})
            await asyncio.Event().wait()
            yield _ndjson({"delta": "never"})
        finally:
            closed = True

    def sink(event):
        events.append(event)
        first_delta.set()

    aggregator = ResponseAggregator(progress_sink=sink, cancel_event=cancel_event)
    task = asyncio.create_task(aggregator.aggregate(stream()))

    await asyncio.wait_for(first_delta.wait(), timeout=1)
    cancel_event.set()

    with pytest.raises(GenerationCancelled):
        await asyncio.wait_for(task, timeout=1)
    assert closed is True
    assert len(events) == 1
    assert aggregator.cancelled is True


@pytest.mark.asyncio
async def test_preset_cancel_event_never_reads():
    cancel_event = asyncio.Event()
    cancel_event.set()
    reads = 0

    async def stream():
        nonlocal reads
        reads += 1
        yield _ndjson({"delta": "x"})

    with pytest.raises(GenerationCancelled):
        await ResponseAggregator(cancel_event=cancel_event).aggregate(stream())
    assert reads == 0


_stream_scope: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "stream_scope", default=None
)


async def _scoped_stream(*items, block_after_first: bool = False):
    # Mirrors SDK streams that bind a context variable for the stream's lifetime.
    token = _stream_scope.set("open")
    try:
        for item in items:
            yield item
            if block_after_first:
                await asyncio.Event().wait()
    finally:
        _stream_scope.reset(token)


@pytest.mark.asyncio
async def test_context_bound_stream_is_read_in_a_single_context():
    lines = _ndjson({"delta": "a"}, {"delta": "b"}, {"done": True}).splitlines(keepends=True)

    aggregator = ResponseAggregator(cancel_event=asyncio.Event())

    assert await aggregator.aggregate(_scoped_stream(*lines)) == "ab"
    assert aggregator.terminal_metadata == {}


@pytest.mark.asyncio
async def test_cancelling_a_context_bound_stream_closes_it_cleanly():
    cancel_event = asyncio.Event()
    first_delta = asyncio.Event()

    aggregator = ResponseAggregator(
        progress_sink=lambda event: first_delta.set(), cancel_event=cancel_event
    )
    task = asyncio.create_task(
        aggregator.aggregate(_scoped_stream(_ndjson({"delta": "x"}), block_after_first=True))
    )

    await asyncio.wait_for(first_delta.wait(), timeout=1)
    cancel_event.set()

    with pytest.raises(GenerationCancelled):
        await asyncio.wait_for(task, timeout=1)
    assert aggregator.buffer.text() == "x"


def test_extract_delta_shapes():
    assert extract_delta({"message": {"content": "a"}}) == "a"
    assert extract_delta({"response": "b"}) == "b"
    assert extract_delta({"delta": "c"}) == "c"
    assert extract_delta({"done": True}) is None
    assert extract_delta({"message": {"role": "assistant"}}) is None


def test_raw_response_buffer_tracks_length():
    buffer = RawResponseBuffer()
    buffer.append("ab")
    buffer.append("cde")

    assert buffer.text() == "abcde"
    assert len(buffer) == 5
    assert buffer.chunk_count == 2
