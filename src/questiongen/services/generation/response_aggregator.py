"""Aggregate a provider reply into the full response text.

Two reply shapes are supported:

* a complete ``str``, returned as-is;
* an async iterator of ``str``/``bytes`` chunks carrying newline-delimited
  JSON progress lines. Chunk boundaries are arbitrary, so lines are re-framed
  on ``\\n``. Each line carries a delta (``{"message": {"content": ...}}``,
  ``{"response": ...}`` or ``{"delta": ...}``) or a ``{"done": true}`` marker
  with terminal metadata.

The whole stream is read in one task that races the cancellation event. On
cancel that task is cancelled, the stream is closed and no further progress
events are emitted.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from questiongen.schemas.generation import ProgressEvent
from questiongen.services.generation.exceptions import (
    GenerationCancelled,
    ProviderUnknownError,
)
from questiongen.services.generation.interfaces import ProgressSink, ProviderReply


logger = logging.getLogger(__name__)


class RawResponseBuffer:
    """Accumulates deltas for one attempt."""

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._length = 0

    def append(self, delta: str) -> None:
        self._chunks.append(delta)
        self._length += len(delta)

    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def __len__(self) -> int:
        return self._length


def extract_delta(line: dict[str, Any]) -> str | None:
    """Pull the content delta out of one progress line, if it has one."""
    message = line.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    for key in ("response", "delta"):
        value = line.get(key)
        if isinstance(value, str):
            return value
    return None


class ResponseAggregator:
    """Turns one provider reply into text. One instance per attempt."""

    def __init__(
        self,
        provider: str = "",
        attempt: int = 1,
        progress_sink: ProgressSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.provider = provider
        self.attempt = attempt
        self.buffer = RawResponseBuffer()
        self.terminal_metadata: dict[str, Any] | None = None
        self.skipped_lines = 0
        self._progress_sink = progress_sink
        self._cancel_event = cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    async def aggregate(self, reply: ProviderReply) -> str:
        if isinstance(reply, str):
            return reply
        if isinstance(reply, bytes):
            return reply.decode("utf-8", errors="replace")
        return await self._consume(reply)

    async def _consume(self, stream: AsyncIterator[str | bytes]) -> str:
        if self._cancel_event is None:
            return await self._drain(stream)
        if self._cancel_event.is_set():
            await self._release(stream)
            raise GenerationCancelled("Cancelled before the stream was read")

        # The stream is read start to finish in one task: provider generators
        # enter and exit their context managers in the same context.
        drain = asyncio.ensure_future(self._drain(stream))
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({drain, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not drain.done():
                drain.cancel()
                await asyncio.wait({drain})

        if self._cancel_event.is_set():
            if not drain.cancelled():
                # Mark any late read error as retrieved; the text is discarded either way.
                drain.exception()
            logger.info(
                "Stream from %s cancelled after %d chars",
                self.provider or "provider",
                len(self.buffer),
            )
            raise GenerationCancelled("Cancelled while streaming")
        return drain.result()

    async def _drain(self, stream: AsyncIterator[str | bytes]) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        finished = False
        try:
            async for chunk in stream:
                pending += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
                *lines, pending = pending.split("\n")
                for line in lines:
                    if await self._handle_line(line):
                        finished = True
                        break
                if finished:
                    break

            if not finished:
                pending += decoder.decode(b"", final=True)
                if pending.strip():
                    finished = await self._handle_line(pending)
            if not finished:
                logger.warning(
                    "Stream from %s ended without a done marker after %d chars",
                    self.provider or "provider",
                    len(self.buffer),
                )
        finally:
            await self._release(stream)

        return self.buffer.text()

    async def _handle_line(self, raw_line: str) -> bool:
        """Process one line; returns True when the done marker was seen."""
        line = raw_line.strip()
        if not line:
            return False
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            logger.warning("Skipping undecodable stream line: %.80s", line)
            return False
        if not isinstance(data, dict):
            self.skipped_lines += 1
            return False

        if isinstance(data.get("error"), str):
            raise ProviderUnknownError(f"Stream error from provider: {data['error']}")

        delta = extract_delta(data)
        if delta:
            self.buffer.append(delta)
            await self._emit_progress()

        if data.get("done") is True:
            self.terminal_metadata = {
                k: v
                for k, v in data.items()
                if k not in {"message", "response", "delta", "done"}
            }
            logger.debug(
                "Stream from %s done: %d chars in %d chunks",
                self.provider or "provider",
                len(self.buffer),
                self.buffer.chunk_count,
            )
            return True
        return False

    async def _emit_progress(self) -> None:
        if self._progress_sink is None or self.cancelled:
            return
        event = ProgressEvent.model_validate(
            {
                "status": "streaming",
                "step": "generating",
                "provider": self.provider or None,
                "attempt": self.attempt,
                "received_chars": len(self.buffer),
            }
        )
        try:
            result = self._progress_sink(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # A failing sink (closed connection) is dropped for the rest of the attempt.
            logger.warning("Progress sink failed, disabling notifications: %s", e)
            self._progress_sink = None

    async def _release(self, stream: AsyncIterator[str | bytes]) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning("Failed to close provider stream: %s", e)
