"""
Streaming Adapter — runs the execution core in a producer task and exposes
its progress as an async iterator of StreamEvents.

Terminal contract: a successful run ends with exactly one `done` event; a
failed run ends with exactly one `error` event and no `done`. Closing the
iterator early sets the cancellation signal; the core stops before its next
model or tool call, and tool calls already running finish (their undo
records are still written).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

from execution.engine import ExecutionCore
from shared.env import env_int
from shared.models import Command, ConfirmationApproval, ExecutionOptions, ExecutionResult, StreamEvent

logger = logging.getLogger(__name__)

_END = object()


def chunk_text(text: str, size: int) -> list[str]:
    if size <= 0 or len(text) <= size:
        return [text] if text else []
    return [text[i:i + size] for i in range(0, len(text), size)]


def to_ndjson(event: StreamEvent) -> str:
    return json.dumps(event.to_wire(), ensure_ascii=False, default=str) + "\n"


class CommandStream:
    """Async iterator over the events of one command run."""

    def __init__(
        self,
        core: ExecutionCore,
        command: Command,
        options: ExecutionOptions | None = None,
        approvals: Sequence[ConfirmationApproval] | None = None,
        system_preamble: str | None = None,
        queue_size: int = 64,
        chunk_size: int | None = None,
    ):
        self.core = core
        self.command = command
        self.options = options
        self.approvals = list(approvals or [])
        self.system_preamble = system_preamble
        self.chunk_size = chunk_size if chunk_size is not None else env_int("STREAM_CHUNK_SIZE", 80)
        self.cancel_event = asyncio.Event()
        self.result: ExecutionResult | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max(1, queue_size))
        self._producer: asyncio.Task | None = None
        self._finished = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce())
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            await self._producer
            raise StopAsyncIteration
        return item

    async def _emit(self, event: StreamEvent) -> None:
        if self.cancel_event.is_set():
            return
        await self._queue.put(event)

    async def _produce(self) -> None:
        try:
            result = await self.core.execute(
                self.command,
                options=self.options,
                approvals=self.approvals,
                emit=self._emit,
                cancel_event=self.cancel_event,
                system_preamble=self.system_preamble,
            )
            self.result = result
            for event in self._terminal_events(result):
                await self._emit(event)
        except Exception:
            logger.exception("Stream producer failed")
            await self._emit(StreamEvent(type="error", content="An error occurred while processing your command.", data={"kind": "internal"}))
        finally:
            if not self.cancel_event.is_set():
                await self._queue.put(_END)

    def _terminal_events(self, result: ExecutionResult) -> list[StreamEvent]:
        if not result.success:
            return [StreamEvent(type="error", content=result.error or result.response, data={"kind": result.error_kind})]

        events = [StreamEvent(type="response_delta", content=part) for part in chunk_text(result.response, self.chunk_size)]
        events.append(
            StreamEvent(
                type="response",
                content=result.response,
                data={
                    "toolCallsMade": [record.to_wire() for record in result.tool_calls_made],
                    "confirmation": result.confirmation.to_wire() if result.confirmation else None,
                    "undoBatchId": result.undo_batch_id,
                },
            )
        )
        events.append(StreamEvent(type="done"))
        return events

    async def aclose(self) -> None:
        """Consumer went away: cancel, drain, and wait for the producer."""
        if self._finished:
            return
        self._finished = True
        self.cancel_event.set()
        if self._producer is None:
            return
        # Frees a producer blocked on put; later emits are dropped once cancelled.
        while not self._queue.empty():
            self._queue.get_nowait()
        try:
            await self._producer
        except Exception as e:
            logger.warning("Stream producer raised after close: %s", e)

    async def ndjson(self) -> AsyncIterator[str]:
        """NDJSON frames; closes (and cancels) the run if the consumer stops early."""
        try:
            async for event in self:
                yield to_ndjson(event)
        finally:
            await self.aclose()
