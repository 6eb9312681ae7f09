"""
Streaming Aggregator - Merges output from concurrently running nodes
into one ordered, node-tagged response stream.

Every emitted chunk goes through a single asyncio queue consumed by one
task, so presentation order is decided in exactly one place. Each chunk
is classified by the node that produced it:

- PRIMARY: the node lies on a path of live edges to a live answer node.
  Forwarded immediately, in arrival order.
- UNDETERMINED: the node reaches an answer only through a condition
  that has not resolved yet. Buffered.
- NONE: the node cannot reach a live answer. Kept in the trace only.

When statuses change the scheduler posts a Reclassify marker; buffered
nodes that became PRIMARY are flushed in original sequence order before
any later live chunk. Forwarded chunks are never retracted.
"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator, Callable
from enum import StrEnum

from flowrun.runtime.stream_events import (
    OutputEvent,
    OutputKind,
    Reclassify,
    StreamEnd,
    StreamItem,
)

logger = logging.getLogger(__name__)


class StreamClass(StrEnum):
    PRIMARY = "primary"
    UNDETERMINED = "undetermined"
    NONE = "none"


class StreamAggregator:
    """
    Single consumer of a run's output channel.

    Example:
        aggregator = StreamAggregator(classify=executor.classify_stream)
        aggregator.start()
        await aggregator.submit("llm", "root", "Hello")
        aggregator.reclassify()
        await aggregator.close()
        async for event in aggregator.events():
            ...
    """

    def __init__(self, classify: Callable[[str], StreamClass]):
        self._classify = classify
        self._inbox: asyncio.Queue[StreamItem] = asyncio.Queue()
        self._outbox: asyncio.Queue[OutputEvent | None] = asyncio.Queue()
        self._buffers: dict[str, list[OutputEvent]] = {}
        self._sequence = itertools.count()
        self._task: asyncio.Task | None = None
        self._closed = False

        self.forwarded: list[OutputEvent] = []
        self.dropped: list[OutputEvent] = []

    # === PRODUCER SIDE (scheduler task and node tasks) ===

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume(), name="stream-aggregator")

    async def submit(
        self, node_id: str, scope_id: str, content: str, kind: OutputKind = "token"
    ) -> OutputEvent:
        """Stamp a chunk with the next sequence number and queue it."""
        if self._closed:
            raise RuntimeError("Stream aggregator is closed")
        event = OutputEvent(
            node_id=node_id,
            scope_id=scope_id,
            sequence=next(self._sequence),
            content=content,
            kind=kind,
        )
        await self._inbox.put(event)
        return event

    def reclassify(self) -> None:
        if not self._closed:
            self._inbox.put_nowait(Reclassify())

    async def close(self) -> None:
        """Final reclassification, then end the output stream. Waits for the consumer."""
        if not self._closed:
            self._closed = True
            self._inbox.put_nowait(StreamEnd())
        if self._task is not None:
            await self._task

    # === CONSUMER SIDE ===

    async def events(self) -> AsyncIterator[OutputEvent]:
        """Forwarded events in presentation order; ends when the run ends."""
        while True:
            event = await self._outbox.get()
            if event is None:
                # Leave the sentinel for any later iterator
                self._outbox.put_nowait(None)
                return
            yield event

    async def _consume(self) -> None:
        while True:
            item = await self._inbox.get()
            if isinstance(item, OutputEvent):
                self._route(item)
            elif isinstance(item, Reclassify):
                self._flush_buffers(final=False)
            else:
                self._flush_buffers(final=True)
                self._outbox.put_nowait(None)
                return

    def _route(self, event: OutputEvent) -> None:
        stream_class = self._classify(event.node_id)
        if stream_class == StreamClass.PRIMARY:
            # Earlier buffered chunks of the same node go first
            if event.node_id in self._buffers:
                self._flush_buffers(final=False)
            self._forward(event)
        elif stream_class == StreamClass.UNDETERMINED:
            self._buffers.setdefault(event.node_id, []).append(event)
        else:
            self.dropped.append(event)

    def _flush_buffers(self, final: bool) -> None:
        confirmed: list[OutputEvent] = []
        for node_id in list(self._buffers):
            stream_class = self._classify(node_id)
            if stream_class == StreamClass.PRIMARY:
                confirmed.extend(self._buffers.pop(node_id))
            elif stream_class == StreamClass.NONE or final:
                dropped = self._buffers.pop(node_id)
                self.dropped.extend(dropped)
                logger.debug("Dropped %d buffered chunks from '%s'", len(dropped), node_id)

        for event in sorted(confirmed, key=lambda e: e.sequence):
            self._forward(event)

    def _forward(self, event: OutputEvent) -> None:
        self.forwarded.append(event)
        self._outbox.put_nowait(event)
