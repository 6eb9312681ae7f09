"""
Event Bus - Pub/sub lifecycle events for flow runs.

Lets embedding code observe runs without touching the executor:
- Run lifecycle (started, completed, failed, cancelled)
- Node lifecycle (started, completed, failed, skipped, retry)
- Control flow (branch selected, loop iteration, loop limit exceeded)
- Recorder warnings (a sink failed to persist part of the trace)

Streamed model output does not travel over the bus; it goes through the
run's OutputEvent stream (RunHandle.events()).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"
    NODE_RETRY = "node_retry"

    # Control flow
    BRANCH_SELECTED = "branch_selected"
    LOOP_ITERATION = "loop_iteration"
    LOOP_LIMIT_EXCEEDED = "loop_limit_exceeded"

    # Recording
    RECORDER_WARNING = "recorder_warning"


@dataclass
class FlowEvent:
    """An event emitted during a flow run."""

    type: EventType
    run_id: str
    graph_id: str = ""
    node_id: str | None = None  # Which node emitted this event
    scope_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "scope_id": self.scope_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


# Type for event handlers
EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None  # Only receive events from this run
    filter_node: str | None = None  # Only receive events from this node


class EventBus:
    """
    Pub/sub event bus for run observation.

    Features:
    - Async event handling
    - Type-based subscriptions
    - Run/node filtering
    - Bounded event history for debugging

    Example:
        bus = EventBus()

        async def on_failed(event: FlowEvent):
            print(f"Node {event.node_id} failed: {event.data['error']}")

        bus.subscribe(event_types=[EventType.NODE_FAILED], handler=on_failed)

        handle = start_run(graph, {"question": "..."}, event_bus=bus)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        """
        Initialize event bus.

        Args:
            max_history: Maximum events to keep in history
            max_concurrent_handlers: Maximum concurrent handler executions
        """
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[FlowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when event occurs
            filter_run: Only receive events from this run
            filter_node: Only receive events from this node

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"

        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")

        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: FlowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        matching_handlers = [
            s.handler for s in self._subscriptions.values() if self._matches(s, event)
        ]
        if matching_handlers:
            await self._execute_handlers(event, matching_handlers)

    def _matches(self, subscription: Subscription, event: FlowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        return True

    async def _execute_handlers(
        self,
        event: FlowEvent,
        handlers: list[EventHandler],
    ) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === CONVENIENCE PUBLISHERS ===

    async def emit_run_started(
        self, run_id: str, graph_id: str, variables: dict[str, Any] | None = None
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                graph_id=graph_id,
                data={"variables": sorted((variables or {}).keys())},
            )
        )

    async def emit_run_finished(
        self,
        run_id: str,
        graph_id: str,
        status: str,
        error: str | None = None,
    ) -> None:
        """Emit the terminal run event matching ``status``."""
        if status == "cancelled":
            event_type = EventType.RUN_CANCELLED
        elif status == "failed":
            event_type = EventType.RUN_FAILED
        else:
            event_type = EventType.RUN_COMPLETED
        await self.publish(
            FlowEvent(
                type=event_type,
                run_id=run_id,
                graph_id=graph_id,
                data={"status": status, "error": error},
            )
        )

    async def emit_node_started(
        self, run_id: str, graph_id: str, node_id: str, scope_id: str, kind: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_STARTED,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                scope_id=scope_id,
                data={"kind": kind},
            )
        )

    async def emit_node_completed(
        self,
        run_id: str,
        graph_id: str,
        node_id: str,
        scope_id: str,
        attempts: int,
        latency_ms: int,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_COMPLETED,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                scope_id=scope_id,
                data={"attempts": attempts, "latency_ms": latency_ms},
            )
        )

    async def emit_node_failed(
        self, run_id: str, graph_id: str, node_id: str, scope_id: str, error: str, kind: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_FAILED,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                scope_id=scope_id,
                data={"error": error, "error_kind": kind},
            )
        )

    async def emit_node_skipped(
        self, run_id: str, graph_id: str, node_id: str, scope_id: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_SKIPPED,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                scope_id=scope_id,
            )
        )

    async def emit_node_retry(
        self,
        run_id: str,
        graph_id: str,
        node_id: str,
        retry_count: int,
        max_retries: int,
        error: str = "",
        delay: float = 0.0,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_RETRY,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                data={
                    "retry_count": retry_count,
                    "max_retries": max_retries,
                    "error": error,
                    "delay": delay,
                },
            )
        )

    async def emit_branch_selected(
        self, run_id: str, graph_id: str, node_id: str, scope_id: str, branch: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.BRANCH_SELECTED,
                run_id=run_id,
                graph_id=graph_id,
                node_id=node_id,
                scope_id=scope_id,
                data={"branch": branch},
            )
        )

    async def emit_loop_iteration(
        self, run_id: str, graph_id: str, loop_id: str, scope_id: str, index: int
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LOOP_ITERATION,
                run_id=run_id,
                graph_id=graph_id,
                node_id=loop_id,
                scope_id=scope_id,
                data={"index": index},
            )
        )

    async def emit_loop_limit_exceeded(
        self, run_id: str, graph_id: str, loop_id: str, max_iterations: int
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.LOOP_LIMIT_EXCEEDED,
                run_id=run_id,
                graph_id=graph_id,
                node_id=loop_id,
                data={"max_iterations": max_iterations},
            )
        )

    async def emit_recorder_warning(self, run_id: str, graph_id: str, warning: str) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.RECORDER_WARNING,
                run_id=run_id,
                graph_id=graph_id,
                data={"warning": warning},
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        node_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]

        if event_type:
            events = [e for e in events if e.type == event_type]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        if node_id:
            events = [e for e in events if e.node_id == node_id]

        return events[:limit]

    def get_stats(self) -> dict:
        """Get event bus statistics."""
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1

        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    # === WAITING OPERATIONS ===

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """
        Wait for a specific event to occur.

        Returns:
            The event if received, None if timeout
        """
        result: FlowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: FlowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_run=run_id,
            filter_node=node_id,
        )

        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()

            return result
        finally:
            self.unsubscribe(sub_id)
