"""Run handle and run result returned to callers of start_run()."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from flowrun.runtime.execution_state import NodeStatus
from flowrun.runtime.stream_events import OutputEvent
from flowrun.runtime.trace_schemas import RunTrace, TokenUsage

if TYPE_CHECKING:
    from flowrun.graph.executor import FlowExecutor


class RunStatus(StrEnum):
    """Terminal status of a run."""

    SUCCEEDED = "succeeded"  # every answer path completed without node failures
    PARTIAL = "partial"  # an answer succeeded but some node failed
    FAILED = "failed"  # no answer succeeded (or the run timed out)
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    """Result of executing a flow graph."""

    run_id: str
    status: RunStatus
    outputs: dict[str, Any] = field(default_factory=dict)  # answer node id -> answer
    trace: RunTrace | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    node_states: dict[str, NodeStatus] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.PARTIAL)

    @property
    def answer(self) -> Any:
        """The answer when the graph has exactly one answer node that succeeded."""
        if len(self.outputs) == 1:
            return next(iter(self.outputs.values()))
        return None


class RunHandle:
    """
    Handle on a run started with start_run().

    Example:
        handle = start_run(graph, {"question": "What is RAG?"})
        async for event in handle.events():
            print(event.content, end="")
        result = await handle.result()
    """

    def __init__(self, executor: FlowExecutor, task: asyncio.Task):
        self._executor = executor
        self._task = task

    @property
    def run_id(self) -> str:
        return self._executor.run_id

    def events(self) -> AsyncIterator[OutputEvent]:
        """Forwarded partial and final output events, in presentation order."""
        return self._executor.aggregator.events()

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Request cancellation. In-flight nodes end cancelled; returns False if already requested."""
        return self._executor.cancel_token.cancel(reason)

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> RunResult:
        """Wait for the run to finish. Cancelling the waiter does not cancel the run."""
        return await asyncio.shield(self._task)
