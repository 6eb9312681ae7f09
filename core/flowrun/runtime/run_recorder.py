"""RunRecorder: accumulates the execution trace and hands it to a sink.

Injected into FlowExecutor. Each node record is appended to the
in-memory RunTrace and written to the sink immediately, so a file sink
keeps everything up to the moment a process dies. The summary is
written once when the run ends.

Usage::

    store = FileRunStore(Path(work_dir) / "runs")
    handle = start_run(graph, variables, sink=store)
    result = await handle.result()
    # result.trace is the in-memory trace; store has persisted the same records

Safety: sink failures are caught, logged, and surfaced as warnings on the
RunResult. A failing sink never aborts or rolls back a run.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from flowrun.runtime.event_bus import EventBus
from flowrun.runtime.trace_schemas import NodeExecutionRecord, RunSummary, RunTrace

logger = logging.getLogger(__name__)


class RunSink(ABC):
    """Destination for trace records and run summaries."""

    @abstractmethod
    async def write_record(self, run_id: str, record: NodeExecutionRecord) -> None:
        """Persist one node execution record."""

    @abstractmethod
    async def write_summary(self, run_id: str, summary: RunSummary) -> None:
        """Persist the run summary. Called once per run."""


class InMemoryRunSink(RunSink):
    """Keeps records and summaries in memory. Useful for tests and embedding."""

    def __init__(self) -> None:
        self.records: dict[str, list[NodeExecutionRecord]] = {}
        self.summaries: dict[str, RunSummary] = {}

    async def write_record(self, run_id: str, record: NodeExecutionRecord) -> None:
        self.records.setdefault(run_id, []).append(record)

    async def write_summary(self, run_id: str, summary: RunSummary) -> None:
        self.summaries[run_id] = summary


class RunRecorder:
    """Owns a run's trace; forwards records and the summary to an optional sink."""

    def __init__(
        self,
        run_id: str,
        sink: RunSink | None = None,
        event_bus: EventBus | None = None,
        graph_id: str = "",
    ) -> None:
        self.run_id = run_id
        self.trace = RunTrace(run_id=run_id)
        self.warnings: list[str] = []
        self._sink = sink
        self._event_bus = event_bus
        self._graph_id = graph_id

    async def record(self, record: NodeExecutionRecord) -> None:
        """Append a record to the trace and write it to the sink."""
        self.trace.append(record)
        if self._sink is None:
            return
        try:
            await self._sink.write_record(self.run_id, record)
        except Exception as e:
            logger.exception(
                "Failed to write trace record for node '%s' (run_id=%s)",
                record.node_id,
                self.run_id,
            )
            await self._warn(f"sink failed to write record {record.node_id}@{record.scope_id}: {e}")

    async def finish(self, summary: RunSummary) -> None:
        """Write the run summary. Never raises."""
        if self._sink is None:
            return
        try:
            await self._sink.write_summary(self.run_id, summary)
        except Exception as e:
            logger.exception("Failed to write run summary (run_id=%s)", self.run_id)
            await self._warn(f"sink failed to write summary: {e}")

    async def _warn(self, warning: str) -> None:
        self.warnings.append(warning)
        if self._event_bus is not None:
            await self._event_bus.emit_recorder_warning(self.run_id, self._graph_id, warning)
