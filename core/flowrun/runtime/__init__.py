"""Runtime state for flow runs: scopes, statuses, events, streaming, traces."""

from flowrun.runtime.cancellation import CancellationToken
from flowrun.runtime.context_store import ROOT_SCOPE, ContextStore, ScopeKind
from flowrun.runtime.event_bus import EventBus, EventType, FlowEvent
from flowrun.runtime.execution_state import ExecutionState, NodeStatus, RunPhase
from flowrun.runtime.run_handle import RunHandle, RunResult, RunStatus
from flowrun.runtime.run_recorder import InMemoryRunSink, RunRecorder, RunSink
from flowrun.runtime.stream_aggregator import StreamAggregator, StreamClass
from flowrun.runtime.stream_events import OutputEvent
from flowrun.runtime.trace_schemas import (
    AttemptRecord,
    ErrorInfo,
    NodeExecutionRecord,
    RunSummary,
    RunTrace,
    TokenUsage,
)

__all__ = [
    "CancellationToken",
    "ContextStore",
    "ROOT_SCOPE",
    "ScopeKind",
    "EventBus",
    "EventType",
    "FlowEvent",
    "ExecutionState",
    "NodeStatus",
    "RunPhase",
    "RunHandle",
    "RunResult",
    "RunStatus",
    "RunSink",
    "InMemoryRunSink",
    "RunRecorder",
    "StreamAggregator",
    "StreamClass",
    "OutputEvent",
    "AttemptRecord",
    "ErrorInfo",
    "NodeExecutionRecord",
    "RunSummary",
    "RunTrace",
    "TokenUsage",
]
