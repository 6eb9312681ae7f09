"""
Flowrun - execution engine for AI agent flow graphs.

A flow is a directed graph of typed nodes (model calls, tools, retrieval,
HTTP, sandboxed code, conditions, loops, answers). The engine validates
the graph, runs independent branches concurrently, retries failing nodes
per policy, streams output from nodes that feed the answer, and records
a replayable trace of every node execution.

Example:
    from flowrun import FlowGraph, start_run

    graph = FlowGraph.model_validate_json(Path("flow.json").read_text())
    handle = start_run(graph, {"question": "What is RAG?"})
    async for event in handle.events():
        print(event.content, end="")
    result = await handle.result()
"""

from flowrun.config import RunOptions
from flowrun.errors import (
    FlowError,
    LoopLimitExceeded,
    NodeExecutionError,
    StructuralError,
    UnresolvedError,
)
from flowrun.graph import (
    EdgeCondition,
    EdgeSpec,
    FlowGraph,
    InputSocket,
    NodeKind,
    NodeSpec,
    OutputSocket,
    RetryPolicy,
    SocketType,
    ValueRef,
    validate_graph,
)
from flowrun.graph.executor import FlowExecutor, run_flow, start_run
from flowrun.runner.capabilities import Capabilities
from flowrun.runtime import (
    EventBus,
    EventType,
    InMemoryRunSink,
    NodeStatus,
    OutputEvent,
    RunHandle,
    RunResult,
    RunSink,
    RunStatus,
)
from flowrun.storage import FileRunStore

__all__ = [
    # Graph
    "FlowGraph",
    "NodeSpec",
    "NodeKind",
    "EdgeSpec",
    "EdgeCondition",
    "InputSocket",
    "OutputSocket",
    "RetryPolicy",
    "SocketType",
    "ValueRef",
    "validate_graph",
    # Execution
    "FlowExecutor",
    "start_run",
    "run_flow",
    "RunOptions",
    "Capabilities",
    "RunHandle",
    "RunResult",
    "RunStatus",
    "NodeStatus",
    "OutputEvent",
    # Observation
    "EventBus",
    "EventType",
    "RunSink",
    "InMemoryRunSink",
    "FileRunStore",
    # Errors
    "FlowError",
    "StructuralError",
    "UnresolvedError",
    "NodeExecutionError",
    "LoopLimitExceeded",
]
