"""
Flow Executor - Runs flow graphs.

The executor:
1. Validates the graph into a GraphPlan
2. Initializes the context store with the run's variables
3. Repeatedly promotes pending nodes whose inbound edges are decided,
   dispatches every ready node as its own task, and applies results
4. Runs loop regions as units, one iteration scope at a time
   (or concurrently for parallel for-each loops)
5. Feeds streamed output to the aggregator and records a trace
6. Returns a RunResult

Readiness (per region, loop-back edges ignored):

    edge from a succeeded source   -> live (dead if its branch was not selected)
    edge from a failed source      -> live for on_failure/always, blocked for on_success
    edge from a skipped source     -> dead
    edge from a cancelled source   -> blocked for on_success, dead otherwise

    any undecided inbound edge -> wait
    any blocked inbound edge   -> skipped
    any live inbound edge      -> ready
    otherwise                  -> skipped
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from flowrun.config import RunOptions
from flowrun.errors import (
    LoopIterationFailed,
    LoopLimitExceeded,
    MissingInputError,
    NodeExecutionError,
    RunCancelled,
    UnresolvedError,
)
from flowrun.graph.edge import EdgeCondition, EdgeSpec, FlowGraph
from flowrun.graph.node import NodeKind, NodeSpec, ValueRef
from flowrun.graph.retry import error_info, execute_with_retry
from flowrun.graph.validator import GraphPlan, LoopRegion, validate_graph
from flowrun.nodes import default_executors
from flowrun.nodes.base import LoopFrame, NodeContext, NodeExecutor, NodeResult
from flowrun.nodes.loop import LoopStartExecutor
from flowrun.observability import set_trace_context
from flowrun.runner.capabilities import Capabilities
from flowrun.runtime.cancellation import CancellationToken
from flowrun.runtime.context_store import ContextStore, ScopeKind
from flowrun.runtime.event_bus import EventBus
from flowrun.runtime.execution_state import ExecutionState, NodeStatus, RunPhase
from flowrun.runtime.run_handle import RunHandle, RunResult, RunStatus
from flowrun.runtime.run_recorder import RunRecorder, RunSink
from flowrun.runtime.stream_aggregator import StreamAggregator, StreamClass
from flowrun.runtime.trace_schemas import (
    NodeExecutionRecord,
    RunSummary,
    TokenUsage,
    utc_now_iso,
)


def new_run_id() -> str:
    """Sortable run id, e.g. '20250101T120000_abc12345'."""
    ts = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"{ts}_{uuid.uuid4().hex[:8]}"


class EdgeState(StrEnum):
    UNKNOWN = "unknown"
    LIVE = "live"
    DEAD = "dead"
    BLOCKED = "blocked"


def edge_state(edge: EdgeSpec, state: ExecutionState) -> EdgeState:
    """Decide an edge from its source's status (and selected branch)."""
    source = state.status(edge.source)
    if not source.is_terminal:
        return EdgeState.UNKNOWN

    if edge.condition == EdgeCondition.ON_FAILURE:
        return EdgeState.LIVE if source == NodeStatus.FAILED else EdgeState.DEAD

    if edge.condition == EdgeCondition.ALWAYS:
        if source in (NodeStatus.SUCCEEDED, NodeStatus.FAILED):
            return EdgeState.LIVE
        return EdgeState.DEAD

    # on_success
    if source == NodeStatus.SUCCEEDED:
        if edge.branch is not None and state.branch(edge.source) != edge.branch:
            return EdgeState.DEAD
        return EdgeState.LIVE
    if source == NodeStatus.SKIPPED:
        return EdgeState.DEAD
    return EdgeState.BLOCKED


@dataclass
class NodeRun:
    """Mutable bookkeeping for one node execution in one scope."""

    node: NodeSpec
    scope_id: str
    started_at: str | None = None
    t0: float = 0.0
    inputs: dict[str, Any] = field(default_factory=dict)
    attempts: list = field(default_factory=list)
    partial: list[str] = field(default_factory=list)
    result: NodeResult | None = None
    error: NodeExecutionError | None = None
    status: NodeStatus | None = None
    ended_at: str | None = None
    duration_ms: int = 0

    def finish(self) -> None:
        self.ended_at = utc_now_iso()
        self.duration_ms = int((time.monotonic() - self.t0) * 1000)


@dataclass
class LoopRun:
    """Outcome of running a loop region as a unit."""

    region: LoopRegion
    scope_id: str
    started_at: str | None = None
    t0: float = 0.0
    inputs: dict[str, Any] = field(default_factory=dict)
    iterations: int = 0
    start_status: NodeStatus = NodeStatus.SUCCEEDED
    end_status: NodeStatus = NodeStatus.SUCCEEDED
    error: NodeExecutionError | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    ended_at: str | None = None
    duration_ms: int = 0

    def finish(self) -> None:
        self.ended_at = utc_now_iso()
        self.duration_ms = int((time.monotonic() - self.t0) * 1000)


class FlowExecutor:
    """
    Executes one run of a flow graph.

    Example:
        executor = FlowExecutor(
            graph,
            capabilities=Capabilities(model=LiteLLMInvoker()),
            options=RunOptions(max_parallel_nodes=4),
        )
        result = await executor.run({"question": "What is RAG?"})
    """

    def __init__(
        self,
        graph: FlowGraph,
        *,
        plan: GraphPlan | None = None,
        capabilities: Capabilities | None = None,
        options: RunOptions | None = None,
        sink: RunSink | None = None,
        event_bus: EventBus | None = None,
        executors: dict[NodeKind, NodeExecutor] | None = None,
        run_id: str | None = None,
    ):
        self.graph = graph
        self.plan = plan or validate_graph(graph)
        self.capabilities = capabilities or Capabilities()
        self.options = options or RunOptions()
        self.executors = executors or default_executors()
        self.run_id = run_id or new_run_id()
        self.cancel_token = CancellationToken()
        self.recorder = RunRecorder(self.run_id, sink, event_bus, graph.id)
        self.aggregator = StreamAggregator(self.classify_stream)
        self.phase = RunPhase.INITIALIZED
        self.logger = logging.getLogger(__name__)

        self._event_bus = event_bus
        self._slots = asyncio.Semaphore(self.options.concurrency_limit)
        self._store = ContextStore()
        self._top_state: ExecutionState | None = None
        self._body_status: dict[str, NodeStatus] = {}
        self._timed_out = False
        self._fail_fast = False

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, initial_variables: dict[str, Any] | None = None) -> RunResult:
        """Execute the graph to completion, failure, or cancellation."""
        if self.phase != RunPhase.INITIALIZED:
            raise RuntimeError(f"Run {self.run_id} was already started")
        self.phase = RunPhase.RUNNING

        started_at = utc_now_iso()
        t0 = time.monotonic()
        set_trace_context(run_id=self.run_id, graph_id=self.graph.id)

        self._store = ContextStore(initial_variables)
        self.aggregator.start()
        self._top_state = ExecutionState(self._region_nodes(None))

        timeout_handle = None
        if self.options.global_timeout:
            timeout_handle = asyncio.get_running_loop().call_later(
                self.options.global_timeout, self._on_global_timeout
            )

        self.logger.info(f"🚀 Starting run {self.run_id} of graph '{self.graph.id}'")
        if self._event_bus:
            await self._event_bus.emit_run_started(
                self.run_id, self.graph.id, initial_variables
            )

        error: str | None = None
        internal_failure = False
        try:
            await self._run_region(None, self._store.root_id, self._top_state)
        except Exception as e:
            self.logger.exception(f"❌ Run {self.run_id} aborted by an internal error")
            error = f"Internal error: {e}"
            internal_failure = True
        finally:
            if timeout_handle is not None:
                timeout_handle.cancel()

        status, error = self._final_status(error, internal_failure)
        self.phase = {
            RunStatus.SUCCEEDED: RunPhase.COMPLETED,
            RunStatus.PARTIAL: RunPhase.COMPLETED,
            RunStatus.FAILED: RunPhase.FAILED,
            RunStatus.CANCELLED: RunPhase.CANCELLED,
        }[status]

        await self.aggregator.close()

        outputs = self._collect_outputs()
        node_states = self._node_states()
        usage = self.recorder.trace.total_usage()
        duration_ms = int((time.monotonic() - t0) * 1000)

        summary = RunSummary(
            run_id=self.run_id,
            graph_id=self.graph.id,
            graph_version=self.graph.version,
            status=status.value,
            error=error,
            started_at=started_at,
            ended_at=utc_now_iso(),
            duration_ms=duration_ms,
            usage=usage,
            node_states={k: v.value for k, v in node_states.items()},
            total_records=len(self.recorder.trace),
            failed_nodes=[k for k, v in node_states.items() if v == NodeStatus.FAILED],
            outputs=outputs,
        )
        await self.recorder.finish(summary)

        if status in (RunStatus.SUCCEEDED, RunStatus.PARTIAL):
            self.logger.info(
                f"✓ Run {self.run_id} {status} "
                f"({len(self.recorder.trace)} records, {usage.total_tokens} tokens, {duration_ms}ms)"
            )
        else:
            self.logger.warning(f"✗ Run {self.run_id} {status}: {error}")
        if self._event_bus:
            await self._event_bus.emit_run_finished(self.run_id, self.graph.id, status, error)

        return RunResult(
            run_id=self.run_id,
            status=status,
            outputs=outputs,
            trace=self.recorder.trace,
            usage=usage,
            node_states=node_states,
            warnings=list(self.recorder.warnings),
            error=error,
            duration_ms=duration_ms,
        )

    def _on_global_timeout(self) -> None:
        self._timed_out = True
        self.cancel_token.cancel(f"global timeout after {self.options.global_timeout}s")

    def _final_status(
        self, error: str | None, internal_failure: bool
    ) -> tuple[RunStatus, str | None]:
        state = self._top_state
        answers = self.graph.answer_nodes()
        succeeded = [a for a in answers if state.status(a) == NodeStatus.SUCCEEDED]

        if internal_failure:
            return RunStatus.FAILED, error
        if self._timed_out:
            return RunStatus.FAILED, f"Run exceeded global timeout of {self.options.global_timeout}s"
        if self.cancel_token.cancelled:
            return RunStatus.CANCELLED, self.cancel_token.reason
        if not succeeded:
            failed = [n for n, s in self._node_states().items() if s == NodeStatus.FAILED]
            return RunStatus.FAILED, f"No answer node succeeded (failed nodes: {failed})"
        if any(s == NodeStatus.FAILED for s in self._node_states().values()):
            return RunStatus.PARTIAL, None
        return RunStatus.SUCCEEDED, None

    def _collect_outputs(self) -> dict[str, Any]:
        outputs = {}
        for answer_id in self.graph.answer_nodes():
            if self._top_state.status(answer_id) != NodeStatus.SUCCEEDED:
                continue
            try:
                outputs[answer_id] = self._store.resolve(
                    ValueRef(node=answer_id, key="answer"), self._store.root_id
                )
            except UnresolvedError:
                continue
        return outputs

    def _node_states(self) -> dict[str, NodeStatus]:
        states = {**self._body_status, **self._top_state.as_dict()}
        missing = NodeStatus.CANCELLED if self.cancel_token.cancelled else NodeStatus.SKIPPED
        return {n.id: states.get(n.id, missing) for n in self.graph.nodes}

    # ------------------------------------------------------------------
    # Regions
    # ------------------------------------------------------------------

    def _region_nodes(self, loop_id: str | None) -> list[str]:
        """Node ids tracked by a region's state, in declaration order."""
        members = list(self.plan.region_members(loop_id))
        if loop_id is not None:
            members.append(self.plan.loops[loop_id].start)
        for nid in list(members):
            if nid in self.plan.loops and nid != loop_id:
                members.append(self.plan.loops[nid].end)
        return sorted(set(members), key=self.graph.node_order)

    def _is_loop_unit(self, node_id: str, loop_id: str | None) -> bool:
        return node_id in self.plan.loops and node_id != loop_id

    def _nested_end_ids(self, state_ids: list[str], loop_id: str | None) -> set[str]:
        return {
            self.plan.loops[nid].end for nid in state_ids if self._is_loop_unit(nid, loop_id)
        }

    async def _run_region(
        self,
        loop_id: str | None,
        scope_id: str,
        state: ExecutionState,
        frame: LoopFrame | None = None,
    ) -> None:
        """
        Schedule a region until nothing is pending, ready or running.

        The top-level region is the whole graph minus loop bodies; each loop
        iteration runs its body as a region of its own.
        """
        node_ids = list(state.as_dict())
        nested_ends = self._nested_end_ids(node_ids, loop_id)
        tasks: dict[asyncio.Task, tuple[str, NodeRun | LoopRun]] = {}
        cancel_wait = asyncio.create_task(self.cancel_token.wait())

        try:
            while True:
                await self._promote(state, loop_id, scope_id, nested_ends)

                if self.cancel_token.cancelled:
                    break
                if loop_id is None and self._answers_exhausted(state):
                    self._fail_fast = True
                    self.logger.warning("⚠ No answer node can still succeed; stopping run")
                    break

                for nid in state.with_status(NodeStatus.READY):
                    state.transition(nid, NodeStatus.RUNNING)
                    if self._is_loop_unit(nid, loop_id):
                        run: NodeRun | LoopRun = LoopRun(region=self.plan.loops[nid], scope_id=scope_id)
                        coro = self._run_loop(run)
                    else:
                        run = NodeRun(node=self.graph.get_node(nid), scope_id=scope_id)
                        node_frame = frame if nid == loop_id else None
                        coro = self._run_node(run, node_frame)
                    tasks[asyncio.create_task(coro, name=f"node:{nid}@{scope_id}")] = (nid, run)

                if not tasks:
                    break

                done, _ = await asyncio.wait(
                    [*tasks, cancel_wait], return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is cancel_wait:
                        continue
                    nid, run = tasks.pop(task)
                    await self._apply(state, nid, run, task)
                self.aggregator.reclassify()
        finally:
            cancel_wait.cancel()
            if tasks:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                for task, (nid, run) in tasks.items():
                    await self._apply(state, nid, run, task)
            for nid in state.with_status(NodeStatus.PENDING, NodeStatus.READY):
                state.settle(nid, NodeStatus.CANCELLED)
            self.aggregator.reclassify()

    def _answers_exhausted(self, state: ExecutionState) -> bool:
        answers = self.graph.answer_nodes()
        return all(
            state.status(a).is_terminal and state.status(a) != NodeStatus.SUCCEEDED
            for a in answers
        ) and any(not state.status(n).is_terminal for n in state.as_dict())

    async def _promote(
        self,
        state: ExecutionState,
        loop_id: str | None,
        scope_id: str,
        nested_ends: set[str],
    ) -> None:
        """Promote pending nodes to ready or skipped until nothing changes."""
        changed = True
        while changed:
            changed = False
            for nid in state.with_status(NodeStatus.PENDING):
                if nid in nested_ends:
                    continue  # decided by its loop unit
                if nid == loop_id:
                    state.transition(nid, NodeStatus.READY)
                    changed = True
                    continue

                states = [edge_state(e, state) for e in self.graph.get_incoming_edges(nid)]
                if EdgeState.UNKNOWN in states:
                    continue
                if not states or (
                    EdgeState.LIVE in states and EdgeState.BLOCKED not in states
                ):
                    state.transition(nid, NodeStatus.READY)
                else:
                    state.transition(nid, NodeStatus.SKIPPED)
                    if self._is_loop_unit(nid, loop_id):
                        state.settle(self.plan.loops[nid].end, NodeStatus.SKIPPED)
                    self.logger.info(f"   ⊘ Skipped {nid}")
                    if self._event_bus:
                        await self._event_bus.emit_node_skipped(
                            self.run_id, self.graph.id, nid, scope_id
                        )
                changed = True

    async def _apply(
        self,
        state: ExecutionState,
        node_id: str,
        run: NodeRun | LoopRun,
        task: asyncio.Task,
    ) -> None:
        """Fold a finished (or cancelled) node task into the region state and trace."""
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

        if isinstance(run, LoopRun):
            end_id = run.region.end
            if task.cancelled():
                state.settle(node_id, NodeStatus.CANCELLED)
                state.settle(end_id, NodeStatus.CANCELLED)
            else:
                state.transition(node_id, run.start_status)
                state.settle(end_id, run.end_status)
            return

        status = NodeStatus.CANCELLED if task.cancelled() else run.status
        state.transition(node_id, status)
        if status == NodeStatus.SUCCEEDED and run.result.branch is not None:
            state.set_branch(node_id, run.result.branch)
            if self._event_bus:
                await self._event_bus.emit_branch_selected(
                    self.run_id, self.graph.id, node_id, run.scope_id, run.result.branch
                )
        if run.started_at is not None:
            await self.recorder.record(self._node_record(run, status))

        if self._event_bus and run.started_at is not None:
            if status == NodeStatus.SUCCEEDED:
                await self._event_bus.emit_node_completed(
                    self.run_id,
                    self.graph.id,
                    node_id,
                    run.scope_id,
                    attempts=len(run.attempts),
                    latency_ms=int((time.monotonic() - run.t0) * 1000),
                )
            elif status == NodeStatus.FAILED:
                await self._event_bus.emit_node_failed(
                    self.run_id,
                    self.graph.id,
                    node_id,
                    run.scope_id,
                    error=str(run.error),
                    kind=run.error.kind,
                )

    def _node_record(self, run: NodeRun, status: NodeStatus) -> NodeExecutionRecord:
        if run.ended_at is None:
            run.finish()
        result = run.result
        return NodeExecutionRecord(
            node_id=run.node.id,
            node_kind=run.node.kind.value,
            scope_id=run.scope_id,
            started_at=run.started_at,
            ended_at=run.ended_at,
            duration_ms=run.duration_ms,
            status=status.value,
            input_snapshot=run.inputs,
            output_snapshot=result.outputs if result and status == NodeStatus.SUCCEEDED else {},
            error=error_info(run.error) if run.error is not None else None,
            attempts=run.attempts,
            usage=(result.usage if result and result.usage else TokenUsage()),
            branch=result.branch if result else None,
            partial_outputs=list(run.partial),
            is_partial=status == NodeStatus.CANCELLED,
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _resolve_inputs(self, node: NodeSpec, scope_id: str) -> dict[str, Any]:
        """
        Resolve every input socket from the caller's scope chain.

        Precedence: ``ref``, then data edges in declaration order, then the
        literal ``value`` (only for sockets nothing feeds), then ``default``.

        Raises:
            MissingInputError: a required input resolved to nothing
        """
        feeds: dict[str, list[EdgeSpec]] = {}
        for edge in self.graph.get_incoming_edges(node.id):
            if edge.carries_data:
                feeds.setdefault(edge.target_socket, []).append(edge)

        inputs: dict[str, Any] = {}
        for socket in node.inputs:
            refs = [socket.ref] if socket.ref is not None else []
            refs += [ValueRef(node=e.source, key=e.source_socket) for e in feeds.get(socket.name, [])]

            found, value = False, None
            for ref in refs:
                try:
                    value = self._store.resolve(ref, scope_id)
                    found = True
                    break
                except UnresolvedError:
                    continue

            if not found:
                if not refs and socket.value is not None:
                    value, found = socket.value, True
                elif socket.default is not None:
                    value, found = socket.default, True

            if not found and socket.required:
                sources = ", ".join(str(r) for r in refs) or "no source"
                raise MissingInputError(
                    f"Node '{node.id}' required input '{socket.name}' is unresolved ({sources})"
                )
            inputs[socket.name] = value
        return inputs

    async def _run_node(self, run: NodeRun, frame: LoopFrame | None = None) -> None:
        """Execute one node in its own branch scope. Results land on ``run``."""
        node = run.node
        set_trace_context(node_id=node.id, scope_id=run.scope_id)
        executor = self.executors[node.kind]

        async with self._slots:
            run.started_at = utc_now_iso()
            run.t0 = time.monotonic()
            branch_scope = self._store.push_scope(ScopeKind.BRANCH, run.scope_id, node_id=node.id)
            self.logger.info(f"▶ {node.label} ({node.kind})")
            if self._event_bus:
                await self._event_bus.emit_node_started(
                    self.run_id, self.graph.id, node.id, run.scope_id, node.kind.value
                )

            async def emit(content: str, kind: str = "token") -> None:
                run.partial.append(content)
                await self.aggregator.submit(node.id, run.scope_id, content, kind)

            async def attempt(number: int) -> NodeResult:
                ctx = NodeContext(
                    run_id=self.run_id,
                    graph_id=self.graph.id,
                    scope_id=run.scope_id,
                    capabilities=self.capabilities,
                    variables=self._store.variables(),
                    default_model=self.options.default_model,
                    attempt=number,
                    loop=frame,
                    cancel_token=self.cancel_token,
                )
                return await executor.execute(node, run.inputs, emit, ctx)

            async def on_retry(retry: int, delay: float, error: NodeExecutionError) -> None:
                if self._event_bus:
                    await self._event_bus.emit_node_retry(
                        self.run_id,
                        self.graph.id,
                        node.id,
                        retry_count=retry,
                        max_retries=node.retry.max_retries,
                        error=str(error),
                        delay=delay,
                    )

            try:
                run.inputs = self._resolve_inputs(node, branch_scope)
                result = await execute_with_retry(node, attempt, run.attempts, on_retry)
            except NodeExecutionError as e:
                self._store.discard_scope(branch_scope)
                run.error = e
                run.status = NodeStatus.FAILED
                self.logger.error(f"   ✗ {node.label} failed: {e}")
                return
            except RunCancelled:
                self._store.discard_scope(branch_scope)
                run.status = NodeStatus.CANCELLED
                self.logger.info(f"   ⏹ {node.label} stopped on cancellation")
                return
            except asyncio.CancelledError:
                self._store.discard_scope(branch_scope)
                self.logger.info(f"   ⏹ {node.label} cancelled")
                raise
            else:
                await self._store.write_outputs_async(node.id, result.outputs, branch_scope)
                await self._store.merge_scope_up_async(branch_scope)
                run.result = result
                run.status = NodeStatus.SUCCEEDED
                self.logger.info(f"   ✓ {node.label} succeeded")
            finally:
                # Stamped before the slot is released to the next node
                run.finish()

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _loop_limit(self, node: NodeSpec) -> int:
        configured = node.parsed_config().max_iterations
        if configured is None:
            return self.options.max_loop_iterations
        return min(configured, self.options.max_loop_iterations)

    async def _run_loop(self, run: LoopRun) -> None:
        """Run a loop region as a unit in the scope it was dispatched in."""
        region = run.region
        start_node = self.graph.get_node(region.start)
        end_node = self.graph.get_node(region.end)
        set_trace_context(node_id=region.start, scope_id=run.scope_id)

        run.started_at = utc_now_iso()
        run.t0 = time.monotonic()
        iteration_scopes: list[str] = []
        last_outputs: dict[str, Any] | None = None
        limit = self._loop_limit(start_node)
        self.logger.info(f"⟳ Loop {start_node.label} (max {limit} iterations)")

        try:
            try:
                run.inputs = self._resolve_inputs(start_node, run.scope_id)
                items = LoopStartExecutor.iteration_items(start_node, run.inputs)
                config = start_node.parsed_config()

                if items is not None and config.parallel:
                    last_outputs = await self._run_parallel_iterations(
                        run, items, limit, config.max_concurrency, iteration_scopes
                    )
                else:
                    last_outputs = await self._run_sequential_iterations(
                        run, start_node, items, limit, iteration_scopes
                    )
            except (LoopLimitExceeded, LoopIterationFailed) as e:
                run.error = e
                run.end_status = NodeStatus.FAILED
                self.logger.warning(f"   ⚠ {e}")
                if isinstance(e, LoopLimitExceeded) and self._event_bus:
                    await self._event_bus.emit_loop_limit_exceeded(
                        self.run_id, self.graph.id, region.start, e.max_iterations
                    )
            except NodeExecutionError as e:
                run.error = e
                run.start_status = NodeStatus.FAILED
                run.end_status = NodeStatus.FAILED
                self.logger.error(f"   ✗ Loop {start_node.label} failed: {e}")

            if self.cancel_token.cancelled:
                run.start_status = NodeStatus.CANCELLED
                run.end_status = NodeStatus.CANCELLED
            else:
                run.outputs = await self._publish_loop_outputs(
                    end_node, run, iteration_scopes, last_outputs
                )
        except asyncio.CancelledError:
            run.start_status = NodeStatus.CANCELLED
            run.end_status = NodeStatus.CANCELLED
            raise
        finally:
            for scope_id in iteration_scopes:
                self._store.discard_scope(scope_id)
            run.finish()
            await self._record_loop(run, start_node, end_node)

    async def _run_sequential_iterations(
        self,
        run: LoopRun,
        start_node: NodeSpec,
        items: list[Any] | None,
        limit: int,
        iteration_scopes: list[str],
    ) -> dict[str, Any] | None:
        previous: dict[str, Any] | None = None
        index = 0
        while not self.cancel_token.cancelled:
            if items is not None:
                if index >= len(items):
                    break
                item = items[index]
            else:
                if not LoopStartExecutor.should_continue(start_node, run.inputs, index, previous):
                    break
                item = None
            if index >= limit:
                raise LoopLimitExceeded(start_node.id, limit)

            outputs = await self._run_iteration(
                run.region, run.scope_id, index, item, previous, iteration_scopes
            )
            if outputs is None:
                break  # cancelled mid-iteration
            run.iterations += 1
            previous = outputs
            index += 1
        return previous

    async def _run_parallel_iterations(
        self,
        run: LoopRun,
        items: list[Any],
        limit: int,
        max_concurrency: int,
        iteration_scopes: list[str],
    ) -> dict[str, Any] | None:
        gate = asyncio.Semaphore(max_concurrency)
        count = min(len(items), limit)
        failures: list[LoopIterationFailed] = []

        async def one(index: int) -> dict[str, Any] | None:
            async with gate:
                try:
                    return await self._run_iteration(
                        run.region, run.scope_id, index, items[index], None, iteration_scopes
                    )
                except LoopIterationFailed as e:
                    failures.append(e)
                    return None

        results = await asyncio.gather(*(one(i) for i in range(count)))
        run.iterations = sum(1 for r in results if r is not None)

        if failures:
            raise min(failures, key=lambda f: f.index)
        if len(items) > limit:
            raise LoopLimitExceeded(run.region.start, limit)
        return results[-1] if results else None

    async def _run_iteration(
        self,
        region: LoopRegion,
        parent_scope: str,
        index: int,
        item: Any,
        previous: dict[str, Any] | None,
        iteration_scopes: list[str],
    ) -> dict[str, Any] | None:
        """
        Run one iteration of a loop body.

        Returns loop_end's outputs, or None if the run was cancelled.

        Raises:
            LoopIterationFailed: the iteration did not reach loop_end
        """
        scope_id = self._store.push_scope(
            ScopeKind.LOOP_ITERATION, parent_scope, node_id=region.loop_id, iteration=index
        )
        iteration_scopes.append(scope_id)
        self.logger.info(f"   ⟳ {region.loop_id} iteration {index}")
        if self._event_bus:
            await self._event_bus.emit_loop_iteration(
                self.run_id, self.graph.id, region.loop_id, scope_id, index
            )

        state = ExecutionState(self._region_nodes(region.loop_id))
        frame = LoopFrame(index=index, item=item, previous=previous)
        try:
            await self._run_region(region.loop_id, scope_id, state, frame)
        finally:
            # Body nodes report the status of their latest iteration
            self._body_status.update(state.as_dict())
            self._store.freeze_scope(scope_id)

        end_status = state.status(region.end)
        if end_status == NodeStatus.SUCCEEDED:
            return self._store.get_outputs(region.end, scope_id)
        if self.cancel_token.cancelled:
            return None

        failed = state.with_status(NodeStatus.FAILED)
        reason = f"node(s) {failed} failed" if failed else f"loop end {end_status}"
        raise LoopIterationFailed(region.loop_id, index, reason)

    async def _publish_loop_outputs(
        self,
        end_node: NodeSpec,
        run: LoopRun,
        iteration_scopes: list[str],
        last_outputs: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Write loop_end's outputs into the scope the loop runs in."""
        accumulated = end_node.accumulated_outputs()
        outputs = {
            k: v for k, v in (last_outputs or {}).items() if k not in accumulated
        }
        outputs.update(
            self._store.collect_accumulated(end_node.id, accumulated, iteration_scopes)
        )
        outputs["iterations"] = run.iterations
        await self._store.write_outputs_async(end_node.id, outputs, run.scope_id)
        return outputs

    async def _record_loop(self, run: LoopRun, start_node: NodeSpec, end_node: NodeSpec) -> None:
        now = run.ended_at or utc_now_iso()
        duration_ms = run.duration_ms
        error = error_info(run.error) if run.error is not None else None

        if run.start_status == NodeStatus.FAILED:
            # The loop never got going; attribute the failure to its entry
            await self.recorder.record(
                NodeExecutionRecord(
                    node_id=start_node.id,
                    node_kind=start_node.kind.value,
                    scope_id=run.scope_id,
                    started_at=run.started_at,
                    ended_at=now,
                    duration_ms=duration_ms,
                    status=NodeStatus.FAILED.value,
                    input_snapshot=run.inputs,
                    error=error,
                )
            )

        await self.recorder.record(
            NodeExecutionRecord(
                node_id=end_node.id,
                node_kind=end_node.kind.value,
                scope_id=run.scope_id,
                started_at=run.started_at,
                ended_at=now,
                duration_ms=duration_ms,
                status=run.end_status.value,
                input_snapshot=run.inputs,
                output_snapshot=run.outputs,
                error=error,
                is_partial=run.end_status == NodeStatus.CANCELLED,
            )
        )

    # ------------------------------------------------------------------
    # Stream classification
    # ------------------------------------------------------------------

    def _top_unit(self, node_id: str) -> str:
        """The top-level node (or loop unit) a node runs under."""
        chain = self.plan.loops_containing(node_id)
        return chain[-1] if chain else node_id

    def classify_stream(self, node_id: str) -> StreamClass:
        """Whether output from ``node_id`` currently belongs in the response stream."""
        state = self._top_state
        if state is None:
            return StreamClass.UNDETERMINED
        return self._reach_answer(self._top_unit(node_id), state, {})

    def _reach_answer(
        self, node_id: str, state: ExecutionState, memo: dict[str, StreamClass]
    ) -> StreamClass:
        if node_id in memo:
            return memo[node_id]
        memo[node_id] = StreamClass.NONE  # guard

        node = self.graph.get_node(node_id)
        if node.kind == NodeKind.ANSWER:
            status = state.status(node_id)
            result = (
                StreamClass.NONE
                if status in (NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.CANCELLED)
                else StreamClass.PRIMARY
            )
            memo[node_id] = result
            return result

        source = self.plan.loops[node_id].end if node_id in self.plan.loops else node_id
        source_status = state.status(source)
        edges = self.graph.get_outgoing_edges(source)

        def follow(edge: EdgeSpec) -> StreamClass:
            if source_status.is_terminal:
                if edge_state(edge, state) != EdgeState.LIVE:
                    return StreamClass.NONE
            elif edge.condition == EdgeCondition.ON_FAILURE:
                return StreamClass.NONE
            return self._reach_answer(edge.target, state, memo)

        if node.kind == NodeKind.CONDITION and not source_status.is_terminal:
            unguarded = [follow(e) for e in edges if e.branch is None]
            if StreamClass.PRIMARY in unguarded:
                result = StreamClass.PRIMARY
            else:
                branches = node.parsed_config().branches
                per_branch = [
                    _best([follow(e) for e in edges if e.branch == b]) for b in branches
                ]
                if per_branch and all(c == StreamClass.PRIMARY for c in per_branch):
                    result = StreamClass.PRIMARY
                elif StreamClass.NONE != _best(per_branch + unguarded):
                    result = StreamClass.UNDETERMINED
                else:
                    result = StreamClass.NONE
        else:
            result = _best([follow(e) for e in edges])

        memo[node_id] = result
        return result


_RANK = {StreamClass.NONE: 0, StreamClass.UNDETERMINED: 1, StreamClass.PRIMARY: 2}


def _best(classes: list[StreamClass]) -> StreamClass:
    return max(classes, key=_RANK.__getitem__, default=StreamClass.NONE)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def start_run(
    graph: FlowGraph,
    initial_variables: dict[str, Any] | None = None,
    options: RunOptions | None = None,
    *,
    capabilities: Capabilities | None = None,
    sink: RunSink | None = None,
    event_bus: EventBus | None = None,
    executors: dict[NodeKind, NodeExecutor] | None = None,
    run_id: str | None = None,
) -> RunHandle:
    """
    Validate ``graph`` and start running it in the background.

    Must be called from a running event loop.

    Raises:
        StructuralError: the graph is invalid; nothing was executed
    """
    executor = FlowExecutor(
        graph,
        capabilities=capabilities,
        options=options,
        sink=sink,
        event_bus=event_bus,
        executors=executors,
        run_id=run_id,
    )
    task = asyncio.create_task(executor.run(initial_variables), name=f"run:{executor.run_id}")
    return RunHandle(executor, task)


async def run_flow(
    graph: FlowGraph,
    initial_variables: dict[str, Any] | None = None,
    options: RunOptions | None = None,
    **kwargs: Any,
) -> RunResult:
    """Run a graph to completion and return its result."""
    return await start_run(graph, initial_variables, options, **kwargs).result()
