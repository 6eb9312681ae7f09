"""Tests for loop regions: for-each, while, accumulation, limits and nesting."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from flowrun import RunOptions, RunStatus, run_flow
from flowrun.graph.edge import EdgeCondition, EdgeSpec, FlowGraph
from flowrun.graph.node import InputSocket, NodeKind, NodeSpec, OutputSocket, SocketType
from flowrun.llm.mock import MockModelInvoker
from flowrun.nodes import NodeExecutor, NodeResult, default_executors
from flowrun.runner.capabilities import Capabilities
from flowrun.runner.tool_registry import ToolRegistry
from flowrun.runtime.event_bus import EventBus, EventType
from flowrun.runtime.execution_state import NodeStatus


@pytest.fixture
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    monkeypatch.setattr("asyncio.sleep", AsyncMock())


def options(**kwargs) -> RunOptions:
    return RunOptions(
        max_loop_iterations=kwargs.pop("max_loop_iterations", 100),
        global_timeout=None,
        max_parallel_nodes=8,
        default_model="mock/model",
        **kwargs,
    )


def summarizer() -> MockModelInvoker:
    return MockModelInvoker(responder=lambda prompt, cfg: "S-" + prompt.removeprefix("Summarize "))


def for_each_graph(**loop_config) -> FlowGraph:
    """start -> loop[ loop -> summarize -> end ] -> answer, accumulating summaries."""
    return FlowGraph(
        id="for-each",
        nodes=[
            NodeSpec(id="start", kind=NodeKind.START, outputs=[OutputSocket(name="items")]),
            NodeSpec(
                id="loop",
                kind=NodeKind.LOOP_START,
                config={"items_input": "items", **loop_config},
                inputs=[InputSocket(name="items", type=SocketType.ARRAY)],
            ),
            NodeSpec(
                id="summarize",
                kind=NodeKind.MODEL_CALL,
                config={"prompt": "Summarize {item}"},
                inputs=[InputSocket(name="item", ref="loop.item")],
            ),
            NodeSpec(
                id="end",
                kind=NodeKind.LOOP_END,
                inputs=[InputSocket(name="summary")],
                outputs=[OutputSocket(name="summary", accumulate=True)],
            ),
            NodeSpec(id="answer", kind=NodeKind.ANSWER, inputs=[InputSocket(name="text")]),
        ],
        edges=[
            EdgeSpec(
                id="items", source="start", target="loop", source_socket="items", target_socket="items"
            ),
            EdgeSpec(id="body", source="loop", target="summarize"),
            EdgeSpec(
                id="collect",
                source="summarize",
                target="end",
                source_socket="text",
                target_socket="summary",
            ),
            EdgeSpec(id="back", source="end", target="loop", loop_back=True),
            EdgeSpec(
                id="out", source="end", target="answer", source_socket="summary", target_socket="text"
            ),
        ],
    )


def while_graph(condition: str, max_iterations: int | None = None) -> FlowGraph:
    """start -> loop[ loop -> step -> end ] -> answer, with an on_failure fallback on end."""
    config = {"condition": condition}
    if max_iterations is not None:
        config["max_iterations"] = max_iterations
    return FlowGraph(
        id="while",
        nodes=[
            NodeSpec(id="start", kind=NodeKind.START),
            NodeSpec(id="loop", kind=NodeKind.LOOP_START, config=config),
            NodeSpec(
                id="step",
                kind=NodeKind.MODEL_CALL,
                config={"prompt": "round {index}"},
                inputs=[InputSocket(name="index", ref="loop.index")],
            ),
            NodeSpec(
                id="end",
                kind=NodeKind.LOOP_END,
                inputs=[InputSocket(name="text")],
                outputs=[OutputSocket(name="text", accumulate=True)],
            ),
            NodeSpec(
                id="answer",
                kind=NodeKind.ANSWER,
                inputs=[InputSocket(name="count"), InputSocket(name="texts")],
            ),
            NodeSpec(
                id="fallback",
                kind=NodeKind.ANSWER,
                config={"template": "gave up after {iterations}"},
                inputs=[InputSocket(name="iterations", ref="end.iterations")],
            ),
        ],
        edges=[
            EdgeSpec(id="enter", source="start", target="loop"),
            EdgeSpec(id="body", source="loop", target="step"),
            EdgeSpec(id="collect", source="step", target="end", source_socket="text", target_socket="text"),
            EdgeSpec(id="back", source="end", target="loop", loop_back=True),
            EdgeSpec(
                id="count", source="end", target="answer", source_socket="iterations", target_socket="count"
            ),
            EdgeSpec(
                id="texts", source="end", target="answer", source_socket="text", target_socket="texts"
            ),
            EdgeSpec(id="give-up", source="end", target="fallback", condition=EdgeCondition.ON_FAILURE),
        ],
    )


def echo() -> MockModelInvoker:
    return MockModelInvoker(responder=lambda prompt, cfg: prompt)


# === FOR-EACH ===


class TestForEach:
    @pytest.mark.asyncio
    async def test_accumulates_in_item_order(self, fast_sleep):
        bus = EventBus()
        result = await run_flow(
            for_each_graph(),
            {"items": ["a", "b", "c"]},
            options(),
            capabilities=Capabilities(model=summarizer()),
            event_bus=bus,
        )

        assert result.status == RunStatus.SUCCEEDED
        assert result.answer == ["S-a", "S-b", "S-c"]
        # one record per iteration for body nodes, one summary record for loop_end
        scopes = [r.scope_id for r in result.trace.for_node("summarize")]
        assert scopes == ["root/loop[0]", "root/loop[1]", "root/loop[2]"]
        summary = result.trace.get("end", "root")
        assert summary.output_snapshot == {"summary": ["S-a", "S-b", "S-c"], "iterations": 3}
        iterations = bus.get_history(event_type=EventType.LOOP_ITERATION)
        assert sorted(e.data["index"] for e in iterations) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_empty_items_run_zero_iterations(self, fast_sleep):
        result = await run_flow(
            for_each_graph(), {"items": []}, options(), capabilities=Capabilities(model=summarizer())
        )

        assert result.status == RunStatus.SUCCEEDED
        assert result.answer == []
        assert result.trace.for_node("summarize") == []
        assert result.trace.get("end", "root").output_snapshot["iterations"] == 0

    @pytest.mark.asyncio
    async def test_parallel_iterations_keep_index_order(self):
        finished: list[str] = []

        class SlowFirst(NodeExecutor):
            """Earlier items take longer, so iterations finish in reverse."""

            async def execute(self, node, inputs, emit, ctx) -> NodeResult:
                item = inputs["item"]
                await asyncio.sleep(0.01 * (4 - ord(item) + ord("a")))
                finished.append(item)
                return NodeResult(outputs={"text": f"S-{item}"})

        executors = {**default_executors(), NodeKind.MODEL_CALL: SlowFirst()}
        result = await run_flow(
            for_each_graph(parallel=True, max_concurrency=4),
            {"items": ["a", "b", "c", "d"]},
            options(),
            executors=executors,
        )

        assert result.status == RunStatus.SUCCEEDED
        assert finished == ["d", "c", "b", "a"]
        assert result.answer == ["S-a", "S-b", "S-c", "S-d"]

    @pytest.mark.asyncio
    async def test_run_option_caps_iterations(self, fast_sleep):
        result = await run_flow(
            for_each_graph(),
            {"items": ["a", "b", "c", "d", "e"]},
            options(max_loop_iterations=2),
            capabilities=Capabilities(model=summarizer()),
        )

        assert result.status == RunStatus.FAILED
        assert result.node_states["loop"] == NodeStatus.SUCCEEDED
        assert result.node_states["end"] == NodeStatus.FAILED
        end = result.trace.get("end", "root")
        assert end.error.kind == "loop_limit_exceeded"
        # partial output of the completed iterations is kept
        assert end.output_snapshot == {"summary": ["S-a", "S-b"], "iterations": 2}

    @pytest.mark.asyncio
    async def test_failed_iteration_fails_loop_end(self, fast_sleep):
        registry = ToolRegistry()

        def shout(item: str) -> str:
            if item == "b":
                raise ValueError("cannot shout b")
            return item.upper()

        registry.register_function(shout)
        graph = for_each_graph()
        nodes = [
            n
            if n.id != "summarize"
            else NodeSpec(
                id="summarize",
                kind=NodeKind.TOOL_CALL,
                config={"tool_id": "shout"},
                inputs=[InputSocket(name="item", ref="loop.item")],
            )
            for n in graph.nodes
        ]
        edges = [
            e if e.id != "collect" else e.model_copy(update={"source_socket": "result"})
            for e in graph.edges
        ]
        graph = graph.model_copy(update={"nodes": nodes, "edges": edges})

        result = await run_flow(
            graph, {"items": ["a", "b", "c"]}, options(), capabilities=Capabilities(tools=registry)
        )

        assert result.status == RunStatus.FAILED
        assert result.node_states["end"] == NodeStatus.FAILED
        assert result.node_states["summarize"] == NodeStatus.FAILED
        end = result.trace.get("end", "root")
        assert end.error.kind == "loop_iteration_failed"
        assert end.output_snapshot["summary"] == ["A"]
        # iteration 2 never ran
        assert result.trace.get("summarize", "root/loop[2]") is None


# === WHILE ===


class TestWhile:
    @pytest.mark.asyncio
    async def test_predicate_sees_iteration_index(self, fast_sleep):
        result = await run_flow(
            while_graph("index < 3"), {}, options(), capabilities=Capabilities(model=echo())
        )

        assert result.status == RunStatus.SUCCEEDED
        assert result.outputs == {
            "answer": {"count": 3, "texts": ["round 0", "round 1", "round 2"]}
        }
        assert result.node_states["fallback"] == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_previous_iteration_outputs_visible(self, fast_sleep):
        graph = while_graph("previous == null or len(previous['text']) < 7")
        result = await run_flow(graph, {}, options(), capabilities=Capabilities(model=echo()))

        # "round 0" has 7 characters, so the loop stops after one iteration
        assert result.outputs["answer"]["count"] == 1

    @pytest.mark.asyncio
    async def test_iteration_limit_routes_to_fallback(self, fast_sleep):
        bus = EventBus()
        result = await run_flow(
            while_graph("true", max_iterations=3),
            {},
            options(),
            capabilities=Capabilities(model=echo()),
            event_bus=bus,
        )

        assert result.status == RunStatus.PARTIAL
        assert result.outputs == {"fallback": "gave up after 3"}
        assert result.node_states["end"] == NodeStatus.FAILED
        assert result.node_states["answer"] == NodeStatus.SKIPPED
        limit_events = bus.get_history(event_type=EventType.LOOP_LIMIT_EXCEEDED)
        assert [e.data["max_iterations"] for e in limit_events] == [3]

    @pytest.mark.asyncio
    async def test_node_limit_tighter_than_run_option(self, fast_sleep):
        result = await run_flow(
            while_graph("true", max_iterations=10),
            {},
            options(max_loop_iterations=2),
            capabilities=Capabilities(model=echo()),
        )
        assert result.outputs == {"fallback": "gave up after 2"}


# === NESTING ===


@pytest.mark.asyncio
async def test_nested_loops_flatten_accumulated_lists(fast_sleep):
    registry = ToolRegistry()

    def double(n: int) -> int:
        return n * 2

    registry.register_function(double)

    graph = FlowGraph(
        id="nested",
        nodes=[
            NodeSpec(id="start", kind=NodeKind.START, outputs=[OutputSocket(name="rows")]),
            NodeSpec(
                id="rows",
                kind=NodeKind.LOOP_START,
                config={"items_input": "rows"},
                inputs=[InputSocket(name="rows")],
            ),
            NodeSpec(
                id="cells",
                kind=NodeKind.LOOP_START,
                config={"items_input": "row"},
                inputs=[InputSocket(name="row", ref="rows.item")],
            ),
            NodeSpec(
                id="dbl",
                kind=NodeKind.TOOL_CALL,
                config={"tool_id": "double"},
                inputs=[InputSocket(name="n", ref="cells.item")],
            ),
            NodeSpec(
                id="cells_end",
                kind=NodeKind.LOOP_END,
                inputs=[InputSocket(name="values")],
                outputs=[OutputSocket(name="values", accumulate=True)],
            ),
            NodeSpec(
                id="rows_end",
                kind=NodeKind.LOOP_END,
                inputs=[InputSocket(name="values")],
                outputs=[OutputSocket(name="values", accumulate=True)],
            ),
            NodeSpec(id="answer", kind=NodeKind.ANSWER, inputs=[InputSocket(name="values")]),
        ],
        edges=[
            EdgeSpec(id="e1", source="start", target="rows", source_socket="rows", target_socket="rows"),
            EdgeSpec(id="e2", source="rows", target="cells"),
            EdgeSpec(id="e3", source="cells", target="dbl"),
            EdgeSpec(
                id="e4", source="dbl", target="cells_end", source_socket="result", target_socket="values"
            ),
            EdgeSpec(id="back-cells", source="cells_end", target="cells", loop_back=True),
            EdgeSpec(
                id="e5",
                source="cells_end",
                target="rows_end",
                source_socket="values",
                target_socket="values",
            ),
            EdgeSpec(id="back-rows", source="rows_end", target="rows", loop_back=True),
            EdgeSpec(
                id="e6", source="rows_end", target="answer", source_socket="values", target_socket="values"
            ),
        ],
    )

    result = await run_flow(
        graph, {"rows": [[1, 2], [3]]}, options(), capabilities=Capabilities(tools=registry)
    )

    assert result.status == RunStatus.SUCCEEDED
    assert result.answer == [2, 4, 6]
    assert result.trace.get("dbl", "root/rows[0]/cells[1]").output_snapshot["result"] == 4
    assert result.trace.get("cells_end", "root/rows[1]").output_snapshot["values"] == [6]
