"""
Loop boundary nodes.

The scheduler runs a loop region as a unit. Before each iteration it
asks ``LoopStartExecutor.should_continue`` (while-loops) or walks the
list from ``iteration_items`` (for-each), pushes an iteration scope and
runs loop_start, which publishes ``index``, ``item`` and ``previous``
into it. loop_end closes the iteration by passing through its inputs as
its outputs; outputs flagged ``accumulate`` are collected across
iterations by the scheduler.
"""

from typing import Any

from flowrun.errors import ExpressionError
from flowrun.graph.node import LoopStartConfig, NodeSpec
from flowrun.graph.safe_eval import evaluate_truthy
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult


class LoopStartExecutor(NodeExecutor):
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        frame = ctx.loop
        if frame is None:
            raise ExpressionError(f"Loop start '{node.id}' executed outside a loop iteration")
        return NodeResult(
            outputs={"index": frame.index, "item": frame.item, "previous": frame.previous}
        )

    @staticmethod
    def iteration_items(node: NodeSpec, inputs: dict[str, Any]) -> list[Any] | None:
        """Items of a for-each loop, or None for a while-loop."""
        config: LoopStartConfig = node.parsed_config()
        if config.items_input is None:
            return None
        items = inputs.get(config.items_input)
        if items is None:
            return []
        if isinstance(items, dict):
            return list(items.items())
        if not isinstance(items, list | tuple):
            raise ExpressionError(
                f"Loop '{node.id}': input '{config.items_input}' is "
                f"{type(items).__name__}, expected a list"
            )
        return list(items)

    @staticmethod
    def should_continue(
        node: NodeSpec,
        inputs: dict[str, Any],
        index: int,
        previous: dict[str, Any] | None,
    ) -> bool:
        """Evaluate a while-loop predicate before iteration ``index``."""
        config: LoopStartConfig = node.parsed_config()
        names = {
            **inputs,
            "inputs": inputs,
            "index": index,
            "iteration": index,
            "previous": previous,
        }
        return evaluate_truthy(config.condition or "false", names)


class LoopEndExecutor(NodeExecutor):
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        if node.outputs:
            outputs = {o.name: inputs.get(o.name) for o in node.outputs}
        else:
            outputs = dict(inputs)
        return NodeResult(outputs=outputs)
