"""Start node: publishes the run's initial variables as outputs."""

from typing import Any

from flowrun.graph.node import NodeSpec
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult


class StartExecutor(NodeExecutor):
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        outputs = dict(ctx.variables)
        # Declared outputs with a default on a same-named input fill gaps
        for socket in node.outputs:
            if socket.name not in outputs and socket.name in inputs:
                outputs[socket.name] = inputs[socket.name]
        return NodeResult(outputs=outputs)
