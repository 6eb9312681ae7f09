"""Tool call node: invokes a registered tool with the node's inputs as arguments."""

import logging
from typing import Any

from flowrun.graph.node import NodeSpec, ToolCallConfig
from flowrun.nodes.base import (
    Emit,
    NodeContext,
    NodeExecutor,
    NodeResult,
    extract_declared_outputs,
)

logger = logging.getLogger(__name__)


class ToolCallExecutor(NodeExecutor):
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: ToolCallConfig = node.parsed_config()
        tools = ctx.capabilities.require_tools()

        args = {k: v for k, v in inputs.items() if v is not None}
        logger.info(f"      🔧 {config.tool_id}({', '.join(args)})")
        result = await tools.call(config.tool_id, args)

        outputs = {"result": result, **extract_declared_outputs(node, result)}
        return NodeResult(outputs=outputs)
