"""Code sandbox node: runs user code in the external sandbox."""

from typing import Any

from flowrun.graph.node import CodeSandboxConfig, NodeSpec
from flowrun.nodes.base import (
    Emit,
    NodeContext,
    NodeExecutor,
    NodeResult,
    extract_declared_outputs,
)


class CodeSandboxExecutor(NodeExecutor):
    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: CodeSandboxConfig = node.parsed_config()
        sandbox = ctx.capabilities.require_sandbox()

        outcome = await sandbox.run(
            config.code,
            inputs,
            timeout=node.timeout_seconds,
            language=config.language,
        )
        outputs = {
            "result": outcome.result,
            "stdout": outcome.stdout,
            **extract_declared_outputs(node, outcome.result),
        }
        return NodeResult(outputs=outputs)
