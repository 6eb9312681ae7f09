"""Answer node: produces a final output of the run."""

from typing import Any

from flowrun.graph.node import AnswerConfig, NodeSpec
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult, render_template


class AnswerExecutor(NodeExecutor):
    """
    The answer is ``config.template`` rendered from inputs; without a
    template, the single input's value (or the whole input mapping when
    there are several). The rendered answer is emitted as a ``final``
    marker so stream consumers know this answer is complete.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: AnswerConfig = node.parsed_config()

        if config.template is not None:
            answer: Any = render_template(config.template, inputs)
        elif len(inputs) == 1:
            answer = next(iter(inputs.values()))
        else:
            answer = dict(inputs)

        await emit(answer if isinstance(answer, str) else str(answer), kind="final")
        return NodeResult(outputs={"answer": answer})
