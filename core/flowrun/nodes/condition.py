"""Condition node: picks exactly one branch."""

import logging
from typing import Any

from flowrun.errors import ExpressionError
from flowrun.graph.node import ConditionConfig, NodeSpec
from flowrun.graph.safe_eval import evaluate_truthy
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult

logger = logging.getLogger(__name__)


class ConditionExecutor(NodeExecutor):
    """
    Evaluates ``cases`` in order against the node's inputs; the first
    truthy expression selects its branch, otherwise ``default``.
    Expressions see each input by name and the whole mapping as ``inputs``.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: ConditionConfig = node.parsed_config()
        names = {**inputs, "inputs": inputs}

        selected = None
        for case in config.cases:
            if evaluate_truthy(case.expression, names):
                selected = case.branch
                break

        if selected is None:
            if config.default is None:
                raise ExpressionError(
                    f"Condition '{node.id}': no case matched and no default branch is set"
                )
            selected = config.default

        logger.info(f"      ↳ branch '{selected}'")
        return NodeResult(outputs={"branch": selected}, branch=selected)
