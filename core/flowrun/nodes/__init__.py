"""Node executors, one per node kind."""

from flowrun.graph.node import NodeKind
from flowrun.nodes.answer import AnswerExecutor
from flowrun.nodes.base import (
    Emit,
    LoopFrame,
    NodeContext,
    NodeExecutor,
    NodeResult,
    render_template,
)
from flowrun.nodes.code_sandbox import CodeSandboxExecutor
from flowrun.nodes.condition import ConditionExecutor
from flowrun.nodes.http_request import HttpRequestExecutor
from flowrun.nodes.loop import LoopEndExecutor, LoopStartExecutor
from flowrun.nodes.model_call import ModelCallExecutor
from flowrun.nodes.retrieval import RetrievalExecutor
from flowrun.nodes.start import StartExecutor
from flowrun.nodes.tool_call import ToolCallExecutor


def default_executors() -> dict[NodeKind, NodeExecutor]:
    """A fresh executor registry covering every node kind."""
    return {
        NodeKind.START: StartExecutor(),
        NodeKind.MODEL_CALL: ModelCallExecutor(),
        NodeKind.TOOL_CALL: ToolCallExecutor(),
        NodeKind.RETRIEVAL: RetrievalExecutor(),
        NodeKind.HTTP_REQUEST: HttpRequestExecutor(),
        NodeKind.CODE_SANDBOX: CodeSandboxExecutor(),
        NodeKind.CONDITION: ConditionExecutor(),
        NodeKind.LOOP_START: LoopStartExecutor(),
        NodeKind.LOOP_END: LoopEndExecutor(),
        NodeKind.ANSWER: AnswerExecutor(),
    }


__all__ = [
    "default_executors",
    "Emit",
    "LoopFrame",
    "NodeContext",
    "NodeExecutor",
    "NodeResult",
    "render_template",
    "StartExecutor",
    "ModelCallExecutor",
    "ToolCallExecutor",
    "RetrievalExecutor",
    "HttpRequestExecutor",
    "CodeSandboxExecutor",
    "ConditionExecutor",
    "LoopStartExecutor",
    "LoopEndExecutor",
    "AnswerExecutor",
]
