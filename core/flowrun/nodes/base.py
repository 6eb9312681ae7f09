"""
Node executor protocol.

Every node kind has exactly one executor. The scheduler resolves the
node's inputs, then calls ``execute(node, inputs, emit, ctx)``. An
executor either returns a NodeResult or raises a NodeExecutionError
subclass; ``retryable`` on the error decides whether the retry wrapper
tries again.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowrun.graph.node import NodeSpec
from flowrun.runner.capabilities import Capabilities
from flowrun.runtime.cancellation import CancellationToken
from flowrun.runtime.trace_schemas import TokenUsage

logger = logging.getLogger(__name__)

# emit(content, kind="token"|"final"): publish a chunk of output while running
Emit = Callable[..., Awaitable[None]]


@dataclass
class LoopFrame:
    """Loop position published to a loop_start node for one iteration."""

    index: int
    item: Any = None
    previous: dict[str, Any] | None = None  # loop_end outputs of the previous iteration


@dataclass
class NodeContext:
    """Run-level services available to an executor."""

    run_id: str
    graph_id: str
    scope_id: str
    capabilities: Capabilities = field(default_factory=Capabilities)
    variables: dict[str, Any] = field(default_factory=dict)
    default_model: str = ""
    attempt: int = 1
    loop: LoopFrame | None = None
    cancel_token: CancellationToken | None = None


@dataclass
class NodeResult:
    """What a node produced."""

    outputs: dict[str, Any] = field(default_factory=dict)
    usage: TokenUsage | None = None
    branch: str | None = None  # condition nodes only


class NodeExecutor(ABC):
    """Runs one kind of node."""

    @abstractmethod
    async def execute(
        self,
        node: NodeSpec,
        inputs: dict[str, Any],
        emit: Emit,
        ctx: NodeContext,
    ) -> NodeResult:
        """Execute one attempt of ``node``."""


# ---------------------------------------------------------------------------
# Helpers shared by executors
# ---------------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\{\s*([A-Za-z_][\w]*(?:\.[\w]+)*)\s*\}")


def lookup_path(values: dict[str, Any], path: str) -> tuple[bool, Any]:
    """Look up "a.b.c" through nested dicts/lists. Returns (found, value)."""
    current: Any = values
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return False, None
    return True, current


def render_template(template: str, values: dict[str, Any]) -> str:
    """
    Substitute ``{name}`` and ``{name.path}`` placeholders.

    Placeholders with no matching value are left as written, so literal
    braces (JSON examples in prompts) survive rendering.
    """

    def replace(match: re.Match) -> str:
        found, value = lookup_path(values, match.group(1))
        if not found:
            return match.group(0)
        return value if isinstance(value, str) else _to_text(value)

    return _PLACEHOLDER.sub(replace, template)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def extract_declared_outputs(node: NodeSpec, result: Any) -> dict[str, Any]:
    """Map keys of a dict result onto the node's declared outputs of the same name."""
    if not isinstance(result, dict):
        return {}
    return {o.name: result[o.name] for o in node.outputs if o.name in result}
