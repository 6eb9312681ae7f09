"""
Edge Protocol - How nodes connect in a flow graph.

Edges define:
1. Source and target nodes
2. Optional data binding (source output socket -> target input socket)
3. When the edge fires

Edge conditions:
- on_success: fires when the source succeeds (default)
- on_failure: fires only when the source fails (error-handler routes)
- always: fires when the source either succeeds or fails

Edges leaving a condition node carry a ``branch`` label; only the edges
whose label matches the branch the condition selected are taken. A
``loop_back`` edge closes a loop region (loop_end -> loop_start) and is
never used for readiness.
"""

from __future__ import annotations

from enum import StrEnum
from functools import cached_property

from pydantic import BaseModel, ConfigDict, Field

from flowrun.graph.node import NodeKind, NodeSpec


class EdgeCondition(StrEnum):
    """When an edge fires after its source finishes."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Data edge: feeds A's "text" output into B's "prompt_input"
        EdgeSpec(
            id="a-to-b",
            source="a",
            target="b",
            source_socket="text",
            target_socket="prompt_input",
        )

        # Guarded branch out of a condition node
        EdgeSpec(id="check-high", source="check", target="escalate", branch="high")

        # Error-handler route
        EdgeSpec(
            id="fetch-fallback",
            source="fetch",
            target="fallback_answer",
            condition=EdgeCondition.ON_FAILURE,
        )
    """

    model_config = ConfigDict(frozen=True)

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_socket: str | None = None
    target_socket: str | None = None

    condition: EdgeCondition = EdgeCondition.ON_SUCCESS
    branch: str | None = Field(default=None, description="Branch label for condition nodes")
    loop_back: bool = False

    description: str = ""

    @property
    def is_guarded(self) -> bool:
        return self.branch is not None

    @property
    def carries_data(self) -> bool:
        return self.source_socket is not None and self.target_socket is not None


class FlowGraph(BaseModel):
    """
    Complete specification of a flow.

    Node order is significant: it is the tie-break for dispatching
    simultaneously ready nodes, which keeps runs replayable.

    Example:
        FlowGraph(
            id="support-flow",
            start_node="start",
            nodes=[...],
            edges=[...],
        )
    """

    model_config = ConfigDict(frozen=True)

    id: str
    version: str = "1.0.0"
    description: str = ""
    start_node: str | None = Field(
        default=None, description="ID of the start node; defaults to the only 'start' node"
    )
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)

    @cached_property
    def nodes_by_id(self) -> dict[str, NodeSpec]:
        return {n.id: n for n in self.nodes}

    @cached_property
    def declaration_order(self) -> dict[str, int]:
        return {n.id: i for i, n in enumerate(self.nodes)}

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        return self.nodes_by_id.get(node_id)

    def node_order(self, node_id: str) -> int:
        """Declaration index of a node (dispatch tie-break)."""
        return self.declaration_order.get(node_id, len(self.declaration_order))

    def resolve_start_node(self) -> str | None:
        if self.start_node is not None:
            return self.start_node
        starts = [n.id for n in self.nodes if n.kind == NodeKind.START]
        return starts[0] if len(starts) == 1 else None

    def get_outgoing_edges(self, node_id: str, include_loop_back: bool = False) -> list[EdgeSpec]:
        """Edges leaving a node, in declaration order."""
        return [
            e
            for e in self.edges
            if e.source == node_id and (include_loop_back or not e.loop_back)
        ]

    def get_incoming_edges(self, node_id: str, include_loop_back: bool = False) -> list[EdgeSpec]:
        """Edges entering a node, in declaration order."""
        return [
            e
            for e in self.edges
            if e.target == node_id and (include_loop_back or not e.loop_back)
        ]

    def answer_nodes(self) -> list[str]:
        return [n.id for n in self.nodes if n.kind == NodeKind.ANSWER]

    def upstream_of(self, node_id: str) -> set[str]:
        """All ancestors of a node, ignoring loop-back edges."""
        seen: set[str] = set()
        to_visit = [e.source for e in self.get_incoming_edges(node_id)]
        while to_visit:
            current = to_visit.pop()
            if current in seen:
                continue
            seen.add(current)
            to_visit.extend(e.source for e in self.get_incoming_edges(current))
        return seen
