"""Graph structures and validation for flows."""

from flowrun.graph.edge import EdgeCondition, EdgeSpec, FlowGraph
from flowrun.graph.node import (
    InputSocket,
    NodeKind,
    NodeSpec,
    OutputSocket,
    RetryPolicy,
    SocketType,
    ValueRef,
)
from flowrun.graph.validator import GraphPlan, LoopRegion, validate_graph

__all__ = [
    # Node
    "NodeKind",
    "NodeSpec",
    "InputSocket",
    "OutputSocket",
    "RetryPolicy",
    "SocketType",
    "ValueRef",
    # Edge
    "EdgeCondition",
    "EdgeSpec",
    "FlowGraph",
    # Validation
    "GraphPlan",
    "LoopRegion",
    "validate_graph",
]
