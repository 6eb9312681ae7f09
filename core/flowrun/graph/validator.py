"""
Graph validation - structural checks run before any node executes.

Checks:
- node and edge ids are unique; exactly one start node
- every node's config matches its kind's config model
- edges reference existing nodes and sockets, socket types are compatible
- branch labels only leave condition nodes and name declared branches
- the graph is acyclic once loop-back edges are removed
- loop regions are well formed: one entry, one exit condition, internal
  edges confined to the region, properly nested
- every node is reachable from the start node unless side_effect_only
- references point at upstream nodes whose values are visible from the
  referencing node's scope
- at least one answer node exists

The result is a GraphPlan: the loop regions, which nodes each region
schedules directly, and a topological ordering hint. The hint is not
authoritative; the executor recomputes readiness dynamically because
branch edges may never fire.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from flowrun.errors import IssueKind, StructuralError, StructuralIssue
from flowrun.graph.edge import FlowGraph
from flowrun.graph.node import ConditionConfig, NodeKind, SocketType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopRegion:
    """A loop sub-graph: loop_start ... loop_end, closed by one loop-back edge."""

    loop_id: str  # same as the loop_start node id
    start: str
    end: str
    body: frozenset[str]  # includes start and end
    parent: str | None = None  # enclosing loop id


@dataclass
class GraphPlan:
    """Validated, precomputed view of a FlowGraph used by the executor."""

    graph: FlowGraph
    start_node: str
    topological_order: list[str]
    loops: dict[str, LoopRegion] = field(default_factory=dict)
    # node id -> innermost loop id containing it (None for top level)
    innermost_loop: dict[str, str | None] = field(default_factory=dict)

    def region_members(self, loop_id: str | None) -> list[str]:
        """
        Nodes a region schedules directly, in declaration order.

        A nested loop appears once, as its loop_start node; its body is
        scheduled by the loop itself. A loop's own loop_start is driven by
        the loop controller, not by the region.
        """
        members = []
        for node in self.graph.nodes:
            nid = node.id
            inner = self.innermost_loop.get(nid)
            if inner == loop_id and not (loop_id is not None and nid == self.loops[loop_id].start):
                members.append(nid)
            elif nid in self.loops and self.loops[nid].parent == loop_id:
                members.append(nid)
        return members

    def loops_containing(self, node_id: str) -> list[str]:
        """Loop ids containing a node, innermost first."""
        chain = []
        current = self.innermost_loop.get(node_id)
        while current is not None:
            chain.append(current)
            current = self.loops[current].parent
        return chain


def validate_graph(graph: FlowGraph) -> GraphPlan:
    """
    Validate a graph and build its execution plan.

    Raises:
        StructuralError: with every issue found
    """
    issues: list[StructuralIssue] = []

    _check_ids(graph, issues)
    start_node = _check_start(graph, issues)
    _check_configs(graph, issues)
    _check_edges(graph, issues)
    _check_branches(graph, issues)
    _check_loop_back_edges(graph, issues)

    if not graph.answer_nodes():
        issues.append(
            StructuralIssue(IssueKind.MISSING_ANSWER, "Graph has no answer node")
        )

    order = _topological_order(graph)
    if order is None:
        issues.append(
            StructuralIssue(
                IssueKind.CYCLE,
                "Graph contains a cycle outside of loop regions (loop-back edges excluded)",
            )
        )
        raise StructuralError(issues)

    loops = _build_loop_regions(graph, issues)
    innermost = _innermost_loops(graph, loops)

    if start_node is not None:
        _check_reachability(graph, start_node, issues)

    plan = GraphPlan(
        graph=graph,
        start_node=start_node or "",
        topological_order=order,
        loops=loops,
        innermost_loop=innermost,
    )
    _check_placement(graph, plan, issues)
    _check_references(graph, plan, issues)

    if issues:
        raise StructuralError(issues)

    logger.debug(
        "Graph '%s' valid: %d nodes, %d edges, %d loop regions",
        graph.id,
        len(graph.nodes),
        len(graph.edges),
        len(loops),
    )
    return plan


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_ids(graph: FlowGraph, issues: list[StructuralIssue]) -> None:
    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            issues.append(
                StructuralIssue(IssueKind.DUPLICATE_ID, f"Duplicate node id '{node.id}'", node.id)
            )
        seen.add(node.id)
    seen_edges: set[str] = set()
    for edge in graph.edges:
        if edge.id in seen_edges:
            issues.append(
                StructuralIssue(
                    IssueKind.DUPLICATE_ID, f"Duplicate edge id '{edge.id}'", edge_id=edge.id
                )
            )
        seen_edges.add(edge.id)


def _check_start(graph: FlowGraph, issues: list[StructuralIssue]) -> str | None:
    starts = [n.id for n in graph.nodes if n.kind == NodeKind.START]
    if len(starts) != 1:
        issues.append(
            StructuralIssue(
                IssueKind.MISSING_START,
                f"Graph must have exactly one start node, found {len(starts)}",
            )
        )
    start_id = graph.resolve_start_node()
    if start_id is None:
        return None
    node = graph.get_node(start_id)
    if node is None:
        issues.append(
            StructuralIssue(IssueKind.MISSING_START, f"Start node '{start_id}' not found")
        )
        return None
    if node.kind != NodeKind.START:
        issues.append(
            StructuralIssue(
                IssueKind.MISSING_START,
                f"Start node '{start_id}' has kind '{node.kind}', expected 'start'",
                start_id,
            )
        )
        return None
    if graph.get_incoming_edges(start_id, include_loop_back=True):
        issues.append(
            StructuralIssue(
                IssueKind.MISSING_START, f"Start node '{start_id}' has inbound edges", start_id
            )
        )
    return start_id


def _check_configs(graph: FlowGraph, issues: list[StructuralIssue]) -> None:
    for node in graph.nodes:
        try:
            config = node.parsed_config()
        except ValidationError as e:
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_CONFIG,
                    f"Node '{node.id}' ({node.kind}) has invalid config: "
                    f"{e.errors(include_url=False)}",
                    node.id,
                )
            )
            continue

        if node.kind == NodeKind.CONDITION and not config.branches:
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_CONFIG,
                    f"Condition node '{node.id}' declares no branches",
                    node.id,
                )
            )
        if node.kind == NodeKind.LOOP_START and config.items_input is not None:
            if node.get_input(config.items_input) is None:
                issues.append(
                    StructuralIssue(
                        IssueKind.INVALID_CONFIG,
                        f"Loop '{node.id}' iterates over missing input '{config.items_input}'",
                        node.id,
                    )
                )
        names = [s.name for s in node.inputs]
        if len(names) != len(set(names)):
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_CONFIG, f"Node '{node.id}' repeats an input name", node.id
                )
            )
        if node.kind != NodeKind.LOOP_END and node.accumulated_outputs():
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_CONFIG,
                    f"Node '{node.id}': only loop_end outputs can accumulate",
                    node.id,
                )
            )


def _check_edges(graph: FlowGraph, issues: list[StructuralIssue]) -> None:
    for edge in graph.edges:
        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if source is None:
            issues.append(
                StructuralIssue(
                    IssueKind.DANGLING_EDGE,
                    f"Edge '{edge.id}' references missing source '{edge.source}'",
                    edge_id=edge.id,
                )
            )
        if target is None:
            issues.append(
                StructuralIssue(
                    IssueKind.DANGLING_EDGE,
                    f"Edge '{edge.id}' references missing target '{edge.target}'",
                    edge_id=edge.id,
                )
            )
        if source is None or target is None:
            continue

        if (edge.source_socket is None) != (edge.target_socket is None):
            issues.append(
                StructuralIssue(
                    IssueKind.DANGLING_EDGE,
                    f"Edge '{edge.id}' must bind both source_socket and target_socket or neither",
                    edge_id=edge.id,
                )
            )
            continue
        if not edge.carries_data:
            continue

        if edge.source_socket not in source.output_names():
            issues.append(
                StructuralIssue(
                    IssueKind.DANGLING_EDGE,
                    f"Edge '{edge.id}': node '{source.id}' has no output '{edge.source_socket}'",
                    edge_id=edge.id,
                )
            )
            continue
        target_socket = target.get_input(edge.target_socket)
        if target_socket is None:
            issues.append(
                StructuralIssue(
                    IssueKind.DANGLING_EDGE,
                    f"Edge '{edge.id}': node '{target.id}' has no input '{edge.target_socket}'",
                    edge_id=edge.id,
                )
            )
            continue
        source_type = source.output_type(edge.source_socket)
        if not target_socket.type.accepts(source_type):
            issues.append(
                StructuralIssue(
                    IssueKind.TYPE_MISMATCH,
                    f"Edge '{edge.id}': {source.id}.{edge.source_socket} ({source_type}) "
                    f"cannot feed {target.id}.{target_socket.name} ({target_socket.type})",
                    edge_id=edge.id,
                )
            )


def _check_branches(graph: FlowGraph, issues: list[StructuralIssue]) -> None:
    for edge in graph.edges:
        if edge.branch is None:
            continue
        source = graph.get_node(edge.source)
        if source is None:
            continue
        if source.kind != NodeKind.CONDITION:
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_BRANCH,
                    f"Edge '{edge.id}' has branch '{edge.branch}' but '{source.id}' "
                    "is not a condition node",
                    edge_id=edge.id,
                )
            )
            continue
        try:
            config = ConditionConfig.model_validate(source.config)
        except ValidationError:
            continue  # reported by _check_configs
        if edge.branch not in config.branches:
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_BRANCH,
                    f"Edge '{edge.id}' uses undeclared branch '{edge.branch}' "
                    f"(declared: {config.branches})",
                    edge_id=edge.id,
                )
            )


def _check_loop_back_edges(graph: FlowGraph, issues: list[StructuralIssue]) -> None:
    for edge in graph.edges:
        if not edge.loop_back:
            continue
        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if source is None or target is None:
            continue
        if source.kind != NodeKind.LOOP_END or target.kind != NodeKind.LOOP_START:
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_LOOP,
                    f"Loop-back edge '{edge.id}' must go from a loop_end to a loop_start",
                    edge_id=edge.id,
                )
            )

    for node in graph.nodes:
        if node.kind == NodeKind.LOOP_START:
            back = [e for e in graph.get_incoming_edges(node.id, True) if e.loop_back]
            if len(back) != 1:
                issues.append(
                    StructuralIssue(
                        IssueKind.INVALID_LOOP,
                        f"Loop start '{node.id}' needs exactly one loop-back edge, "
                        f"found {len(back)}",
                        node.id,
                    )
                )
        elif node.kind == NodeKind.LOOP_END:
            back = [e for e in graph.get_outgoing_edges(node.id, True) if e.loop_back]
            if len(back) != 1:
                issues.append(
                    StructuralIssue(
                        IssueKind.INVALID_LOOP,
                        f"Loop end '{node.id}' needs exactly one loop-back edge, "
                        f"found {len(back)}",
                        node.id,
                    )
                )


def _topological_order(graph: FlowGraph) -> list[str] | None:
    """Kahn's algorithm with declaration-order tie-break. None if cyclic."""
    in_degree = {n.id: 0 for n in graph.nodes}
    for edge in graph.edges:
        if edge.loop_back or edge.source not in in_degree or edge.target not in in_degree:
            continue
        in_degree[edge.target] += 1

    heap = [(graph.node_order(nid), nid) for nid, deg in in_degree.items() if deg == 0]
    heapq.heapify(heap)
    order: list[str] = []
    while heap:
        _, nid = heapq.heappop(heap)
        order.append(nid)
        for edge in graph.get_outgoing_edges(nid):
            if edge.target not in in_degree:
                continue
            in_degree[edge.target] -= 1
            if in_degree[edge.target] == 0:
                heapq.heappush(heap, (graph.node_order(edge.target), edge.target))

    if len(order) != len(in_degree):
        return None
    return order


def _build_loop_regions(
    graph: FlowGraph, issues: list[StructuralIssue]
) -> dict[str, LoopRegion]:
    pairs: list[tuple[str, str]] = []
    for edge in graph.edges:
        if not edge.loop_back:
            continue
        source = graph.get_node(edge.source)
        target = graph.get_node(edge.target)
        if (
            source is not None
            and target is not None
            and source.kind == NodeKind.LOOP_END
            and target.kind == NodeKind.LOOP_START
        ):
            pairs.append((target.id, source.id))

    bodies: dict[str, tuple[str, frozenset[str]]] = {}
    for start, end in pairs:
        forward = _reach(graph, start, forward=True, stop=end)
        if end not in forward:
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_LOOP,
                    f"Loop '{start}': loop end '{end}' is not reachable from the loop start",
                    start,
                )
            )
            continue
        backward = _reach(graph, end, forward=False, stop=start)
        body = frozenset(forward & backward)

        confined = True
        for nid in body:
            if nid != start:
                for edge in graph.get_incoming_edges(nid):
                    if edge.source not in body:
                        confined = False
                        issues.append(
                            StructuralIssue(
                                IssueKind.INVALID_LOOP,
                                f"Loop '{start}': edge '{edge.id}' enters the loop body "
                                f"at '{nid}' instead of the loop start",
                                start,
                                edge.id,
                            )
                        )
            if nid != end:
                for edge in graph.get_outgoing_edges(nid):
                    if edge.target not in body:
                        confined = False
                        issues.append(
                            StructuralIssue(
                                IssueKind.INVALID_LOOP,
                                f"Loop '{start}': edge '{edge.id}' leaves the loop body "
                                f"from '{nid}' instead of the loop end",
                                start,
                                edge.id,
                            )
                        )
        if confined:
            bodies[start] = (end, body)

    # Regions must be disjoint or properly nested
    ids = list(bodies)
    parents: dict[str, str | None] = {}
    for loop_id in ids:
        body = bodies[loop_id][1]
        enclosing = []
        for other in ids:
            if other == loop_id:
                continue
            other_body = bodies[other][1]
            if body < other_body:
                enclosing.append(other)
            elif body & other_body and not other_body < body:
                issues.append(
                    StructuralIssue(
                        IssueKind.INVALID_LOOP,
                        f"Loops '{loop_id}' and '{other}' overlap without nesting",
                        loop_id,
                    )
                )
        # Innermost enclosing loop has the smallest body
        enclosing.sort(key=lambda lid: len(bodies[lid][1]))
        parents[loop_id] = enclosing[0] if enclosing else None

    return {
        loop_id: LoopRegion(
            loop_id=loop_id,
            start=loop_id,
            end=end,
            body=body,
            parent=parents.get(loop_id),
        )
        for loop_id, (end, body) in bodies.items()
    }


def _innermost_loops(graph: FlowGraph, loops: dict[str, LoopRegion]) -> dict[str, str | None]:
    innermost: dict[str, str | None] = {}
    for node in graph.nodes:
        containing = [lid for lid, region in loops.items() if node.id in region.body]
        containing.sort(key=lambda lid: len(loops[lid].body))
        innermost[node.id] = containing[0] if containing else None
    return innermost


def _check_reachability(graph: FlowGraph, start: str, issues: list[StructuralIssue]) -> None:
    reachable = _reach(graph, start, forward=True)
    for node in graph.nodes:
        if node.id not in reachable and not node.side_effect_only:
            issues.append(
                StructuralIssue(
                    IssueKind.UNREACHABLE,
                    f"Node '{node.id}' is unreachable from start node '{start}'",
                    node.id,
                )
            )


def _check_placement(graph: FlowGraph, plan: GraphPlan, issues: list[StructuralIssue]) -> None:
    for node in graph.nodes:
        if node.kind in (NodeKind.ANSWER, NodeKind.START) and plan.innermost_loop.get(node.id):
            issues.append(
                StructuralIssue(
                    IssueKind.INVALID_LOOP,
                    f"{node.kind} node '{node.id}' cannot be inside a loop region",
                    node.id,
                )
            )


def _check_references(graph: FlowGraph, plan: GraphPlan, issues: list[StructuralIssue]) -> None:
    for node in graph.nodes:
        refs = [s for s in node.inputs if s.ref is not None and s.ref.node is not None]
        if not refs:
            continue
        upstream = graph.upstream_of(node.id)
        visible_loops = set(plan.loops_containing(node.id))
        for socket in refs:
            ref = socket.ref
            target = graph.get_node(ref.node)
            if target is None:
                issues.append(
                    StructuralIssue(
                        IssueKind.DANGLING_REFERENCE,
                        f"Node '{node.id}' input '{socket.name}' references missing node "
                        f"'{ref.node}'",
                        node.id,
                    )
                )
                continue
            if target.id not in upstream:
                issues.append(
                    StructuralIssue(
                        IssueKind.DANGLING_REFERENCE,
                        f"Node '{node.id}' input '{socket.name}' references '{ref}', "
                        f"but '{target.id}' is not upstream of '{node.id}'",
                        node.id,
                    )
                )
                continue
            if ref.key not in target.output_names():
                issues.append(
                    StructuralIssue(
                        IssueKind.DANGLING_REFERENCE,
                        f"Node '{node.id}' input '{socket.name}' references unknown output "
                        f"'{ref}'",
                        node.id,
                    )
                )
                continue
            # A loop_end publishes into its parent scope; everything else in a
            # loop body lives in iteration scopes visible only inside the loop.
            target_loops = set(plan.loops_containing(target.id))
            for loop_id, region in plan.loops.items():
                if region.end == target.id:
                    target_loops.discard(loop_id)
            if not target_loops <= visible_loops:
                issues.append(
                    StructuralIssue(
                        IssueKind.DANGLING_REFERENCE,
                        f"Node '{node.id}' input '{socket.name}' references '{ref}' inside a "
                        "loop body it is not part of",
                        node.id,
                    )
                )
                continue
            target_type = target.output_type(ref.key)
            if socket.type != SocketType.ANY and not socket.type.accepts(target_type):
                issues.append(
                    StructuralIssue(
                        IssueKind.TYPE_MISMATCH,
                        f"Node '{node.id}' input '{socket.name}' ({socket.type}) cannot take "
                        f"'{ref}' ({target_type})",
                        node.id,
                    )
                )


def _reach(graph: FlowGraph, origin: str, forward: bool, stop: str | None = None) -> set[str]:
    """Nodes reachable from origin (ignoring loop-back edges), not expanding past ``stop``."""
    seen: set[str] = set()
    to_visit = [origin]
    while to_visit:
        current = to_visit.pop()
        if current in seen:
            continue
        seen.add(current)
        if current == stop:
            continue
        edges = graph.get_outgoing_edges(current) if forward else graph.get_incoming_edges(current)
        for edge in edges:
            to_visit.append(edge.target if forward else edge.source)
    return seen
