"""
Execution State - Per-node status tracking for one region of a run.

Statuses move forward only:

    pending -> ready -> running -> succeeded | failed | cancelled
    pending | ready -> skipped | cancelled

Any other change raises InvalidTransition. The scheduler owns the state
and is its only writer.
"""

import logging
from enum import StrEnum

from flowrun.errors import InvalidTransition

logger = logging.getLogger(__name__)


class NodeStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED, NodeStatus.CANCELLED}
)

_ALLOWED: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.READY, NodeStatus.SKIPPED, NodeStatus.CANCELLED}),
    NodeStatus.READY: frozenset({NodeStatus.RUNNING, NodeStatus.SKIPPED, NodeStatus.CANCELLED}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.CANCELLED}
    ),
    NodeStatus.SUCCEEDED: frozenset(),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.SKIPPED: frozenset(),
    NodeStatus.CANCELLED: frozenset(),
}


class RunPhase(StrEnum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionState:
    """Status of every node in a region, plus the branch each condition selected."""

    def __init__(self, node_ids: list[str]):
        self._status: dict[str, NodeStatus] = {nid: NodeStatus.PENDING for nid in node_ids}
        self._branches: dict[str, str] = {}
        self.history: list[tuple[str, NodeStatus, NodeStatus]] = []

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._status

    def status(self, node_id: str) -> NodeStatus:
        return self._status[node_id]

    def transition(self, node_id: str, new: NodeStatus) -> None:
        old = self._status[node_id]
        if new not in _ALLOWED[old]:
            raise InvalidTransition(f"Node '{node_id}': illegal transition {old} -> {new}")
        self._status[node_id] = new
        self.history.append((node_id, old, new))

    def settle(self, node_id: str, final: NodeStatus) -> None:
        """
        Move a node to a terminal status through the legal chain.

        Used when a node's fate is decided outside normal dispatch (loop
        bodies settled by their loop, cancellation of queued nodes).
        No-op when the node is already terminal.
        """
        current = self._status[node_id]
        if current.is_terminal:
            return
        if final in (NodeStatus.SUCCEEDED, NodeStatus.FAILED):
            if current == NodeStatus.PENDING:
                self.transition(node_id, NodeStatus.READY)
            if self._status[node_id] == NodeStatus.READY:
                self.transition(node_id, NodeStatus.RUNNING)
        self.transition(node_id, final)

    def set_branch(self, node_id: str, branch: str) -> None:
        self._branches[node_id] = branch

    def branch(self, node_id: str) -> str | None:
        return self._branches.get(node_id)

    def with_status(self, *statuses: NodeStatus) -> list[str]:
        return [nid for nid, st in self._status.items() if st in statuses]

    def all_terminal(self) -> bool:
        return all(st.is_terminal for st in self._status.values())

    def as_dict(self) -> dict[str, NodeStatus]:
        return dict(self._status)
