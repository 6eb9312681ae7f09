"""
Error taxonomy for flow execution.

StructuralError      - invalid graph, rejected before any node runs
UnresolvedError      - a reference points at a value that was never written
NodeExecutionError   - a node attempt failed; ``retryable`` drives the retry policy
LoopLimitExceeded    - a loop region hit its iteration bound (recoverable)
ExecutionTimeout     - a node attempt or the whole run timed out
RunCancelled         - the run was cancelled from outside
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class FlowError(Exception):
    """Base class for every error raised by the engine."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class IssueKind(StrEnum):
    """Kinds of structural problems found by graph validation."""

    CYCLE = "cycle"
    DANGLING_EDGE = "dangling_edge"
    TYPE_MISMATCH = "type_mismatch"
    DANGLING_REFERENCE = "dangling_reference"
    UNREACHABLE = "unreachable"
    INVALID_LOOP = "invalid_loop"
    INVALID_CONFIG = "invalid_config"
    INVALID_BRANCH = "invalid_branch"
    DUPLICATE_ID = "duplicate_id"
    MISSING_START = "missing_start"
    MISSING_ANSWER = "missing_answer"


@dataclass(frozen=True)
class StructuralIssue:
    """One problem found in a graph."""

    kind: IssueKind
    message: str
    node_id: str | None = None
    edge_id: str | None = None

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


class StructuralError(FlowError):
    """The graph is not well-formed. Raised before any node runs."""

    def __init__(self, issues: list[StructuralIssue]):
        self.issues = list(issues)
        summary = "; ".join(str(i) for i in self.issues[:5])
        if len(self.issues) > 5:
            summary += f" (+{len(self.issues) - 5} more)"
        super().__init__(f"Invalid flow graph: {summary}")

    @property
    def kinds(self) -> set[IssueKind]:
        return {i.kind for i in self.issues}


# ---------------------------------------------------------------------------
# Context resolution
# ---------------------------------------------------------------------------


class UnresolvedError(FlowError):
    """A reference could not be resolved from the caller's scope chain.

    Expected for nodes on branches that were not taken. Callers treat it
    as "value absent", never as a fatal error.
    """

    def __init__(self, node_id: str | None, key: str, scope_id: str):
        self.node_id = node_id
        self.key = key
        self.scope_id = scope_id
        target = f"{node_id}.{key}" if node_id else f"variable '{key}'"
        super().__init__(f"Unresolved reference {target} from scope {scope_id}")


class ScopeError(FlowError):
    """Illegal scope operation (writing a frozen scope, unknown scope id)."""


class InvalidTransition(FlowError):
    """A node status change that would break monotonicity."""


# ---------------------------------------------------------------------------
# Node execution
# ---------------------------------------------------------------------------


class NodeExecutionError(FlowError):
    """A single node attempt failed.

    ``retryable`` tells the retry wrapper whether another attempt may
    succeed. ``kind`` is a short machine-readable label stored on the
    trace record.
    """

    kind = "execution_error"

    def __init__(self, message: str, *, retryable: bool = False, details: Any = None):
        super().__init__(message)
        self.retryable = retryable
        self.details = details


class ProviderErrorKind(StrEnum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


class ProviderError(NodeExecutionError):
    """Model provider failure, classified by kind."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        provider_kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN,
        *,
        retryable: bool | None = None,
    ):
        if retryable is None:
            retryable = provider_kind in (
                ProviderErrorKind.RATE_LIMITED,
                ProviderErrorKind.TIMEOUT,
                ProviderErrorKind.UNKNOWN,
            )
        super().__init__(message, retryable=retryable)
        self.provider_kind = provider_kind


class ToolError(NodeExecutionError):
    kind = "tool_error"


class SandboxError(NodeExecutionError):
    kind = "sandbox_error"


class HttpRequestError(NodeExecutionError):
    kind = "http_error"

    def __init__(self, message: str, status_code: int | None = None, *, retryable: bool = False):
        super().__init__(message, retryable=retryable)
        self.status_code = status_code


class RetrievalError(NodeExecutionError):
    kind = "retrieval_error"


class ExpressionError(NodeExecutionError):
    """A condition or loop predicate could not be evaluated."""

    kind = "expression_error"


class MissingInputError(NodeExecutionError):
    kind = "missing_input"


class CapabilityError(NodeExecutionError):
    """The run was started without a capability a node needs."""

    kind = "missing_capability"


class LoopLimitExceeded(NodeExecutionError):
    """A loop region reached max_iterations while it still wanted to continue.

    Recoverable: only the loop region fails, keeping its partial output.
    """

    kind = "loop_limit_exceeded"

    def __init__(self, loop_id: str, max_iterations: int):
        super().__init__(
            f"Loop '{loop_id}' exceeded max_iterations={max_iterations}",
            retryable=False,
        )
        self.loop_id = loop_id
        self.max_iterations = max_iterations


class LoopIterationFailed(NodeExecutionError):
    """A node inside a loop body failed, so the iteration never reached loop_end."""

    kind = "loop_iteration_failed"

    def __init__(self, loop_id: str, index: int, reason: str):
        super().__init__(f"Loop '{loop_id}' iteration {index} failed: {reason}", retryable=False)
        self.loop_id = loop_id
        self.index = index


class ExecutionTimeout(NodeExecutionError):
    """A node attempt (or the run) ran past its deadline."""

    kind = "timeout"

    def __init__(self, message: str, timeout_seconds: float | None = None):
        super().__init__(message, retryable=True)
        self.timeout_seconds = timeout_seconds


class RunCancelled(FlowError):
    """The run was cancelled. Terminal, but not an error for auditing."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason
