"""Pydantic models for the run trace.

RunSummary           - one per run: status, token usage, timing
NodeExecutionRecord  - one per (node_id, scope_id): inputs, outputs, status, attempts
AttemptRecord        - one per executor attempt inside a node execution

Records are written as soon as a node execution ends, so a trace on disk
is useful even when the process dies mid-run.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class TokenUsage(BaseModel):
    """Token counts reported by a model provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ErrorInfo(BaseModel):
    """Why a node attempt or execution failed."""

    kind: str  # NodeExecutionError.kind, e.g. "provider_error", "timeout"
    message: str
    retryable: bool = False
    stacktrace: str = ""  # only for unexpected exceptions


class AttemptRecord(BaseModel):
    """One executor attempt of a node."""

    attempt: int  # 1-based
    started_at: str
    ended_at: str = ""
    duration_ms: int = 0
    status: str = ""  # "succeeded"|"failed"|"cancelled"
    error: ErrorInfo | None = None


class NodeExecutionRecord(BaseModel):
    """
    Trace record for one node execution in one scope.

    Loop bodies produce one record per iteration (scope_id names the
    iteration scope); loop_end additionally gets one summary record in
    the scope the loop runs in.
    """

    node_id: str
    node_kind: str = ""
    scope_id: str
    started_at: str
    ended_at: str = ""
    duration_ms: int = 0
    status: str  # NodeStatus value
    input_snapshot: dict[str, Any] = Field(default_factory=dict)
    output_snapshot: dict[str, Any] = Field(default_factory=dict)
    error: ErrorInfo | None = None
    attempts: list[AttemptRecord] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    branch: str | None = None  # condition nodes only
    partial_outputs: list[str] = Field(default_factory=list)  # streamed chunks, in order
    is_partial: bool = False  # True when the execution was interrupted


class RunSummary(BaseModel):
    """Run-level summary, written once when the run ends."""

    run_id: str
    graph_id: str = ""
    graph_version: str = ""
    status: str = ""  # "succeeded"|"partial"|"failed"|"cancelled"
    error: str | None = None
    started_at: str = ""
    ended_at: str = ""
    duration_ms: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    node_states: dict[str, str] = Field(default_factory=dict)
    total_records: int = 0
    failed_nodes: list[str] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)


class RunTrace(BaseModel):
    """Append-only, ordered trace of node executions for one run."""

    run_id: str
    records: list[NodeExecutionRecord] = Field(default_factory=list)
    _keys: set[tuple[str, str]] = PrivateAttr(default_factory=set)

    def append(self, record: NodeExecutionRecord) -> None:
        """Append a record. Each (node_id, scope_id) may be recorded once."""
        key = (record.node_id, record.scope_id)
        if key in self._keys:
            raise ValueError(
                f"Trace already has a record for node '{record.node_id}' "
                f"in scope '{record.scope_id}'"
            )
        self._keys.add(key)
        self.records.append(record)

    def for_node(self, node_id: str) -> list[NodeExecutionRecord]:
        return [r for r in self.records if r.node_id == node_id]

    def get(self, node_id: str, scope_id: str) -> NodeExecutionRecord | None:
        for record in self.records:
            if record.node_id == node_id and record.scope_id == scope_id:
                return record
        return None

    def total_usage(self) -> TokenUsage:
        usage = TokenUsage()
        for record in self.records:
            usage = usage + record.usage
        return usage

    def __len__(self) -> int:
        return len(self.records)
