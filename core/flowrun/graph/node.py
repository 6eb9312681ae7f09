"""
Node Protocol - The building blocks of a flow graph.

A node is one unit of work: a model call, a tool call, a retrieval, an
HTTP request, a sandboxed code run, a branch, a loop boundary, or an
answer. Every node declares:

1. Its kind (which executor runs it)
2. Typed input sockets (literal, reference into the context store, or
   fed by an inbound edge)
3. Typed output sockets (named values it produces)
4. Kind-specific static config, retry policy and timeout

Specs are immutable; the executor never mutates them during a run.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class NodeKind(StrEnum):
    """Closed set of node kinds. Each kind maps to exactly one executor."""

    START = "start"
    MODEL_CALL = "model_call"
    TOOL_CALL = "tool_call"
    RETRIEVAL = "retrieval"
    HTTP_REQUEST = "http_request"
    CODE_SANDBOX = "code_sandbox"
    CONDITION = "condition"
    LOOP_START = "loop_start"
    LOOP_END = "loop_end"
    ANSWER = "answer"


class SocketType(StrEnum):
    """Value types carried by sockets."""

    ANY = "any"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"

    def accepts(self, other: SocketType) -> bool:
        """True if a value of type ``other`` may flow into a socket of this type."""
        if self == SocketType.ANY or other == SocketType.ANY:
            return True
        return self == other


class ValueRef(BaseModel):
    """
    Reference to a value in the context store.

    ``node=None`` points at a run-global variable (e.g. user input).
    Written as "node_id.key" or "$key" in JSON graph files.
    """

    model_config = ConfigDict(frozen=True)

    node: str | None = None
    key: str

    @classmethod
    def parse(cls, text: str) -> ValueRef:
        text = text.strip()
        if text.startswith("$"):
            return cls(node=None, key=text[1:])
        node, sep, key = text.partition(".")
        if not sep or not node or not key:
            raise ValueError(f"Invalid reference '{text}', expected 'node_id.key' or '$variable'")
        return cls(node=node, key=key)

    def __str__(self) -> str:
        return f"{self.node}.{self.key}" if self.node else f"${self.key}"


class InputSocket(BaseModel):
    """A named input of a node."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: SocketType = SocketType.ANY
    value: Any = None  # literal, used when neither ref nor edge feeds the socket
    ref: ValueRef | None = None
    default: Any = None  # used when the ref/edge source never produced a value
    required: bool = False

    @field_validator("ref", mode="before")
    @classmethod
    def _parse_ref(cls, v: Any) -> Any:
        if isinstance(v, str):
            return ValueRef.parse(v)
        return v


class OutputSocket(BaseModel):
    """A named output of a node."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: SocketType = SocketType.ANY
    # Only meaningful on loop_end nodes: collect this output across iterations
    accumulate: bool = False


class RetryPolicy(BaseModel):
    """
    Retry policy for a node.

    Backoff formula: backoff_seconds * (backoff_multiplier ^ (retry - 1)),
    capped at max_backoff_seconds -> 1s, 2s, 4s... with the defaults.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=0, ge=0)
    backoff_seconds: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff_seconds: float = Field(default=30.0, ge=0)
    retry_unknown_errors: bool = True

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry: int) -> float:
        """Delay before retry number ``retry`` (1-based)."""
        delay = self.backoff_seconds * (self.backoff_multiplier ** max(retry - 1, 0))
        return min(delay, self.max_backoff_seconds)


# ---------------------------------------------------------------------------
# Kind-specific config models
# ---------------------------------------------------------------------------


class _NodeConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class StartConfig(_NodeConfig):
    pass


class ModelCallConfig(_NodeConfig):
    model: str = ""  # empty -> configured default model
    prompt: str = Field(description="Prompt template, e.g. 'Summarize: {text}'")
    system: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class ToolCallConfig(_NodeConfig):
    tool_id: str


class RetrievalConfig(_NodeConfig):
    collection_id: str
    top_k: int = Field(default=4, ge=1)
    query_input: str = "query"


class HttpRequestConfig(_NodeConfig):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    url: str = Field(description="URL template, e.g. 'https://api.example.com/items/{item_id}'")
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, str] = Field(default_factory=dict)
    body_input: str | None = None  # input socket whose value is sent as JSON body


class CodeSandboxConfig(_NodeConfig):
    code: str
    language: str = "python3"


class ConditionCase(_NodeConfig):
    branch: str
    expression: str


class ConditionConfig(_NodeConfig):
    """Ordered cases; the first case whose expression is truthy wins."""

    cases: list[ConditionCase] = Field(default_factory=list)
    default: str | None = None  # branch taken when no case matches

    @property
    def branches(self) -> list[str]:
        labels = [c.branch for c in self.cases]
        if self.default is not None and self.default not in labels:
            labels.append(self.default)
        return labels


class LoopStartConfig(_NodeConfig):
    """
    Loop entry. Exactly one exit condition:

    - condition: while-loop predicate evaluated before each iteration
    - items_input: name of an input socket holding a list (for-each)
    """

    condition: str | None = None
    items_input: str | None = None
    max_iterations: int | None = Field(default=None, ge=1)
    parallel: bool = False  # for-each only
    max_concurrency: int = Field(default=4, ge=1)

    @model_validator(mode="after")
    def _one_exit_condition(self) -> LoopStartConfig:
        if (self.condition is None) == (self.items_input is None):
            raise ValueError("loop_start needs exactly one of 'condition' or 'items_input'")
        if self.parallel and self.items_input is None:
            raise ValueError("parallel loops must iterate over 'items_input'")
        return self


class LoopEndConfig(_NodeConfig):
    pass


class AnswerConfig(_NodeConfig):
    template: str | None = None


NODE_CONFIG_MODELS: dict[NodeKind, type[_NodeConfig]] = {
    NodeKind.START: StartConfig,
    NodeKind.MODEL_CALL: ModelCallConfig,
    NodeKind.TOOL_CALL: ToolCallConfig,
    NodeKind.RETRIEVAL: RetrievalConfig,
    NodeKind.HTTP_REQUEST: HttpRequestConfig,
    NodeKind.CODE_SANDBOX: CodeSandboxConfig,
    NodeKind.CONDITION: ConditionConfig,
    NodeKind.LOOP_START: LoopStartConfig,
    NodeKind.LOOP_END: LoopEndConfig,
    NodeKind.ANSWER: AnswerConfig,
}

# Outputs each kind produces even when the node declares none
DEFAULT_OUTPUTS: dict[NodeKind, tuple[str, ...]] = {
    NodeKind.START: (),
    NodeKind.MODEL_CALL: ("text", "finish_reason"),
    NodeKind.TOOL_CALL: ("result",),
    NodeKind.RETRIEVAL: ("results", "context"),
    NodeKind.HTTP_REQUEST: ("status_code", "body", "headers"),
    NodeKind.CODE_SANDBOX: ("result", "stdout"),
    NodeKind.CONDITION: ("branch",),
    NodeKind.LOOP_START: ("index", "item", "previous"),
    NodeKind.LOOP_END: ("iterations",),
    NodeKind.ANSWER: ("answer",),
}


class NodeSpec(BaseModel):
    """
    Specification for a single node in a flow graph.

    Example:
        NodeSpec(
            id="summarize",
            kind=NodeKind.MODEL_CALL,
            config={"prompt": "Summarize: {text}"},
            inputs=[InputSocket(name="text", ref="fetch.body")],
            retry=RetryPolicy(max_retries=2),
            timeout_seconds=30,
        )
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: NodeKind
    name: str = ""
    description: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    inputs: list[InputSocket] = Field(default_factory=list)
    outputs: list[OutputSocket] = Field(default_factory=list)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_seconds: float | None = Field(default=None, gt=0)
    side_effect_only: bool = False

    @property
    def label(self) -> str:
        return self.name or self.id

    def parsed_config(self) -> Any:
        """Validate ``config`` against the kind's config model."""
        return NODE_CONFIG_MODELS[self.kind].model_validate(self.config)

    def get_input(self, name: str) -> InputSocket | None:
        for socket in self.inputs:
            if socket.name == name:
                return socket
        return None

    def get_output(self, name: str) -> OutputSocket | None:
        for socket in self.outputs:
            if socket.name == name:
                return socket
        return None

    def output_names(self) -> list[str]:
        """Declared outputs first, then the kind's implicit outputs."""
        names = [o.name for o in self.outputs]
        for name in DEFAULT_OUTPUTS[self.kind]:
            if name not in names:
                names.append(name)
        return names

    def output_type(self, name: str) -> SocketType:
        socket = self.get_output(name)
        return socket.type if socket else SocketType.ANY

    def accumulated_outputs(self) -> list[str]:
        return [o.name for o in self.outputs if o.accumulate]
