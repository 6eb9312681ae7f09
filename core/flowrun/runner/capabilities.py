"""
Capability interfaces for the collaborators node executors delegate to.

The engine never talks to a model provider, tool host, vector store or
sandbox directly; it is handed a Capabilities bundle at run start and
each executor pulls the one it needs. A node whose capability is
missing fails with CapabilityError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from flowrun.errors import CapabilityError

if TYPE_CHECKING:
    from flowrun.llm.provider import ModelInvoker


class ToolInvoker(ABC):
    """Calls a tool/plugin by id."""

    @abstractmethod
    async def call(self, tool_id: str, args: dict[str, Any]) -> Any:
        """
        Run a tool.

        Raises:
            ToolError: the tool is unknown or failed
        """


@dataclass
class RetrievedChunk:
    """One knowledge-base hit."""

    content: str
    score: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "score": self.score, "metadata": self.metadata}


class Retriever(ABC):
    """Searches a knowledge-base collection."""

    @abstractmethod
    async def search(self, query: str, collection_id: str, top_k: int) -> list[RetrievedChunk]:
        """
        Return up to ``top_k`` chunks, best first.

        Raises:
            RetrievalError: the collection is unknown or the backend failed
        """


@dataclass
class SandboxResult:
    """Outcome of a sandboxed code run."""

    stdout: str = ""
    result: Any = None


class SandboxRunner(ABC):
    """Runs user code in an isolated environment."""

    @abstractmethod
    async def run(
        self,
        code: str,
        inputs: dict[str, Any],
        timeout: float | None = None,
        language: str = "python3",
    ) -> SandboxResult:
        """
        Execute ``code`` with ``inputs`` bound.

        Raises:
            SandboxError: the code raised, or the sandbox was unavailable
        """


@dataclass
class Capabilities:
    """Everything a run may call out to. Unset entries are simply unavailable."""

    model: ModelInvoker | None = None
    tools: ToolInvoker | None = None
    retriever: Retriever | None = None
    sandbox: SandboxRunner | None = None
    http_client: httpx.AsyncClient | None = None  # shared client for http_request nodes

    def require_model(self) -> ModelInvoker:
        if self.model is None:
            raise CapabilityError("No model invoker configured for model_call nodes")
        return self.model

    def require_tools(self) -> ToolInvoker:
        if self.tools is None:
            raise CapabilityError("No tool invoker configured for tool_call nodes")
        return self.tools

    def require_retriever(self) -> Retriever:
        if self.retriever is None:
            raise CapabilityError("No retriever configured for retrieval nodes")
        return self.retriever

    def require_sandbox(self) -> SandboxRunner:
        if self.sandbox is None:
            raise CapabilityError("No sandbox runner configured for code_sandbox nodes")
        return self.sandbox
