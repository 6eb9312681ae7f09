"""External capabilities the engine calls: tools, retrieval, code sandbox."""

from flowrun.runner.capabilities import (
    Capabilities,
    RetrievedChunk,
    Retriever,
    SandboxResult,
    SandboxRunner,
    ToolInvoker,
)
from flowrun.runner.sandbox_client import HttpSandboxClient
from flowrun.runner.tool_registry import ToolRegistry, tool

__all__ = [
    "Capabilities",
    "ToolInvoker",
    "Retriever",
    "RetrievedChunk",
    "SandboxRunner",
    "SandboxResult",
    "ToolRegistry",
    "tool",
    "HttpSandboxClient",
]
