"""Tool discovery and registration for tool_call nodes."""

import asyncio
import importlib.util
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowrun.errors import ToolError
from flowrun.runner.capabilities import ToolInvoker

logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    """Schema of a registered tool."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: ToolDefinition
    executor: Callable[..., Any]
    accepts_any_kwargs: bool = False  # declared with **kwargs


class ToolRegistry(ToolInvoker):
    """
    In-process ToolInvoker backed by Python callables.

    Sync functions run in a worker thread; async functions are awaited.

    Example:
        registry = ToolRegistry()

        @tool(description="Look up an order")
        def get_order(order_id: str) -> dict:
            ...

        registry.register_function(get_order)
        capabilities = Capabilities(tools=registry)
    """

    def __init__(self):
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        tool: ToolDefinition,
        executor: Callable[..., Any],
        accepts_any_kwargs: bool = False,
    ) -> None:
        """Register a single tool with its executor (called with keyword arguments)."""
        self._tools[name] = RegisteredTool(
            tool=tool, executor=executor, accepts_any_kwargs=accepts_any_kwargs
        )

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a function as a tool, generating its schema from the signature.

        Args:
            func: Function to register
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
        """
        tool_name = name or func.__name__
        tool_desc = description or func.__doc__ or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties = {}
        required = []
        accepts_any_kwargs = False

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue
            if param.kind == inspect.Parameter.VAR_KEYWORD:
                accepts_any_kwargs = True
                continue
            if param.kind == inspect.Parameter.VAR_POSITIONAL:
                continue

            param_type = "string"  # Default
            if param.annotation != inspect.Parameter.empty:
                if param.annotation is int:
                    param_type = "integer"
                elif param.annotation is float:
                    param_type = "number"
                elif param.annotation is bool:
                    param_type = "boolean"
                elif param.annotation is dict:
                    param_type = "object"
                elif param.annotation is list:
                    param_type = "array"

            properties[param_name] = {"type": param_type}

            if param.default == inspect.Parameter.empty:
                required.append(param_name)

        tool_def = ToolDefinition(
            name=tool_name,
            description=tool_desc,
            parameters={
                "type": "object",
                "properties": properties,
                "required": required,
            },
        )
        self.register(tool_name, tool_def, func, accepts_any_kwargs=accepts_any_kwargs)

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load ``@tool``-decorated functions from a Python file.

        Returns:
            Number of tools discovered
        """
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("flow_tools", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        count = 0
        for attr in dir(module):
            obj = getattr(module, attr)
            if callable(obj) and hasattr(obj, "_tool_metadata"):
                metadata = obj._tool_metadata
                self.register_function(
                    obj,
                    name=metadata.get("name", attr),
                    description=metadata.get("description"),
                )
                count += 1

        logger.info("Discovered %d tools in %s", count, module_path)
        return count

    def get_tools(self) -> dict[str, ToolDefinition]:
        return {name: rt.tool for name, rt in self._tools.items()}

    def get_registered_names(self) -> list[str]:
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def call(self, tool_id: str, args: dict[str, Any]) -> Any:
        registered = self._tools.get(tool_id)
        if registered is None:
            raise ToolError(f"Unknown tool: {tool_id}")

        accepted = registered.tool.parameters.get("properties", {})
        if registered.accepts_any_kwargs or not accepted:
            kwargs = dict(args)
        else:
            kwargs = {k: v for k, v in args.items() if k in accepted}
        missing = [p for p in registered.tool.parameters.get("required", []) if p not in kwargs]
        if missing:
            raise ToolError(f"Tool '{tool_id}' missing arguments: {missing}")

        try:
            if inspect.iscoroutinefunction(registered.executor):
                return await registered.executor(**kwargs)
            return await asyncio.to_thread(registered.executor, **kwargs)
        except ToolError:
            raise
        except Exception as e:
            raise ToolError(f"Tool '{tool_id}' failed: {e}") from e


def tool(
    description: str | None = None,
    name: str | None = None,
) -> Callable:
    """
    Decorator to mark a function as a tool.

    Usage:
        @tool(description="Fetch weather for a city")
        def get_weather(city: str) -> dict:
            return {"temp_c": 21}
    """

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {
            "name": name or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
