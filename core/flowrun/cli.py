"""
Command-line interface for flowrun.

Usage:
    flowrun validate flows/support.json
    flowrun run flows/support.json --input '{"question": "What is RAG?"}'
    flowrun run flows/support.json --input '{"score": 0.8}' --mock-response "ok"
    flowrun list --store .flowrun
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from flowrun.config import RunOptions, get_api_key
from flowrun.errors import StructuralError
from flowrun.graph.edge import FlowGraph
from flowrun.graph.executor import start_run
from flowrun.graph.validator import validate_graph
from flowrun.llm.mock import MockModelInvoker
from flowrun.observability import configure_logging
from flowrun.runner.capabilities import Capabilities
from flowrun.runner.tool_registry import ToolRegistry
from flowrun.runtime.run_handle import RunResult, RunStatus
from flowrun.storage.run_store import FileRunStore


def load_graph(path: str | Path) -> FlowGraph:
    """Parse a graph file. Raises ValidationError/OSError on bad input."""
    return FlowGraph.model_validate_json(Path(path).read_text(encoding="utf-8"))


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        graph = load_graph(args.graph)
        plan = validate_graph(graph)
    except (OSError, ValidationError) as e:
        print(f"✗ Could not load {args.graph}: {e}", file=sys.stderr)
        return 1
    except StructuralError as e:
        print(f"✗ {args.graph} is invalid:", file=sys.stderr)
        for issue in e.issues:
            print(f"  - {issue}", file=sys.stderr)
        return 1

    print(
        f"✓ {graph.id} is valid: {len(graph.nodes)} nodes, {len(graph.edges)} edges, "
        f"{len(plan.loops)} loop regions"
    )
    return 0


def _build_capabilities(args: argparse.Namespace) -> Capabilities | None:
    if args.mock_response is not None:
        model = MockModelInvoker(response=args.mock_response)
    else:
        try:
            from flowrun.llm.litellm import LiteLLMInvoker
        except ImportError:
            print(
                "✗ litellm is not installed. Install flowrun[litellm] or pass --mock-response.",
                file=sys.stderr,
            )
            return None
        model = LiteLLMInvoker(api_key=get_api_key())

    tools = ToolRegistry()
    for module_path in args.tools or []:
        count = tools.discover_from_module(Path(module_path))
        print(f"  Loaded {count} tools from {module_path}", file=sys.stderr)
    return Capabilities(model=model, tools=tools)


async def _stream_run(
    graph: FlowGraph,
    variables: dict,
    options: RunOptions,
    capabilities: Capabilities,
    store: FileRunStore | None,
) -> RunResult:
    handle = start_run(graph, variables, options, capabilities=capabilities, sink=store)
    async for event in handle.events():
        print(event.content, end="", flush=True)
    print()
    return await handle.result()


def cmd_run(args: argparse.Namespace) -> int:
    configure_logging(level=args.log_level)

    try:
        graph = load_graph(args.graph)
        variables = json.loads(args.input) if args.input else {}
    except (OSError, ValidationError, json.JSONDecodeError) as e:
        print(f"✗ Could not load run input: {e}", file=sys.stderr)
        return 1

    capabilities = _build_capabilities(args)
    if capabilities is None:
        return 1

    options = RunOptions(parallel=not args.sequential)
    if args.model:
        options.default_model = args.model
    if args.timeout:
        options.global_timeout = args.timeout
    store = FileRunStore(args.store) if args.store else None

    try:
        result = asyncio.run(_stream_run(graph, variables, options, capabilities, store))
    except StructuralError as e:
        print(f"✗ {args.graph} is invalid:", file=sys.stderr)
        for issue in e.issues:
            print(f"  - {issue}", file=sys.stderr)
        return 1

    symbol = "✓" if result.success else "✗"
    print(f"{symbol} Run {result.run_id} {result.status} in {result.duration_ms}ms")
    if result.error:
        print(f"  Error: {result.error}")
    for warning in result.warnings:
        print(f"  ⚠ {warning}")
    if args.json:
        print(json.dumps(result.outputs, indent=2, default=str))
    return 0 if result.status in (RunStatus.SUCCEEDED, RunStatus.PARTIAL) else 1


def cmd_list(args: argparse.Namespace) -> int:
    store = FileRunStore(args.store)
    summaries = asyncio.run(store.list_runs(status=args.status, limit=args.limit))
    if not summaries:
        print("No runs found.")
        return 0
    for summary in summaries:
        print(
            f"{summary.run_id}  {summary.status:<11}  {summary.graph_id}  "
            f"{summary.duration_ms}ms  {summary.usage.total_tokens} tokens"
        )
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Check a graph file")
    validate_parser.add_argument("graph", help="Path to a graph JSON file")
    validate_parser.set_defaults(func=cmd_validate)

    run_parser = subparsers.add_parser("run", help="Run a graph and stream its answer")
    run_parser.add_argument("graph", help="Path to a graph JSON file")
    run_parser.add_argument("--input", "-i", default="", help="Run variables as a JSON object")
    run_parser.add_argument("--model", help="Default model for model_call nodes")
    run_parser.add_argument(
        "--mock-response", help="Answer every model call with this text (no provider needed)"
    )
    run_parser.add_argument(
        "--tools", action="append", help="Python file with @tool functions (repeatable)"
    )
    run_parser.add_argument("--store", help="Directory to persist the run trace in")
    run_parser.add_argument("--timeout", type=float, help="Global run timeout in seconds")
    run_parser.add_argument(
        "--sequential", action="store_true", help="Run one node at a time"
    )
    run_parser.add_argument("--json", action="store_true", help="Print answer outputs as JSON")
    run_parser.add_argument("--log-level", default="WARNING", help="Logging level")
    run_parser.set_defaults(func=cmd_run)

    list_parser = subparsers.add_parser("list", help="List stored runs")
    list_parser.add_argument("--store", required=True, help="Run store directory")
    list_parser.add_argument("--status", default="", help="Only runs with this status")
    list_parser.add_argument("--limit", type=int, default=20)
    list_parser.set_defaults(func=cmd_list)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowrun",
        description="flowrun - Validate and run AI agent flow graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
