"""Tests for the per-kind node executors, run directly without the scheduler."""

import json

import httpx
import pytest

from flowrun.errors import (
    CapabilityError,
    ExpressionError,
    HttpRequestError,
    ProviderError,
    ProviderErrorKind,
    RetrievalError,
    RunCancelled,
)
from flowrun.graph.node import InputSocket, NodeKind, NodeSpec, OutputSocket
from flowrun.llm.mock import MockModelInvoker
from flowrun.nodes import (
    AnswerExecutor,
    CodeSandboxExecutor,
    ConditionExecutor,
    HttpRequestExecutor,
    LoopEndExecutor,
    LoopStartExecutor,
    ModelCallExecutor,
    RetrievalExecutor,
    StartExecutor,
    ToolCallExecutor,
    render_template,
)
from flowrun.nodes.base import LoopFrame, NodeContext
from flowrun.runner.capabilities import (
    Capabilities,
    RetrievedChunk,
    Retriever,
    SandboxResult,
    SandboxRunner,
)
from flowrun.runner.tool_registry import ToolRegistry
from flowrun.runtime.cancellation import CancellationToken

# === FAKES ===


class Recorder:
    """Collects emitted chunks."""

    def __init__(self):
        self.chunks: list[tuple[str, str]] = []

    async def __call__(self, content: str, kind: str = "token") -> None:
        self.chunks.append((content, kind))


class FakeRetriever(Retriever):
    def __init__(self, chunks: list[RetrievedChunk]):
        self.chunks = chunks
        self.queries: list[tuple[str, str, int]] = []

    async def search(self, query: str, collection_id: str, top_k: int) -> list[RetrievedChunk]:
        self.queries.append((query, collection_id, top_k))
        return self.chunks


class FakeSandbox(SandboxRunner):
    def __init__(self, result: SandboxResult):
        self.result = result
        self.calls: list[dict] = []

    async def run(self, code, inputs, timeout=None, language="python3") -> SandboxResult:
        self.calls.append({"code": code, "inputs": inputs, "timeout": timeout, "language": language})
        return self.result


def make_ctx(capabilities: Capabilities | None = None, **kwargs) -> NodeContext:
    return NodeContext(
        run_id="run_test",
        graph_id="graph_test",
        scope_id="root",
        capabilities=capabilities or Capabilities(),
        default_model="openai/gpt-4o-mini",
        **kwargs,
    )


def node(kind: NodeKind, config: dict | None = None, **kwargs) -> NodeSpec:
    return NodeSpec(id=f"{kind}_node", kind=kind, config=config or {}, **kwargs)


# === TEMPLATES ===


class TestRenderTemplate:
    def test_substitutes_nested_paths(self):
        values = {"user": {"name": "Ada"}, "items": ["x", "y"]}
        assert render_template("Hi {user.name}, first={items.0}", values) == "Hi Ada, first=x"

    def test_missing_placeholders_left_as_is(self):
        assert render_template('Return {"ok": true} for {name}', {}) == 'Return {"ok": true} for {name}'

    def test_structured_values_rendered_as_json(self):
        assert render_template("data={d}", {"d": {"a": 1}}) == 'data={"a": 1}'

    def test_none_renders_empty(self):
        assert render_template("[{x}]", {"x": None}) == "[]"


# === EXECUTORS ===


@pytest.mark.asyncio
async def test_start_publishes_variables():
    result = await StartExecutor().execute(
        node(NodeKind.START), {}, Recorder(), make_ctx(variables={"question": "hi"})
    )
    assert result.outputs == {"question": "hi"}


class TestModelCall:
    @pytest.mark.asyncio
    async def test_streams_tokens_and_reports_usage(self):
        invoker = MockModelInvoker(response="hello there world")
        emit = Recorder()
        spec = node(NodeKind.MODEL_CALL, {"prompt": "Say hi to {name}", "system": "Be {tone}"})

        result = await ModelCallExecutor().execute(
            spec, {"name": "Ada", "tone": "brief"}, emit, make_ctx(Capabilities(model=invoker))
        )

        assert result.outputs == {"text": "hello there world", "finish_reason": "stop"}
        assert [c for c, _ in emit.chunks] == ["hello", " there", " world"]
        assert result.usage.output_tokens == 3
        prompt, model_config = invoker.calls[0]
        assert prompt == "Say hi to Ada"
        assert model_config.system == "Be brief"
        assert model_config.model == "openai/gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_stops_streaming_once_run_cancelled(self):
        token = CancellationToken()
        token.cancel("user pressed stop")
        emit = Recorder()
        spec = node(NodeKind.MODEL_CALL, {"prompt": "x"})
        ctx = make_ctx(Capabilities(model=MockModelInvoker(response="a b c")), cancel_token=token)

        with pytest.raises(RunCancelled, match="user pressed stop"):
            await ModelCallExecutor().execute(spec, {}, emit, ctx)
        assert emit.chunks == []

    @pytest.mark.asyncio
    async def test_node_model_overrides_default(self):
        invoker = MockModelInvoker()
        spec = node(NodeKind.MODEL_CALL, {"prompt": "x", "model": "anthropic/claude-haiku"})
        await ModelCallExecutor().execute(spec, {}, Recorder(), make_ctx(Capabilities(model=invoker)))
        assert invoker.calls[0][1].model == "anthropic/claude-haiku"

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        invoker = MockModelInvoker(
            failures=[ProviderError("bad prompt", ProviderErrorKind.INVALID_REQUEST)]
        )
        with pytest.raises(ProviderError) as exc_info:
            await ModelCallExecutor().execute(
                node(NodeKind.MODEL_CALL, {"prompt": "x"}),
                {},
                Recorder(),
                make_ctx(Capabilities(model=invoker)),
            )
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_missing_model_capability(self):
        with pytest.raises(CapabilityError):
            await ModelCallExecutor().execute(
                node(NodeKind.MODEL_CALL, {"prompt": "x"}), {}, Recorder(), make_ctx()
            )


@pytest.mark.asyncio
async def test_tool_call_maps_declared_outputs():
    registry = ToolRegistry()

    def lookup_order(order_id: str) -> dict:
        return {"status": "shipped", "eta_days": 2}

    registry.register_function(lookup_order)
    spec = node(
        NodeKind.TOOL_CALL,
        {"tool_id": "lookup_order"},
        outputs=[OutputSocket(name="status")],
    )

    result = await ToolCallExecutor().execute(
        spec, {"order_id": "A-1", "unused": None}, Recorder(), make_ctx(Capabilities(tools=registry))
    )

    assert result.outputs["status"] == "shipped"
    assert result.outputs["result"] == {"status": "shipped", "eta_days": 2}


class TestRetrieval:
    @pytest.mark.asyncio
    async def test_results_and_context(self):
        retriever = FakeRetriever(
            [RetrievedChunk("RAG retrieves documents.", 0.9), RetrievedChunk("It then generates.", 0.7)]
        )
        spec = node(NodeKind.RETRIEVAL, {"collection_id": "docs", "top_k": 1})

        result = await RetrievalExecutor().execute(
            spec, {"query": "what is rag"}, Recorder(), make_ctx(Capabilities(retriever=retriever))
        )

        assert retriever.queries == [("what is rag", "docs", 1)]
        assert result.outputs["context"] == "RAG retrieves documents."
        assert result.outputs["results"][0]["score"] == 0.9

    @pytest.mark.asyncio
    async def test_empty_query_fails(self):
        spec = node(NodeKind.RETRIEVAL, {"collection_id": "docs"})
        with pytest.raises(RetrievalError):
            await RetrievalExecutor().execute(
                spec, {"query": ""}, Recorder(), make_ctx(Capabilities(retriever=FakeRetriever([])))
            )


class TestHttpRequest:
    @staticmethod
    def client(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_json_response(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": 7, "name": "widget"})

        spec = node(
            NodeKind.HTTP_REQUEST,
            {
                "method": "POST",
                "url": "https://api.example.com/items/{item_id}",
                "headers": {"Authorization": "Bearer {token}"},
                "query": {"verbose": "1"},
                "body_input": "payload",
            },
        )
        async with self.client(handler) as http:
            result = await HttpRequestExecutor().execute(
                spec,
                {"item_id": 7, "token": "t0k", "payload": {"qty": 2}},
                Recorder(),
                make_ctx(Capabilities(http_client=http)),
            )

        assert result.outputs["status_code"] == 200
        assert result.outputs["body"] == {"id": 7, "name": "widget"}
        request = seen[0]
        assert request.url.path == "/items/7"
        assert request.url.params["verbose"] == "1"
        assert request.headers["Authorization"] == "Bearer t0k"
        assert json.loads(request.content) == {"qty": 2}

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        spec = node(NodeKind.HTTP_REQUEST, {"url": "https://api.example.com/x"})
        async with self.client(lambda r: httpx.Response(503, text="busy")) as http:
            with pytest.raises(HttpRequestError) as exc_info:
                await HttpRequestExecutor().execute(
                    spec, {}, Recorder(), make_ctx(Capabilities(http_client=http))
                )
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(self):
        spec = node(NodeKind.HTTP_REQUEST, {"url": "https://api.example.com/x"})
        async with self.client(lambda r: httpx.Response(404, text="nope")) as http:
            with pytest.raises(HttpRequestError) as exc_info:
                await HttpRequestExecutor().execute(
                    spec, {}, Recorder(), make_ctx(Capabilities(http_client=http))
                )
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        spec = node(NodeKind.HTTP_REQUEST, {"url": "https://api.example.com/x"})
        async with self.client(handler) as http:
            with pytest.raises(HttpRequestError) as exc_info:
                await HttpRequestExecutor().execute(
                    spec, {}, Recorder(), make_ctx(Capabilities(http_client=http))
                )
        assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_code_sandbox_passes_inputs_and_timeout():
    sandbox = FakeSandbox(SandboxResult(stdout="ok\n", result={"total": 5}))
    spec = node(
        NodeKind.CODE_SANDBOX,
        {"code": "result = {'total': a + b}"},
        outputs=[OutputSocket(name="total")],
        timeout_seconds=5,
    )

    result = await CodeSandboxExecutor().execute(
        spec, {"a": 2, "b": 3}, Recorder(), make_ctx(Capabilities(sandbox=sandbox))
    )

    assert result.outputs == {"result": {"total": 5}, "stdout": "ok\n", "total": 5}
    assert sandbox.calls[0]["inputs"] == {"a": 2, "b": 3}
    assert sandbox.calls[0]["timeout"] == 5


class TestCondition:
    config = {
        "cases": [
            {"branch": "high", "expression": "float(score) > 0.5"},
            {"branch": "mid", "expression": "float(score) > 0.2"},
        ],
        "default": "low",
    }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("score", "branch"), [("0.8", "high"), (0.3, "mid"), (0.1, "low")]
    )
    async def test_first_matching_case_wins(self, score, branch):
        result = await ConditionExecutor().execute(
            node(NodeKind.CONDITION, self.config), {"score": score}, Recorder(), make_ctx()
        )
        assert result.branch == branch
        assert result.outputs == {"branch": branch}

    @pytest.mark.asyncio
    async def test_absent_value_falls_through_to_default(self):
        result = await ConditionExecutor().execute(
            node(NodeKind.CONDITION, self.config), {}, Recorder(), make_ctx()
        )
        assert result.branch == "low"

    @pytest.mark.asyncio
    async def test_no_match_without_default_fails(self):
        config = {"cases": [{"branch": "yes", "expression": "false"}]}
        with pytest.raises(ExpressionError):
            await ConditionExecutor().execute(
                node(NodeKind.CONDITION, config), {}, Recorder(), make_ctx()
            )


class TestLoopBoundaries:
    @pytest.mark.asyncio
    async def test_loop_start_publishes_frame(self):
        spec = node(NodeKind.LOOP_START, {"items_input": "items"}, inputs=[InputSocket(name="items")])
        frame = LoopFrame(index=1, item="b", previous={"summary": "a!"})

        result = await LoopStartExecutor().execute(spec, {}, Recorder(), make_ctx(loop=frame))

        assert result.outputs == {"index": 1, "item": "b", "previous": {"summary": "a!"}}

    @pytest.mark.asyncio
    async def test_loop_start_outside_iteration_fails(self):
        spec = node(NodeKind.LOOP_START, {"condition": "true"})
        with pytest.raises(ExpressionError):
            await LoopStartExecutor().execute(spec, {}, Recorder(), make_ctx())

    def test_iteration_items(self):
        spec = node(NodeKind.LOOP_START, {"items_input": "items"}, inputs=[InputSocket(name="items")])

        assert LoopStartExecutor.iteration_items(spec, {"items": ("a", "b")}) == ["a", "b"]
        assert LoopStartExecutor.iteration_items(spec, {"items": {"k": 1}}) == [("k", 1)]
        assert LoopStartExecutor.iteration_items(spec, {"items": None}) == []
        with pytest.raises(ExpressionError):
            LoopStartExecutor.iteration_items(spec, {"items": 42})

    def test_while_predicate_sees_index_and_previous(self):
        spec = node(
            NodeKind.LOOP_START,
            {"condition": "index < limit and (previous == null or not previous['done'])"},
        )

        assert LoopStartExecutor.iteration_items(spec, {}) is None
        assert LoopStartExecutor.should_continue(spec, {"limit": 3}, 0, None)
        assert not LoopStartExecutor.should_continue(spec, {"limit": 3}, 3, {"done": False})
        assert not LoopStartExecutor.should_continue(spec, {"limit": 3}, 1, {"done": True})

    @pytest.mark.asyncio
    async def test_loop_end_passes_declared_outputs(self):
        spec = node(NodeKind.LOOP_END, outputs=[OutputSocket(name="summary", accumulate=True)])
        result = await LoopEndExecutor().execute(
            spec, {"summary": "s", "noise": 1}, Recorder(), make_ctx()
        )
        assert result.outputs == {"summary": "s"}


class TestAnswer:
    @pytest.mark.asyncio
    async def test_template_answer_emitted_as_final(self):
        emit = Recorder()
        spec = node(NodeKind.ANSWER, {"template": "{a} | {b}"})

        result = await AnswerExecutor().execute(spec, {"a": "alpha", "b": "beta"}, emit, make_ctx())

        assert result.outputs == {"answer": "alpha | beta"}
        assert emit.chunks == [("alpha | beta", "final")]

    @pytest.mark.asyncio
    async def test_single_input_passes_through(self):
        result = await AnswerExecutor().execute(
            node(NodeKind.ANSWER), {"text": ["x", "y"]}, Recorder(), make_ctx()
        )
        assert result.outputs == {"answer": ["x", "y"]}

    @pytest.mark.asyncio
    async def test_several_inputs_become_mapping(self):
        result = await AnswerExecutor().execute(
            node(NodeKind.ANSWER), {"a": 1, "b": 2}, Recorder(), make_ctx()
        )
        assert result.outputs == {"answer": {"a": 1, "b": 2}}
