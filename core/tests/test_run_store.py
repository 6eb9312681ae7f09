"""Tests for the run recorder and file-based run storage."""

import json
from pathlib import Path

import pytest

from flowrun import RunOptions, run_flow
from flowrun.graph.edge import EdgeSpec, FlowGraph
from flowrun.graph.node import InputSocket, NodeKind, NodeSpec
from flowrun.llm.mock import MockModelInvoker
from flowrun.runner.capabilities import Capabilities
from flowrun.runtime.event_bus import EventBus, EventType
from flowrun.runtime.run_recorder import InMemoryRunSink, RunRecorder, RunSink
from flowrun.runtime.trace_schemas import NodeExecutionRecord, RunSummary, TokenUsage
from flowrun.storage.run_store import FileRunStore


def make_record(node_id: str, scope_id: str = "root", **kwargs) -> NodeExecutionRecord:
    return NodeExecutionRecord(
        node_id=node_id,
        node_kind="model_call",
        scope_id=scope_id,
        started_at="2025-01-01T12:00:00+00:00",
        ended_at="2025-01-01T12:00:01+00:00",
        status="succeeded",
        **kwargs,
    )


class BrokenSink(RunSink):
    async def write_record(self, run_id, record):
        raise OSError("disk full")

    async def write_summary(self, run_id, summary):
        raise OSError("disk full")


# === RECORDER ===


class TestRunRecorder:
    @pytest.mark.asyncio
    async def test_records_reach_trace_and_sink(self):
        sink = InMemoryRunSink()
        recorder = RunRecorder("run_1", sink)

        await recorder.record(make_record("a", usage=TokenUsage(input_tokens=3, output_tokens=4)))
        await recorder.record(make_record("a", "root/loop[0]"))
        await recorder.finish(RunSummary(run_id="run_1", status="succeeded"))

        assert [r.scope_id for r in sink.records["run_1"]] == ["root", "root/loop[0]"]
        assert sink.summaries["run_1"].status == "succeeded"
        assert recorder.trace.total_usage().total_tokens == 7
        assert recorder.warnings == []

    @pytest.mark.asyncio
    async def test_duplicate_node_scope_rejected(self):
        recorder = RunRecorder("run_1")
        await recorder.record(make_record("a"))
        with pytest.raises(ValueError):
            await recorder.record(make_record("a"))

    @pytest.mark.asyncio
    async def test_sink_failure_becomes_warning(self):
        bus = EventBus()
        recorder = RunRecorder("run_1", BrokenSink(), bus, "graph")

        await recorder.record(make_record("a"))
        await recorder.finish(RunSummary(run_id="run_1"))

        assert len(recorder.trace) == 1
        assert len(recorder.warnings) == 2
        assert "disk full" in recorder.warnings[0]
        warnings = bus.get_history(event_type=EventType.RECORDER_WARNING)
        assert len(warnings) == 2

    @pytest.mark.asyncio
    async def test_broken_sink_does_not_fail_run(self):
        graph = FlowGraph(
            id="tiny",
            nodes=[
                NodeSpec(id="start", kind=NodeKind.START),
                NodeSpec(id="llm", kind=NodeKind.MODEL_CALL, config={"prompt": "hi"}),
                NodeSpec(id="answer", kind=NodeKind.ANSWER, inputs=[InputSocket(name="text")]),
            ],
            edges=[
                EdgeSpec(id="e1", source="start", target="llm"),
                EdgeSpec(
                    id="e2", source="llm", target="answer", source_socket="text", target_socket="text"
                ),
            ],
        )
        result = await run_flow(
            graph,
            {},
            RunOptions(global_timeout=None, default_model="mock/model"),
            capabilities=Capabilities(model=MockModelInvoker(response="hello")),
            sink=BrokenSink(),
        )

        assert result.success
        assert result.answer == "hello"
        assert len(result.warnings) == 4  # three records and the summary


# === FILE STORE ===


class TestFileRunStore:
    @pytest.mark.asyncio
    async def test_trace_and_summary_round_trip(self, tmp_path: Path):
        store = FileRunStore(tmp_path)
        await store.write_record("20250101T120000_aaaa1111", make_record("a", output_snapshot={"x": 1}))
        await store.write_record("20250101T120000_aaaa1111", make_record("b"))
        await store.write_summary(
            "20250101T120000_aaaa1111",
            RunSummary(run_id="20250101T120000_aaaa1111", status="partial", failed_nodes=["c"]),
        )

        trace = await store.load_trace("20250101T120000_aaaa1111")
        assert [r.node_id for r in trace.records] == ["a", "b"]
        assert trace.records[0].output_snapshot == {"x": 1}

        summary = await store.load_summary("20250101T120000_aaaa1111")
        assert summary.status == "partial"
        assert summary.failed_nodes == ["c"]

        run_dir = tmp_path / "runs" / "20250101T120000_aaaa1111"
        assert not (run_dir / "summary.tmp").exists()
        assert len((run_dir / "trace.jsonl").read_text().splitlines()) == 2

    @pytest.mark.asyncio
    async def test_missing_run(self, tmp_path: Path):
        store = FileRunStore(tmp_path)
        assert await store.load_trace("nope") is None
        assert await store.load_summary("nope") is None
        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_corrupt_lines_skipped(self, tmp_path: Path):
        store = FileRunStore(tmp_path)
        await store.write_record("run_x", make_record("a"))
        with open(tmp_path / "runs" / "run_x" / "trace.jsonl", "a", encoding="utf-8") as f:
            f.write('{"node_id": "b", "scope_id": "ro')  # crash mid-write

        trace = await store.load_trace("run_x")
        assert [r.node_id for r in trace.records] == ["a"]

    @pytest.mark.asyncio
    async def test_list_runs_filters_and_reports_in_progress(self, tmp_path: Path):
        store = FileRunStore(tmp_path)
        for run_id, status, started in [
            ("20250101T100000_aaaa0001", "succeeded", "2025-01-01T10:00:00+00:00"),
            ("20250101T110000_aaaa0002", "failed", "2025-01-01T11:00:00+00:00"),
        ]:
            await store.write_summary(
                run_id, RunSummary(run_id=run_id, status=status, started_at=started)
            )
        # trace written but no summary yet
        await store.write_record("20250101T120000_aaaa0003", make_record("a"))

        runs = await store.list_runs()
        assert [r.run_id for r in runs] == [
            "20250101T120000_aaaa0003",
            "20250101T110000_aaaa0002",
            "20250101T100000_aaaa0001",
        ]
        assert runs[0].status == "in_progress"
        assert runs[0].started_at == "2025-01-01T12:00:00+00:00"

        failed = await store.list_runs(status="failed")
        assert [r.run_id for r in failed] == ["20250101T110000_aaaa0002"]
        assert len(await store.list_runs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_run_persisted_through_store(self, tmp_path: Path):
        graph = FlowGraph(
            id="tiny",
            nodes=[
                NodeSpec(id="start", kind=NodeKind.START),
                NodeSpec(
                    id="answer",
                    kind=NodeKind.ANSWER,
                    config={"template": "Hi {name}"},
                    inputs=[InputSocket(name="name", ref="$name")],
                ),
            ],
            edges=[EdgeSpec(id="e1", source="start", target="answer")],
        )
        store = FileRunStore(tmp_path)
        result = await run_flow(
            graph, {"name": "Ada"}, RunOptions(global_timeout=None), sink=store
        )

        summary = json.loads(
            (tmp_path / "runs" / result.run_id / "summary.json").read_text(encoding="utf-8")
        )
        assert summary["status"] == "succeeded"
        assert summary["outputs"] == {"answer": "Hi Ada"}
        trace = await store.load_trace(result.run_id)
        assert [r.node_id for r in trace.records] == ["start", "answer"]
        assert trace.records[1].input_snapshot == {"name": "Ada"}
