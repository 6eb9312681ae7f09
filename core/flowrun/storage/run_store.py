"""File-based storage for run traces.

Each run gets its own directory under ``runs/``. There is no shared
index: ``list_runs()`` scans the directory and loads summary.json from
each run, so concurrent runs never contend on one file.

Node records are appended to trace.jsonl (one JSON object per line) as
they are produced, so the trace survives a crash up to the last finished
node. The summary is written once at the end, atomically.

Storage layout::

    {base_path}/
      runs/
        {run_id}/
          trace.jsonl    # appended per node execution
          summary.json   # written once at end of run
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from flowrun.runtime.run_recorder import RunSink
from flowrun.runtime.trace_schemas import NodeExecutionRecord, RunSummary, RunTrace

logger = logging.getLogger(__name__)


class FileRunStore(RunSink):
    """Persists run traces and summaries under ``base_path``."""

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)
        self._append_lock = asyncio.Lock()

    def _get_run_dir(self, run_id: str) -> Path:
        return self._base_path / "runs" / run_id

    # -------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------

    async def write_record(self, run_id: str, record: NodeExecutionRecord) -> None:
        """Append one JSONL line to trace.jsonl."""
        run_dir = self._get_run_dir(run_id)
        line = json.dumps(record.model_dump(), ensure_ascii=False, default=str) + "\n"

        def _append() -> None:
            run_dir.mkdir(parents=True, exist_ok=True)
            with open(run_dir / "trace.jsonl", "a", encoding="utf-8") as f:
                f.write(line)

        async with self._append_lock:
            await asyncio.to_thread(_append)

    async def write_summary(self, run_id: str, summary: RunSummary) -> None:
        """Write summary.json atomically. Called once per run."""
        run_dir = self._get_run_dir(run_id)
        await asyncio.to_thread(run_dir.mkdir, parents=True, exist_ok=True)
        await self._write_json(run_dir / "summary.json", summary.model_dump())

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    async def load_summary(self, run_id: str) -> RunSummary | None:
        data = await self._read_json(self._get_run_dir(run_id) / "summary.json")
        return RunSummary(**data) if data is not None else None

    async def load_trace(self, run_id: str) -> RunTrace | None:
        """Load the records of a run from trace.jsonl, skipping corrupt lines."""
        path = self._get_run_dir(run_id) / "trace.jsonl"

        def _read() -> RunTrace | None:
            if not path.exists():
                return None
            trace = RunTrace(run_id=run_id)
            for record in _read_jsonl_as_models(path, NodeExecutionRecord):
                trace.append(record)
            return trace

        return await asyncio.to_thread(_read)

    async def list_runs(self, status: str = "", limit: int = 20) -> list[RunSummary]:
        """Summaries of stored runs, most recent first.

        Directories without summary.json are runs still in progress (or
        interrupted); they get a synthetic summary with status="in_progress".
        """
        run_ids = await asyncio.to_thread(self._scan_run_dirs)
        summaries: list[RunSummary] = []

        for run_id in run_ids:
            summary = await self.load_summary(run_id)
            if summary is None:
                summary = RunSummary(
                    run_id=run_id,
                    status="in_progress",
                    started_at=_infer_started_at(run_id),
                )
            if status and summary.status != status:
                continue
            summaries.append(summary)

        summaries.sort(key=lambda s: s.started_at, reverse=True)
        return summaries[:limit]

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _scan_run_dirs(self) -> list[str]:
        runs_dir = self._base_path / "runs"
        if not runs_dir.exists():
            return []
        return [d.name for d in runs_dir.iterdir() if d.is_dir()]

    @staticmethod
    async def _write_json(path: Path, data: dict) -> None:
        """Write JSON atomically: write to .tmp then rename."""
        tmp = path.with_suffix(".tmp")
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

        def _write() -> None:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    @staticmethod
    async def _read_json(path: Path) -> dict | None:
        """Read and parse a JSON file. Returns None if missing or corrupt."""

        def _read() -> dict | None:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                return None

        return await asyncio.to_thread(_read)


# -------------------------------------------------------------------
# Module-level helpers
# -------------------------------------------------------------------


def _read_jsonl_as_models(path: Path, model_cls: type) -> list:
    """Parse a JSONL file into a list of Pydantic model instances.

    Skips blank lines and corrupt lines (partial writes from crashes).
    """
    results = []
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(model_cls(**json.loads(line)))
                except (json.JSONDecodeError, TypeError, ValueError) as e:
                    logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return results


def _infer_started_at(run_id: str) -> str:
    """Best-effort ISO timestamp from a run_id like '20250101T120000_abc12345'."""
    try:
        ts_part = run_id.split("_")[0]
        dt = datetime.strptime(ts_part, "%Y%m%dT%H%M%S").replace(tzinfo=UTC)
        return dt.isoformat()
    except (ValueError, IndexError):
        return ""
