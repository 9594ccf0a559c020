"""Tests for run history storage and per-run logging context."""

import asyncio
from datetime import UTC, datetime, timedelta

import aiosqlite
import pytest
import structlog

from mcp_server_deep_research.observability import RunRecord, RunStatus
from mcp_server_deep_research.observability.logging import (
    bind_run_context,
    clear_run_context,
    get_current_run_id,
    get_run_logger,
)
from mcp_server_deep_research.observability.store import ResearchRunStore


@pytest.fixture
def run_store(tmp_path) -> ResearchRunStore:
    return ResearchRunStore(db_path=tmp_path / "runs.db")


def _record(run_id: str = "run-1", **kwargs) -> RunRecord:
    return RunRecord(run_id=run_id, tool_name="run_deep_research", question="What is a solid electrolyte?", **kwargs)


class TestRunRecord:
    def test_defaults(self):
        record = _record()
        assert record.status == RunStatus.PENDING
        assert record.progress_percent == 0
        assert record.coverage_score is None
        assert record.duration_seconds is None

    def test_duration(self):
        end = datetime.now(UTC)
        record = _record(started_at=end - timedelta(seconds=30), completed_at=end)
        assert record.duration_seconds == pytest.approx(30)

    def test_waiting_is_not_terminal(self):
        assert not _record(status=RunStatus.WAITING).is_terminal
        assert _record(status=RunStatus.CANCELLED).is_terminal


class TestResearchRunStore:
    @pytest.mark.anyio
    async def test_create_and_get(self, run_store):
        await run_store.create_run(_record(input_params={"max_iterations": 2, "engines": ["bing"]}))

        record = await run_store.get_run("run-1")

        assert record is not None
        assert record.question == "What is a solid electrolyte?"
        assert record.input_params == {"max_iterations": 2, "engines": ["bing"]}
        assert await run_store.get_run("missing") is None

    @pytest.mark.anyio
    async def test_progress_keeps_unspecified_columns(self, run_store):
        await run_store.create_run(_record())
        await run_store.update_progress("run-1", 40, "Searching", phase="searching", iteration=1, max_iterations=3)
        await run_store.update_progress("run-1", 55, "Reading", coverage_score=35)

        record = await run_store.get_run("run-1")

        assert record.progress_percent == 55
        assert record.progress_message == "Reading"
        assert record.phase == "searching"
        assert record.iteration == 1
        assert record.max_iterations == 3
        assert record.coverage_score == 35

    @pytest.mark.anyio
    async def test_status_lifecycle_timestamps(self, run_store):
        await run_store.create_run(_record())

        await run_store.update_status("run-1", RunStatus.RUNNING)
        running = await run_store.get_run("run-1")
        assert running.started_at is not None
        assert running.completed_at is None

        await run_store.update_status("run-1", RunStatus.WAITING)
        await run_store.update_status("run-1", RunStatus.RUNNING)
        await run_store.update_status("run-1", RunStatus.COMPLETED, result="/tmp/report.md", report_title="Batteries")
        done = await run_store.get_run("run-1")

        assert done.started_at == running.started_at
        assert done.completed_at is not None
        assert done.result == "/tmp/report.md"
        assert done.report_title == "Batteries"
        assert done.is_terminal

    @pytest.mark.anyio
    async def test_long_error_is_truncated(self, run_store):
        await run_store.create_run(_record())
        await run_store.update_status("run-1", RunStatus.FAILED, error="x" * 5000)

        record = await run_store.get_run("run-1")

        assert len(record.error) == 2000

    @pytest.mark.anyio
    async def test_running_includes_waiting(self, run_store):
        for run_id, status in [("a", RunStatus.RUNNING), ("b", RunStatus.WAITING), ("c", RunStatus.COMPLETED)]:
            await run_store.create_run(_record(run_id))
            await run_store.update_status(run_id, status)

        running = await run_store.get_running_runs()

        assert {r.run_id for r in running} == {"a", "b"}

    @pytest.mark.anyio
    async def test_history_filters_and_orders(self, run_store):
        now = datetime.now(UTC)
        for i in range(3):
            await run_store.create_run(_record(f"run-{i}", created_at=now + timedelta(seconds=i)))
        await run_store.update_status("run-1", RunStatus.FAILED, error="boom")

        history = await run_store.get_run_history(limit=2)
        failed = await run_store.get_run_history(status=RunStatus.FAILED)

        assert [r.run_id for r in history] == ["run-2", "run-1"]
        assert [r.run_id for r in failed] == ["run-1"]
        assert await run_store.get_run_history(tool_name="other_tool") == []

    @pytest.mark.anyio
    async def test_stats(self, run_store):
        for run_id, status, coverage in [
            ("a", RunStatus.COMPLETED, 80),
            ("b", RunStatus.COMPLETED, 60),
            ("c", RunStatus.FAILED, None),
            ("d", RunStatus.WAITING, None),
        ]:
            await run_store.create_run(_record(run_id))
            if coverage is not None:
                await run_store.update_progress(run_id, 100, coverage_score=coverage)
            await run_store.update_status(run_id, status)

        stats = await run_store.get_stats()

        assert stats["total_runs"] == 4
        assert stats["by_status"] == {"completed": 2, "failed": 1, "waiting": 1}
        assert stats["running_count"] == 1
        assert stats["success_rate_24h"] == pytest.approx(66.7)
        assert stats["average_coverage"] == 70.0

    @pytest.mark.anyio
    async def test_cleanup_keeps_unfinished_runs(self, run_store):
        old = datetime.now(UTC) - timedelta(days=30)
        await run_store.create_run(_record("old-done", created_at=old, status=RunStatus.COMPLETED))
        await run_store.create_run(_record("old-running", created_at=old, status=RunStatus.RUNNING))
        await run_store.create_run(_record("new-done", status=RunStatus.COMPLETED))

        deleted = await run_store.cleanup_old_runs(days=7)

        assert deleted == 1
        assert await run_store.get_run("old-done") is None
        assert await run_store.get_run("old-running") is not None

    @pytest.mark.anyio
    async def test_concurrent_initialize_uses_wal(self, run_store):
        await asyncio.gather(*(run_store.initialize() for _ in range(5)))

        async with aiosqlite.connect(run_store.db_path) as db:
            async with db.execute("PRAGMA journal_mode") as cursor:
                mode = (await cursor.fetchone())[0]

        assert mode.lower() == "wal"

    @pytest.mark.anyio
    async def test_concurrent_runs_do_not_clobber(self, run_store):
        async def simulate(run_id: str, steps: int) -> None:
            await run_store.create_run(_record(run_id))
            await run_store.update_status(run_id, RunStatus.RUNNING)
            for step in range(1, steps + 1):
                await run_store.update_progress(run_id, step * 10, f"step {step}", iteration=step)
                await asyncio.sleep(0)
            await run_store.update_status(run_id, RunStatus.COMPLETED)

        await asyncio.gather(simulate("fast", 2), simulate("slow", 5))

        fast = await run_store.get_run("fast")
        slow = await run_store.get_run("slow")
        assert (fast.progress_percent, fast.iteration) == (20, 2)
        assert (slow.progress_percent, slow.iteration) == (50, 5)


class TestRunContext:
    def test_bind_and_clear(self):
        bind_run_context("run-42", "run_deep_research")
        assert get_current_run_id() == "run-42"
        assert structlog.contextvars.get_contextvars()["run_id"] == "run-42"

        clear_run_context()
        assert get_current_run_id() is None
        assert structlog.contextvars.get_contextvars() == {}

    @pytest.mark.anyio
    async def test_context_is_isolated_between_tasks(self):
        seen: dict[str, str | None] = {}

        async def run(run_id: str) -> None:
            bind_run_context(run_id, "run_deep_research")
            await asyncio.sleep(0.01)
            seen[run_id] = get_current_run_id()
            clear_run_context()

        await asyncio.gather(run("first"), run("second"))

        assert seen == {"first": "first", "second": "second"}

    def test_run_logger_is_structlog(self):
        logger = get_run_logger()
        assert hasattr(logger, "bind")
