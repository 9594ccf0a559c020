"""SQLite-backed history of research runs."""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite

from .models import RunRecord, RunStatus

_TERMINAL = (RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.CANCELLED.value)


class ResearchRunStore:
    """Async SQLite store of run summaries.

    Keeps one row per research run so status survives the run itself and server
    restarts. Progress rows are overwritten in place; nothing here is read back by
    a running orchestrator.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.config/mcp-server-deep-research/runs.db
        """
        if db_path is None:
            from ..config import get_config_dir

            db_path = get_config_dir() / "runs.db"
        self.db_path = db_path
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create schema if not exists."""
        if self._initialized:
            return

        # Concurrent runs starting together would otherwise race on PRAGMAs/DDL
        async with self._init_lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("PRAGMA journal_mode = WAL")
                await db.execute("PRAGMA busy_timeout = 5000")

                await db.execute("""
                    CREATE TABLE IF NOT EXISTS runs (
                        run_id TEXT PRIMARY KEY,
                        tool_name TEXT NOT NULL,
                        question TEXT NOT NULL,
                        status TEXT NOT NULL,
                        phase TEXT,
                        created_at TEXT NOT NULL,
                        started_at TEXT,
                        completed_at TEXT,
                        iteration INTEGER DEFAULT 0,
                        max_iterations INTEGER DEFAULT 0,
                        progress_percent INTEGER DEFAULT 0,
                        progress_message TEXT,
                        coverage_score INTEGER,
                        input_params TEXT NOT NULL,
                        report_title TEXT,
                        result TEXT,
                        error TEXT
                    )
                """)

                await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status)")
                await db.execute("CREATE INDEX IF NOT EXISTS idx_runs_created_at ON runs(created_at)")
                await db.commit()

            self._initialized = True

    async def create_run(self, run: RunRecord) -> None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO runs (
                    run_id, tool_name, question, status, phase, created_at, started_at, completed_at,
                    iteration, max_iterations, progress_percent, progress_message, coverage_score,
                    input_params, report_title, result, error
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    run.run_id,
                    run.tool_name,
                    run.question,
                    run.status.value,
                    run.phase,
                    run.created_at.isoformat(),
                    run.started_at.isoformat() if run.started_at else None,
                    run.completed_at.isoformat() if run.completed_at else None,
                    run.iteration,
                    run.max_iterations,
                    run.progress_percent,
                    run.progress_message,
                    run.coverage_score,
                    json.dumps(run.input_params),
                    run.report_title,
                    run.result,
                    run.error,
                ),
            )
            await db.commit()

    async def update_progress(
        self,
        run_id: str,
        percent: int,
        message: str | None = None,
        phase: str | None = None,
        iteration: int | None = None,
        max_iterations: int | None = None,
        coverage_score: int | None = None,
    ) -> None:
        """Overwrite the progress columns; None leaves phase, iteration and coverage unchanged."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE runs
                SET progress_percent = ?, progress_message = ?,
                    phase = COALESCE(?, phase),
                    iteration = COALESCE(?, iteration),
                    max_iterations = COALESCE(?, max_iterations),
                    coverage_score = COALESCE(?, coverage_score)
                WHERE run_id = ?
            """,
                (percent, message, phase, iteration, max_iterations, coverage_score, run_id),
            )
            await db.commit()

    async def update_status(
        self,
        run_id: str,
        status: RunStatus,
        result: str | None = None,
        error: str | None = None,
        report_title: str | None = None,
    ) -> None:
        """Update run status and optionally result/error."""
        await self.initialize()

        started_at: str | None = None
        completed_at: str | None = None
        if status == RunStatus.RUNNING:
            started_at = datetime.now(UTC).isoformat()
        elif status.value in _TERMINAL:
            completed_at = datetime.now(UTC).isoformat()

        truncated_result = result[:10000] if result else None
        truncated_error = error[:2000] if error else None

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE runs
                SET status = ?,
                    started_at = COALESCE(started_at, ?),
                    completed_at = COALESCE(completed_at, ?),
                    result = COALESCE(?, result),
                    error = COALESCE(?, error),
                    report_title = COALESCE(?, report_title)
                WHERE run_id = ?
            """,
                (status.value, started_at, completed_at, truncated_result, truncated_error, report_title, run_id),
            )
            await db.commit()

    async def get_run(self, run_id: str) -> RunRecord | None:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)) as cursor:
                row = await cursor.fetchone()
                if row:
                    return self._row_to_run(row)
        return None

    async def get_running_runs(self) -> list[RunRecord]:
        """Runs that are executing or suspended on an approval gate."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM runs WHERE status IN (?, ?) ORDER BY created_at DESC",
                (RunStatus.RUNNING.value, RunStatus.WAITING.value),
            ) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_run(row) for row in rows]

    async def get_run_history(
        self,
        limit: int = 100,
        tool_name: str | None = None,
        status: RunStatus | None = None,
    ) -> list[RunRecord]:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row

            query = "SELECT * FROM runs"
            params: list = []
            conditions = []

            if tool_name:
                conditions.append("tool_name = ?")
                params.append(tool_name)

            if status:
                conditions.append("status = ?")
                params.append(status.value)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY created_at DESC LIMIT ?"
            params.append(limit)

            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [self._row_to_run(row) for row in rows]

    async def get_stats(self) -> dict:
        """Get aggregate statistics."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM runs GROUP BY status") as cursor:
                status_counts = {row[0]: row[1] for row in await cursor.fetchall()}

            yesterday = (datetime.now(UTC) - timedelta(days=1)).isoformat()
            async with db.execute(
                """
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END) as success
                FROM runs WHERE completed_at > ? AND completed_at IS NOT NULL
            """,
                (RunStatus.COMPLETED.value, yesterday),
            ) as cursor:
                row = await cursor.fetchone()
                total, success = (row[0] or 0, row[1] or 0) if row else (0, 0)
                success_rate = (success / total * 100) if total > 0 else 0

            async with db.execute(
                "SELECT AVG(coverage_score) FROM runs WHERE status = ? AND coverage_score IS NOT NULL",
                (RunStatus.COMPLETED.value,),
            ) as cursor:
                row = await cursor.fetchone()
                average_coverage = round(row[0], 1) if row and row[0] is not None else None

            return {
                "by_status": status_counts,
                "total_runs": sum(status_counts.values()),
                "running_count": status_counts.get(RunStatus.RUNNING.value, 0)
                + status_counts.get(RunStatus.WAITING.value, 0),
                "success_rate_24h": round(success_rate, 1),
                "average_coverage": average_coverage,
            }

    async def cleanup_old_runs(self, days: int = 7) -> int:
        """Delete finished runs older than N days. Returns count deleted."""
        await self.initialize()

        cutoff = (datetime.now(UTC) - timedelta(days=days)).isoformat()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "DELETE FROM runs WHERE created_at < ? AND status IN (?, ?, ?)",
                (cutoff, *_TERMINAL),
            )
            await db.commit()
            return cursor.rowcount

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> RunRecord:
        try:
            loaded = json.loads(row["input_params"])
        except json.JSONDecodeError:
            loaded = {}
        input_params = loaded if isinstance(loaded, dict) else {}

        return RunRecord(
            run_id=row["run_id"],
            tool_name=row["tool_name"],
            question=row["question"],
            status=RunStatus(row["status"]),
            phase=row["phase"],
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
            iteration=row["iteration"],
            max_iterations=row["max_iterations"],
            progress_percent=row["progress_percent"],
            progress_message=row["progress_message"],
            coverage_score=row["coverage_score"],
            input_params=input_params,
            report_title=row["report_title"],
            result=row["result"],
            error=row["error"],
        )
