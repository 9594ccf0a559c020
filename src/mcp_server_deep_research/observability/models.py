"""Data models for research run history."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Lifecycle status of a research run as seen from outside."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"  # suspended on an approval gate
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunRecord(BaseModel):
    """Summary of one research run. The live run state stays with its orchestrator."""

    run_id: str
    tool_name: str
    question: str
    status: RunStatus = RunStatus.PENDING
    phase: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    iteration: int = 0
    max_iterations: int = 0
    progress_percent: int = 0
    progress_message: str | None = None
    coverage_score: int | None = None

    input_params: dict[str, Any] = Field(default_factory=dict)
    report_title: str | None = None
    result: str | None = None  # path of the saved report, or a short summary
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if not self.started_at:
            return None
        end = self.completed_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)
