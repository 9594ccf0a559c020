"""Observability module for run history, logging, and health monitoring."""

from .logging import bind_run_context, clear_run_context, get_run_logger, setup_structured_logging
from .models import RunRecord, RunStatus
from .store import ResearchRunStore

__all__ = [
    "ResearchRunStore",
    "RunRecord",
    "RunStatus",
    "bind_run_context",
    "clear_run_context",
    "get_run_logger",
    "setup_structured_logging",
]
