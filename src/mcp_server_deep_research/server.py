"""MCP server exposing the deep research engine as tools with native background task support."""

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any


def _configure_stdio_logging() -> None:
    """Send all logging to stderr; stdout carries protocol messages in stdio mode."""
    # Must be set before browser_use is imported
    os.environ.setdefault("BROWSER_USE_LOGGING_LEVEL", "warning")

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))

    root = logging.getLogger()
    root.handlers = [stderr_handler]
    root.setLevel(logging.WARNING)

    for logger_name in [
        "httpx",
        "httpcore",
        "urllib3",
        "asyncio",
        "browser_use",
        "cdp_use",
        "openai",
        "anthropic",
        "aiosqlite",
    ]:
        dep_logger = logging.getLogger(logger_name)
        dep_logger.setLevel(logging.WARNING)
        dep_logger.handlers = [stderr_handler]
        dep_logger.propagate = False


_configure_stdio_logging()

# ruff: noqa: E402 - Intentional late imports after logging configuration
from fastmcp import FastMCP
from fastmcp.dependencies import CurrentContext, Progress
from fastmcp.server.context import Context
from fastmcp.server.tasks.config import TaskConfig

from .config import ResearchSettings, settings
from .exceptions import LLMProviderError
from .observability import (
    ResearchRunStore,
    RunRecord,
    RunStatus,
    bind_run_context,
    clear_run_context,
    get_run_logger,
    setup_structured_logging,
)
from .providers import get_llm_from_settings
from .research.adapters import LLMTextGenerator, PageFetcher, SearchBackend, TextGenerator
from .research.browser import BrowserResearchAdapter, build_browser_profile
from .research.machine import ResearchCallbacks, ResearchMachine
from .research.models import (
    PendingAction,
    ResearchEvaluation,
    ResearchPhase,
    ResearchProgress,
)
from .research.report import export_as_markdown
from .research.store import ResearchSessionRegistry
from .utils import save_report

logger = logging.getLogger("mcp_server_deep_research")
logger.setLevel(getattr(logging, settings.server.logging_level.upper()))

TOOL_NAME = "run_deep_research"


@dataclass
class ResearchAdapters:
    """The three adapters a research run needs."""

    generator: TextGenerator
    search_backend: SearchBackend
    page_fetcher: PageFetcher


AdapterFactory = Callable[[], AbstractAsyncContextManager[ResearchAdapters]]


@asynccontextmanager
async def browser_adapters() -> AsyncIterator[ResearchAdapters]:
    """Adapters backed by the configured LLM and a fresh browser session."""
    llm = get_llm_from_settings(settings.llm)
    generator = LLMTextGenerator(llm, timeout=settings.research.generation_timeout)
    profile = build_browser_profile(settings.browser)
    async with BrowserResearchAdapter(profile, load_timeout=settings.research.fetch_timeout) as browser:
        yield ResearchAdapters(generator=generator, search_backend=browser, page_fetcher=browser)


def stop_runs_on_shutdown(registry: ResearchSessionRegistry) -> Callable[[FastMCP], AbstractAsyncContextManager[dict]]:
    """Server lifespan that stops every live research run when the server shuts down."""

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[dict]:
        try:
            yield {}
        finally:
            active = [s.run_id for s in registry.list() if s.is_active]
            if active:
                logger.info(f"Stopping {len(active)} research run(s) on shutdown")
            await registry.stop_all()

    return lifespan


def _match_run_id(run_ids: list[str], prefix: str) -> str | None:
    for run_id in run_ids:
        if run_id == prefix or run_id.startswith(prefix):
            return run_id
    return None


def _describe_action(action: PendingAction) -> dict[str, Any]:
    return {
        "type": action.type.value,
        "description": action.description,
        "options": [{"label": o.label, "value": o.value} for o in action.options],
    }


def serve(
    run_store: ResearchRunStore | None = None,
    adapter_factory: AdapterFactory | None = None,
) -> FastMCP:
    """Create and configure MCP server with background task support.

    Args:
        run_store: Run history store. Defaults to the SQLite file in the config directory.
        adapter_factory: Provides adapters per run. Defaults to LLM + browser adapters.
    """
    setup_structured_logging()

    registry = ResearchSessionRegistry()
    server = FastMCP("mcp_server_deep_research", lifespan=stop_runs_on_shutdown(registry))
    store = run_store or ResearchRunStore()
    make_adapters = adapter_factory or browser_adapters
    started_at = time.time()

    @server.tool(task=TaskConfig(mode="optional"))
    async def run_deep_research(
        question: str,
        max_iterations: int | None = None,
        max_pages_per_iteration: int | None = None,
        engines: list[str] | None = None,
        require_plan_approval: bool | None = None,
        require_page_approval: bool | None = None,
        interactive: bool | None = None,
        ctx: Context = CurrentContext(),
        progress: Progress = Progress(),
    ) -> str:
        """
        Research a question across multiple web searches and pages, then write a cited report.

        Runs as a background task if client requests it, otherwise synchronous.
        Progress updates are streamed via the MCP task protocol. When approvals are
        required the run pauses; answer with research_respond using the run id
        reported in the log messages.

        Args:
            question: The research question to investigate
            max_iterations: Maximum search/read/evaluate iterations (default from settings)
            max_pages_per_iteration: Pages read per iteration (default from settings)
            engines: Search engines to use: google, bing, baidu (default from settings)
            require_plan_approval: Pause for approval of the research plan
            require_page_approval: Pause to choose which pages to read
            interactive: Pause after each iteration to continue or finish

        Returns:
            The research report as markdown
        """
        overrides: dict[str, Any] = {
            "max_iterations": max_iterations,
            "max_pages_per_iteration": max_pages_per_iteration,
            "preferred_engines": engines,
            "require_plan_approval": require_plan_approval,
            "require_page_approval": require_page_approval,
            "interactive_mode": interactive,
        }
        update = {key: value for key, value in overrides.items() if value is not None}
        try:
            options = ResearchSettings.model_validate({**settings.research.model_dump(), **update})
        except ValueError as e:
            return f"Error: Invalid research options: {e}"

        run_id = str(uuid.uuid4())
        await store.create_run(
            RunRecord(
                run_id=run_id,
                tool_name=TOOL_NAME,
                question=question,
                max_iterations=options.max_iterations,
                input_params={"question": question, **update},
            )
        )
        bind_run_context(run_id, TOOL_NAME)
        run_logger = get_run_logger()

        logger.info(f"Starting deep research on: {question}")
        run_logger.info("run_created", question=question[:100])
        await ctx.info(f"Research run {run_id[:8]} started: {question}")

        await progress.set_total(100)
        reported = 0

        async def on_progress(update: ResearchProgress) -> None:
            nonlocal reported
            await progress.set_message(update.current_task)
            if update.percentage > reported:
                await progress.increment(update.percentage - reported)
                reported = update.percentage
            await store.update_progress(
                run_id,
                update.percentage,
                update.current_task,
                iteration=update.iteration,
                max_iterations=update.max_iterations,
            )

        async def on_phase(phase: ResearchPhase) -> None:
            if phase.is_terminal:
                return
            await store.update_progress(run_id, reported, None, phase=phase.value)
            status = RunStatus.WAITING if phase == ResearchPhase.WAITING else RunStatus.RUNNING
            await store.update_status(run_id, status)

        async def on_pending(action: PendingAction) -> None:
            options_text = ", ".join(o.value for o in action.options)
            await ctx.info(f"Run {run_id[:8]} waiting ({action.type.value}): {action.description} Options: {options_text}")

        async def on_evaluation(evaluation: ResearchEvaluation) -> None:
            await store.update_progress(run_id, reported, None, coverage_score=evaluation.coverage_score)
            await ctx.info(f"Coverage {evaluation.coverage_score}%, next: {evaluation.recommendation.value}")

        callbacks = ResearchCallbacks(
            on_progress_update=on_progress,
            on_phase_change=on_phase,
            on_pending_action=on_pending,
            on_evaluation_complete=on_evaluation,
        )

        try:
            async with make_adapters() as adapters:
                machine = ResearchMachine(
                    adapters.generator,
                    adapters.search_backend,
                    adapters.page_fetcher,
                    options=options,
                    callbacks=callbacks,
                )
                session = registry.register(run_id, question, machine)
                await store.update_status(run_id, RunStatus.RUNNING)
                run_logger.info("run_running")

                session.task = asyncio.create_task(machine.run(question))
                try:
                    result = await session.task
                finally:
                    registry.remove(run_id)
        except LLMProviderError as e:
            logger.error(f"LLM initialization failed: {e}")
            await store.update_status(run_id, RunStatus.FAILED, error=str(e))
            clear_run_context()
            return f"Error: {e}"
        except asyncio.CancelledError:
            await store.update_status(run_id, RunStatus.CANCELLED, error="Cancelled by user")
            run_logger.info("run_cancelled")
            clear_run_context()
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Only the run task was cancelled (task_cancel); the tool call itself completes
            return "Research cancelled."
        except Exception as e:
            await store.update_status(run_id, RunStatus.FAILED, error=str(e))
            run_logger.error("run_failed", error=str(e))
            clear_run_context()
            raise

        if result.cancelled:
            await store.update_status(run_id, RunStatus.CANCELLED, error=result.error or "Stopped by user")
            run_logger.info("run_cancelled")
            clear_run_context()
            return "Research cancelled."

        if not result.success or result.report is None:
            await store.update_status(run_id, RunStatus.FAILED, error=result.error)
            run_logger.error("run_failed", error=result.error)
            clear_run_context()
            return f"Error: {result.error}"

        report = result.report
        markdown = export_as_markdown(report)
        saved = None
        target_dir = options.save_directory or settings.server.results_dir
        if target_dir:
            saved = save_report(
                markdown,
                prefix=f"research_{question[:20]}",
                metadata={
                    "run_id": run_id,
                    "question": question,
                    "title": report.title,
                    "sources": len(report.sources),
                    "iterations": report.metadata.total_iterations,
                    "coverage": result.state.evaluation.coverage_score if result.state.evaluation else None,
                },
                directory=Path(target_dir).expanduser(),
            )
            await ctx.info(f"Saved to: {saved.name}")

        await store.update_status(
            run_id,
            RunStatus.COMPLETED,
            result=str(saved) if saved else report.summary,
            report_title=report.title,
        )
        run_logger.info("run_completed", sources=len(report.sources), sections=len(report.sections))
        clear_run_context()
        return markdown

    @server.tool()
    async def research_respond(run_id: str, decision: str) -> str:
        """
        Answer the approval a paused research run is waiting for.

        Args:
            run_id: Run ID (full or prefix)
            decision: One of the offered option values, e.g. approve, cancel, skip, all,
                continue, complete, or a comma separated list of page URLs

        Returns:
            JSON with success status
        """
        matched = _match_run_id([s.run_id for s in registry.list()], run_id)
        if matched is None:
            return json.dumps({"success": False, "error": f"Run '{run_id}' not found or not running"})
        session = registry.get(matched)
        pending = session.machine.state.pending_action if session else None
        if not registry.respond(matched, decision):
            return json.dumps({"success": False, "error": f"Run '{matched[:8]}' is not waiting for a decision"})
        return json.dumps(
            {"success": True, "run_id": matched[:8], "answered": pending.type.value if pending else None},
        )

    @server.tool()
    async def research_status(run_id: str | None = None) -> str:
        """
        Show live state of active research runs, including any pending approval.

        Args:
            run_id: Optional run ID (full or prefix); all active runs when omitted

        Returns:
            JSON object with phase, progress and pending action per run
        """
        sessions = registry.list()
        if run_id:
            matched = _match_run_id([s.run_id for s in sessions], run_id)
            if matched is None:
                return json.dumps({"success": False, "error": f"Run '{run_id}' not found or not running"})
            sessions = [s for s in sessions if s.run_id == matched]

        runs = []
        for session in sessions:
            state = session.machine.get_state()
            runs.append(
                {
                    "run_id": session.run_id,
                    "question": session.question,
                    "phase": state.phase.value,
                    "progress": state.progress.percentage,
                    "message": state.progress.current_task,
                    "iteration": f"{state.current_iteration}/{state.progress.max_iterations}",
                    "chunks": len(state.all_chunks),
                    "coverage": state.evaluation.coverage_score if state.evaluation else None,
                    "pending_action": _describe_action(state.pending_action) if state.pending_action else None,
                }
            )
        return json.dumps({"runs": runs, "count": len(runs)}, indent=2)

    @server.tool()
    async def research_stop(run_id: str) -> str:
        """
        Stop a research run cooperatively; it ends in the cancelled state without a report.

        Args:
            run_id: Run ID (full or prefix)

        Returns:
            JSON with success status
        """
        matched = _match_run_id([s.run_id for s in registry.list()], run_id)
        if matched is None or not registry.stop(matched):
            return json.dumps({"success": False, "error": f"Run '{run_id}' not found or not running"})
        return json.dumps({"success": True, "run_id": matched[:8], "message": "Stop requested"})

    # --- Observability Tools ---

    @server.tool()
    async def health_check() -> str:
        """
        Health check endpoint with system stats and running research information.

        Returns:
            JSON object with server health status, running runs, and statistics
        """
        import psutil

        running = await store.get_running_runs()
        stats = await store.get_stats()

        process = psutil.Process()
        memory_info = process.memory_info()

        return json.dumps(
            {
                "status": "healthy",
                "uptime_seconds": round(time.time() - started_at, 1),
                "memory_mb": round(memory_info.rss / 1024 / 1024, 1),
                "running_runs": len(running),
                "active_sessions": len(registry.list()),
                "runs": [
                    {
                        "run_id": r.run_id[:8],
                        "status": r.status.value,
                        "phase": r.phase,
                        "progress": r.progress_percent,
                        "message": r.progress_message,
                    }
                    for r in running
                ],
                "stats": stats,
            },
            indent=2,
        )

    @server.tool()
    async def task_list(
        limit: int = 20,
        status_filter: str | None = None,
    ) -> str:
        """
        List recent research runs with optional filtering.

        Args:
            limit: Maximum number of runs to return (default 20)
            status_filter: Optional status filter (pending, running, waiting, completed, failed, cancelled)

        Returns:
            JSON list of recent runs
        """
        status = None
        if status_filter:
            try:
                status = RunStatus(status_filter)
            except ValueError:
                valid = ", ".join(s.value for s in RunStatus)
                return f"Error: Invalid status '{status_filter}'. Use: {valid}"

        runs = await store.get_run_history(limit=limit, status=status)

        return json.dumps(
            {
                "tasks": [
                    {
                        "run_id": r.run_id[:8],
                        "question": r.question[:100],
                        "status": r.status.value,
                        "progress": r.progress_percent,
                        "created": r.created_at.isoformat(),
                        "duration_sec": round(r.duration_seconds, 1) if r.duration_seconds else None,
                    }
                    for r in runs
                ],
                "count": len(runs),
            },
            indent=2,
        )

    @server.tool()
    async def task_get(task_id: str) -> str:
        """
        Get full details of a research run.

        Args:
            task_id: Run ID (full or prefix)

        Returns:
            JSON object with run details, input, and result/error
        """
        run = await store.get_run(task_id)
        if not run:
            history = await store.get_run_history(limit=100)
            run = next((r for r in history if r.run_id.startswith(task_id)), None)

        if not run:
            return f"Error: Task '{task_id}' not found"

        return json.dumps(
            {
                "run_id": run.run_id,
                "tool": run.tool_name,
                "question": run.question,
                "status": run.status.value,
                "phase": run.phase,
                "progress": {
                    "percent": run.progress_percent,
                    "message": run.progress_message,
                    "iteration": run.iteration,
                    "max_iterations": run.max_iterations,
                },
                "coverage_score": run.coverage_score,
                "timestamps": {
                    "created": run.created_at.isoformat(),
                    "started": run.started_at.isoformat() if run.started_at else None,
                    "completed": run.completed_at.isoformat() if run.completed_at else None,
                    "duration_sec": round(run.duration_seconds, 1) if run.duration_seconds else None,
                },
                "input": run.input_params,
                "report_title": run.report_title,
                "result": run.result[:500] if run.result else None,
                "error": run.error,
            },
            indent=2,
        )

    @server.tool()
    async def task_cancel(task_id: str) -> str:
        """
        Cancel a running research task immediately.

        Args:
            task_id: Run ID (full or prefix match)

        Returns:
            JSON with success status and message
        """
        matched = _match_run_id([s.run_id for s in registry.list() if s.is_active], task_id)
        if matched is None:
            return json.dumps({"success": False, "error": f"Task '{task_id}' not found or not running"})

        session = registry.get(matched)
        if session is not None and session.task is not None:
            session.task.cancel()
        await store.update_status(matched, RunStatus.CANCELLED, error="Cancelled by user")

        return json.dumps({"success": True, "task_id": matched[:8], "message": "Task cancelled"})

    return server


server_instance = serve()


def main() -> None:
    """Entry point for MCP server."""
    transport = settings.server.transport

    if transport == "stdio":
        logger.info(f"Starting MCP deep research server (provider: {settings.llm.provider}, transport: stdio)")
        server_instance.run(transport="stdio")
    elif transport in ("streamable-http", "sse"):
        logger.info(f"Starting MCP deep research server (provider: {settings.llm.provider}, transport: {transport})")
        logger.info(f"HTTP server at http://{settings.server.host}:{settings.server.port}/mcp")
        server_instance.run(transport=transport, host=settings.server.host, port=settings.server.port)
    else:
        raise ValueError(f"Unknown transport: {transport}")


if __name__ == "__main__":
    main()
