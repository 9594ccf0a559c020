"""Research state machine: plan, iterate search/browse/analyze/evaluate, then report."""

import asyncio
import copy
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from ..exceptions import DeepResearchError, PlanningError, ResearchCancelledError
from ..observability.logging import get_run_logger
from .adapters import PageContextProvider, PageFetcher, SearchBackend, TextGenerator
from .aggregator import InformationAggregator, format_evaluation_as_text
from .models import (
    ActionOption,
    ActionType,
    BrowseTask,
    ChatMessage,
    DeepResearchResult,
    DeepResearchState,
    InformationChunk,
    IterationStatus,
    PendingAction,
    PlanStatus,
    Recommendation,
    ResearchEvaluation,
    ResearchIteration,
    ResearchPhase,
    ResearchPlan,
    ResearchProgress,
    ResearchReport,
    SearchResult,
    SearchTask,
    SubQuestion,
    SubQuestionStatus,
    TaskStatus,
    utc_now,
)
from .planner import ResearchPlanner, format_plan_as_text
from .report import ReportGenerator, format_report_as_message
from .searcher import WebSearcher, format_results_as_text

if TYPE_CHECKING:
    from ..config import ResearchSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_QUERIES_PER_SUB_QUESTION = 5

# Progress bands, in percent
PLAN_PROGRESS = 5
LOOP_START = 10
LOOP_END = 90


@dataclass
class ResearchCallbacks:
    """Optional hooks a host UI can attach to a run.

    Each hook may be a plain function or a coroutine function. Exceptions raised
    by hooks are logged and never abort the run.
    """

    on_phase_change: Callable[[ResearchPhase], Any] | None = None
    on_plan_created: Callable[[ResearchPlan], Any] | None = None
    on_iteration_start: Callable[[ResearchIteration], Any] | None = None
    on_iteration_complete: Callable[[ResearchIteration], Any] | None = None
    on_search_complete: Callable[[list[SearchTask]], Any] | None = None
    on_page_browsed: Callable[[BrowseTask], Any] | None = None
    on_chunk_extracted: Callable[[InformationChunk], Any] | None = None
    on_evaluation_complete: Callable[[ResearchEvaluation], Any] | None = None
    on_progress_update: Callable[[ResearchProgress], Any] | None = None
    on_pending_action: Callable[[PendingAction], Any] | None = None
    on_message: Callable[[ChatMessage], Any] | None = None
    on_report_generated: Callable[[ResearchReport], Any] | None = None
    on_complete: Callable[[DeepResearchResult], Any] | None = None
    on_error: Callable[[str], Any] | None = None


class ResearchMachine:
    """Runs one research question at a time against injected adapters.

    Usage:
        machine = ResearchMachine(generator, search_backend, page_fetcher, options)
        result = await machine.run("How do solid-state batteries work?")

    While ``run`` is suspended on an approval gate, ``respond`` delivers the
    decision. ``stop`` cancels the run from any other task.
    """

    def __init__(
        self,
        generator: TextGenerator,
        search_backend: SearchBackend,
        page_fetcher: PageFetcher,
        options: "ResearchSettings | None" = None,
        callbacks: ResearchCallbacks | None = None,
        page_context_provider: PageContextProvider | None = None,
        planner: ResearchPlanner | None = None,
        searcher: WebSearcher | None = None,
        aggregator: InformationAggregator | None = None,
        reporter: ReportGenerator | None = None,
    ):
        if options is None:
            from ..config import ResearchSettings

            options = ResearchSettings()

        self.options = options
        self.callbacks = callbacks or ResearchCallbacks()
        self.page_fetcher = page_fetcher
        self.page_context_provider = page_context_provider
        self.planner = planner or ResearchPlanner(generator, options)
        self.searcher = searcher or WebSearcher(search_backend, timeout=options.search_timeout)
        self.aggregator = aggregator or InformationAggregator(
            generator,
            min_content_length=options.min_content_length,
            max_content_chars=options.max_content_chars,
            timeout=options.generation_timeout,
        )
        self.reporter = reporter or ReportGenerator(generator, timeout=options.generation_timeout)

        self.state = DeepResearchState()
        self._cancel = asyncio.Event()
        self._responses: asyncio.Queue[str] = asyncio.Queue(maxsize=1)
        self._run_logger = get_run_logger()

    # --- Public control surface ---

    async def run(self, question: str) -> DeepResearchResult:
        """Execute a full research run.

        Returns a result for every outcome except an outer task cancellation, which
        leaves the state ``cancelled`` and re-raises.

        Raises:
            DeepResearchError: If a run is already in progress on this machine
        """
        if self.state.is_running:
            raise DeepResearchError("A research run is already in progress")

        self.state = DeepResearchState(is_running=True, started_at=utc_now())
        self._cancel = asyncio.Event()
        self._responses = asyncio.Queue(maxsize=1)
        self._run_logger.info("research_started", question=question[:200])
        await self._add_message("user", question)

        try:
            report = await self._execute(question)
        except ResearchCancelledError as e:
            return await self._finish_cancelled(str(e))
        except PlanningError as e:
            return await self._finish_error(str(e))
        except asyncio.CancelledError:
            self._mark_terminal(ResearchPhase.CANCELLED)
            self._run_logger.info("research_cancelled", reason="task cancelled")
            raise
        except Exception as e:
            logger.exception(f"Research run failed: {e}")
            return await self._finish_error(f"Research failed: {e}")

        result = DeepResearchResult(success=True, report=report, state=self.state)
        await self._emit("on_complete", result)
        return result

    def respond(self, value: str) -> bool:
        """Deliver a decision to the pending approval gate.

        The first decision consumes the gate, so a repeated response before the run
        resumes is rejected rather than left to answer the next gate.

        Returns:
            False if no gate is waiting or a decision is already queued
        """
        if self.state.pending_action is None or self._responses.full():
            return False
        self.state.pending_action = None
        self._responses.put_nowait(str(value))
        return True

    def stop(self) -> bool:
        """Request cancellation. Returns False if the run is not running or already stopping."""
        if not self.state.is_running or self._cancel.is_set():
            return False
        self._cancel.set()
        logger.info("Research stop requested")
        return True

    def get_state(self) -> DeepResearchState:
        """Snapshot of the current run state, safe to hand to other tasks."""
        return copy.deepcopy(self.state)

    @property
    def is_cancelled(self) -> bool:
        return self._cancel.is_set()

    # --- Main flow ---

    async def _execute(self, question: str) -> ResearchReport:
        await self._set_phase(ResearchPhase.PLANNING)
        await self._update_progress(PLAN_PROGRESS, "Planning research...")

        context = None
        if self.page_context_provider is not None:
            context = await self._guard(self.page_context_provider.get_page_context())

        plan = await self._guard(self.planner.create_plan(question, context))
        self.state.plan = plan
        await self._emit("on_plan_created", plan)
        await self._add_message("assistant", format_plan_as_text(plan))
        self._run_logger.info("plan_created", sub_questions=len(plan.sub_questions))

        if self.options.require_plan_approval:
            decision = await self._wait_for_decision(
                PendingAction(
                    type=ActionType.APPROVE_PLAN,
                    description="Review the research plan before it starts.",
                    options=[
                        ActionOption(label="Approve", value="approve", description="Start researching"),
                        ActionOption(label="Cancel", value="cancel", description="Stop without researching"),
                    ],
                    data=plan,
                )
            )
            if decision.lower() != "approve":
                raise ResearchCancelledError("Research plan was rejected")

        plan.status = PlanStatus.EXECUTING
        await self._update_progress(LOOP_START, "Plan confirmed, starting research...")
        await self._research_loop(plan)

        await self._set_phase(ResearchPhase.GENERATING)
        await self._update_progress(LOOP_END, "Generating research report...")
        report = await self._guard(self.reporter.generate_report(plan, self.state.all_chunks, self.state))

        plan.status = PlanStatus.COMPLETED
        self.state.report = report
        self._mark_terminal(ResearchPhase.COMPLETED)
        await self._emit("on_phase_change", ResearchPhase.COMPLETED)
        await self._update_progress(100, "Research complete")
        await self._emit("on_report_generated", report)
        await self._add_message("assistant", format_report_as_message(report))
        self._run_logger.info(
            "research_completed",
            iterations=self.state.current_iteration,
            chunks=len(self.state.all_chunks),
            sources=len(report.sources),
        )
        return report

    async def _research_loop(self, plan: ResearchPlan) -> None:
        max_iterations = plan.search_strategy.max_iterations

        while self.state.current_iteration < max_iterations:
            self._check_cancelled()
            sub_question = plan.next_pending()
            if sub_question is None:
                logger.info("No pending sub-questions left")
                break

            self.state.current_iteration += 1
            iteration = ResearchIteration(
                index=self.state.current_iteration,
                sub_question_id=sub_question.id,
                started_at=utc_now(),
            )
            self.state.iterations.append(iteration)
            sub_question.status = SubQuestionStatus.RESEARCHING
            await self._emit("on_iteration_start", iteration)
            await self._add_message(
                "assistant",
                f"Iteration {iteration.index}/{max_iterations}: researching '{sub_question.question}'",
            )
            self._run_logger.info("iteration_started", iteration=iteration.index, sub_question=sub_question.question)

            evaluation = await self._run_iteration(plan, sub_question, iteration)
            iteration.completed_at = utc_now()
            await self._emit("on_iteration_complete", iteration)

            if evaluation is None:
                continue
            if evaluation.is_complete or evaluation.recommendation == Recommendation.COMPLETE:
                logger.info(f"Research judged complete at {evaluation.coverage_score}% coverage")
                break

            if self.options.interactive_mode and self.state.current_iteration < max_iterations:
                decision = await self._wait_for_decision(
                    PendingAction(
                        type=ActionType.CONTINUE_OR_COMPLETE,
                        description=f"Coverage is {evaluation.coverage_score}%. Continue researching or write the report now?",
                        options=[
                            ActionOption(label="Continue", value="continue"),
                            ActionOption(label="Complete", value="complete", description="Generate the report"),
                        ],
                        data=evaluation,
                    )
                )
                if decision.lower() == "complete":
                    break

            await self._apply_feedback(plan, evaluation)

    async def _run_iteration(
        self,
        plan: ResearchPlan,
        sub_question: SubQuestion,
        iteration: ResearchIteration,
    ) -> ResearchEvaluation | None:
        """One pass over a sub-question. Returns None when the iteration produced no evaluation."""
        if self.options.require_search_approval:
            decision = await self._wait_for_decision(
                PendingAction(
                    type=ActionType.APPROVE_SEARCHES,
                    description=f"Search for: {sub_question.question}",
                    options=[
                        ActionOption(label="Approve", value="approve"),
                        ActionOption(label="Skip", value="skip", description="Skip this sub-question"),
                    ],
                    data={"sub_question": sub_question.question, "queries": list(sub_question.search_queries)},
                )
            )
            if decision.lower() == "skip":
                sub_question.status = SubQuestionStatus.SKIPPED
                iteration.status = IterationStatus.COMPLETED
                await self._add_message("assistant", f"Skipped '{sub_question.question}'")
                return None

        # Searching
        await self._set_phase(ResearchPhase.SEARCHING)
        iteration.status = IterationStatus.SEARCHING
        await self._update_iteration_progress(0.1, f"Searching: {sub_question.question}")
        tasks = await self._guard(
            self.searcher.search_multi_engine(
                sub_question.search_queries,
                plan.search_strategy.preferred_engines,
                self.options.max_search_results,
            )
        )
        iteration.search_tasks = tasks
        await self._emit("on_search_complete", tasks)

        if not any(task.status == TaskStatus.COMPLETED for task in tasks):
            errors = "; ".join(task.error or "unknown error" for task in tasks)
            logger.warning(f"All searches failed for '{sub_question.question}': {errors}")
            sub_question.status = SubQuestionStatus.SKIPPED
            iteration.status = IterationStatus.FAILED
            await self._add_message("assistant", f"Search failed for '{sub_question.question}': {errors}")
            return None

        results = self.searcher.filter_results(self.searcher.merge_results(tasks))
        await self._add_message("assistant", format_results_as_text(results))
        candidates = results[: plan.search_strategy.max_pages_per_iteration]

        if self.options.require_page_approval and candidates:
            options = [ActionOption(label=r.title, value=r.url, description=r.snippet[:200]) for r in candidates]
            options.append(ActionOption(label="Visit all", value="all"))
            options.append(ActionOption(label="Skip", value="skip", description="Do not visit any page"))
            decision = await self._wait_for_decision(
                PendingAction(
                    type=ActionType.APPROVE_PAGES,
                    description="Choose which pages to visit.",
                    options=options,
                    data=candidates,
                )
            )
            candidates = self._select_pages(decision, candidates)

        # Browsing
        await self._set_phase(ResearchPhase.BROWSING)
        iteration.status = IterationStatus.BROWSING
        for index, result in enumerate(candidates):
            await self._update_iteration_progress(
                0.3 + 0.4 * index / len(candidates), f"Reading ({index + 1}/{len(candidates)}): {result.title}"
            )
            browse_task = await self._browse(result)
            iteration.browse_tasks.append(browse_task)
            await self._emit("on_page_browsed", browse_task)

        # Analyzing
        await self._set_phase(ResearchPhase.ANALYZING)
        iteration.status = IterationStatus.ANALYZING
        await self._update_iteration_progress(0.75, "Analyzing collected pages...")
        for browse_task in iteration.browse_tasks:
            if browse_task.status != TaskStatus.COMPLETED:
                continue
            chunks = await self._guard(self.aggregator.analyze_page_content(browse_task, plan, sub_question.id))
            browse_task.chunks = chunks
            self.state.all_chunks.extend(chunks)
            sub_question.findings.extend(chunks)
            for chunk in chunks:
                await self._emit("on_chunk_extracted", chunk)

        sub_question.status = SubQuestionStatus.COMPLETED
        iteration.status = IterationStatus.COMPLETED

        # Evaluating
        await self._set_phase(ResearchPhase.EVALUATING)
        await self._update_iteration_progress(0.9, "Evaluating research progress...")
        evaluation = await self._guard(self.aggregator.evaluate_progress(plan, self.state.all_chunks))
        self.state.evaluation = evaluation
        await self._emit("on_evaluation_complete", evaluation)
        await self._add_message("assistant", format_evaluation_as_text(evaluation))
        self._run_logger.info(
            "evaluation_complete",
            iteration=iteration.index,
            coverage=evaluation.coverage_score,
            recommendation=evaluation.recommendation.value,
        )
        return evaluation

    async def _browse(self, result: SearchResult) -> BrowseTask:
        """Fetch one page. Failures mark only this task as failed."""
        task = BrowseTask(url=result.url, title=result.title, status=TaskStatus.RUNNING)
        try:
            page = await self._guard(
                asyncio.wait_for(self.page_fetcher.fetch(result.url), timeout=self.options.fetch_timeout)
            )
        except ResearchCancelledError:
            raise
        except TimeoutError:
            task.status = TaskStatus.FAILED
            task.error = f"Page load timed out after {self.options.fetch_timeout:g}s"
            logger.warning(f"Timed out fetching {result.url}")
            return task
        except Exception as e:
            task.status = TaskStatus.FAILED
            task.error = str(e) or type(e).__name__
            logger.warning(f"Failed to fetch {result.url}: {task.error}")
            return task

        task.content = page.content
        if page.title:
            task.title = page.title
        task.status = TaskStatus.COMPLETED
        return task

    @staticmethod
    def _select_pages(decision: str, candidates: list[SearchResult]) -> list[SearchResult]:
        """Interpret a page-approval decision: skip, all, or one or more comma separated URLs."""
        value = decision.strip()
        if value.lower() in ("skip", "cancel"):
            return []
        if value.lower() in ("", "all", "approve"):
            return candidates
        chosen_urls = {url.strip() for url in value.split(",") if url.strip()}
        chosen = [c for c in candidates if c.url in chosen_urls]
        return chosen or candidates

    async def _apply_feedback(self, plan: ResearchPlan, evaluation: ResearchEvaluation) -> None:
        """Feed the evaluation into the plan for the next iteration.

        Suggested searches always go to the front of the next pending sub-question. A pivot
        additionally turns the gaps into new sub-questions.
        """
        next_sub_question = plan.next_pending()
        if evaluation.next_searches and next_sub_question is not None:
            merged: list[str] = []
            for query in [*evaluation.next_searches, *next_sub_question.search_queries]:
                if query not in merged:
                    merged.append(query)
            next_sub_question.search_queries = merged[:MAX_QUERIES_PER_SUB_QUESTION]

        if evaluation.recommendation == Recommendation.PIVOT and evaluation.gaps:
            proposed = self.planner.propose_sub_questions(plan, evaluation)
            if proposed:
                self.planner.add_sub_questions(plan, proposed)
                await self._add_message(
                    "assistant",
                    "Adjusting the plan with new sub-questions:\n" + "\n".join(f"- {sq.question}" for sq in proposed),
                )

    # --- Gates and cancellation ---

    async def _wait_for_decision(self, action: PendingAction) -> str:
        while not self._responses.empty():
            stale = self._responses.get_nowait()
            logger.warning(f"Discarding decision sent before gate {action.type.value} opened: {stale}")
        await self._set_phase(ResearchPhase.WAITING)
        self.state.pending_action = action
        await self._emit("on_pending_action", action)
        self._run_logger.info("waiting_for_decision", action=action.type.value)
        try:
            value = await self._guard(self._responses.get())
        finally:
            self.state.pending_action = None
        logger.info(f"Gate {action.type.value} answered: {value}")
        return value.strip()

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await while watching the cancel signal; raises ResearchCancelledError if it fires first."""
        if self._cancel.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise ResearchCancelledError("Research was stopped")
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if self._cancel.is_set():
            raise ResearchCancelledError("Research was stopped")
        return task.result()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise ResearchCancelledError("Research was stopped")

    # --- Terminal transitions ---

    def _mark_terminal(self, phase: ResearchPhase) -> None:
        self.state.phase = phase
        self.state.is_running = False
        self.state.pending_action = None
        self.state.completed_at = utc_now()

    async def _finish_cancelled(self, reason: str) -> DeepResearchResult:
        self._mark_terminal(ResearchPhase.CANCELLED)
        await self._emit("on_phase_change", ResearchPhase.CANCELLED)
        await self._add_message("assistant", "Research stopped.")
        self._run_logger.info("research_cancelled", reason=reason)
        return DeepResearchResult(success=False, report=None, state=self.state, error=reason, cancelled=True)

    async def _finish_error(self, message: str) -> DeepResearchResult:
        if self.state.plan is not None:
            self.state.plan.status = PlanStatus.FAILED
        self.state.error = message
        self._mark_terminal(ResearchPhase.ERROR)
        await self._emit("on_phase_change", ResearchPhase.ERROR)
        await self._emit("on_error", message)
        await self._add_message("assistant", message)
        self._run_logger.error("research_failed", error=message)
        return DeepResearchResult(success=False, report=None, state=self.state, error=message)

    # --- Notifications ---

    async def _set_phase(self, phase: ResearchPhase) -> None:
        if self.state.phase == phase:
            return
        self.state.phase = phase
        self._run_logger.debug("phase_changed", phase=phase.value)
        await self._emit("on_phase_change", phase)

    async def _update_iteration_progress(self, fraction: float, message: str) -> None:
        """Map progress within the current iteration onto the loop's band."""
        max_iterations = max(1, self.state.plan.search_strategy.max_iterations if self.state.plan else 1)
        done = (self.state.current_iteration - 1 + fraction) / max_iterations
        await self._update_progress(LOOP_START + (LOOP_END - LOOP_START) * done, message)

    async def _update_progress(self, current: float, message: str) -> None:
        plan = self.state.plan
        self.state.progress = ResearchProgress(
            current=current,
            total=100,
            percentage=round(current),
            current_task=message,
            iteration=self.state.current_iteration,
            max_iterations=plan.search_strategy.max_iterations if plan else self.options.max_iterations,
        )
        await self._emit("on_progress_update", self.state.progress)

    async def _add_message(self, role: str, content: str) -> None:
        message = ChatMessage(role=role, content=content)  # type: ignore[arg-type]
        self.state.messages.append(message)
        await self._emit("on_message", message)

    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Callback {name} raised: {e}")
