"""Decomposes a research question into a plan of prioritized sub-questions."""

import logging
from typing import TYPE_CHECKING

from ..exceptions import PlanningError
from .adapters import TextGenerator, generate_text
from .models import (
    ChatMessage,
    PageContext,
    PlanStatus,
    ResearchDepth,
    ResearchEvaluation,
    ResearchPlan,
    SearchEngine,
    SearchStrategy,
    SubQuestion,
    SubQuestionStatus,
    utc_now,
)
from .parsing import as_str_list, parse_json_object
from .prompts import PLANNER_SYSTEM_PROMPT, get_planning_prompt

if TYPE_CHECKING:
    from ..config import ResearchSettings

logger = logging.getLogger(__name__)

PIVOT_PRIORITY = 3


def _clamp_priority(value: object, default: int) -> int:
    try:
        priority = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        priority = default
    return max(1, min(5, priority))


class ResearchPlanner:
    """Builds research plans through the text generation adapter."""

    def __init__(self, generator: TextGenerator, options: "ResearchSettings"):
        self.generator = generator
        self.options = options

    async def create_plan(self, question: str, context: PageContext | None = None) -> ResearchPlan:
        """Generate a plan for the question.

        Args:
            question: Free-text research question
            context: Page the user was viewing, if any

        Returns:
            A plan whose sub-questions are sorted by priority, highest first

        Raises:
            PlanningError: If generation fails or yields no usable sub-questions
        """
        messages = [
            ChatMessage(role="system", content=PLANNER_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=get_planning_prompt(
                    question,
                    page_title=context.title if context else None,
                    page_url=context.url if context else None,
                    language=self.options.language,
                ),
            ),
        ]

        try:
            response = await generate_text(self.generator, messages, timeout=self.options.generation_timeout)
        except TimeoutError as e:
            logger.error("Plan generation timed out")
            raise PlanningError(f"Planning failed: generation timed out after {self.options.generation_timeout:g}s") from e
        except Exception as e:
            logger.error(f"Plan generation failed: {e}")
            raise PlanningError(f"Planning failed: {e}") from e

        parsed = parse_json_object(response)
        if not parsed.ok:
            logger.warning(f"Could not parse plan: {parsed.error}")
            raise PlanningError(f"Planning failed: {parsed.error}")

        data = parsed.value or {}
        sub_questions = self._build_sub_questions(data.get("subQuestions"), question)
        if not sub_questions:
            raise PlanningError("Planning failed: plan contains no sub-questions")

        plan = ResearchPlan(
            original_question=question,
            refined_question=str(data.get("refinedQuestion") or question),
            goal=str(data.get("goal") or ""),
            reasoning=str(data.get("reasoning") or ""),
            sub_questions=sub_questions,
            search_strategy=self._build_strategy(data.get("depth")),
            status=PlanStatus.DRAFT if self.options.require_plan_approval else PlanStatus.APPROVED,
        )
        logger.info(f"Plan created with {len(plan.sub_questions)} sub-questions")
        return plan

    def _build_sub_questions(self, raw: object, question: str) -> list[SubQuestion]:
        if not isinstance(raw, list):
            return []

        sub_questions = []
        for index, item in enumerate(raw):
            if not isinstance(item, dict):
                continue
            text = str(item.get("question") or "").strip()
            if not text:
                continue
            queries = as_str_list(item.get("searchQueries")) or [question]
            sub_questions.append(
                SubQuestion(
                    question=text,
                    priority=_clamp_priority(item.get("priority"), 5 - index),
                    search_queries=queries,
                )
            )

        # sorted() is stable, so equal priorities keep their generated order
        return sorted(sub_questions, key=lambda sq: sq.priority, reverse=True)

    def _build_strategy(self, depth: object) -> SearchStrategy:
        try:
            resolved = ResearchDepth(str(depth))
        except ValueError:
            resolved = ResearchDepth(self.options.search_depth)
        return SearchStrategy(
            depth=resolved,
            max_iterations=self.options.max_iterations,
            max_pages_per_iteration=self.options.max_pages_per_iteration,
            preferred_engines=[SearchEngine(e) for e in self.options.preferred_engines],
        )

    def propose_sub_questions(self, plan: ResearchPlan, evaluation: ResearchEvaluation) -> list[SubQuestion]:
        """Turn evaluation gaps into new sub-questions, skipping ones already in the plan.

        Each gap gets two of the suggested follow-up searches, falling back to the gap text.
        """
        existing = {sq.question.strip().lower() for sq in plan.sub_questions}
        proposed = []
        for index, gap in enumerate(evaluation.gaps):
            if gap.strip().lower() in existing:
                continue
            queries = evaluation.next_searches[index * 2 : index * 2 + 2] or [gap]
            proposed.append(SubQuestion(question=gap, priority=PIVOT_PRIORITY, search_queries=list(queries)))
            existing.add(gap.strip().lower())
        return proposed

    @staticmethod
    def add_sub_questions(plan: ResearchPlan, sub_questions: list[SubQuestion]) -> None:
        plan.sub_questions.extend(sub_questions)
        plan.updated_at = utc_now()


_STATUS_MARKERS = {
    SubQuestionStatus.PENDING: "[ ]",
    SubQuestionStatus.RESEARCHING: "[~]",
    SubQuestionStatus.COMPLETED: "[x]",
    SubQuestionStatus.SKIPPED: "[-]",
}


def format_plan_as_text(plan: ResearchPlan) -> str:
    """Render a plan for display in the message log."""
    lines = [
        "## Research plan",
        "",
        f"**Question:** {plan.refined_question}",
    ]
    if plan.goal:
        lines.append(f"**Goal:** {plan.goal}")
    lines.append(f"**Depth:** {plan.search_strategy.depth.value}")
    lines.append("")
    lines.append("### Sub-questions")
    for index, sq in enumerate(plan.sub_questions, 1):
        lines.append(f"{index}. {_STATUS_MARKERS[sq.status]} {sq.question} (priority {sq.priority})")
        if sq.search_queries:
            lines.append(f"   Queries: {', '.join(sq.search_queries)}")
    if plan.reasoning:
        lines.extend(["", f"_{plan.reasoning}_"])
    return "\n".join(lines)
