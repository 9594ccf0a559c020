"""Extracts evidence from pages and judges research coverage."""

import logging
import re
from dataclasses import dataclass

from .adapters import TextGenerator, generate_text
from .models import (
    BrowseTask,
    ChatMessage,
    InformationChunk,
    Recommendation,
    ResearchEvaluation,
    ResearchPlan,
    SubQuestionStatus,
)
from .parsing import as_str_list, parse_json_array, parse_json_object
from .prompts import (
    ANALYZE_SYSTEM_PROMPT,
    EVALUATE_SYSTEM_PROMPT,
    get_analyze_prompt,
    get_evaluate_prompt,
)

logger = logging.getLogger(__name__)

MIN_CHUNKS_FOR_EVALUATION = 3
EVALUATION_EXCERPT_CHUNKS = 20
EVALUATION_EXCERPT_CHARS = 200
DEDUP_KEY_CHARS = 200
OTHER_GROUP = "other"

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ChunkStatistics:
    total_chunks: int
    average_relevance: float
    average_credibility: float
    unique_sources: int


def _score(value: object, default: float = 0.5) -> float:
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(0.0, min(1.0, score))


def _content_key(chunk: InformationChunk) -> str:
    return _WHITESPACE_RE.sub(" ", chunk.content.lower()).strip()[:DEDUP_KEY_CHARS]


class InformationAggregator:
    """Turns page text into scored chunks and evaluates coverage of the plan."""

    def __init__(
        self,
        generator: TextGenerator,
        min_content_length: int = 100,
        max_content_chars: int = 8000,
        timeout: float | None = None,
    ):
        self.generator = generator
        self.min_content_length = min_content_length
        self.max_content_chars = max_content_chars
        self.timeout = timeout

    async def analyze_page_content(
        self,
        browse_task: BrowseTask,
        plan: ResearchPlan,
        sub_question_id: str | None,
    ) -> list[InformationChunk]:
        """Extract scored chunks from a browsed page.

        Pages too short to be useful are skipped without a generation call. Unparseable
        output yields no chunks.
        """
        content = (browse_task.content or "").strip()
        if len(content) < self.min_content_length:
            logger.debug(f"Skipping thin page {browse_task.url} ({len(content)} chars)")
            return []

        sub_question = plan.get_sub_question(sub_question_id)
        messages = [
            ChatMessage(role="system", content=ANALYZE_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=get_analyze_prompt(
                    question=plan.refined_question,
                    sub_question=sub_question.question if sub_question else plan.refined_question,
                    title=browse_task.title,
                    url=browse_task.url,
                    content=content[: self.max_content_chars],
                ),
            ),
        ]
        try:
            response = await generate_text(self.generator, messages, timeout=self.timeout)
        except Exception as e:
            logger.warning(f"Extraction failed for {browse_task.url}: {e}")
            return []

        items: list | None = None
        parsed_object = parse_json_object(response)
        if parsed_object.ok and isinstance((parsed_object.value or {}).get("chunks"), list):
            items = parsed_object.value["chunks"]  # type: ignore[index]
        else:
            parsed_array = parse_json_array(response)
            if parsed_array.ok:
                items = parsed_array.value
        if items is None:
            logger.warning(f"Could not parse extraction for {browse_task.url}: {parsed_object.error}")
            return []

        chunks = []
        for item in items:
            if not isinstance(item, dict):
                continue
            text = str(item.get("content") or "").strip()
            if not text:
                continue
            chunks.append(
                InformationChunk(
                    content=text,
                    source_url=browse_task.url,
                    source_title=browse_task.title,
                    relevance=_score(item.get("relevance")),
                    credibility=_score(item.get("credibility")),
                    sub_question_id=sub_question_id,
                )
            )
        logger.info(f"Extracted {len(chunks)} chunks from {browse_task.url}")
        return chunks

    async def evaluate_progress(self, plan: ResearchPlan, chunks: list[InformationChunk]) -> ResearchEvaluation:
        """Judge whether the collected chunks answer the question.

        Never raises: with too little evidence a heuristic is returned without a
        generation call, and any generation or parse failure degrades to a
        conservative "continue" evaluation.
        """
        if len(chunks) < MIN_CHUNKS_FOR_EVALUATION:
            next_searches = [q for sq in plan.pending_sub_questions() for q in sq.search_queries[:2]]
            return ResearchEvaluation(
                coverage_score=min(len(chunks) * 15, 30),
                is_complete=False,
                gaps=[sq.question for sq in plan.pending_sub_questions()],
                next_searches=next_searches,
                recommendation=Recommendation.CONTINUE,
                reasoning="Not enough information collected yet.",
            )

        messages = [
            ChatMessage(role="system", content=EVALUATE_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=get_evaluate_prompt(
                    question=plan.refined_question,
                    goal=plan.goal,
                    sub_questions_text=self._sub_question_summary(plan),
                    collected_text=self._chunk_excerpts(chunks),
                ),
            ),
        ]

        try:
            response = await generate_text(self.generator, messages, timeout=self.timeout)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.warning(f"Evaluation failed: {reason}")
            return self._conservative_evaluation(chunks, f"Evaluation failed: {reason}")

        parsed = parse_json_object(response)
        if not parsed.ok:
            logger.warning(f"Could not parse evaluation: {parsed.error}")
            return self._conservative_evaluation(chunks, "Evaluation output could not be parsed.")

        data = parsed.value or {}
        try:
            coverage = int(float(data.get("coverageScore", 0)))
        except (TypeError, ValueError):
            coverage = 0
        try:
            recommendation = Recommendation(str(data.get("recommendation", "continue")).lower())
        except ValueError:
            recommendation = Recommendation.CONTINUE

        return ResearchEvaluation(
            coverage_score=max(0, min(100, coverage)),
            is_complete=bool(data.get("isComplete", False)),
            gaps=as_str_list(data.get("gaps")),
            next_searches=as_str_list(data.get("nextSearches")),
            key_findings=as_str_list(data.get("keyFindings")),
            recommendation=recommendation,
            reasoning=str(data.get("reasoning") or ""),
        )

    @staticmethod
    def _conservative_evaluation(chunks: list[InformationChunk], reasoning: str) -> ResearchEvaluation:
        return ResearchEvaluation(
            coverage_score=min(len(chunks) * 10, 60),
            is_complete=False,
            recommendation=Recommendation.CONTINUE,
            reasoning=reasoning,
        )

    @staticmethod
    def _sub_question_summary(plan: ResearchPlan) -> str:
        lines = []
        for sq in plan.sub_questions:
            lines.append(f"- [{sq.status.value}] {sq.question} ({len(sq.findings)} findings)")
        return "\n".join(lines)

    @staticmethod
    def _chunk_excerpts(chunks: list[InformationChunk]) -> str:
        top = sorted(chunks, key=lambda c: c.relevance, reverse=True)[:EVALUATION_EXCERPT_CHUNKS]
        return "\n".join(
            f"{i}. {c.content[:EVALUATION_EXCERPT_CHARS]} (relevance {c.relevance:.2f}, source: {c.source_title})"
            for i, c in enumerate(top, 1)
        )

    @staticmethod
    def merge_chunks(chunks: list[InformationChunk]) -> list[InformationChunk]:
        """Drop chunks with duplicate normalized content, then order by relevance."""
        seen: set[str] = set()
        unique = []
        for chunk in chunks:
            key = _content_key(chunk)
            if key in seen:
                continue
            seen.add(key)
            unique.append(chunk)
        return sorted(unique, key=lambda c: c.relevance, reverse=True)

    @staticmethod
    def group_by_sub_question(chunks: list[InformationChunk]) -> dict[str, list[InformationChunk]]:
        groups: dict[str, list[InformationChunk]] = {}
        for chunk in chunks:
            groups.setdefault(chunk.sub_question_id or OTHER_GROUP, []).append(chunk)
        return groups

    @staticmethod
    def get_statistics(chunks: list[InformationChunk]) -> ChunkStatistics:
        if not chunks:
            return ChunkStatistics(total_chunks=0, average_relevance=0.0, average_credibility=0.0, unique_sources=0)
        return ChunkStatistics(
            total_chunks=len(chunks),
            average_relevance=sum(c.relevance for c in chunks) / len(chunks),
            average_credibility=sum(c.credibility for c in chunks) / len(chunks),
            unique_sources=len({c.source_url for c in chunks}),
        )


def format_chunks_as_text(chunks: list[InformationChunk], limit: int = 10) -> str:
    if not chunks:
        return "No information collected yet."
    lines = [f"Collected {len(chunks)} pieces of information:"]
    for index, chunk in enumerate(chunks[:limit], 1):
        lines.append(f"{index}. {chunk.content[:200]}")
        lines.append(f"   Source: {chunk.source_title} ({chunk.source_url})")
    return "\n".join(lines)


def format_evaluation_as_text(evaluation: ResearchEvaluation) -> str:
    lines = [
        "## Research evaluation",
        "",
        f"**Coverage:** {evaluation.coverage_score}%",
        f"**Recommendation:** {evaluation.recommendation.value}",
    ]
    if evaluation.key_findings:
        lines.extend(["", "### Key findings", *[f"- {f}" for f in evaluation.key_findings]])
    if evaluation.gaps:
        lines.extend(["", "### Gaps", *[f"- {g}" for g in evaluation.gaps]])
    if evaluation.next_searches:
        lines.extend(["", "### Next searches", *[f"- {s}" for s in evaluation.next_searches]])
    if evaluation.reasoning:
        lines.extend(["", evaluation.reasoning])
    return "\n".join(lines)
