"""Builds the final research report.

Sources and metadata are always computed from run state; only the narrative
(title, summary, sections, limitations) comes from generated text, with a
deterministic fallback when that text cannot be parsed.
"""

import logging

from .adapters import TextGenerator, generate_text
from .models import (
    ChatMessage,
    DeepResearchState,
    InformationChunk,
    ReportMetadata,
    ReportSection,
    ReportSource,
    ResearchPlan,
    ResearchReport,
    TaskStatus,
)
from .parsing import ReportDraft, citation_numbers, parse_markdown_report, report_draft_from_json
from .prompts import REPORT_SYSTEM_PROMPT, get_report_prompt

logger = logging.getLogger(__name__)

FALLBACK_LIMITATIONS = [
    "This report is based on a limited set of web search results.",
    "The information may be incomplete or biased.",
    "Key facts should be verified independently.",
]

MESSAGE_SOURCE_LIMIT = 10


def build_source_list(chunks: list[InformationChunk]) -> list[ReportSource]:
    """One source per distinct chunk URL, numbered 1..N in order of first appearance."""
    sources: dict[str, ReportSource] = {}
    for chunk in chunks:
        if chunk.source_url in sources:
            continue
        index = len(sources) + 1
        sources[chunk.source_url] = ReportSource(
            id=f"src_{index}",
            index=index,
            title=chunk.source_title or chunk.source_url,
            url=chunk.source_url,
            accessed_at=chunk.extracted_at,
        )
    return list(sources.values())


def build_metadata(state: DeepResearchState, chunks: list[InformationChunk]) -> ReportMetadata:
    return ReportMetadata(
        total_searches=sum(len(it.search_tasks) for it in state.iterations),
        total_pages_visited=sum(
            1 for it in state.iterations for task in it.browse_tasks if task.status == TaskStatus.COMPLETED
        ),
        total_iterations=state.current_iteration,
        research_duration_seconds=state.duration_seconds,
        info_chunks_collected=len(chunks),
    )


def format_information_with_sources(chunks: list[InformationChunk], sources: list[ReportSource]) -> str:
    """Group chunks under their numbered source headings for the report prompt."""
    by_url: dict[str, list[InformationChunk]] = {}
    for chunk in chunks:
        by_url.setdefault(chunk.source_url, []).append(chunk)

    blocks = []
    for source in sources:
        lines = [f"### [{source.index}] {source.title}", f"URL: {source.url}", ""]
        lines.extend(f"- {chunk.content}" for chunk in by_url.get(source.url, []))
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def _resolve_citations(raw: list[str], content: str, sources: list[ReportSource]) -> list[str]:
    """Map generated citation references (ids, numbers or ``[n]`` markers) to source ids."""
    by_index = {s.index: s.id for s in sources}
    by_id = {s.id: s.id for s in sources}

    resolved: list[str] = []
    references: list[str | int] = list(raw) if raw else list(citation_numbers(content))
    for ref in references:
        text = str(ref).strip().strip("[]")
        source_id = by_id.get(text)
        if source_id is None and text.isdigit():
            source_id = by_index.get(int(text))
        if source_id and source_id not in resolved:
            resolved.append(source_id)
    return resolved


class ReportGenerator:
    """Produces exactly one report per completed run."""

    def __init__(self, generator: TextGenerator, timeout: float | None = None):
        self.generator = generator
        self.timeout = timeout

    async def generate_report(
        self,
        plan: ResearchPlan,
        chunks: list[InformationChunk],
        state: DeepResearchState,
    ) -> ResearchReport:
        """Generate the report, falling back tier by tier: JSON, then markdown, then deterministic."""
        sources = build_source_list(chunks)
        if not chunks:
            logger.info("No information collected, building report without generation")
            return self.generate_fallback_report(plan, chunks, sources, state)

        messages = [
            ChatMessage(role="system", content=REPORT_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=get_report_prompt(
                    plan.refined_question, plan.goal, format_information_with_sources(chunks, sources)
                ),
            ),
        ]

        try:
            response = await generate_text(self.generator, messages, timeout=self.timeout)
        except Exception as e:
            logger.error(f"Report generation failed: {e}")
            return self.generate_fallback_report(plan, chunks, sources, state)

        draft = report_draft_from_json(response)
        if not draft.ok:
            logger.warning(f"Report JSON not usable ({draft.error}), trying markdown")
            draft = parse_markdown_report(response)
        if not draft.ok or draft.value is None:
            logger.warning(f"Report markdown not usable ({draft.error}), using fallback report")
            return self.generate_fallback_report(plan, chunks, sources, state)

        return self._build_from_draft(draft.value, plan, chunks, sources, state)

    def _build_from_draft(
        self,
        draft: ReportDraft,
        plan: ResearchPlan,
        chunks: list[InformationChunk],
        sources: list[ReportSource],
        state: DeepResearchState,
    ) -> ResearchReport:
        sections = [
            ReportSection(
                title=section.title,
                content=section.content,
                order=order,
                citations=_resolve_citations(section.citations, section.content, sources),
            )
            for order, section in enumerate(draft.sections)
        ]
        if draft.conclusion:
            sections.append(
                ReportSection(
                    title="Conclusion",
                    content=draft.conclusion,
                    order=len(sections),
                    citations=_resolve_citations([], draft.conclusion, sources),
                )
            )

        report = ResearchReport(
            title=draft.title or f"Research report: {plan.refined_question}",
            question=plan.refined_question,
            summary=draft.summary or "",
            sections=sections,
            sources=sources,
            metadata=build_metadata(state, chunks),
            limitations=draft.limitations,
        )
        logger.info(f"Report generated with {len(report.sections)} sections and {len(report.sources)} sources")
        return report

    def generate_fallback_report(
        self,
        plan: ResearchPlan,
        chunks: list[InformationChunk],
        sources: list[ReportSource],
        state: DeepResearchState,
    ) -> ResearchReport:
        """Assemble a report from each sub-question's own findings, without generation."""
        by_url = {s.url: s for s in sources}
        sections = []
        for order, sq in enumerate(plan.sub_questions):
            if sq.findings:
                lines = []
                citations: list[str] = []
                for chunk in sq.findings:
                    source = by_url.get(chunk.source_url)
                    lines.append(f"- {chunk.content}" + (f" [{source.index}]" if source else ""))
                    if source and source.id not in citations:
                        citations.append(source.id)
                content = "\n\n".join(lines)
            else:
                content = "*No information found.*"
                citations = []
            sections.append(ReportSection(title=sq.question, content=content, order=order, citations=citations))

        summary = (
            f'This research on "{plan.refined_question}" collected {len(chunks)} pieces of information '
            f"from {len(sources)} sources, covering {len(plan.sub_questions)} sub-questions."
        )
        return ResearchReport(
            title=f"Research report: {plan.refined_question}",
            question=plan.refined_question,
            summary=summary,
            sections=sections,
            sources=sources,
            metadata=build_metadata(state, chunks),
            limitations=list(FALLBACK_LIMITATIONS),
        )


def export_as_markdown(report: ResearchReport) -> str:
    """Render a report as a standalone Markdown document."""
    meta = report.metadata
    lines = [
        f"# {report.title}",
        "",
        f"> {report.summary}",
        "",
        "---",
        "",
        "## Research overview",
        "",
        f"- **Question**: {report.question}",
        f"- **Searches**: {meta.total_searches}",
        f"- **Pages visited**: {meta.total_pages_visited}",
        f"- **Iterations**: {meta.total_iterations}",
        f"- **Information collected**: {meta.info_chunks_collected}",
        f"- **Duration**: {round(meta.research_duration_seconds)} seconds",
        "",
    ]
    for section in report.sections:
        lines.extend([f"## {section.title}", "", section.content, ""])

    if report.limitations:
        lines.extend(["## Limitations", "", *[f"- {item}" for item in report.limitations], ""])

    lines.extend(["## Sources", ""])
    for source in report.sources:
        lines.extend([f"[{source.index}] {source.title}", f"    {source.url}", ""])

    lines.extend(["---", "", f"*Generated at {report.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}*", ""])
    return "\n".join(lines)


def format_report_as_message(report: ResearchReport) -> str:
    """Render a report for the chat-style message log."""
    lines = [f"# {report.title}", "", f"> {report.summary}", ""]
    for section in report.sections:
        lines.extend([f"## {section.title}", "", section.content, ""])

    if report.sources:
        lines.extend(["---", "", "### Sources", ""])
        for source in report.sources[:MESSAGE_SOURCE_LIMIT]:
            lines.append(f"[{source.index}] [{source.title}]({source.url})")
        if len(report.sources) > MESSAGE_SOURCE_LIMIT:
            lines.extend(["", f"*...and {len(report.sources) - MESSAGE_SOURCE_LIMIT} more sources*"])

    meta = report.metadata
    lines.extend(
        [
            "",
            "---",
            "",
            f"**Research stats**: {meta.total_iterations} iterations | {meta.total_pages_visited} pages | "
            f"{meta.info_chunks_collected} findings | {round(meta.research_duration_seconds)} seconds",
        ]
    )
    return "\n".join(lines)
