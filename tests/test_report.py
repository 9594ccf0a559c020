"""Tests for report generation, fallbacks and rendering."""

from datetime import timedelta

import pytest
from conftest import ScriptedTextGenerator, make_chunk, make_plan

from mcp_server_deep_research.research.models import (
    BrowseTask,
    DeepResearchState,
    ResearchIteration,
    SearchEngine,
    SearchTask,
    TaskStatus,
    utc_now,
)
from mcp_server_deep_research.research.report import (
    FALLBACK_LIMITATIONS,
    ReportGenerator,
    build_metadata,
    build_source_list,
    export_as_markdown,
    format_information_with_sources,
    format_report_as_message,
)


def _chunks(plan):
    sq_a, sq_b = plan.sub_questions
    return [
        make_chunk("Fact one", url="https://a.org/1", title="A", sub_question_id=sq_a.id),
        make_chunk("Fact two", url="https://b.org/2", title="B", sub_question_id=sq_a.id),
        make_chunk("Fact three", url="https://a.org/1", title="A", sub_question_id=sq_b.id),
    ]


def _state(plan, chunks) -> DeepResearchState:
    for chunk in chunks:
        plan.get_sub_question(chunk.sub_question_id).findings.append(chunk)
    iteration = ResearchIteration(index=1, sub_question_id=plan.sub_questions[0].id)
    iteration.search_tasks = [
        SearchTask(query="q", engine=SearchEngine.GOOGLE),
        SearchTask(query="q", engine=SearchEngine.BING),
    ]
    iteration.browse_tasks = [
        BrowseTask(url="https://a.org/1", title="A", status=TaskStatus.COMPLETED),
        BrowseTask(url="https://c.org/3", title="C", status=TaskStatus.FAILED),
    ]
    now = utc_now()
    return DeepResearchState(
        plan=plan,
        iterations=[iteration],
        current_iteration=1,
        all_chunks=chunks,
        started_at=now - timedelta(seconds=42),
        completed_at=now,
    )


class TestSources:
    def test_one_source_per_url_dense_first_seen(self):
        plan = make_plan()
        sources = build_source_list(_chunks(plan))

        assert [(s.id, s.index, s.url) for s in sources] == [
            ("src_1", 1, "https://a.org/1"),
            ("src_2", 2, "https://b.org/2"),
        ]

    def test_information_grouped_under_numbered_sources(self):
        chunks = _chunks(make_plan())
        text = format_information_with_sources(chunks, build_source_list(chunks))

        assert text.index("### [1] A") < text.index("- Fact one") < text.index("- Fact three") < text.index("### [2] B")


def test_metadata_comes_from_state():
    plan = make_plan()
    chunks = _chunks(plan)
    metadata = build_metadata(_state(plan, chunks), chunks)

    assert metadata.total_searches == 2
    assert metadata.total_pages_visited == 1
    assert metadata.total_iterations == 1
    assert metadata.info_chunks_collected == 3
    assert metadata.research_duration_seconds == pytest.approx(42)


class TestGenerateReport:
    @pytest.mark.anyio
    async def test_json_report(self):
        plan = make_plan()
        chunks = _chunks(plan)

        report = await ReportGenerator(ScriptedTextGenerator()).generate_report(plan, chunks, _state(plan, chunks))

        assert report.title == "Solid-State Batteries"
        assert [s.title for s in report.sections] == ["Mechanism", "Benefits", "Conclusion"]
        assert report.sections[0].citations == ["src_1"]
        assert report.sections[1].citations == ["src_1", "src_2"]
        assert [s.order for s in report.sections] == [0, 1, 2]
        assert report.limitations == ["Few sources"]
        assert report.metadata.total_searches == 2

    @pytest.mark.anyio
    async def test_markdown_tier(self):
        plan = make_plan()
        chunks = _chunks(plan)
        markdown = "# Batteries\n\nShort intro.\n\n## Findings\nSafer [1], denser [2].\n"

        report = await ReportGenerator(ScriptedTextGenerator(report=markdown)).generate_report(
            plan, chunks, _state(plan, chunks)
        )

        assert report.title == "Batteries"
        assert report.summary == "Short intro."
        assert report.sections[0].citations == ["src_1", "src_2"]
        assert report.limitations == []

    @pytest.mark.anyio
    async def test_fallback_when_output_unusable(self):
        plan = make_plan()
        chunks = _chunks(plan)
        state = _state(plan, chunks)

        report = await ReportGenerator(ScriptedTextGenerator(report="no structure at all")).generate_report(
            plan, chunks, state
        )

        assert [s.title for s in report.sections] == [sq.question for sq in plan.sub_questions]
        assert "- Fact one [1]" in report.sections[0].content
        assert report.sections[0].citations == ["src_1", "src_2"]
        assert report.limitations == FALLBACK_LIMITATIONS
        assert report.metadata.total_pages_visited == 1

    @pytest.mark.anyio
    async def test_fallback_when_generation_raises(self):
        plan = make_plan()
        chunks = _chunks(plan)

        report = await ReportGenerator(ScriptedTextGenerator(report=TimeoutError())).generate_report(
            plan, chunks, _state(plan, chunks)
        )

        assert report.limitations == FALLBACK_LIMITATIONS
        assert len(report.sources) == 2

    @pytest.mark.anyio
    async def test_no_chunks_skips_generation(self):
        generator = ScriptedTextGenerator()
        plan = make_plan()

        report = await ReportGenerator(generator).generate_report(plan, [], _state(plan, []))

        assert generator.calls["report"] == 0
        assert report.sources == []
        assert all(s.content == "*No information found.*" for s in report.sections)


class TestRendering:
    @pytest.mark.anyio
    async def test_markdown_export_lists_sources_and_overview(self):
        plan = make_plan()
        chunks = _chunks(plan)
        report = await ReportGenerator(ScriptedTextGenerator()).generate_report(plan, chunks, _state(plan, chunks))

        markdown = export_as_markdown(report)

        assert markdown.startswith("# Solid-State Batteries\n")
        assert "- **Searches**: 2" in markdown
        assert "## Limitations" in markdown
        assert "[2] B\n    https://b.org/2" in markdown

    def test_message_lists_first_ten_sources(self):
        chunks = [make_chunk(f"fact {i}", url=f"https://s{i}.org") for i in range(12)]
        plan = make_plan()
        report = ReportGenerator(ScriptedTextGenerator()).generate_fallback_report(
            plan, chunks, build_source_list(chunks), _state(plan, [])
        )

        message = format_report_as_message(report)

        assert "[10] [Source](https://s9.org)" in message
        assert "https://s10.org" not in message
        assert "...and 2 more sources" in message
