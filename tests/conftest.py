"""Pytest configuration and fixtures for mcp-server-deep-research tests."""

import asyncio
import json

import pytest

from mcp_server_deep_research.config import ResearchSettings
from mcp_server_deep_research.research.models import (
    InformationChunk,
    PageContent,
    PlanStatus,
    ResearchPlan,
    SearchStrategy,
    SubQuestion,
)
from mcp_server_deep_research.research.prompts import (
    ANALYZE_SYSTEM_PROMPT,
    EVALUATE_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    REPORT_SYSTEM_PROMPT,
)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: End-to-end tests requiring real API keys and browser")
    config.addinivalue_line("markers", "integration: Integration tests with scripted LLM but real browser automation")
    config.addinivalue_line("markers", "slow: Tests that take longer to run")


@pytest.fixture
def anyio_backend():
    return "asyncio"


PAGE_TEXT = (
    "Solid-state batteries replace the liquid electrolyte with a solid one. "
    "This improves safety because solid electrolytes are not flammable, and it can "
    "raise energy density by enabling lithium metal anodes."
)

PLAN_JSON = json.dumps(
    {
        "refinedQuestion": "How do solid-state batteries work?",
        "goal": "Explain the mechanism and trade-offs",
        "reasoning": "Mechanism first, then benefits, then challenges",
        "subQuestions": [
            {"question": "What is a solid electrolyte?", "priority": 5, "searchQueries": ["solid electrolyte"]},
            {"question": "What are the benefits?", "priority": 4, "searchQueries": ["solid-state battery benefits"]},
            {"question": "What are the challenges?", "priority": 3, "searchQueries": ["solid-state battery challenges"]},
        ],
        "depth": "medium",
    }
)

ANALYZE_JSON = json.dumps(
    {
        "chunks": [
            {"content": "Solid electrolytes are not flammable.", "relevance": 0.9, "credibility": 0.8},
            {"content": "Lithium metal anodes raise energy density.", "relevance": 0.7, "credibility": 0.7},
        ],
        "pageSummary": "Overview of solid-state batteries",
    }
)


def evaluation_json(coverage: int = 50, complete: bool = False, recommendation: str = "continue", **extra) -> str:
    return json.dumps(
        {
            "coverageScore": coverage,
            "isComplete": complete,
            "gaps": extra.get("gaps", []),
            "nextSearches": extra.get("nextSearches", []),
            "keyFindings": extra.get("keyFindings", ["Solid electrolytes are safer"]),
            "recommendation": recommendation,
            "reasoning": extra.get("reasoning", "scripted"),
        }
    )


REPORT_JSON = json.dumps(
    {
        "title": "Solid-State Batteries",
        "summary": "Solid-state batteries use solid electrolytes [1].",
        "sections": [
            {"title": "Mechanism", "content": "A solid electrolyte conducts ions [1].", "citations": [1]},
            {"title": "Benefits", "content": "They are safer [1] and denser [2].", "citations": ["1", "[2]"]},
        ],
        "limitations": ["Few sources"],
        "conclusion": "Promising but not yet mainstream.",
    }
)


class ScriptedTextGenerator:
    """Text generator double that answers by prompt kind.

    A scripted value may be a string, an exception instance (raised), or a list of
    those consumed in order with the last one repeated.
    """

    def __init__(
        self,
        plan=PLAN_JSON,
        analyze=ANALYZE_JSON,
        evaluate=None,
        report=REPORT_JSON,
    ):
        self.script = {
            "plan": plan,
            "analyze": analyze,
            "evaluate": evaluate if evaluate is not None else evaluation_json(),
            "report": report,
        }
        self.calls: dict[str, int] = {"plan": 0, "analyze": 0, "evaluate": 0, "report": 0}
        self.prompts: dict[str, list[str]] = {"plan": [], "analyze": [], "evaluate": [], "report": []}

    @staticmethod
    def _kind(messages) -> str:
        system = messages[0].content
        if system == PLANNER_SYSTEM_PROMPT:
            return "plan"
        if system == ANALYZE_SYSTEM_PROMPT:
            return "analyze"
        if system == EVALUATE_SYSTEM_PROMPT:
            return "evaluate"
        if system == REPORT_SYSTEM_PROMPT:
            return "report"
        raise AssertionError(f"Unexpected prompt: {system[:60]}")

    async def generate(self, messages) -> str:
        kind = self._kind(messages)
        self.prompts[kind].append(messages[-1].content)
        value = self.script[kind]
        if isinstance(value, list):
            value = value[min(self.calls[kind], len(value) - 1)]
        self.calls[kind] += 1
        if isinstance(value, BaseException):
            raise value
        return value


class FakeSearchBackend:
    """Returns canned result stubs per engine; engines in ``failing`` raise."""

    def __init__(self, results: dict[str, list[dict]] | None = None, failing: set[str] | None = None, delay: float = 0):
        self.results = results
        self.failing = failing or set()
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def search(self, query: str, engine: str, max_results: int) -> list[dict]:
        self.calls.append((query, engine))
        if self.delay:
            await asyncio.sleep(self.delay)
        if engine in self.failing:
            raise RuntimeError(f"{engine} unavailable")
        if self.results is not None:
            return self.results.get(engine, [])[:max_results]
        slug = query.replace(" ", "-")
        return [
            {"title": f"{engine} {i} {query}", "url": f"https://{engine}.example.org/{slug}/{i}", "snippet": "..."}
            for i in range(1, 4)
        ][:max_results]


class FakePageFetcher:
    """Serves PAGE_TEXT for every URL unless overridden; can block until released."""

    def __init__(self, pages: dict | None = None, block: asyncio.Event | None = None):
        self.pages = pages or {}
        self.block = block
        self.started = asyncio.Event()
        self.fetched: list[str] = []

    async def fetch(self, url: str) -> PageContent:
        self.fetched.append(url)
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        page = self.pages.get(url, PAGE_TEXT)
        if isinstance(page, BaseException):
            raise page
        if isinstance(page, PageContent):
            return page
        return PageContent(title=f"Page {url}", url=url, content=page)


def make_options(**overrides) -> ResearchSettings:
    values = {
        "max_iterations": 3,
        "max_pages_per_iteration": 2,
        "preferred_engines": ["google", "bing"],
        "search_timeout": 5,
        "fetch_timeout": 5,
    }
    values.update(overrides)
    return ResearchSettings(**values)


def make_plan(*questions: str, status: PlanStatus = PlanStatus.EXECUTING) -> ResearchPlan:
    questions = questions or ("What is a solid electrolyte?", "What are the benefits?")
    return ResearchPlan(
        original_question="How do solid-state batteries work?",
        refined_question="How do solid-state batteries work?",
        goal="Explain",
        reasoning="",
        sub_questions=[
            SubQuestion(question=q, priority=5 - i, search_queries=[q.lower()]) for i, q in enumerate(questions)
        ],
        search_strategy=SearchStrategy(),
        status=status,
    )


def make_chunk(content: str, url: str = "https://a.example.org/1", relevance: float = 0.5, **kwargs) -> InformationChunk:
    return InformationChunk(
        content=content,
        source_url=url,
        source_title=kwargs.pop("title", "Source"),
        relevance=relevance,
        credibility=kwargs.pop("credibility", 0.5),
        **kwargs,
    )


@pytest.fixture
def generator() -> ScriptedTextGenerator:
    return ScriptedTextGenerator()


@pytest.fixture
def search_backend() -> FakeSearchBackend:
    return FakeSearchBackend()


@pytest.fixture
def page_fetcher() -> FakePageFetcher:
    return FakePageFetcher()
