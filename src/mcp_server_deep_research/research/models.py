"""Data models for deep research runs.

A run owns one ``DeepResearchState``. The plan and its sub-questions are mutated
only by the orchestrator; information chunks are frozen once extracted.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4


def new_id(prefix: str) -> str:
    """Generate a short unique identifier with a readable prefix."""
    return f"{prefix}_{uuid4().hex[:12]}"


def utc_now() -> datetime:
    return datetime.now(UTC)


# --- Enumerations ---


class ResearchPhase(str, Enum):
    """Phases of the research state machine."""

    IDLE = "idle"
    PLANNING = "planning"
    SEARCHING = "searching"
    BROWSING = "browsing"
    ANALYZING = "analyzing"
    EVALUATING = "evaluating"
    WAITING = "waiting"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ResearchPhase.COMPLETED, ResearchPhase.CANCELLED, ResearchPhase.ERROR)


class SearchEngine(str, Enum):
    GOOGLE = "google"
    BING = "bing"
    BAIDU = "baidu"


class ResearchDepth(str, Enum):
    SHALLOW = "shallow"
    MEDIUM = "medium"
    DEEP = "deep"


class SubQuestionStatus(str, Enum):
    PENDING = "pending"
    RESEARCHING = "researching"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Status of a single search or browse task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationStatus(str, Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    BROWSING = "browsing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class Recommendation(str, Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"
    PIVOT = "pivot"


class ActionType(str, Enum):
    """Kinds of approval gates that suspend a run."""

    APPROVE_PLAN = "approve_plan"
    APPROVE_SEARCHES = "approve_searches"
    APPROVE_PAGES = "approve_pages"
    CONTINUE_OR_COMPLETE = "continue_or_complete"


# --- Messages and context ---


@dataclass
class ChatMessage:
    """A role-tagged message, used both for prompts and for the run's message log."""

    role: Literal["system", "user", "assistant"]
    content: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class PageContext:
    """The page the user was viewing when research started."""

    title: str | None = None
    url: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.title or self.url)


@dataclass
class PageContent:
    """Text extracted from one retrieved page."""

    title: str
    url: str
    content: str = ""


# --- Search ---


@dataclass
class SearchResult:
    """One result stub from a search engine."""

    title: str
    url: str
    snippet: str
    engine: SearchEngine
    rank: int  # 1-based position within its task's result set
    id: str = field(default_factory=lambda: new_id("result"))
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class SearchTask:
    """One query + engine execution and the results it produced."""

    query: str
    engine: SearchEngine
    id: str = field(default_factory=lambda: new_id("search"))
    status: TaskStatus = TaskStatus.PENDING
    results: list[SearchResult] = field(default_factory=list)
    error: str | None = None


# --- Extraction ---


@dataclass(frozen=True)
class InformationChunk:
    """One scored unit of evidence extracted from a page."""

    content: str
    source_url: str
    source_title: str
    relevance: float
    credibility: float
    sub_question_id: str | None = None
    id: str = field(default_factory=lambda: new_id("chunk"))
    extracted_at: datetime = field(default_factory=utc_now)


@dataclass
class BrowseTask:
    """One page visit and the chunks extracted from it."""

    url: str
    title: str
    id: str = field(default_factory=lambda: new_id("browse"))
    status: TaskStatus = TaskStatus.PENDING
    content: str | None = None
    chunks: list[InformationChunk] = field(default_factory=list)
    error: str | None = None


# --- Planning ---


@dataclass
class SubQuestion:
    question: str
    priority: int  # 1-5, 5 is highest
    id: str = field(default_factory=lambda: new_id("sq"))
    status: SubQuestionStatus = SubQuestionStatus.PENDING
    search_queries: list[str] = field(default_factory=list)
    findings: list[InformationChunk] = field(default_factory=list)
    summary: str | None = None


@dataclass
class SearchStrategy:
    depth: ResearchDepth = ResearchDepth.MEDIUM
    max_iterations: int = 3
    max_pages_per_iteration: int = 3
    preferred_engines: list[SearchEngine] = field(default_factory=lambda: [SearchEngine.GOOGLE, SearchEngine.BING])


@dataclass
class ResearchPlan:
    original_question: str
    refined_question: str
    goal: str
    reasoning: str
    sub_questions: list[SubQuestion]
    search_strategy: SearchStrategy
    id: str = field(default_factory=lambda: new_id("plan"))
    status: PlanStatus = PlanStatus.DRAFT
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def get_sub_question(self, sub_question_id: str | None) -> SubQuestion | None:
        return next((sq for sq in self.sub_questions if sq.id == sub_question_id), None)

    def next_pending(self) -> SubQuestion | None:
        return next((sq for sq in self.sub_questions if sq.status == SubQuestionStatus.PENDING), None)

    def pending_sub_questions(self) -> list[SubQuestion]:
        return [sq for sq in self.sub_questions if sq.status == SubQuestionStatus.PENDING]


# --- Iterations and evaluation ---


@dataclass
class ResearchIteration:
    index: int  # 1-based
    sub_question_id: str
    search_tasks: list[SearchTask] = field(default_factory=list)
    browse_tasks: list[BrowseTask] = field(default_factory=list)
    status: IterationStatus = IterationStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class ResearchEvaluation:
    """Snapshot judgment of how well the collected evidence covers the plan."""

    coverage_score: int  # 0-100
    is_complete: bool
    gaps: list[str] = field(default_factory=list)
    next_searches: list[str] = field(default_factory=list)
    key_findings: list[str] = field(default_factory=list)
    recommendation: Recommendation = Recommendation.CONTINUE
    reasoning: str = ""


# --- Report ---


@dataclass
class ReportSection:
    title: str
    content: str
    order: int
    citations: list[str] = field(default_factory=list)  # ReportSource ids
    id: str = field(default_factory=lambda: new_id("section"))


@dataclass
class ReportSource:
    id: str
    index: int  # citation number rendered as [index]
    title: str
    url: str
    accessed_at: datetime


@dataclass
class ReportMetadata:
    total_searches: int = 0
    total_pages_visited: int = 0
    total_iterations: int = 0
    research_duration_seconds: float = 0.0
    info_chunks_collected: int = 0


@dataclass
class ResearchReport:
    title: str
    question: str
    summary: str
    sections: list[ReportSection]
    sources: list[ReportSource]
    metadata: ReportMetadata
    limitations: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("report"))
    generated_at: datetime = field(default_factory=utc_now)


# --- Progress and interaction ---


@dataclass
class ResearchProgress:
    current: float = 0
    total: float = 100
    percentage: int = 0
    current_task: str = ""
    iteration: int = 0
    max_iterations: int = 0


@dataclass
class ActionOption:
    label: str
    value: str
    description: str | None = None


@dataclass
class PendingAction:
    """Typed descriptor of an approval gate the run is suspended on."""

    type: ActionType
    description: str
    options: list[ActionOption] = field(default_factory=list)
    data: Any = None


# --- Run state ---


@dataclass
class DeepResearchState:
    phase: ResearchPhase = ResearchPhase.IDLE
    plan: ResearchPlan | None = None
    iterations: list[ResearchIteration] = field(default_factory=list)
    current_iteration: int = 0
    all_chunks: list[InformationChunk] = field(default_factory=list)
    evaluation: ResearchEvaluation | None = None
    report: ResearchReport | None = None
    progress: ResearchProgress = field(default_factory=ResearchProgress)
    pending_action: PendingAction | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    is_running: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Elapsed run time, measured up to now while the run is still going."""
        if not self.started_at:
            return 0.0
        end = self.completed_at or utc_now()
        return (end - self.started_at).total_seconds()


@dataclass
class DeepResearchResult:
    success: bool
    report: ResearchReport | None
    state: DeepResearchState
    error: str | None = None
    cancelled: bool = False
