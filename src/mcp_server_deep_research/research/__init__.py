"""Deep research engine: planning, searching, reading, evaluating and reporting."""

from .adapters import LLMTextGenerator, PageFetcher, SearchBackend, StaticPageContext, TextGenerator
from .browser import BrowserResearchAdapter
from .machine import ResearchCallbacks, ResearchMachine
from .models import DeepResearchResult, DeepResearchState, ResearchPhase, ResearchReport
from .report import export_as_markdown
from .store import ResearchSessionRegistry

__all__ = [
    "BrowserResearchAdapter",
    "DeepResearchResult",
    "DeepResearchState",
    "LLMTextGenerator",
    "PageFetcher",
    "ResearchCallbacks",
    "ResearchMachine",
    "ResearchPhase",
    "ResearchReport",
    "ResearchSessionRegistry",
    "SearchBackend",
    "StaticPageContext",
    "TextGenerator",
    "export_as_markdown",
]
