"""MCP server for iterative web deep research."""

from .config import settings
from .exceptions import BrowserError, DeepResearchError, LLMProviderError, PlanningError
from .providers import get_llm
from .server import main, serve

__all__ = [
    "main",
    "serve",
    "settings",
    "get_llm",
    "DeepResearchError",
    "LLMProviderError",
    "BrowserError",
    "PlanningError",
]
