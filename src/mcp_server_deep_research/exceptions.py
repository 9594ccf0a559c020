"""Custom exceptions for the deep research server."""


class DeepResearchError(Exception):
    """Base exception for deep research errors."""

    pass


class LLMProviderError(DeepResearchError):
    """Raised when LLM provider configuration is invalid."""

    pass


class BrowserError(DeepResearchError):
    """Raised when browser operations fail."""

    pass


class PlanningError(DeepResearchError):
    """Raised when a research plan cannot be produced.

    This is the only fatal research failure: nothing downstream can run without a plan.
    """

    pass


class ResearchCancelledError(DeepResearchError):
    """Raised inside a run to unwind after the user stopped it."""

    pass
