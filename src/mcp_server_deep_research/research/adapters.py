"""Boundaries between the research core and the outside world.

The core only talks to three adapters: text generation, search execution and page
retrieval. Each is a structural protocol so hosts and tests can substitute their own.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .models import ChatMessage, PageContent, PageContext

if TYPE_CHECKING:
    from browser_use.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


@runtime_checkable
class TextGenerator(Protocol):
    """Turns role-tagged messages into generated text."""

    async def generate(self, messages: Sequence[ChatMessage]) -> str: ...


@runtime_checkable
class StreamingTextGenerator(Protocol):
    """A generator that can also yield its output incrementally."""

    async def generate(self, messages: Sequence[ChatMessage]) -> str: ...

    def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]: ...


@runtime_checkable
class SearchBackend(Protocol):
    """Resolves a query on one engine to ranked result stubs.

    Each returned item is a mapping with ``title``, ``url`` and ``snippet`` keys.
    """

    async def search(self, query: str, engine: str, max_results: int) -> list[dict[str, Any]]: ...


@runtime_checkable
class PageFetcher(Protocol):
    """Resolves a URL to extracted page text. Empty content means nothing was extracted."""

    async def fetch(self, url: str) -> PageContent: ...


@runtime_checkable
class PageContextProvider(Protocol):
    """Supplies the page the user was looking at, used to seed planning."""

    async def get_page_context(self) -> PageContext | None: ...


async def generate_text(
    generator: TextGenerator,
    messages: Sequence[ChatMessage],
    on_chunk: Callable[[str], None] | None = None,
    timeout: float | None = None,
) -> str:
    """Run a generation, concatenating streamed chunks when the generator streams.

    Raises:
        TimeoutError: If the whole generation, streamed or not, exceeds ``timeout`` seconds
    """
    return await asyncio.wait_for(_collect_text(generator, messages, on_chunk), timeout=timeout)


async def _collect_text(
    generator: TextGenerator,
    messages: Sequence[ChatMessage],
    on_chunk: Callable[[str], None] | None,
) -> str:
    if isinstance(generator, StreamingTextGenerator):
        parts: list[str] = []
        async for chunk in generator.stream(messages):
            parts.append(chunk)
            if on_chunk:
                on_chunk(chunk)
        return "".join(parts)
    return await generator.generate(messages)


class LLMTextGenerator:
    """Text generation backed by a browser-use chat model."""

    def __init__(self, llm: "BaseChatModel", timeout: float = 120.0):
        self.llm = llm
        self.timeout = timeout

    async def generate(self, messages: Sequence[ChatMessage]) -> str:
        from browser_use.llm.messages import AssistantMessage, SystemMessage, UserMessage

        converted = []
        for message in messages:
            match message.role:
                case "system":
                    converted.append(SystemMessage(content=message.content))
                case "assistant":
                    converted.append(AssistantMessage(content=message.content))
                case _:
                    converted.append(UserMessage(content=message.content))

        response = await asyncio.wait_for(self.llm.ainvoke(converted), timeout=self.timeout)
        return response.completion or ""


class StaticPageContext:
    """Page context provider returning a fixed page, e.g. from CLI options."""

    def __init__(self, title: str | None = None, url: str | None = None):
        self._context = PageContext(title=title, url=url)

    async def get_page_context(self) -> PageContext | None:
        return None if self._context.is_empty else self._context
