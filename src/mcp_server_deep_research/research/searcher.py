"""Executes search queries through the search backend and cleans up the results."""

import asyncio
import logging
from urllib.parse import urlsplit

from .adapters import SearchBackend
from .engines import get_engine
from .models import SearchEngine, SearchResult, SearchTask, TaskStatus

logger = logging.getLogger(__name__)

# (host, path prefix) pairs; an empty prefix blocks the whole host
BLOCKED_URL_PATTERNS: tuple[tuple[str, str], ...] = (
    ("google.com", "/search"),
    ("bing.com", "/search"),
    ("baidu.com", "/s"),
    ("facebook.com", ""),
    ("twitter.com", ""),
    ("x.com", ""),
    ("instagram.com", ""),
)


def normalize_url(url: str) -> str:
    """Dedup key for a URL: lowercase host without ``www.`` followed by the path without trailing slash.

    Applying it to its own output gives the same key.
    """
    parts = urlsplit(url if "//" in url else f"//{url}")
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host + parts.path.rstrip("/")


def _is_blocked(url: str) -> bool:
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    for blocked_host, path_prefix in BLOCKED_URL_PATTERNS:
        if host == blocked_host or host.endswith("." + blocked_host):
            if not path_prefix or parts.path == path_prefix or parts.path.startswith(path_prefix + "/"):
                return True
    return False


class WebSearcher:
    """Runs searches against one or more engines with a per-search time budget."""

    def __init__(self, backend: SearchBackend, timeout: float = 30.0):
        self.backend = backend
        self.timeout = timeout

    async def search(self, queries: list[str], engine: SearchEngine, max_results: int = 10) -> SearchTask:
        """Run the joined queries on one engine.

        Never raises for backend problems: a timeout or backend error leaves the task
        ``failed`` with an error message, which callers treat as zero results.
        """
        task = SearchTask(query=" ".join(q.strip() for q in queries if q.strip()), engine=SearchEngine(engine))
        task.status = TaskStatus.RUNNING

        try:
            raw_results = await asyncio.wait_for(
                self.backend.search(task.query, task.engine.value, max_results),
                timeout=self.timeout,
            )
        except TimeoutError:
            task.status = TaskStatus.FAILED
            task.error = f"Search timed out after {self.timeout:g}s"
            logger.warning(f"{task.engine.value} search timed out: '{task.query}'")
            return task
        except Exception as e:
            task.status = TaskStatus.FAILED
            task.error = str(e) or type(e).__name__
            logger.warning(f"{task.engine.value} search failed: {task.error}")
            return task

        for rank, item in enumerate(raw_results[:max_results], 1):
            url = str(item.get("url") or "")
            if not url:
                continue
            task.results.append(
                SearchResult(
                    title=str(item.get("title") or url),
                    url=url,
                    snippet=str(item.get("snippet") or ""),
                    engine=task.engine,
                    rank=rank,
                )
            )

        task.status = TaskStatus.COMPLETED
        logger.info(f"{task.engine.value} search returned {len(task.results)} results")
        return task

    async def search_multi_engine(
        self,
        queries: list[str],
        engines: list[SearchEngine],
        max_results: int = 10,
    ) -> list[SearchTask]:
        """Search all engines concurrently; returns one task per engine, in engine order."""
        return list(await asyncio.gather(*(self.search(queries, engine, max_results) for engine in engines)))

    @staticmethod
    def filter_results(results: list[SearchResult]) -> list[SearchResult]:
        """Drop non-http(s) URLs, search engine result pages and social feeds."""
        filtered = []
        for result in results:
            scheme = urlsplit(result.url).scheme.lower()
            if scheme not in ("http", "https"):
                continue
            if _is_blocked(result.url):
                continue
            filtered.append(result)
        return filtered

    @staticmethod
    def merge_results(tasks: list[SearchTask]) -> list[SearchResult]:
        """Merge completed tasks' results ordered by rank, keeping the first result per normalized URL."""
        candidates = [result for task in tasks if task.status == TaskStatus.COMPLETED for result in task.results]
        candidates.sort(key=lambda r: r.rank)

        seen: set[str] = set()
        merged = []
        for result in candidates:
            key = normalize_url(result.url)
            if key in seen:
                continue
            seen.add(key)
            merged.append(result)
        return merged

    @staticmethod
    def get_search_url(query: str, engine: SearchEngine) -> str:
        return get_engine(engine).build_url(query)


def format_results_as_text(results: list[SearchResult], limit: int = 10) -> str:
    """Render search results for the message log."""
    if not results:
        return "No search results."
    lines = [f"Found {len(results)} results:"]
    for index, result in enumerate(results[:limit], 1):
        lines.append(f"{index}. [{result.title}]({result.url})")
        if result.snippet:
            lines.append(f"   {result.snippet[:200]}")
    if len(results) > limit:
        lines.append(f"... and {len(results) - limit} more")
    return "\n".join(lines)
