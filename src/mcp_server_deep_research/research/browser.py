"""Search and page retrieval through a browser-use session.

Uses session-scoped CDP commands (``Page.navigate`` / ``Runtime.evaluate`` with a
``session_id``) so browser-use watchdogs don't interfere. One tab is shared, so
navigations are serialized with a lock.
"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Optional

from ..exceptions import BrowserError
from .engines import get_engine
from .models import PageContent

if TYPE_CHECKING:
    from browser_use import BrowserProfile
    from browser_use.browser.session import BrowserSession, CDPSession

    from ..config import BrowserSettings

logger = logging.getLogger(__name__)

MAX_PAGE_CHARS = 50_000


def build_browser_profile(browser_settings: "BrowserSettings") -> "BrowserProfile":
    """Translate browser settings into a browser-use profile."""
    from browser_use import BrowserProfile
    from browser_use.browser.profile import ProxySettings

    proxy = None
    if browser_settings.proxy_server:
        proxy = ProxySettings(server=browser_settings.proxy_server, bypass=browser_settings.proxy_bypass)
    if browser_settings.cdp_url:
        logger.info(f"Using external browser via CDP: {browser_settings.cdp_url}")
    return BrowserProfile(
        headless=browser_settings.headless,
        proxy=proxy,
        cdp_url=browser_settings.cdp_url,
    )

_EXTRACT_RESULTS_JS = """
((selectors, maxResults) => {
    const results = [];
    const elements = document.querySelectorAll(selectors.result);
    for (let i = 0; i < elements.length && results.length < maxResults; i++) {
        const el = elements[i];
        const titleEl = el.querySelector(selectors.title);
        const linkEl = el.querySelector(selectors.link);
        const snippetEl = el.querySelector(selectors.snippet);
        const title = titleEl && titleEl.textContent ? titleEl.textContent.trim() : '';
        const url = linkEl && linkEl.href ? linkEl.href : '';
        const snippet = snippetEl && snippetEl.textContent ? snippetEl.textContent.trim() : '';
        if (title && url && url.startsWith('http')) {
            results.push({ title, url, snippet });
        }
    }
    return results;
})(%s, %d)
"""

_EXTRACT_PAGE_JS = """
((maxChars) => {
    let root = document.querySelector('article') || document.querySelector('main');
    if (!root) {
        root = document.body.cloneNode(true);
        ['script', 'style', 'nav', 'header', 'footer', 'aside', 'iframe', 'noscript'].forEach(sel => {
            root.querySelectorAll(sel).forEach(el => el.remove());
        });
    }
    const content = (root.innerText || '')
        .split('\\n')
        .map(line => line.trim())
        .filter(line => line.length > 0)
        .join('\\n')
        .substring(0, maxChars);
    return { title: document.title || '', url: window.location.href, content };
})(%d)
"""


class BrowserResearchAdapter:
    """Implements both the search backend and the page fetcher on one browser session.

    Usage:
        async with BrowserResearchAdapter(profile) as browser:
            machine = ResearchMachine(generator, browser, browser, options)
    """

    def __init__(
        self,
        browser_profile: "BrowserProfile",
        load_timeout: float = 15.0,
        settle_delay: float = 0.5,
    ):
        self.browser_profile = browser_profile
        self.load_timeout = load_timeout
        self.settle_delay = settle_delay
        self._session: Optional["BrowserSession"] = None
        self._cdp_session: Optional["CDPSession"] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "BrowserResearchAdapter":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._session is not None:
            return
        from browser_use.browser.session import BrowserSession

        self._session = BrowserSession(browser_profile=self.browser_profile)
        await self._session.start()
        logger.info("Browser session started for research")

    async def stop(self) -> None:
        if self._session is None:
            return
        try:
            await self._session.stop()
        finally:
            self._session = None
            self._cdp_session = None

    async def search(self, query: str, engine: str, max_results: int) -> list[dict[str, Any]]:
        """Open the engine's result page and scrape result stubs from the DOM."""
        config = get_engine(engine)
        url = config.build_url(query)
        expression = _EXTRACT_RESULTS_JS % (json.dumps(config.selectors()), max_results)

        async with self._lock:
            await self._navigate(url)
            value = await self._evaluate(expression)

        if not isinstance(value, list):
            return []
        logger.info(f"{config.name} returned {len(value)} results for '{query[:60]}'")
        return [item for item in value if isinstance(item, dict)]

    async def fetch(self, url: str) -> PageContent:
        """Open a page and extract its readable text."""
        async with self._lock:
            await self._navigate(url)
            value = await self._evaluate(_EXTRACT_PAGE_JS % MAX_PAGE_CHARS)

        if not isinstance(value, dict):
            return PageContent(title="", url=url, content="")
        return PageContent(
            title=str(value.get("title") or ""),
            url=str(value.get("url") or url),
            content=str(value.get("content") or ""),
        )

    async def _get_cdp_session(self) -> "CDPSession":
        if self._session is None:
            raise BrowserError("Browser session is not started")
        if self._cdp_session is not None:
            return self._cdp_session

        cdp_session = await self._session.get_or_create_cdp_session()
        for domain in ("Page", "Runtime"):
            try:
                await getattr(self._session.cdp_client.send, domain).enable(session_id=cdp_session.session_id)
            except Exception as e:
                # May already be enabled by the session manager
                logger.debug(f"{domain}.enable: {e}")
        self._cdp_session = cdp_session
        return cdp_session

    async def _navigate(self, url: str) -> None:
        cdp_session = await self._get_cdp_session()
        assert self._session is not None
        result = await self._session.cdp_client.send.Page.navigate(
            params={"url": url, "transitionType": "typed"},
            session_id=cdp_session.session_id,
        )
        if result.get("errorText"):
            raise BrowserError(f"Navigation to {url} failed: {result['errorText']}")
        await self._wait_for_load()

    async def _wait_for_load(self) -> None:
        """Poll document.readyState until complete, then give scripts a moment to settle."""
        deadline = time.monotonic() + self.load_timeout
        while time.monotonic() < deadline:
            state = await self._evaluate("document.readyState")
            if state == "complete":
                await asyncio.sleep(self.settle_delay)
                return
            await asyncio.sleep(0.2)
        raise BrowserError("Page load timed out")

    async def _evaluate(self, expression: str) -> Any:
        cdp_session = await self._get_cdp_session()
        assert self._session is not None
        result = await self._session.cdp_client.send.Runtime.evaluate(
            params={"expression": expression, "returnByValue": True, "awaitPromise": True},
            session_id=cdp_session.session_id,
        )
        if result.get("exceptionDetails"):
            error = result["exceptionDetails"].get("text", "Unknown error")
            raise BrowserError(f"Script evaluation failed: {error}")
        return result.get("result", {}).get("value")
