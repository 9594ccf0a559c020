"""Search engine definitions: result page URLs and the DOM selectors to scrape them."""

from dataclasses import dataclass
from urllib.parse import quote_plus

from .models import SearchEngine


@dataclass(frozen=True)
class EngineConfig:
    name: str
    search_url: str  # format string with a {query} placeholder
    result_selector: str
    title_selector: str
    link_selector: str
    snippet_selector: str

    def build_url(self, query: str) -> str:
        return self.search_url.format(query=quote_plus(query))

    def selectors(self) -> dict[str, str]:
        return {
            "result": self.result_selector,
            "title": self.title_selector,
            "link": self.link_selector,
            "snippet": self.snippet_selector,
        }


SEARCH_ENGINES: dict[SearchEngine, EngineConfig] = {
    SearchEngine.GOOGLE: EngineConfig(
        name="Google",
        search_url="https://www.google.com/search?q={query}",
        result_selector="div.g",
        title_selector="h3",
        link_selector='a[href^="http"]',
        snippet_selector="div[data-sncf], div.VwiC3b",
    ),
    SearchEngine.BING: EngineConfig(
        name="Bing",
        search_url="https://www.bing.com/search?q={query}",
        result_selector="li.b_algo",
        title_selector="h2 a",
        link_selector="h2 a",
        snippet_selector="p, .b_caption p",
    ),
    SearchEngine.BAIDU: EngineConfig(
        name="Baidu",
        search_url="https://www.baidu.com/s?wd={query}",
        result_selector="div.result, div.c-container",
        title_selector="h3 a",
        link_selector="h3 a",
        snippet_selector=".c-abstract, .content-right_8Zs40",
    ),
}


def get_engine(engine: SearchEngine | str) -> EngineConfig:
    return SEARCH_ENGINES[SearchEngine(engine)]
