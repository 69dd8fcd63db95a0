"""Explicit web research used to ground answers about current events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

_RESEARCH_HINTS = ("latest", "current", "today", "now", "recent", "breaking")


@dataclass(frozen=True)
class SearchResult:
    """One search hit."""

    title: str = ""
    url: str = ""
    snippet: str = ""


@dataclass(frozen=True)
class SearchCall:
    """A request to the web search tool."""

    name: str = "web_search"
    query: str = ""
    recency_days: int = 0
    max_results: int = 0


class _SearchBackend(Protocol):
    def web_search_results(self, call: SearchCall) -> list[SearchResult]: ...


class WebResearcher:
    """Runs web searches through a pluggable search backend."""

    def __init__(self, search: Optional[_SearchBackend] = None) -> None:
        self.search = search

    def research(
        self, query: str, recency_days: int, max_results: int
    ) -> list[SearchResult]:
        """Search for the query; returns no results when no backend is set."""
        if self.search is None:
            return []
        results = self.search.web_search_results(
            SearchCall(
                name="web_search",
                query=query.strip(),
                recency_days=recency_days,
                max_results=max_results,
            )
        )
        return list(results or [])


def needs_explicit_research(message: str) -> bool:
    """Tell whether the message asks for time-sensitive information."""
    text = message.strip().lower()
    if not text:
        return False
    return any(hint in text for hint in _RESEARCH_HINTS)