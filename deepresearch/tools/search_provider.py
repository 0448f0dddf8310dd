from __future__ import annotations

from deepresearch.config import settings
from deepresearch.models.research import SearchResult
from deepresearch.tools import brave_search, tavily_search


async def search(query: str) -> list[SearchResult]:
    """Run the configured web search provider for ``query``.

    Errors from the provider propagate; degrading to fallback sources is the
    caller's decision.
    """
    provider = settings.search_provider.lower().strip()

    if provider == "tavily":
        return await tavily_search.search(
            query,
            search_depth=settings.search_depth,
            max_results=settings.search_max_results,
        )

    if provider == "brave":
        return await brave_search.search(query, max_results=settings.search_max_results)

    raise ValueError(f"Unsupported SEARCH_PROVIDER: {settings.search_provider}")
