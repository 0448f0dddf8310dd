"""Stateless runners for the individual research stages.

The executor only talks to the search and generation collaborators and
returns data. Persisting steps and announcing progress is the
orchestrator's job.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from loguru import logger

from deepresearch.models.research import SearchResult
from deepresearch.services.prompt_store import stage_prompts

SearchFn = Callable[[str], Awaitable[list[SearchResult]]]


class TextGenerationBackend(Protocol):
    def generate(self, prompt: str, system: str) -> AsyncIterator[str]: ...


# Served when the search provider is unreachable so the pipeline can still
# produce an analysis. Replace with a curated source list per deployment.
DEFAULT_FALLBACK_RESULTS: tuple[SearchResult, ...] = (
    SearchResult(
        title="Recent AI Trends",
        content="The latest trends in AI include multimodal models, AI agents, and more efficient training methods.",
        url="https://example.com/ai-trends",
    ),
    SearchResult(
        title="Advancements in LLMs",
        content="Large language models have seen significant improvements in reasoning capabilities and factual accuracy.",
        url="https://example.com/llm-advancements",
    ),
    SearchResult(
        title="AI in Healthcare",
        content="AI applications in healthcare are growing rapidly, with new diagnostic tools and treatment recommendations.",
        url="https://example.com/ai-healthcare",
    ),
)


@dataclass
class SearchOutcome:
    results: list[SearchResult]
    fallback: bool = False
    fallback_reason: str | None = None


def format_search_results(results: Sequence[SearchResult]) -> str:
    """Flatten results into one text block, one ``Title/Content/URL`` group per source."""
    return "\n\n".join(
        f"Title: {r.title}\nContent: {r.content}\nURL: {r.url}" for r in results
    )


async def collect_text(stream: AsyncIterator[str]) -> str:
    parts: list[str] = []
    async for chunk in stream:
        parts.append(chunk)
    return "".join(parts)


class StepExecutor:
    def __init__(
        self,
        search: SearchFn | None = None,
        generator: TextGenerationBackend | None = None,
        *,
        fallback_results: Sequence[SearchResult] | None = None,
    ):
        if search is None:
            from deepresearch.tools import search_provider

            search = search_provider.search
        if generator is None:
            from deepresearch.llm_client import generator as default_generator

            generator = default_generator()
        self.search = search
        self.generator = generator
        self.fallback_results = list(
            fallback_results if fallback_results is not None else DEFAULT_FALLBACK_RESULTS
        )
        if not self.fallback_results:
            raise ValueError("fallback_results must contain at least one source")

    async def run_web_search(self, query: str) -> SearchOutcome:
        """Search the web; on any provider error fall back to the fixed result set."""
        try:
            results = await self.search(query)
        except Exception as e:
            logger.warning(f"Search failed for {query[:100]!r}, using fallback sources: {e}")
            return SearchOutcome(
                results=[r.model_copy() for r in self.fallback_results],
                fallback=True,
                fallback_reason=str(e),
            )
        return SearchOutcome(results=list(results))

    async def run_content_analysis(self, query: str, results: Sequence[SearchResult]) -> str:
        prompt, system = stage_prompts(
            "content_analysis",
            query=query,
            results=format_search_results(results),
        )
        return await collect_text(self.generator.generate(prompt, system))

    async def run_summary_generation(self, query: str, analysis: str) -> str:
        prompt, system = stage_prompts("summary_generation", query=query, analysis=analysis)
        return await collect_text(self.generator.generate(prompt, system))
