from __future__ import annotations

import pytest

from conftest import SAMPLE_RESULTS, ScriptedGenerator, failing_search, sample_search
from deepresearch.models.research import SearchResult
from deepresearch.research.executor import (
    DEFAULT_FALLBACK_RESULTS,
    StepExecutor,
    collect_text,
    format_search_results,
)


def test_format_search_results_blocks():
    text = format_search_results(SAMPLE_RESULTS)

    assert text == (
        "Title: Quantum Computing Basics\n"
        "Content: Qubits use superposition and entanglement.\n"
        "URL: https://example.org/quantum-basics\n\n"
        "Title: Error Correction Progress\n"
        "Content: Logical qubits with lower error rates were demonstrated.\n"
        "URL: https://example.org/error-correction"
    )


def test_format_search_results_empty():
    assert format_search_results([]) == ""


@pytest.mark.asyncio
async def test_collect_text_joins_chunks():
    async def chunks():
        for part in ("a", "b", "c"):
            yield part

    assert await collect_text(chunks()) == "abc"


@pytest.mark.asyncio
async def test_web_search_returns_provider_results():
    executor = StepExecutor(search=sample_search, generator=ScriptedGenerator())

    outcome = await executor.run_web_search("quantum computing")

    assert outcome.fallback is False
    assert [r.url for r in outcome.results] == [r.url for r in SAMPLE_RESULTS]


@pytest.mark.asyncio
async def test_web_search_falls_back_when_provider_fails():
    executor = StepExecutor(search=failing_search, generator=ScriptedGenerator())

    outcome = await executor.run_web_search("quantum computing")

    assert outcome.fallback is True
    assert "unreachable" in outcome.fallback_reason
    assert outcome.results == list(DEFAULT_FALLBACK_RESULTS)


@pytest.mark.asyncio
async def test_custom_fallback_results():
    custom = [SearchResult(title="Local", content="cached", url="https://intranet/doc")]
    executor = StepExecutor(search=failing_search, generator=ScriptedGenerator(), fallback_results=custom)

    outcome = await executor.run_web_search("q")

    assert outcome.results == custom


def test_empty_fallback_rejected():
    with pytest.raises(ValueError):
        StepExecutor(search=sample_search, generator=ScriptedGenerator(), fallback_results=[])


@pytest.mark.asyncio
async def test_content_analysis_prompt_carries_query_and_results():
    generator = ScriptedGenerator("key findings")
    executor = StepExecutor(search=sample_search, generator=generator)

    analysis = await executor.run_content_analysis("quantum computing", SAMPLE_RESULTS)

    assert analysis == "key findings"
    prompt, system = generator.calls[0]
    assert 'about "quantum computing"' in prompt
    assert "Title: Quantum Computing Basics" in prompt
    assert system


@pytest.mark.asyncio
async def test_summary_prompt_carries_analysis():
    generator = ScriptedGenerator("final summary")
    executor = StepExecutor(search=sample_search, generator=generator)

    summary = await executor.run_summary_generation("quantum computing", "key findings")

    assert summary == "final summary"
    assert "key findings" in generator.calls[0][0]


@pytest.mark.asyncio
async def test_generation_failure_propagates():
    executor = StepExecutor(
        search=sample_search,
        generator=ScriptedGenerator(RuntimeError("model unavailable")),
    )

    with pytest.raises(RuntimeError, match="model unavailable"):
        await executor.run_content_analysis("q", SAMPLE_RESULTS)
