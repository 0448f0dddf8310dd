from __future__ import annotations

import pytest

from deepresearch.services.prompt_store import render_prompt, stage_prompts


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("summary_generation.prompt", query="fusion power", analysis="ANALYSIS")

    assert 'about "fusion power"' in prompt
    assert prompt.endswith("ANALYSIS")


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError, match="Missing template value"):
        render_prompt("content_analysis.prompt", query="q")


def test_stage_prompts_returns_prompt_and_system():
    prompt, system = stage_prompts("content_analysis", query="q", results="Title: x")

    assert "Title: x" in prompt
    assert "research analyst" in system
