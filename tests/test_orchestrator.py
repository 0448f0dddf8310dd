"""End-to-end pipeline runs against the in-memory store and fake Redis."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from conftest import ScriptedGenerator, failing_search, sample_search
from deepresearch.errors import TaskAlreadyClaimedError, TaskNotFoundError
from deepresearch.models.research import ResearchStatus, StepType
from deepresearch.research.executor import DEFAULT_FALLBACK_RESULTS, StepExecutor
from deepresearch.research.orchestrator import ResearchOrchestrator, summary_preview


def _orchestrator(store, *outputs, search=sample_search, preview_chars=200):
    executor = StepExecutor(search=search, generator=ScriptedGenerator(*outputs))
    return ResearchOrchestrator(store, executor, preview_chars=preview_chars)


def test_summary_preview_truncates_with_ellipsis():
    assert summary_preview("short", 200) == "short"
    assert summary_preview("x" * 250, 200) == "x" * 200 + "..."
    assert summary_preview("x" * 200, 200) == "x" * 200


def test_unsupported_stage_rejected(store):
    executor = StepExecutor(search=sample_search, generator=ScriptedGenerator())
    with pytest.raises(ValueError):
        ResearchOrchestrator(store, executor, pipeline=[StepType.WEBSITE_VISIT])


@pytest.mark.asyncio
async def test_successful_run(store, chat_id):
    orchestrator = _orchestrator(store, "analysis of qubits", "quantum summary")
    task = await store.create_task("quantum computing", chat_id, "user-1")

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.DONE
    assert final.started_at is not None
    assert final.completed_at is not None
    assert final.error is None
    assert final.result["analysis"] == "analysis of qubits"
    assert final.result["summary"] == "quantum summary"
    assert len(final.result["searchResults"]) == 2

    steps = await store.get_steps(task.id)
    assert [s.order for s in steps] == [1, 2, 3]
    assert [s.type for s in steps] == [
        StepType.WEB_SEARCH,
        StepType.CONTENT_ANALYSIS,
        StepType.SUMMARY_GENERATION,
    ]
    assert all(s.status == ResearchStatus.DONE for s in steps)
    assert steps[0].started_at < steps[1].started_at < steps[2].started_at
    assert all(s.completed_at is not None for s in steps)
    assert steps[0].data.fallback is False
    assert steps[0].data.completed_time is not None
    assert steps[1].data.analysis == "analysis of qubits"
    assert steps[2].data.summary == "quantum summary"


@pytest.mark.asyncio
async def test_successful_run_history(store, chat_id, channel):
    orchestrator = _orchestrator(store, "analysis", "summary text")
    task = await store.create_task("quantum computing", chat_id, "user-1")

    await orchestrator.run(task.id)

    history = await channel.history(task.id)
    assert [(e.type.value, e.status, e.step_order) for e in history] == [
        ("status_update", "running", None),
        ("step_created", "running", 1),
        ("step_update", "done", 1),
        ("step_created", "running", 2),
        ("step_update", "done", 2),
        ("step_created", "running", 3),
        ("step_update", "done", 3),
        ("status_update", "done", None),
    ]
    assert history[0].message == 'Starting deep research for "quantum computing"'
    assert history[1].message == 'Searching the web for information about "quantum computing"'
    assert history[2].message == 'Found 2 relevant sources about "quantum computing"'
    assert history[-1].message == "Deep research completed successfully"
    assert history[-1].data == {"summary": "summary text"}


@pytest.mark.asyncio
async def test_completion_event_carries_preview(store, chat_id, channel):
    orchestrator = _orchestrator(store, "analysis", "s" * 300, preview_chars=50)
    task = await store.create_task("q", chat_id, "user-1")

    final = await orchestrator.run(task.id)

    assert final.result["summary"] == "s" * 300
    done_event = (await channel.history(task.id))[-1]
    assert done_event.data["summary"] == "s" * 50 + "..."


@pytest.mark.asyncio
async def test_analysis_failure_fails_step_and_task(store, chat_id, channel):
    orchestrator = _orchestrator(store, RuntimeError("generation service down"))
    task = await store.create_task("quantum computing", chat_id, "user-1")

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.FAILED
    assert final.error == "generation service down"
    assert final.result == {}
    assert final.completed_at is not None

    steps = await store.get_steps(task.id)
    assert [(s.order, s.status) for s in steps] == [
        (1, ResearchStatus.DONE),
        (2, ResearchStatus.FAILED),
    ]
    assert steps[1].error == "generation service down"

    last = (await channel.history(task.id))[-1]
    assert last.type == "status_update"
    assert last.status == "failed"
    assert last.error == "generation service down"
    assert last.message == "Deep research failed"


@pytest.mark.asyncio
async def test_summary_failure_keeps_earlier_steps(store, chat_id):
    orchestrator = _orchestrator(store, "analysis", ValueError("bad response"))
    task = await store.create_task("q", chat_id, "user-1")

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.FAILED
    assert final.error == "bad response"
    steps = await store.get_steps(task.id)
    assert [s.status for s in steps] == [
        ResearchStatus.DONE,
        ResearchStatus.DONE,
        ResearchStatus.FAILED,
    ]


@pytest.mark.asyncio
async def test_error_without_message_uses_class_name(store, chat_id):
    orchestrator = _orchestrator(store, TimeoutError())
    task = await store.create_task("q", chat_id, "user-1")

    final = await orchestrator.run(task.id)

    assert final.error == "TimeoutError"


@pytest.mark.asyncio
async def test_search_outage_degrades_to_fallback(store, chat_id):
    orchestrator = _orchestrator(store, "analysis", "summary", search=failing_search)
    task = await store.create_task("q", chat_id, "user-1")

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.DONE
    assert [r["url"] for r in final.result["searchResults"]] == [
        r.url for r in DEFAULT_FALLBACK_RESULTS
    ]
    first_step = (await store.get_steps(task.id))[0]
    assert first_step.data.fallback is True


@pytest.mark.asyncio
async def test_second_run_is_rejected(store, chat_id):
    orchestrator = _orchestrator(store, "analysis", "summary")
    task = await store.create_task("q", chat_id, "user-1")
    await orchestrator.run(task.id)

    with pytest.raises(TaskAlreadyClaimedError):
        await orchestrator.run(task.id)
    assert len(await store.get_steps(task.id)) == 3


@pytest.mark.asyncio
async def test_concurrent_runs_only_one_claims(store, chat_id):
    orchestrator = _orchestrator(store, "analysis", "summary", "analysis", "summary")
    task = await store.create_task("q", chat_id, "user-1")

    outcomes = await asyncio.gather(
        orchestrator.run(task.id),
        orchestrator.run(task.id),
        return_exceptions=True,
    )

    claimed = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, TaskAlreadyClaimedError)]
    assert len(claimed) == 1
    assert len(rejected) == 1
    assert claimed[0].status == ResearchStatus.DONE
    assert len(await store.get_steps(task.id)) == 3


@pytest.mark.asyncio
async def test_run_of_missing_task(store):
    orchestrator = _orchestrator(store)

    with pytest.raises(TaskNotFoundError):
        await orchestrator.run("no-such-task")


@pytest.mark.asyncio
async def test_lost_completion_event_does_not_fail_task(store, chat_id, channel):
    orchestrator = _orchestrator(store, "analysis", "summary")
    task = await store.create_task("q", chat_id, "user-1")
    record = channel.record

    async def record_unless_terminal(task_id, event):
        if event.is_terminal_status:
            raise ConnectionError("redis down")
        await record(task_id, event)

    channel.record = record_unless_terminal

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.DONE
    assert final.result["summary"] == "summary"
    assert (await channel.history(task.id))[-1].type == "step_update"


@pytest.mark.asyncio
async def test_lost_failure_event_keeps_original_error(store, chat_id, channel):
    orchestrator = _orchestrator(store, RuntimeError("generation service down"))
    task = await store.create_task("q", chat_id, "user-1")
    record = channel.record

    async def record_unless_terminal(task_id, event):
        if event.is_terminal_status:
            raise ConnectionError("redis down")
        await record(task_id, event)

    channel.record = record_unless_terminal

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.FAILED
    assert final.error == "generation service down"


@pytest.mark.asyncio
async def test_lost_step_event_fails_task(store, chat_id, channel):
    orchestrator = _orchestrator(store, "analysis", "summary")
    task = await store.create_task("q", chat_id, "user-1")
    record = channel.record

    async def record_unless_step_created(task_id, event):
        if event.type == "step_created":
            raise ConnectionError("redis down")
        await record(task_id, event)

    channel.record = record_unless_step_created

    final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.FAILED
    assert "redis down" in final.error
    steps = await store.get_steps(task.id)
    assert [s.status for s in steps] == [ResearchStatus.FAILED]


@pytest.mark.asyncio
async def test_step_start_times_increase_with_a_frozen_clock(store, chat_id):
    frozen = datetime(2026, 1, 1, tzinfo=timezone.utc)
    orchestrator = _orchestrator(store, "analysis", "summary")
    task = await store.create_task("q", chat_id, "user-1")

    with patch("deepresearch.services.task_store._utcnow", return_value=frozen):
        final = await orchestrator.run(task.id)

    assert final.status == ResearchStatus.DONE
    starts = [s.started_at for s in await store.get_steps(task.id)]
    assert starts[0] == frozen
    assert starts[0] < starts[1] < starts[2]
