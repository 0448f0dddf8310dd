from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from pydantic import ValidationError

from deepresearch.models.events import EventType, UpdateEvent
from deepresearch.models.research import Step, StepType, Task, build_step_data


def test_status_update_wire_form_omits_step_fields():
    event = UpdateEvent(type=EventType.STATUS_UPDATE, task_id="t1", status="running", message="Starting")

    wire = event.to_wire()

    assert wire["type"] == "status_update"
    assert wire["taskId"] == "t1"
    assert wire["message"] == "Starting"
    assert "stepId" not in wire
    assert "error" not in wire
    assert "data" not in wire


def test_step_event_wire_round_trip():
    event = UpdateEvent(
        type=EventType.STEP_UPDATE,
        task_id="t1",
        status="done",
        data={"summary": "s"},
        step_id="s1",
        step_type="summary_generation",
        step_order=3,
    )

    restored = UpdateEvent.loads(event.dumps())

    assert restored == event
    assert event.format()["event"] == "step_update"


def test_terminal_status_detection():
    assert UpdateEvent(type=EventType.STATUS_UPDATE, task_id="t", status="failed").is_terminal_status
    assert not UpdateEvent(type=EventType.STEP_UPDATE, task_id="t", status="done").is_terminal_status


def test_step_data_tagged_from_step_type():
    now = datetime.now(timezone.utc)
    step = Step.model_validate({
        "id": uuid4(),
        "task_id": uuid4(),
        "order": 2,
        "type": "content_analysis",
        "status": "done",
        "data": {"query": "q", "analysis": "a"},
        "created_at": now,
        "updated_at": now,
    })

    assert isinstance(step.id, str)
    assert step.data.type == "content_analysis"
    assert step.data.analysis == "a"


def test_build_step_data_rejects_bad_payload():
    with pytest.raises(ValidationError):
        build_step_data(StepType.WEB_SEARCH, {"results": "not a list"})


def test_task_null_json_columns_become_empty():
    now = datetime.now(timezone.utc)
    task = Task.model_validate({
        "id": uuid4(),
        "chat_id": uuid4(),
        "user_id": "u",
        "query": "q",
        "status": "done",
        "result": None,
        "metadata": None,
        "created_at": now,
        "updated_at": now,
    })

    assert task.result == {}
    assert task.is_terminal
