"""Durable task/step records whose every status change is also announced.

Each mutating call writes the row first and then hands the same event to
both halves of the update channel, so a change that reached the database is
always visible to live viewers and to the replayable history. A failure to
record the event never rolls the write back; it surfaces as
``NotificationError`` after the row is already committed.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from deepresearch.errors import (
    ConversationNotFoundError,
    InvalidStatusTransitionError,
    NotificationError,
    StepNotFoundError,
    StepOrderError,
    TaskNotFoundError,
)
from deepresearch.models.events import EventType, UpdateEvent
from deepresearch.models.research import (
    STEP_TRANSITIONS,
    TASK_TRANSITIONS,
    ResearchStatus,
    Step,
    StepType,
    Task,
    build_step_data,
)
from deepresearch.services import logger as log_service
from deepresearch.services.update_channel import UpdateChannel
from deepresearch.storage.base import TaskRepository


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStore:
    def __init__(self, repository: TaskRepository, channel: UpdateChannel):
        self.repository = repository
        self.channel = channel

    # --- Tasks ---

    async def create_task(self, query: str, chat_id: str, user_id: str) -> Task:
        """Insert a pending task. The chat is checked first so no orphan row is written."""
        if not await self.repository.chat_exists(chat_id):
            raise ConversationNotFoundError(chat_id)
        row = await self.repository.insert_task(chat_id=chat_id, user_id=user_id, query=query)
        return Task.model_validate(row)

    async def get_task(self, task_id: str) -> Task | None:
        row = await self.repository.fetch_task(task_id)
        return Task.model_validate(row) if row else None

    async def get_tasks_by_chat(self, chat_id: str) -> list[Task]:
        rows = await self.repository.fetch_tasks_by_chat(chat_id)
        return [Task.model_validate(row) for row in rows]

    async def set_task_status(
        self,
        task_id: str,
        status: ResearchStatus | str,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        message: str | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> Task:
        """Move a task along its lifecycle, changing only the supplied fields."""
        status = ResearchStatus(status)
        if result and status != ResearchStatus.DONE:
            raise ValueError("A task result can only be attached when it is done")

        fields: dict[str, Any] = {"status": status.value}
        if result:
            fields["result"] = result
        if error is not None:
            fields["error"] = error
        if started_at is not None:
            fields["started_at"] = started_at
        if completed_at is not None:
            fields["completed_at"] = completed_at

        row = await self.repository.update_task(
            task_id,
            fields,
            expected_statuses=[s.value for s in TASK_TRANSITIONS[status]],
        )
        if row is None:
            current = await self.repository.fetch_task(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            raise InvalidStatusTransitionError(task_id, current["status"], status.value)
        task = Task.model_validate(row)

        await self._notify(
            task_id,
            UpdateEvent(
                type=EventType.STATUS_UPDATE,
                task_id=task_id,
                status=status.value,
                message=message,
                error=error,
                data=event_data,
            ),
        )
        return task

    # --- Steps ---

    async def create_step(
        self,
        task_id: str,
        order: int,
        step_type: StepType | str,
        status: ResearchStatus | str = ResearchStatus.PENDING,
        data: dict[str, Any] | None = None,
        *,
        message: str | None = None,
    ) -> Step:
        """Append the next step of a task; its predecessor must already be finished."""
        step_type = StepType(step_type)
        status = ResearchStatus(status)

        if await self.repository.fetch_task(task_id) is None:
            raise TaskNotFoundError(task_id)
        latest = await self.repository.fetch_latest_step(task_id)
        expected_order = latest["order"] + 1 if latest else 1
        if order != expected_order:
            raise StepOrderError(
                f"Task {task_id} expects step {expected_order} next, got {order}"
            )
        if latest and not ResearchStatus(latest["status"]).is_terminal:
            raise StepOrderError(
                f"Step {latest['order']} of task {task_id} is still {latest['status']}"
            )

        payload = build_step_data(step_type, data or {}).model_dump(mode="json")
        started_at = None
        if status != ResearchStatus.PENDING:
            started_at = _utcnow()
            previous_start = latest["started_at"] if latest else None
            # Steps start strictly in order even when the clock has not advanced.
            if previous_start is not None and started_at <= previous_start:
                started_at = previous_start + timedelta(microseconds=1)
        row = await self.repository.insert_step(
            task_id=task_id,
            order=order,
            step_type=step_type.value,
            status=status.value,
            data=payload,
            started_at=started_at,
        )
        step = Step.model_validate(row)
        log_service.log_research_step(task_id, step_type.value, status.value)

        await self._notify(
            task_id,
            UpdateEvent(
                type=EventType.STEP_CREATED,
                task_id=task_id,
                status=status.value,
                message=message,
                step_id=step.id,
                step_type=step_type.value,
                step_order=order,
            ),
        )
        return step

    async def set_step_status(
        self,
        step_id: str,
        status: ResearchStatus | str,
        *,
        data: dict[str, Any] | None = None,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        message: str | None = None,
    ) -> Step:
        """Update a step; the owning task, type and order are taken from the stored row."""
        status = ResearchStatus(status)
        existing = await self.repository.fetch_step(step_id)
        if existing is None:
            raise StepNotFoundError(step_id)
        step_type = StepType(existing["type"])

        fields: dict[str, Any] = {"status": status.value}
        payload: dict[str, Any] | None = None
        if data:
            payload = build_step_data(step_type, data).model_dump(mode="json")
            fields["data"] = payload
        if error is not None:
            fields["error"] = error
        if started_at is not None:
            fields["started_at"] = started_at
        if completed_at is not None:
            fields["completed_at"] = completed_at

        row = await self.repository.update_step(
            step_id,
            fields,
            expected_statuses=[s.value for s in STEP_TRANSITIONS[status]],
        )
        if row is None:
            current = await self.repository.fetch_step(step_id)
            if current is None:
                raise StepNotFoundError(step_id)
            raise InvalidStatusTransitionError(step_id, current["status"], status.value)
        step = Step.model_validate(row)
        log_service.log_research_step(step.task_id, step.type.value, status.value)

        await self._notify(
            step.task_id,
            UpdateEvent(
                type=EventType.STEP_UPDATE,
                task_id=step.task_id,
                status=status.value,
                message=message,
                error=error,
                data=payload,
                step_id=step.id,
                step_type=step.type.value,
                step_order=step.order,
            ),
        )
        return step

    async def get_step(self, step_id: str) -> Step | None:
        row = await self.repository.fetch_step(step_id)
        return Step.model_validate(row) if row else None

    async def get_steps(self, task_id: str) -> list[Step]:
        rows = await self.repository.fetch_steps(task_id)
        return [Step.model_validate(row) for row in rows]

    async def get_latest_step(self, task_id: str) -> Step | None:
        row = await self.repository.fetch_latest_step(task_id)
        return Step.model_validate(row) if row else None

    async def _notify(self, task_id: str, event: UpdateEvent) -> None:
        await self.channel.publish(task_id, event)
        try:
            await self.channel.record(task_id, event)
        except Exception as e:
            raise NotificationError(
                f"Failed to record {event.type.value} for task {task_id}: {e}"
            ) from e
