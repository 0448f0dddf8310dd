"""Read path for viewers: task snapshot plus catch-up history.

Nothing here mutates state. History is only replayed while a task is
running; once it is terminal the task record itself carries the outcome.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from deepresearch.models.events import EventType, UpdateEvent
from deepresearch.models.research import ResearchStatus, Step, Task
from deepresearch.services.task_store import TaskStore
from deepresearch.services.update_channel import UpdateChannel


def _event_key(event: UpdateEvent) -> tuple:
    return (event.type, event.step_order, event.status, event.timestamp)


@dataclass
class TaskSnapshot:
    task: Task
    steps: list[Step] = field(default_factory=list)
    events: list[UpdateEvent] = field(default_factory=list)

    def to_view(self) -> dict[str, Any]:
        """Task fields plus wire-form ``events``, as served by the read API."""
        return {
            **self.task.model_dump(mode="json"),
            "events": [e.to_wire() for e in self.events],
        }


class ObserverGateway:
    def __init__(self, store: TaskStore, channel: UpdateChannel):
        self.store = store
        self.channel = channel

    async def get_snapshot(self, task_id: str, *, include_steps: bool = True) -> TaskSnapshot | None:
        task = await self.store.get_task(task_id)
        if task is None:
            return None
        steps = await self.store.get_steps(task_id) if include_steps else []
        return TaskSnapshot(task=task, steps=steps, events=await self._replay(task))

    async def fetch_task_by_id(self, task_id: str) -> dict[str, Any] | None:
        snapshot = await self.get_snapshot(task_id, include_steps=False)
        return snapshot.to_view() if snapshot else None

    async def fetch_tasks_by_conversation(self, chat_id: str) -> list[dict[str, Any]]:
        views: list[dict[str, Any]] = []
        for task in await self.store.get_tasks_by_chat(chat_id):
            views.append(TaskSnapshot(task=task, events=await self._replay(task)).to_view())
        return views

    async def stream(self, task_id: str) -> AsyncIterator[UpdateEvent]:
        """Replay history, then relay live events until the task reaches a terminal status.

        Live events already delivered by the replay are dropped.
        """
        task = await self.store.get_task(task_id)
        if task is None:
            return
        if task.is_terminal:
            yield self._terminal_event(task)
            return

        # Subscribe before reading history so nothing falls between the two.
        async with self.channel.subscribe(task_id) as live:
            replayed: set[tuple] = set()
            for event in await self.channel.history(task_id):
                replayed.add(_event_key(event))
                yield event
                if event.is_terminal_status:
                    return

            # The task may have finished before the subscription was in place.
            task = await self.store.get_task(task_id)
            if task is not None and task.is_terminal:
                yield self._terminal_event(task)
                return

            async for event in live:
                if _event_key(event) in replayed:
                    continue
                yield event
                if event.is_terminal_status:
                    return

    async def _replay(self, task: Task) -> list[UpdateEvent]:
        if task.status != ResearchStatus.RUNNING:
            return []
        return await self.channel.history(task.id)

    @staticmethod
    def _terminal_event(task: Task) -> UpdateEvent:
        return UpdateEvent(
            type=EventType.STATUS_UPDATE,
            task_id=task.id,
            status=task.status.value,
            timestamp=(task.completed_at or task.updated_at).isoformat(),
            error=task.error,
        )

