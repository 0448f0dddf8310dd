"""In-memory storage backend for local runs and tests."""

from __future__ import annotations

import copy
from collections.abc import Collection
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from deepresearch.errors import StepOrderError


class InMemoryTaskRepository:
    """Dict-backed implementation of the task repository contract."""

    def __init__(self) -> None:
        self._chats: set[str] = set()
        self._tasks: dict[str, dict[str, Any]] = {}
        self._steps: dict[str, dict[str, Any]] = {}

    def add_chat(self, chat_id: str | None = None) -> str:
        chat_id = chat_id or str(uuid4())
        self._chats.add(chat_id)
        return chat_id

    def delete_chat(self, chat_id: str) -> None:
        """Drop a chat together with its tasks and steps."""
        self._chats.discard(chat_id)
        task_ids = {tid for tid, row in self._tasks.items() if row["chat_id"] == chat_id}
        for tid in task_ids:
            del self._tasks[tid]
        self._steps = {sid: row for sid, row in self._steps.items() if row["task_id"] not in task_ids}

    async def migrate(self) -> None:
        return None

    async def chat_exists(self, chat_id: str) -> bool:
        return chat_id in self._chats

    async def insert_task(self, *, chat_id: str, user_id: str, query: str) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        row = {
            "id": str(uuid4()),
            "chat_id": chat_id,
            "user_id": user_id,
            "query": query,
            "status": "pending",
            "result": {},
            "metadata": {},
            "error": None,
            "started_at": None,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self._tasks[row["id"]] = row
        return copy.deepcopy(row)

    async def fetch_task(self, task_id: str) -> dict[str, Any] | None:
        row = self._tasks.get(task_id)
        return copy.deepcopy(row) if row else None

    async def fetch_tasks_by_chat(self, chat_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self._tasks.values() if row["chat_id"] == chat_id]
        # Insertion order breaks ties between identical timestamps.
        ordered = sorted(enumerate(rows), key=lambda item: (item[1]["created_at"], item[0]), reverse=True)
        return [copy.deepcopy(row) for _, row in ordered]

    async def update_task(
        self,
        task_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        return self._update(self._tasks, task_id, fields, expected_statuses)

    async def insert_step(
        self,
        *,
        task_id: str,
        order: int,
        step_type: str,
        status: str,
        data: dict[str, Any],
        started_at: datetime | None,
    ) -> dict[str, Any]:
        for row in self._steps.values():
            if row["task_id"] == task_id and row["order"] == order:
                raise StepOrderError(f"Step {order} already exists for task {task_id}")
        now = datetime.now(timezone.utc)
        row = {
            "id": str(uuid4()),
            "task_id": task_id,
            "order": order,
            "type": step_type,
            "status": status,
            "data": copy.deepcopy(data),
            "error": None,
            "started_at": started_at,
            "completed_at": None,
            "created_at": now,
            "updated_at": now,
        }
        self._steps[row["id"]] = row
        return copy.deepcopy(row)

    async def fetch_step(self, step_id: str) -> dict[str, Any] | None:
        row = self._steps.get(step_id)
        return copy.deepcopy(row) if row else None

    async def update_step(
        self,
        step_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        return self._update(self._steps, step_id, fields, expected_statuses)

    async def fetch_steps(self, task_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self._steps.values() if row["task_id"] == task_id]
        return [copy.deepcopy(row) for row in sorted(rows, key=lambda r: r["order"])]

    async def fetch_latest_step(self, task_id: str) -> dict[str, Any] | None:
        steps = await self.fetch_steps(task_id)
        return steps[-1] if steps else None

    @staticmethod
    def _update(
        table: dict[str, dict[str, Any]],
        record_id: str,
        fields: dict[str, Any],
        expected_statuses: Collection[str] | None,
    ) -> dict[str, Any] | None:
        row = table.get(record_id)
        if row is None:
            return None
        if expected_statuses is not None and row["status"] not in expected_statuses:
            return None
        row.update(copy.deepcopy(fields))
        row["updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(row)
