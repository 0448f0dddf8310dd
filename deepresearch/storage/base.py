"""Storage interface for research tasks and their steps.

Repositories deal in plain row dicts keyed by model field names. Status
updates are compare-and-set: when ``expected_statuses`` is given the row is
only changed if its current status is one of them, and ``None`` is returned
otherwise.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime
from typing import Any, Protocol


class TaskRepository(Protocol):
    async def migrate(self) -> None: ...

    async def chat_exists(self, chat_id: str) -> bool: ...

    async def insert_task(self, *, chat_id: str, user_id: str, query: str) -> dict[str, Any]: ...

    async def fetch_task(self, task_id: str) -> dict[str, Any] | None: ...

    async def fetch_tasks_by_chat(self, chat_id: str) -> list[dict[str, Any]]: ...

    async def update_task(
        self,
        task_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None: ...

    async def insert_step(
        self,
        *,
        task_id: str,
        order: int,
        step_type: str,
        status: str,
        data: dict[str, Any],
        started_at: datetime | None,
    ) -> dict[str, Any]: ...

    async def fetch_step(self, step_id: str) -> dict[str, Any] | None: ...

    async def update_step(
        self,
        step_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None: ...

    async def fetch_steps(self, task_id: str) -> list[dict[str, Any]]: ...

    async def fetch_latest_step(self, task_id: str) -> dict[str, Any] | None: ...
