"""PostgreSQL storage backend using an asyncpg pool."""

from __future__ import annotations

import json
from collections.abc import Collection
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg

from deepresearch.errors import StepOrderError
from deepresearch.services import logger as log_service

TASK_COLUMNS = (
    "id, chat_id, user_id, query, status, result, metadata, error, "
    "started_at, completed_at, created_at, updated_at"
)
STEP_COLUMNS = (
    'id, task_id, step_order AS "order", step_type AS type, status, data, error, '
    "started_at, completed_at, created_at, updated_at"
)

TASK_JSON_FIELDS = {"result", "metadata"}
STEP_JSON_FIELDS = {"data"}

# Model field name -> column name, for fields that differ.
STEP_FIELD_COLUMNS = {"order": "step_order", "type": "step_type"}

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS chats (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id TEXT,
        title TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS research_tasks (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        chat_id UUID NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        query TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        result JSONB NOT NULL DEFAULT '{}'::jsonb,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        error TEXT,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS research_tasks_chat_id_idx ON research_tasks(chat_id)",
    "CREATE INDEX IF NOT EXISTS research_tasks_status_idx ON research_tasks(status)",
    """
    CREATE TABLE IF NOT EXISTS research_steps (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        task_id UUID NOT NULL REFERENCES research_tasks(id) ON DELETE CASCADE,
        step_order INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        data JSONB NOT NULL DEFAULT '{}'::jsonb,
        error TEXT,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS research_steps_task_id_idx ON research_steps(task_id)",
    "CREATE INDEX IF NOT EXISTS research_steps_status_idx ON research_steps(status)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS research_steps_task_order_idx
    ON research_steps(task_id, step_order)
    """,
)


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """Normalize JSON columns returned as strings into dictionaries."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _row_to_dict(record: asyncpg.Record | None, json_fields: set[str]) -> dict[str, Any] | None:
    if record is None:
        return None
    row = dict(record)
    for name in json_fields:
        row[name] = _coerce_json_object(row.get(name))
    return row


class PostgresTaskRepository:
    """Persist research tasks and steps in PostgreSQL."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def migrate(self) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        log_service.log_db_operation("migrate", "research_tasks", "success")

    async def chat_exists(self, chat_id: str) -> bool:
        chat_uuid = _as_uuid(chat_id)
        if chat_uuid is None:
            return False
        async with self._pool.acquire() as conn:
            found = await conn.fetchval("SELECT 1 FROM chats WHERE id = $1", chat_uuid)
        return found is not None

    # --- Tasks ---

    async def insert_task(self, *, chat_id: str, user_id: str, query: str) -> dict[str, Any]:
        async with self._pool.acquire() as conn:
            result = await conn.fetchrow(
                f"""
                INSERT INTO research_tasks (chat_id, user_id, query, status)
                VALUES ($1, $2, $3, 'pending')
                RETURNING {TASK_COLUMNS}
                """,
                UUID(chat_id),
                user_id,
                query,
            )
        log_service.log_db_operation("insert", "research_tasks", "success", details=str(result["id"]))
        return _row_to_dict(result, TASK_JSON_FIELDS)

    async def fetch_task(self, task_id: str) -> dict[str, Any] | None:
        task_uuid = _as_uuid(task_id)
        if task_uuid is None:
            return None
        async with self._pool.acquire() as conn:
            result = await conn.fetchrow(
                f"SELECT {TASK_COLUMNS} FROM research_tasks WHERE id = $1",
                task_uuid,
            )
        return _row_to_dict(result, TASK_JSON_FIELDS)

    async def fetch_tasks_by_chat(self, chat_id: str) -> list[dict[str, Any]]:
        chat_uuid = _as_uuid(chat_id)
        if chat_uuid is None:
            return []
        async with self._pool.acquire() as conn:
            results = await conn.fetch(
                f"""
                SELECT {TASK_COLUMNS}
                FROM research_tasks
                WHERE chat_id = $1
                ORDER BY created_at DESC
                """,
                chat_uuid,
            )
        return [_row_to_dict(r, TASK_JSON_FIELDS) for r in results]

    async def update_task(
        self,
        task_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        task_uuid = _as_uuid(task_id)
        if task_uuid is None:
            return None
        record = await self._update(
            "research_tasks",
            TASK_COLUMNS,
            task_uuid,
            {k: (json.dumps(v) if k in TASK_JSON_FIELDS else v) for k, v in fields.items()},
            expected_statuses,
        )
        return _row_to_dict(record, TASK_JSON_FIELDS)

    # --- Steps ---

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
        try:
            async with self._pool.acquire() as conn:
                result = await conn.fetchrow(
                    f"""
                    INSERT INTO research_steps (task_id, step_order, step_type, status, data, started_at)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    RETURNING {STEP_COLUMNS}
                    """,
                    UUID(task_id),
                    order,
                    step_type,
                    status,
                    json.dumps(data),
                    started_at,
                )
        except asyncpg.UniqueViolationError as e:
            log_service.log_db_operation("insert", "research_steps", "failed", error=str(e))
            raise StepOrderError(f"Step {order} already exists for task {task_id}") from e
        return _row_to_dict(result, STEP_JSON_FIELDS)

    async def fetch_step(self, step_id: str) -> dict[str, Any] | None:
        step_uuid = _as_uuid(step_id)
        if step_uuid is None:
            return None
        async with self._pool.acquire() as conn:
            result = await conn.fetchrow(
                f"SELECT {STEP_COLUMNS} FROM research_steps WHERE id = $1",
                step_uuid,
            )
        return _row_to_dict(result, STEP_JSON_FIELDS)

    async def update_step(
        self,
        step_id: str,
        fields: dict[str, Any],
        *,
        expected_statuses: Collection[str] | None = None,
    ) -> dict[str, Any] | None:
        step_uuid = _as_uuid(step_id)
        if step_uuid is None:
            return None
        columns = {
            STEP_FIELD_COLUMNS.get(k, k): (json.dumps(v) if k in STEP_JSON_FIELDS else v)
            for k, v in fields.items()
        }
        record = await self._update("research_steps", STEP_COLUMNS, step_uuid, columns, expected_statuses)
        return _row_to_dict(record, STEP_JSON_FIELDS)

    async def fetch_steps(self, task_id: str) -> list[dict[str, Any]]:
        task_uuid = _as_uuid(task_id)
        if task_uuid is None:
            return []
        async with self._pool.acquire() as conn:
            results = await conn.fetch(
                f"""
                SELECT {STEP_COLUMNS}
                FROM research_steps
                WHERE task_id = $1
                ORDER BY step_order ASC
                """,
                task_uuid,
            )
        return [_row_to_dict(r, STEP_JSON_FIELDS) for r in results]

    async def fetch_latest_step(self, task_id: str) -> dict[str, Any] | None:
        task_uuid = _as_uuid(task_id)
        if task_uuid is None:
            return None
        async with self._pool.acquire() as conn:
            result = await conn.fetchrow(
                f"""
                SELECT {STEP_COLUMNS}
                FROM research_steps
                WHERE task_id = $1
                ORDER BY step_order DESC
                LIMIT 1
                """,
                task_uuid,
            )
        return _row_to_dict(result, STEP_JSON_FIELDS)

    async def _update(
        self,
        table: str,
        returning: str,
        record_id: UUID,
        columns: dict[str, Any],
        expected_statuses: Collection[str] | None,
    ) -> asyncpg.Record | None:
        # Build dynamic update query; column names come from our own field maps.
        set_clause = ", ".join(f"{name} = ${i + 1}" for i, name in enumerate(columns))
        values: list[Any] = list(columns.values())
        values.append(record_id)
        where = f"id = ${len(values)}"
        if expected_statuses is not None:
            values.append([str(s) for s in expected_statuses])
            where += f" AND status = ANY(${len(values)}::text[])"
        set_prefix = f"{set_clause}, " if set_clause else ""

        async with self._pool.acquire() as conn:
            return await conn.fetchrow(
                f"""
                UPDATE {table}
                SET {set_prefix}updated_at = now()
                WHERE {where}
                RETURNING {returning}
                """,
                *values,
            )
