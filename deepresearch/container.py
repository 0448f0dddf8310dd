"""Process-level wiring of the research services.

The Redis client and the database pool are created here and handed to the
components that need them; nothing below this module owns a connection.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import asyncpg
import redis.asyncio as redis
from loguru import logger

from deepresearch.config import Settings, settings as default_settings
from deepresearch.research.executor import StepExecutor
from deepresearch.research.gateway import ObserverGateway
from deepresearch.research.orchestrator import ResearchOrchestrator
from deepresearch.services.task_store import TaskStore
from deepresearch.services.update_channel import UpdateChannel
from deepresearch.storage.base import TaskRepository
from deepresearch.storage.postgres import PostgresTaskRepository


@dataclass
class ResearchServices:
    store: TaskStore
    channel: UpdateChannel
    orchestrator: ResearchOrchestrator
    gateway: ObserverGateway
    redis: Any = None
    pool: asyncpg.Pool | None = None

    async def aclose(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None


def assemble(
    repository: TaskRepository,
    redis_client: Any,
    executor: StepExecutor | None = None,
    *,
    config: Settings | None = None,
) -> ResearchServices:
    """Wire components around an existing repository and Redis client."""
    config = config or default_settings
    channel = UpdateChannel(
        redis_client,
        channel_prefix=config.updates_channel_prefix,
        key_prefix=config.updates_key_prefix,
        history_limit=config.updates_history_limit,
    )
    store = TaskStore(repository, channel)
    orchestrator = ResearchOrchestrator(
        store,
        executor or StepExecutor(),
        preview_chars=config.summary_preview_chars,
    )
    return ResearchServices(
        store=store,
        channel=channel,
        orchestrator=orchestrator,
        gateway=ObserverGateway(store, channel),
        redis=redis_client,
    )


async def build_services(config: Settings | None = None) -> ResearchServices:
    """Open the database pool and Redis client described by settings."""
    config = config or default_settings
    if not config.database_url:
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")

    pool = await asyncpg.create_pool(
        config.database_url,
        min_size=config.database_pool_min_size,
        max_size=config.database_pool_max_size,
    )
    redis_client = redis.from_url(config.redis_url, decode_responses=True)
    repository = PostgresTaskRepository(pool)
    try:
        await repository.migrate()
    except Exception:
        await pool.close()
        await redis_client.aclose()
        raise

    services = assemble(repository, redis_client, config=config)
    services.pool = pool
    logger.info("Research services ready")
    return services
