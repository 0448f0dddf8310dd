"""Live fan-out plus bounded, replayable history of research updates.

Both halves live in Redis: a pub/sub channel per task for viewers that are
connected right now, and a capped list per task for viewers that connect
later. The list is the authoritative catch-up source; pub/sub delivery is
best-effort.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from loguru import logger

from deepresearch.config import settings
from deepresearch.models.events import UpdateEvent


class UpdateChannel:
    def __init__(
        self,
        redis: Any,
        *,
        channel_prefix: str | None = None,
        key_prefix: str | None = None,
        history_limit: int | None = None,
    ):
        self._redis = redis
        self.channel_prefix = channel_prefix or settings.updates_channel_prefix
        self.key_prefix = key_prefix or settings.updates_key_prefix
        self.history_limit = history_limit or settings.updates_history_limit

    def channel_name(self, task_id: str) -> str:
        return f"{self.channel_prefix}:{task_id}"

    def history_key(self, task_id: str) -> str:
        return f"{self.key_prefix}:{task_id}"

    async def publish(self, task_id: str, event: UpdateEvent) -> bool:
        """Broadcast to live subscribers. Never raises; returns False when dropped."""
        try:
            await self._redis.publish(self.channel_name(task_id), event.dumps())
        except Exception as e:
            logger.warning(f"Dropped live update for task {task_id} ({event.type.value}): {e}")
            return False
        return True

    async def record(self, task_id: str, event: UpdateEvent) -> None:
        """Push onto the head of the task's history and keep only the newest entries."""
        key = self.history_key(task_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, event.dumps())
            pipe.ltrim(key, 0, self.history_limit - 1)
            await pipe.execute()

    async def history(self, task_id: str) -> list[UpdateEvent]:
        """Recorded events for a task, oldest first."""
        raw_updates = await self._redis.lrange(self.history_key(task_id), 0, -1)
        events: list[UpdateEvent] = []
        for raw in reversed(raw_updates):
            try:
                events.append(UpdateEvent.loads(raw, task_id=task_id))
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed update in history of task {task_id}: {e}")
        return events

    @asynccontextmanager
    async def subscribe(self, task_id: str) -> AsyncIterator[AsyncIterator[UpdateEvent]]:
        """Subscribe on entry; the yielded iterator relays live events for the task."""
        pubsub = self._redis.pubsub()
        channel = self.channel_name(task_id)
        await pubsub.subscribe(channel)
        try:
            yield self._relay(pubsub, task_id)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def _relay(self, pubsub: Any, task_id: str) -> AsyncIterator[UpdateEvent]:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                yield UpdateEvent.loads(message["data"], task_id=task_id)
            except (ValueError, KeyError) as e:
                logger.warning(f"Skipping malformed live update for task {task_id}: {e}")
