"""Shared fakes for the research pipeline tests."""
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

import pytest

from deepresearch.models.research import SearchResult
from deepresearch.services.task_store import TaskStore
from deepresearch.services.update_channel import UpdateChannel
from deepresearch.storage.memory import InMemoryTaskRepository


class FakePipeline:
    """Buffers list commands and applies them together on ``execute``."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...]]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._commands = []

    def lpush(self, key: str, *values: str) -> "FakePipeline":
        self._commands.append(("lpush", (key, *values)))
        return self

    def ltrim(self, key: str, start: int, end: int) -> "FakePipeline":
        self._commands.append(("ltrim", (key, start, end)))
        return self

    async def execute(self) -> list[Any]:
        if self._redis.fail_record:
            raise ConnectionError("redis write failed")
        results = [self._redis.apply(name, args) for name, args in self._commands]
        self._commands = []
        return results


class FakePubSub:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        for channel in channels:
            self.channels.add(channel)
            self._redis.subscribers[channel].append(self)
            self.queue.put_nowait({"type": "subscribe", "channel": channel, "data": 1})

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels or tuple(self.channels):
            self.channels.discard(channel)
            if self in self._redis.subscribers[channel]:
                self._redis.subscribers[channel].remove(self)

    async def listen(self):
        while True:
            yield await self.queue.get()

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """The subset of ``redis.asyncio.Redis`` used by the update channel."""

    def __init__(self, *, fail_publish: bool = False, fail_record: bool = False):
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.subscribers: dict[str, list[FakePubSub]] = defaultdict(list)
        self.published: list[tuple[str, str]] = []
        self.pubsubs: list[FakePubSub] = []
        self.fail_publish = fail_publish
        self.fail_record = fail_record
        self.closed = False

    def apply(self, name: str, args: tuple[Any, ...]) -> Any:
        if name == "lpush":
            key, *values = args
            for value in values:
                self.lists[key].insert(0, value)
            return len(self.lists[key])
        if name == "ltrim":
            key, start, end = args
            stop = None if end == -1 else end + 1
            self.lists[key] = self.lists[key][start:stop]
            return True
        raise ValueError(f"Unsupported command: {name}")

    async def publish(self, channel: str, message: str) -> int:
        if self.fail_publish:
            raise ConnectionError("redis publish failed")
        self.published.append((channel, message))
        receivers = list(self.subscribers[channel])
        for pubsub in receivers:
            pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        stop = None if end == -1 else end + 1
        return list(self.lists.get(key, [])[start:stop])

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> None:
        self.closed = True


class ScriptedGenerator:
    """Returns queued outputs in call order; an exception instance is raised instead."""

    def __init__(self, *outputs: str | Exception):
        self.outputs = list(outputs)
        self.calls: list[tuple[str, str]] = []

    async def generate(self, prompt: str, system: str):
        self.calls.append((prompt, system))
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        middle = len(output) // 2
        yield output[:middle]
        yield output[middle:]


SAMPLE_RESULTS = [
    SearchResult(
        title="Quantum Computing Basics",
        content="Qubits use superposition and entanglement.",
        url="https://example.org/quantum-basics",
    ),
    SearchResult(
        title="Error Correction Progress",
        content="Logical qubits with lower error rates were demonstrated.",
        url="https://example.org/error-correction",
    ),
]


async def sample_search(query: str) -> list[SearchResult]:
    return [r.model_copy() for r in SAMPLE_RESULTS]


async def failing_search(query: str) -> list[SearchResult]:
    raise ConnectionError("search provider unreachable")


@pytest.fixture
def repository():
    return InMemoryTaskRepository()


@pytest.fixture
def chat_id(repository):
    return repository.add_chat()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def channel(fake_redis):
    return UpdateChannel(
        fake_redis,
        channel_prefix="deep-research",
        key_prefix="updates",
        history_limit=100,
    )


@pytest.fixture
def store(repository, channel):
    return TaskStore(repository, channel)
