import asyncio
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from pm_agent.infrastructure.storage.json_store import MemoryStateStore
from pm_agent.runtime import OUTBOUND_TOPIC, AgentRuntime, EventChannel, RuntimeConfig


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Scriptable provider; shared call log lives on the factory."""

    def __init__(self, factory: "FakeProviderFactory", name: str, base_url: str):
        self.name = name
        self.base_url = base_url
        self._factory = factory

    async def list_models(self) -> List[str]:
        self._factory.list_calls.append((self.name, self.base_url))
        outcome = self._factory.models.get(self.name)
        if isinstance(outcome, Exception):
            raise outcome
        return list(outcome or [])

    async def complete(self, messages, model, parameters) -> str:
        self._factory.complete_calls.append(
            {"server_type": self.name, "model": model, "messages": list(messages)}
        )
        step = self._factory.replies.pop(0) if self._factory.replies else "ok"
        if isinstance(step, tuple):
            delay, step = step
            await asyncio.sleep(delay)
        if isinstance(step, Exception):
            raise step
        return step


class FakeProviderFactory:
    def __init__(self, models: Optional[Dict[str, object]] = None):
        self.models: Dict[str, object] = models if models is not None else {
            "lmStudio": ["qwen2.5-7b-instruct-1m"],
        }
        # Each reply is a string, an exception, or (delay_seconds, string | exception).
        self.replies: List[object] = []
        self.list_calls: List[tuple] = []
        self.complete_calls: List[dict] = []

    def __call__(self, server_type, base_url=None, timeout=None):
        return FakeProvider(self, server_type, base_url or "")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def provider_factory():
    return FakeProviderFactory()


def fast_config(**overrides) -> RuntimeConfig:
    values = dict(
        queue_tick=0.005,
        queue_min_interval=0.0,
        emit_min_spacing=0.0,
        llm_timeout=1.0,
        models_timeout=1.0,
    )
    values.update(overrides)
    return RuntimeConfig(**values)


class Outbox:
    def __init__(self, channel: EventChannel):
        self.events: List[dict] = []
        channel.subscribe(OUTBOUND_TOPIC, self.events.append)

    def contents(self) -> List[str]:
        return [e["content"] for e in self.events]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait():
    return wait_until


@pytest_asyncio.fixture
async def make_runtime(store, provider_factory):
    created: List[AgentRuntime] = []

    def _make(**overrides):
        channel = EventChannel()
        runtime = AgentRuntime(
            channel=channel,
            store=store,
            config=fast_config(**overrides),
            provider_factory=provider_factory,
            system_prompt="You are a test assistant.",
        )
        created.append(runtime)
        return runtime, Outbox(channel)

    yield _make
    for runtime in created:
        await runtime.shutdown()
