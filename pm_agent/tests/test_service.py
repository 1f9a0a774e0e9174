import functools

import pytest

from pm_agent.api import service
from pm_agent.domain.models import RuntimeState
from pm_agent.runtime import AgentRuntime


@pytest.fixture
def default_runtime(monkeypatch, tmp_path, provider_factory):
    monkeypatch.setattr(service.app_settings, "storage_root", str(tmp_path))
    monkeypatch.setattr(
        service,
        "AgentRuntime",
        functools.partial(AgentRuntime, provider_factory=provider_factory, system_prompt="test"),
    )
    monkeypatch.setattr(service, "_runtime", None)
    return tmp_path


@pytest.mark.asyncio
async def test_submit_message_uses_default_runtime(default_runtime, provider_factory, wait):
    admission = await service.submit_message("hello", message_id="m1")
    assert admission.accepted
    runtime = service.get_default_runtime()
    assert runtime.state == RuntimeState.READY
    assert (await service.submit_message("hello", message_id="m1")).reason == "duplicate"
    await wait(lambda: len(provider_factory.complete_calls) == 1)

    await service.shutdown_default_runtime()
    assert runtime.state == RuntimeState.SHUTDOWN
    assert service._runtime is None
    assert (default_runtime / "state" / "conversation_id.json").exists()


@pytest.mark.asyncio
async def test_submit_message_with_settings(default_runtime, provider_factory, wait):
    provider_factory.models["ollama"] = ["llama3:8b"]
    admission = await service.submit_message(
        "hello",
        message_id="m1",
        settings={"serverType": "ollama", "apiUrl": "localhost:11434", "model": "llama3:8b"},
    )
    assert admission.accepted
    await wait(lambda: len(provider_factory.complete_calls) == 1)
    assert provider_factory.complete_calls[0]["server_type"] == "ollama"
    await service.shutdown_default_runtime()
