import asyncio

import pytest

from pm_agent.domain.conversation import HISTORY_KEY
from pm_agent.domain.exceptions import ConnectivityError, ShutdownError
from pm_agent.domain.models import CandidateSettings, RuntimeState
from pm_agent.runtime import INBOUND_TOPIC, SHUTDOWN_NOTICE, THROTTLE_WARNING


def _msg(i, **extra):
    payload = {"message": f"question {i}", "messageId": f"m{i}"}
    payload.update(extra)
    return payload


@pytest.mark.asyncio
async def test_initialize_reaches_ready(make_runtime, provider_factory):
    runtime, _ = make_runtime()
    assert runtime.state == RuntimeState.UNINITIALIZED
    result = await runtime.initialize()
    assert result.ok and result.verified
    assert result.settings.model == "qwen2.5-7b-instruct-1m"
    assert runtime.state == RuntimeState.READY
    assert runtime.conversation_id.startswith("c-")
    assert runtime.channel.subscriber_count(INBOUND_TOPIC) == 1


@pytest.mark.asyncio
async def test_concurrent_initialize_shares_one_run(make_runtime, provider_factory):
    runtime, _ = make_runtime()
    first, second = await asyncio.gather(runtime.initialize(), runtime.initialize())
    assert first is second
    assert len(provider_factory.list_calls) == 1

    again = await runtime.initialize(CandidateSettings(server_type="ollama", api_url="x", model="y"))
    assert again is first
    assert len(provider_factory.list_calls) == 1
    assert runtime.channel.subscriber_count(INBOUND_TOPIC) == 1


@pytest.mark.asyncio
async def test_initialize_best_effort_when_providers_down(make_runtime, provider_factory):
    provider_factory.models = {
        "lmStudio": ConnectivityError(code="CONNECTIVITY_ERROR", message="lm down"),
        "ollama": ConnectivityError(code="CONNECTIVITY_ERROR", message="ollama down"),
    }
    runtime, outbox = make_runtime()
    result = await runtime.initialize()
    assert result.ok
    assert not result.verified
    assert result.error.message == "lm down"
    assert runtime.state == RuntimeState.READY
    assert runtime.settings.server_type == "lmStudio"
    assert runtime.settings.verified is False


@pytest.mark.asyncio
async def test_conversation_id_survives_restart(make_runtime):
    first, _ = make_runtime()
    await first.initialize()
    conversation_id = first.conversation_id
    await first.shutdown()

    second, _ = make_runtime()
    await second.initialize()
    assert second.conversation_id == conversation_id


@pytest.mark.asyncio
async def test_reply_uses_inbound_message_id(make_runtime, provider_factory, wait):
    runtime, outbox = make_runtime()
    await runtime.initialize()
    provider_factory.replies = ["Here is the plan."]
    assert runtime.submit(_msg(1)).accepted
    await wait(lambda: outbox.events)
    assert outbox.events[0]["messageId"] == "m1"
    assert outbox.events[0]["content"] == "Here is the plan."
    assert outbox.events[0]["isError"] is False
    assert [t.content for t in runtime.history.turns] == ["question 1", "Here is the plan."]


@pytest.mark.asyncio
async def test_same_message_id_processed_once(make_runtime, provider_factory, wait):
    runtime, outbox = make_runtime()
    await runtime.initialize()
    assert runtime.submit(_msg(1)).accepted
    assert runtime.submit(_msg(1)).reason == "duplicate"
    await wait(lambda: outbox.events)
    await wait(lambda: not runtime.queue.processing)
    assert runtime.submit(_msg(1)).reason == "duplicate"
    await asyncio.sleep(0.05)
    assert len(provider_factory.complete_calls) == 1
    assert len(outbox.events) == 1


@pytest.mark.asyncio
async def test_inbound_topic_feeds_the_runtime(make_runtime, wait):
    runtime, outbox = make_runtime()
    await runtime.initialize()
    assert runtime.channel.publish(INBOUND_TOPIC, {"message": "hi", "messageId": "ui-1"}) == 1
    await wait(lambda: outbox.events)
    assert outbox.events[0]["messageId"] == "ui-1"


@pytest.mark.asyncio
async def test_flood_is_throttled_then_resumes(make_runtime, wait):
    runtime, outbox = make_runtime(throttle_cooldown=0.05)
    await runtime.initialize()
    admissions = [runtime.submit(_msg(i)) for i in range(12)]
    assert sum(a.accepted for a in admissions) == 10
    assert [a.reason for a in admissions[10:]] == ["throttled", "throttled"]

    await wait(lambda: len(outbox.events) == 11)
    assert outbox.contents().count(THROTTLE_WARNING) == 1
    warning = next(e for e in outbox.events if e["content"] == THROTTLE_WARNING)
    assert warning["isError"] is True
    replied = sorted(e["messageId"] for e in outbox.events if e["content"] != THROTTLE_WARNING)
    assert replied == sorted(f"m{i}" for i in range(10))

    await asyncio.sleep(0.1)
    assert runtime.submit(_msg(99)).accepted
    await wait(lambda: len(outbox.events) == 12)
    assert outbox.contents().count(THROTTLE_WARNING) == 1


@pytest.mark.asyncio
async def test_timeout_reports_error_and_queue_continues(make_runtime, provider_factory, wait):
    runtime, outbox = make_runtime(llm_timeout=0.05)
    await runtime.initialize()
    provider_factory.replies = [(1.0, "too late"), "second answer"]
    runtime.submit(_msg(1))
    runtime.submit(_msg(2))
    await wait(lambda: len(outbox.events) == 2)

    first, second = outbox.events
    assert first["messageId"] == "m1"
    assert first["isError"] is True
    assert first["content"].startswith("Error:")
    assert second["messageId"] == "m2"
    assert second["content"] == "second answer"
    assert runtime.queue.get("m1").status == "error"


@pytest.mark.asyncio
async def test_settings_change_on_event_revalidates(make_runtime, provider_factory, wait):
    provider_factory.models["ollama"] = ["llama3:8b"]
    runtime, outbox = make_runtime()
    await runtime.initialize()
    runtime.submit(
        _msg(1, settings={"serverType": "ollama", "apiUrl": "http://localhost:11434/api", "model": "llama3:8b"})
    )
    await wait(lambda: outbox.events)
    assert runtime.settings.server_type == "ollama"
    assert runtime.settings.api_url == "http://localhost:11434"
    assert provider_factory.complete_calls[-1]["server_type"] == "ollama"
    assert provider_factory.complete_calls[-1]["model"] == "llama3:8b"


@pytest.mark.asyncio
async def test_clear_conversation(make_runtime, store, wait):
    runtime, outbox = make_runtime()
    await runtime.initialize()
    old_id = runtime.conversation_id
    runtime.submit(_msg(1))
    await wait(lambda: outbox.events)
    await wait(lambda: len(runtime.history) == 2)

    new_id = runtime.clear_conversation()
    assert new_id != old_id
    assert runtime.conversation_id == new_id
    assert len(runtime.history) == 0
    assert store.get(HISTORY_KEY) == []


@pytest.mark.asyncio
async def test_concurrent_shutdown_emits_one_notice(make_runtime):
    runtime, outbox = make_runtime()
    await runtime.initialize()
    await asyncio.gather(runtime.shutdown(), runtime.shutdown())
    await runtime.shutdown()

    assert runtime.state == RuntimeState.SHUTDOWN
    assert outbox.contents().count(SHUTDOWN_NOTICE) == 1
    assert runtime.channel.subscriber_count(INBOUND_TOPIC) == 0
    assert runtime.submit(_msg(1)).reason == "shutdown"
    assert runtime.channel.publish(INBOUND_TOPIC, _msg(2)) == 0

    result = await runtime.initialize()
    assert not result.ok
    assert isinstance(result.error, ShutdownError)


@pytest.mark.asyncio
async def test_shutdown_during_request_suppresses_reply(make_runtime, provider_factory, wait):
    runtime, outbox = make_runtime(llm_timeout=10.0)
    await runtime.initialize()
    provider_factory.replies = [(5.0, "never delivered")]
    runtime.submit(_msg(1))
    await wait(lambda: runtime.orchestrator.in_flight)
    await runtime.shutdown()

    assert outbox.contents() == [SHUTDOWN_NOTICE]
    assert not runtime.orchestrator.in_flight
    assert runtime.queue.pending_count == 0


@pytest.mark.asyncio
async def test_repeated_floods_trigger_emergency_shutdown(make_runtime, wait):
    runtime, outbox = make_runtime(throttle_limit=2, emergency_throttle_episodes=1)
    await runtime.initialize()
    for i in range(3):
        runtime.submit(_msg(i))
    await wait(lambda: runtime.state == RuntimeState.SHUTDOWN)
    assert THROTTLE_WARNING in outbox.contents()
    assert outbox.contents()[-1] == SHUTDOWN_NOTICE


@pytest.mark.asyncio
async def test_unexpected_fault_is_reported_and_queue_continues(make_runtime, provider_factory, wait):
    runtime, outbox = make_runtime()
    await runtime.initialize()
    provider_factory.replies = [RuntimeError("bug in provider"), "fine"]
    runtime.submit(_msg(1))
    runtime.submit(_msg(2))
    await wait(lambda: len(outbox.events) == 2)
    assert outbox.events[0]["messageId"] == "m1"
    assert outbox.events[0]["isError"] is True
    assert outbox.events[1]["content"] == "fine"
    assert runtime.queue.get("m1").status == "error"


DEFAULT_TIMING = dict(emit_min_spacing=0.1, queue_tick=0.1, queue_min_interval=0.1)


@pytest.mark.asyncio
@pytest.mark.parametrize("phase", [0.0, 0.035, 0.07, 0.095])
async def test_throttle_warning_does_not_swallow_replies(make_runtime, wait, phase):
    runtime, outbox = make_runtime(throttle_limit=2, **DEFAULT_TIMING)
    await runtime.initialize()
    await asyncio.sleep(phase)
    admissions = [runtime.submit(_msg(i)) for i in range(3)]
    assert [a.accepted for a in admissions] == [True, True, False]

    await wait(lambda: len(outbox.events) == 3, timeout=3.0)
    await asyncio.sleep(0.25)
    assert outbox.contents().count(THROTTLE_WARNING) == 1
    replies = [e["messageId"] for e in outbox.events if e["content"] != THROTTLE_WARNING]
    assert replies == ["m0", "m1"]


@pytest.mark.asyncio
async def test_each_accepted_message_gets_one_reply_with_default_spacing(make_runtime, provider_factory, wait):
    runtime, outbox = make_runtime(**DEFAULT_TIMING)
    await runtime.initialize()
    admissions = []
    for i in range(5):
        admissions.append(runtime.submit(_msg(i)))
        admissions.append(runtime.submit(_msg(i)))
    assert sum(a.accepted for a in admissions) == 5

    await wait(lambda: len(outbox.events) == 5, timeout=3.0)
    await asyncio.sleep(0.25)
    assert [e["messageId"] for e in outbox.events] == [f"m{i}" for i in range(5)]
    assert len(provider_factory.complete_calls) == 5


@pytest.mark.asyncio
async def test_failed_settings_change_is_retried(make_runtime, provider_factory, wait):
    provider_factory.models["ollama"] = ConnectivityError(code="CONNECTIVITY_ERROR", message="ollama down")
    runtime, outbox = make_runtime()
    await runtime.initialize()
    ollama = {"serverType": "ollama", "apiUrl": "http://localhost:11434", "model": "llama3:8b"}

    runtime.submit(_msg(1, settings=ollama))
    await wait(lambda: len(outbox.events) == 1)
    assert runtime.settings.server_type == "lmStudio"
    assert provider_factory.complete_calls[-1]["server_type"] == "lmStudio"

    provider_factory.models["ollama"] = ["llama3:8b"]
    runtime.submit(_msg(2, settings=ollama))
    await wait(lambda: len(outbox.events) == 2)
    assert runtime.settings.server_type == "ollama"
    assert provider_factory.complete_calls[-1]["server_type"] == "ollama"
