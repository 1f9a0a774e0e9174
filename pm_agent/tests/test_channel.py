import asyncio

import pytest

from pm_agent.runtime import EventChannel


def test_publish_reaches_subscribers_until_unsubscribed():
    channel = EventChannel()
    got = []
    sub = channel.subscribe("topic", got.append)
    assert channel.publish("topic", {"n": 1}) == 1
    assert channel.publish("other", {"n": 2}) == 0
    sub.unsubscribe()
    sub.unsubscribe()
    assert channel.publish("topic", {"n": 3}) == 0
    assert got == [{"n": 1}]
    assert channel.subscriber_count("topic") == 0


def test_failing_handler_does_not_block_others():
    channel = EventChannel()
    got = []

    def broken(payload):
        raise RuntimeError("handler bug")

    channel.subscribe("topic", broken)
    channel.subscribe("topic", got.append)
    assert channel.publish("topic", "hello") == 1
    assert got == ["hello"]


@pytest.mark.asyncio
async def test_async_handler_is_scheduled():
    channel = EventChannel()
    got = []

    async def handler(payload):
        await asyncio.sleep(0)
        got.append(payload)

    channel.subscribe("topic", handler)
    assert channel.publish("topic", "later") == 1
    assert got == []
    for _ in range(3):
        await asyncio.sleep(0)
    assert got == ["later"]
