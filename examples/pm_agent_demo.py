"""Minimal demonstration of the Project Manager agent runtime."""

import asyncio

from pm_agent import AgentRuntime
from pm_agent.runtime import OUTBOUND_TOPIC


async def main() -> None:
    runtime = AgentRuntime()
    done = asyncio.Event()

    def on_message(event):
        print("Agent:", event["content"])
        if event["messageId"] == "demo-1":
            done.set()

    runtime.channel.subscribe(OUTBOUND_TOPIC, on_message)
    result = await runtime.initialize()
    print("Settings:", result.settings.to_dict(), "verified:", result.verified)

    question = "Break the release of a small CLI tool into milestones."
    print("User:", question)
    runtime.submit({"message": question, "messageId": "demo-1"})
    try:
        await asyncio.wait_for(done.wait(), timeout=120)
    finally:
        await runtime.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
