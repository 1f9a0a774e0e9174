"""In-process event channel between the host UI transport and the runtime."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from pm_agent.infrastructure.logging.logger import logger


INBOUND_TOPIC = "project-manager-request"
OUTBOUND_TOPIC = "project-manager-message"

Handler = Callable[[Any], Any]


@dataclass(eq=False)
class Subscription:
    channel: "EventChannel"
    topic: str
    handler: Handler
    active: bool = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.channel._remove(self)


class EventChannel:
    """Topic based pub/sub.

    Handlers may be plain callables or coroutine functions; coroutine results
    are scheduled on the running loop. A failing handler is logged and does
    not prevent delivery to the remaining subscribers.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, List[Subscription]] = {}
        self._pending: set = set()

    def subscribe(self, topic: str, handler: Handler) -> Subscription:
        sub = Subscription(channel=self, topic=topic, handler=handler)
        self._subs.setdefault(topic, []).append(sub)
        return sub

    def publish(self, topic: str, payload: Any) -> int:
        delivered = 0
        for sub in list(self._subs.get(topic, [])):
            if not sub.active:
                continue
            try:
                result = sub.handler(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)
                    task.add_done_callback(lambda t, topic=topic: self._report(t, topic))
                delivered += 1
            except Exception:
                logger.log(
                    logging.ERROR,
                    "Event handler failed",
                    exc_info=True,
                    extra={"extra": {"topic": topic}},
                )
        return delivered

    @staticmethod
    def _report(task: asyncio.Future, topic: str) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.log(
                logging.ERROR,
                "Async event handler failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"extra": {"topic": topic}},
            )

    def subscriber_count(self, topic: str) -> int:
        return len(self._subs.get(topic, []))

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.topic, None)
