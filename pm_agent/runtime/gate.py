"""Admission control for inbound chat events: dedup and flood protection."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from pm_agent.domain.models import Admission, InboundEvent, ThrottleWindow
from pm_agent.infrastructure.logging.logger import log_event

from .work_queue import WorkQueue


class FloodGate:
    """Decides whether an inbound event may enter the work queue.

    Checks run in this order: gate closed -> ``shutdown``; missing id or
    empty message -> ``invalid``; live queue entry or last processed id ->
    ``duplicate``; rate window -> ``throttled``. Only events that pass the
    duplicate check count toward the rate window.
    """

    def __init__(
        self,
        queue: WorkQueue,
        *,
        clock: Callable[[], float],
        limit: int = 10,
        window: float = 1.0,
        cooldown: float = 5.0,
        on_throttle: Optional[Callable[[ThrottleWindow], None]] = None,
    ):
        self._queue = queue
        self._clock = clock
        self._window_len = window
        self._cooldown = cooldown
        self._on_throttle = on_throttle
        self._open = False
        self._cooldown_handle: Optional[asyncio.TimerHandle] = None
        self.window = ThrottleWindow(window_start=clock(), limit=limit)
        self.episodes = 0

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        """Reject everything from now on and drop any pending cooldown timer."""
        self._open = False
        self._cancel_cooldown_timer()

    def admit(self, event: InboundEvent) -> Admission:
        if not self._open:
            return Admission.drop("shutdown")
        if not event.message_id or not event.message.strip():
            return Admission.drop("invalid")
        if self._queue.contains(event.message_id) or event.message_id == self._queue.last_processed_id:
            log_event(logging.INFO, "Dropped duplicate message", {"message_id": event.message_id})
            return Admission.drop("duplicate")

        now = self._clock()
        w = self.window
        if w.is_throttled:
            if w.cooldown_until is not None and now >= w.cooldown_until:
                self._end_cooldown()
            else:
                return Admission.drop("throttled")

        if now - w.window_start >= self._window_len:
            w.window_start = now
            w.count = 0
        w.count += 1
        if w.count > w.limit:
            self._start_cooldown(now)
            return Admission.drop("throttled")

        self._queue.push(event)
        return Admission.accept()

    def _start_cooldown(self, now: float) -> None:
        w = self.window
        w.is_throttled = True
        w.cooldown_until = now + self._cooldown
        self.episodes += 1
        log_event(
            logging.WARNING,
            "Flood protection engaged",
            {"count": w.count, "limit": w.limit, "cooldown": self._cooldown},
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._cancel_cooldown_timer()
            self._cooldown_handle = loop.call_later(self._cooldown, self._end_cooldown)
        if self._on_throttle is not None:
            self._on_throttle(w)

    def _end_cooldown(self) -> None:
        w = self.window
        if not w.is_throttled:
            return
        self._cancel_cooldown_timer()
        w.is_throttled = False
        w.cooldown_until = None
        w.count = 0
        w.window_start = self._clock()
        log_event(logging.INFO, "Flood protection released", {})

    def _cancel_cooldown_timer(self) -> None:
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None
