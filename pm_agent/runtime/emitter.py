"""Outbound message emission with duplicate suppression and spacing."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from pm_agent.domain.models import Message
from pm_agent.infrastructure.logging.logger import log_event

from .channel import OUTBOUND_TOPIC, EventChannel


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ResponseEmitter:
    """Publishes messages on the outbound topic.

    An id seen among the recent emissions is dropped. The recent-id set is
    bounded: once it grows past ``recent_limit`` it is trimmed to the newest
    ``recent_keep`` ids. Emissions closer than ``min_spacing`` to the
    previous one are dropped with a warning, unless ``bypass_spacing`` is set
    (used for system notices that must always reach the UI). Bypassing
    notices do not reset the spacing window. Replies to processed messages
    go through :meth:`deliver`, which waits for the window instead of
    dropping.
    """

    def __init__(
        self,
        channel: EventChannel,
        *,
        clock: Callable[[], float],
        author: str = "Project Manager",
        min_spacing: float = 0.1,
        recent_limit: int = 100,
        recent_keep: int = 50,
    ):
        self._channel = channel
        self._clock = clock
        self._author = author
        self._min_spacing = min_spacing
        self._recent_limit = recent_limit
        self._recent_keep = recent_keep
        self._recent: "OrderedDict[str, None]" = OrderedDict()
        self._last_emit_at: Optional[float] = None

    def was_emitted(self, message_id: str) -> bool:
        return message_id in self._recent

    @property
    def recent_ids(self) -> List[str]:
        return list(self._recent)

    def emit(
        self,
        content: str,
        *,
        message_id: Optional[str] = None,
        is_error: bool = False,
        is_thinking: bool = False,
        channel: Optional[str] = None,
        mentions: Optional[List[str]] = None,
        timestamp: Optional[str] = None,
        bypass_spacing: bool = False,
    ) -> Optional[Message]:
        mid = message_id or f"msg-{uuid4().hex}"
        if mid in self._recent:
            log_event(logging.INFO, "Suppressed duplicate emission", {"message_id": mid})
            return None

        if not bypass_spacing and self._spacing_remaining() > 0:
            log_event(
                logging.WARNING,
                "Dropped emission inside minimum spacing",
                {"message_id": mid},
                min_spacing=self._min_spacing,
            )
            return None

        return self._send(
            mid,
            content,
            is_error=is_error,
            is_thinking=is_thinking,
            channel=channel,
            mentions=mentions,
            timestamp=timestamp,
            counts_for_spacing=not bypass_spacing,
        )

    async def deliver(
        self,
        content: str,
        *,
        message_id: Optional[str] = None,
        is_error: bool = False,
    ) -> Optional[Message]:
        """Emit a reply, waiting out the spacing window instead of dropping it.

        Only the duplicate-id check can suppress a delivery.
        """
        remaining = self._spacing_remaining()
        while remaining > 0:
            await asyncio.sleep(remaining)
            remaining = self._spacing_remaining()
        mid = message_id or f"msg-{uuid4().hex}"
        if mid in self._recent:
            log_event(logging.INFO, "Suppressed duplicate emission", {"message_id": mid})
            return None
        return self._send(mid, content, is_error=is_error)

    def _spacing_remaining(self) -> float:
        if self._last_emit_at is None:
            return 0.0
        return self._min_spacing - (self._clock() - self._last_emit_at)

    def _send(
        self,
        mid: str,
        content: str,
        *,
        is_error: bool = False,
        is_thinking: bool = False,
        channel: Optional[str] = None,
        mentions: Optional[List[str]] = None,
        timestamp: Optional[str] = None,
        counts_for_spacing: bool = True,
    ) -> Message:
        message = Message(
            id=mid,
            author=self._author,
            content=content,
            timestamp=timestamp or _utcnow(),
            channel=channel,
            mentions=list(mentions or []),
            is_thinking=is_thinking,
            is_error=is_error,
        )
        self._remember(mid)
        if counts_for_spacing:
            # notices do not consume the spacing budget of replies
            self._last_emit_at = self._clock()
        self._channel.publish(OUTBOUND_TOPIC, message.to_event())
        log_event(
            logging.INFO,
            "Emitted message",
            {"message_id": mid},
            is_error=is_error,
            preview=content[:50],
        )
        return message

    def reset(self) -> None:
        self._recent.clear()
        self._last_emit_at = None

    def _remember(self, message_id: str) -> None:
        self._recent[message_id] = None
        if len(self._recent) > self._recent_limit:
            while len(self._recent) > self._recent_keep:
                self._recent.popitem(last=False)
