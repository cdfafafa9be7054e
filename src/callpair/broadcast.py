"""Live push of session events to watching browsers.

Delivery is best-effort: a socket that fails to send is dropped and the
failure is logged. Nothing here raises into the conversation flow.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Broadcaster:
    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._subscribers: dict[str, set[Subscriber]] = defaultdict(set)

    def subscribe(self, session_id: str, subscriber: Subscriber) -> None:
        self._subscribers[session_id].add(subscriber)
        logger.debug("Subscriber joined session %s (%d watching)", session_id, len(self._subscribers[session_id]))

    def unsubscribe(self, session_id: str, subscriber: Subscriber) -> None:
        subs = self._subscribers.get(session_id)
        if not subs:
            return
        subs.discard(subscriber)
        if not subs:
            del self._subscribers[session_id]

    def connected_clients(self, session_id: str | None = None) -> int:
        if session_id is not None:
            return len(self._subscribers.get(session_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    async def notify(self, session_id: str, event_type: str, payload: dict) -> int:
        """Send to every subscriber of the session; returns how many received it."""
        subs = list(self._subscribers.get(session_id, ()))
        if not subs:
            return 0
        message = {"event": event_type, "data": payload}
        results = await asyncio.gather(
            *(asyncio.wait_for(sub.send_json(message), self.send_timeout) for sub in subs),
            return_exceptions=True,
        )
        delivered = 0
        for sub, result in zip(subs, results):
            if isinstance(result, BaseException):
                logger.warning("Dropping subscriber of session %s: %s", session_id, result)
                self.unsubscribe(session_id, sub)
            else:
                delivered += 1
        return delivered
