"""
In-process topic-based publish/subscribe bus.

Each subscriber owns a bounded ``asyncio.Queue``; ``publish`` only ever
uses ``put_nowait`` so a slow or vanished subscriber can never block
the publisher or its siblings.  A subscriber whose queue overflows is
dropped: its stream ends and the client is expected to reconnect.

Events on one topic reach each subscriber in publish order.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

log = logging.getLogger("constellation.pubsub")

_CLOSED = object()


class Subscription:
    """One live subscriber on one topic; iterate it to receive events."""

    _ids = itertools.count(1)

    def __init__(self, topic: str, maxsize: int = 256):
        self.id = next(self._ids)
        self.topic = topic
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _offer(self, event: dict) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # make room for the end-of-stream marker
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def get(self, timeout: float | None = None) -> dict | None:
        """
        Next event, or None once the subscription is closed.

        Raises asyncio.TimeoutError when *timeout* elapses first.
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # keep the marker for any other reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Topic -> subscribers registry with non-blocking fan-out."""

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._topics: dict[str, dict[int, Subscription]] = {}
        self.published = 0
        self.dropped = 0

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(topic, self.queue_size)
        self._topics.setdefault(topic, {})[sub.id] = sub
        log.debug("Subscribed #%d to %s", sub.id, topic)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._topics.get(sub.topic)
        if subs is not None:
            subs.pop(sub.id, None)
            if not subs:
                del self._topics[sub.topic]
        sub._close()
        log.debug("Unsubscribed #%d from %s", sub.id, sub.topic)

    def publish(self, topic: str, event: dict) -> int:
        """Deliver *event* to every live subscriber of *topic*; returns the count reached."""
        self.published += 1
        delivered = 0
        for sub in list(self._topics.get(topic, {}).values()):
            if sub._offer(event):
                delivered += 1
            else:
                self.dropped += 1
                log.warning("Dropping slow subscriber #%d on %s", sub.id, topic)
                self.unsubscribe(sub)
        return delivered

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._topics.get(topic, {}))
        return sum(len(s) for s in self._topics.values())

    @property
    def topic_count(self) -> int:
        return len(self._topics)

    def close(self) -> None:
        """End every subscription (used on shutdown)."""
        for subs in list(self._topics.values()):
            for sub in list(subs.values()):
                self.unsubscribe(sub)
