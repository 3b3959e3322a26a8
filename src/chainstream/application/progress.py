"""
Progress Channel: fan-out of session progress events.

Every subscriber owns a bounded queue. ``publish`` never blocks: a subscriber
whose queue is full is dropped (its iterator ends) and the producer moves on.
"""
from __future__ import annotations

import asyncio

from loguru import logger

from ..domain.models import ProgressEvent


class Subscription:
    def __init__(self, channel: "ProgressChannel", session_id: str | None, maxsize: int) -> None:
        self.session_id = session_id       # None = every session
        self.dropped = False
        self.closed = False
        self._channel = channel
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)

    def _offer(self, event: ProgressEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def _end(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> ProgressEvent | None:
        """Next event, or None once the subscription has ended."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressEvent:
        ev = await self.get()
        if ev is None:
            raise StopAsyncIteration
        return ev


class ProgressChannel:
    def __init__(self, maxsize: int = 100) -> None:
        self.maxsize = maxsize
        self._subs: dict[str | None, set[Subscription]] = {}
        self._last: dict[str, ProgressEvent] = {}
        self.published = 0
        self.dropped_subscribers = 0

    def subscribe(self, session_id: str | None = None) -> Subscription:
        sub = Subscription(self, session_id, self.maxsize)
        self._subs.setdefault(session_id, set()).add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.session_id)
        if subs is not None:
            subs.discard(sub)
            if not subs:
                del self._subs[sub.session_id]
        sub._end()

    def publish(self, event: ProgressEvent) -> int:
        """Deliver to matching subscribers; returns how many received it."""
        self.published += 1
        self._last[event.session_id] = event
        targets = [*self._subs.get(event.session_id, ()), *self._subs.get(None, ())]
        delivered = 0
        for sub in targets:
            if sub._offer(event):
                delivered += 1
                continue
            sub.dropped = True
            self.dropped_subscribers += 1
            logger.warning(f"[Progress] dropping slow subscriber for {sub.session_id or '*'} "
                           f"({sub.pending()} events pending)")
            self.unsubscribe(sub)
        return delivered

    def last_event(self, session_id: str) -> ProgressEvent | None:
        return self._last.get(session_id)

    @property
    def subscriber_count(self) -> int:
        return sum(len(s) for s in self._subs.values())

    def close(self) -> None:
        for subs in list(self._subs.values()):
            for sub in list(subs):
                self.unsubscribe(sub)
