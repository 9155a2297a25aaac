"""
Resolution Engine - Event Bus
=============================

Ordered, replayable event distribution per session.

Each session owns one channel. Publishing stamps the next sequence number,
appends to a bounded history and pushes the event into every subscriber's
queue in a single step, so all subscribers observe the same order.
Subscribers that reconnect pass the last sequence they saw and get the
missed events replayed from history (at-least-once delivery).
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, List, Optional, Set
from uuid import uuid4

from fixloop.core.config import settings
from fixloop.core.engine.events import SessionEvent

logger = logging.getLogger(__name__)


_CLOSED = object()


# ==========================================================================
# Subscriptions
# ==========================================================================

@dataclass(eq=False)
class Subscription:
    """Async iterator over one session's events"""
    session_id: str
    queue: asyncio.Queue
    id: str = field(default_factory=lambda: str(uuid4()))
    is_active: bool = True

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        return self

    async def __anext__(self) -> SessionEvent:
        if not self.is_active and self.queue.empty():
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            self.is_active = False
            raise StopAsyncIteration
        return item

    async def next(self, timeout: Optional[float] = None) -> SessionEvent:
        """Wait for the next event, raising ``asyncio.TimeoutError`` on timeout."""
        return await asyncio.wait_for(self.__anext__(), timeout=timeout)

    def drain(self) -> List[SessionEvent]:
        """Return every event already queued without waiting."""
        events = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is _CLOSED:
                self.is_active = False
                break
            events.append(item)
        return events


@dataclass
class SessionChannel:
    session_id: str
    history: Deque[SessionEvent]
    next_sequence: int = 1
    subscribers: Set[Subscription] = field(default_factory=set)


# ==========================================================================
# Event Bus
# ==========================================================================

class EventBus:
    """
    Single emission point for session events.
    Owned by the orchestrator and passed to every component that emits.
    """

    def __init__(self, max_history: Optional[int] = None, queue_size: Optional[int] = None):
        self.max_history = max_history or settings.EVENT_HISTORY_LIMIT
        self.queue_size = settings.SUBSCRIBER_QUEUE_SIZE if queue_size is None else queue_size
        self.channels: Dict[str, SessionChannel] = {}
        self._lock = asyncio.Lock()

    def _channel(self, session_id: str) -> SessionChannel:
        channel = self.channels.get(session_id)
        if channel is None:
            channel = SessionChannel(
                session_id=session_id,
                history=deque(maxlen=self.max_history),
            )
            self.channels[session_id] = channel
        return channel

    async def publish(self, event: SessionEvent) -> SessionEvent:
        """Stamp, record and fan out an event. Returns the stamped event."""
        async with self._lock:
            channel = self._channel(event.session_id)
            event.sequence = channel.next_sequence
            channel.next_sequence += 1
            channel.history.append(event)

            for subscription in list(channel.subscribers):
                if not subscription.is_active:
                    channel.subscribers.discard(subscription)
                    continue
                try:
                    subscription.queue.put_nowait(event)
                except asyncio.QueueFull:
                    # Slow consumer: drop it, it can reconnect with ``since``
                    logger.warning(
                        f"Subscriber {subscription.id} on {event.session_id} overflowed, closing"
                    )
                    subscription.is_active = False
                    channel.subscribers.discard(subscription)

        logger.debug(f"[{event.session_id}] #{event.sequence} {event.event_type.value}: {event.message}")
        return event

    async def subscribe(self, session_id: str, since: Optional[int] = None) -> Subscription:
        """
        Subscribe to a session's events.

        Args:
            session_id: Session to follow
            since: Last sequence already seen; history after it is replayed.
                ``None`` means live events only.
        """
        async with self._lock:
            channel = self._channel(session_id)
            subscription = Subscription(
                session_id=session_id,
                queue=asyncio.Queue(maxsize=self.queue_size),
            )
            if since is not None:
                for event in channel.history:
                    if event.sequence > since:
                        subscription.queue.put_nowait(event)
            channel.subscribers.add(subscription)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        async with self._lock:
            channel = self.channels.get(subscription.session_id)
            if channel:
                channel.subscribers.discard(subscription)
            subscription.is_active = False

    async def close_session(self, session_id: str) -> None:
        """End every open subscription of a session."""
        async with self._lock:
            channel = self.channels.get(session_id)
            if not channel:
                return
            for subscription in channel.subscribers:
                try:
                    subscription.queue.put_nowait(_CLOSED)
                except asyncio.QueueFull:
                    subscription.is_active = False
            channel.subscribers.clear()

    def history(self, session_id: str, since: int = 0) -> List[SessionEvent]:
        channel = self.channels.get(session_id)
        if not channel:
            return []
        return [event for event in channel.history if event.sequence > since]

    def last_sequence(self, session_id: str) -> int:
        channel = self.channels.get(session_id)
        return channel.next_sequence - 1 if channel else 0
