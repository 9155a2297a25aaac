"""
Tests for the per-session event bus.
"""

import asyncio

import pytest

from fixloop.core.engine.event_bus import EventBus
from fixloop.core.engine.events import EventCategory, EventType, SessionEvent, Severity


def event(session_id: str = "s1", event_type: EventType = EventType.ISSUE_PROGRESS, **kwargs) -> SessionEvent:
    return SessionEvent(session_id=session_id, event_type=event_type, **kwargs)


@pytest.fixture
def bus() -> EventBus:
    return EventBus(max_history=100)


class TestPublish:

    async def test_sequences_are_per_session(self, bus: EventBus):
        a1 = await bus.publish(event("a"))
        b1 = await bus.publish(event("b"))
        a2 = await bus.publish(event("a"))

        assert (a1.sequence, a2.sequence, b1.sequence) == (1, 2, 1)
        assert bus.last_sequence("a") == 2
        assert bus.last_sequence("unknown") == 0

    async def test_subscribers_see_the_same_order(self, bus: EventBus):
        first = await bus.subscribe("s1")
        second = await bus.subscribe("s1")

        for i in range(5):
            await bus.publish(event(message=f"step {i}"))

        assert [e.sequence for e in first.drain()] == [1, 2, 3, 4, 5]
        assert [e.sequence for e in second.drain()] == [1, 2, 3, 4, 5]

    async def test_other_sessions_are_not_delivered(self, bus: EventBus):
        sub = await bus.subscribe("s1")
        await bus.publish(event("s2"))
        assert sub.drain() == []


class TestReplay:

    async def test_since_replays_missed_events(self, bus: EventBus):
        for _ in range(4):
            await bus.publish(event())

        sub = await bus.subscribe("s1", since=2)
        await bus.publish(event())

        assert [e.sequence for e in sub.drain()] == [3, 4, 5]

    async def test_no_since_means_live_only(self, bus: EventBus):
        await bus.publish(event())
        sub = await bus.subscribe("s1")
        await bus.publish(event())

        assert [e.sequence for e in sub.drain()] == [2]

    async def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for _ in range(5):
            await bus.publish(event())

        assert [e.sequence for e in bus.history("s1")] == [3, 4, 5]
        assert [e.sequence for e in bus.history("s1", since=4)] == [5]


class TestSubscriptionLifecycle:

    async def test_next_waits_for_event(self, bus: EventBus):
        sub = await bus.subscribe("s1")

        async def later():
            await asyncio.sleep(0.01)
            await bus.publish(event(message="late"))

        task = asyncio.create_task(later())
        received = await sub.next(timeout=1)
        await task
        assert received.message == "late"

    async def test_next_times_out(self, bus: EventBus):
        sub = await bus.subscribe("s1")
        with pytest.raises(asyncio.TimeoutError):
            await sub.next(timeout=0.01)

    async def test_close_session_ends_iteration(self, bus: EventBus):
        sub = await bus.subscribe("s1")
        await bus.publish(event())
        await bus.close_session("s1")

        received = [e async for e in sub]
        assert [e.sequence for e in received] == [1]
        assert not sub.is_active

    async def test_unsubscribe_stops_delivery(self, bus: EventBus):
        sub = await bus.subscribe("s1")
        await bus.unsubscribe(sub)
        await bus.publish(event())

        assert sub.drain() == []
        assert bus.channels["s1"].subscribers == set()

    async def test_slow_subscriber_is_dropped(self):
        bus = EventBus(max_history=100, queue_size=2)
        slow = await bus.subscribe("s1")
        for _ in range(3):
            await bus.publish(event())

        assert not slow.is_active
        assert [e.sequence for e in slow.drain()] == [1, 2]

        # Reconnecting with the last seen sequence recovers the gap
        again = await bus.subscribe("s1", since=2)
        assert [e.sequence for e in again.drain()] == [3]


class TestEventSerialization:

    def test_to_dict_and_back(self):
        original = event(
            event_type=EventType.ISSUE_FAILED,
            issue_id="i1",
            severity=Severity.ERROR,
            message="failed",
            details={"attempts": 2},
        )
        data = original.to_dict()

        assert data["event_type"] == "issue.failed"
        assert data["category"] == "issue"
        assert data["severity"] == "error"
        assert SessionEvent.from_dict(data) == original

    def test_category_from_type(self):
        assert EventType.ISSUES_ADDED.category == EventCategory.ANALYSIS
        assert EventType.ERROR_OCCURRED.category == EventCategory.ERROR
        assert EventType.CHECKPOINT_RESTORED.category == EventCategory.CHECKPOINT
