"""
Tests for session status transitions and signal validation.
"""

import pytest

from fixloop.core.engine.domain import ControlSignal, Session, SessionStatus
from fixloop.core.engine.events import EventType
from fixloop.core.engine.state_machine import (
    SessionStateMachine,
    can_transition,
    require_status,
    validate_signal,
)
from fixloop.core.errors import InvalidStateError


class RecordingRuntime:
    """Just enough runtime for the state machine."""

    def __init__(self, session: Session):
        self.session = session
        self.saved = 0
        self.events = []
        self.notified = 0

    async def save_session(self) -> None:
        self.saved += 1

    async def publish(self, event) -> None:
        self.events.append(event)

    def notify_status(self) -> None:
        self.notified += 1


@pytest.fixture
def runtime(tmp_path) -> RecordingRuntime:
    return RecordingRuntime(Session(repository_path=str(tmp_path)))


class TestTransitionTable:

    @pytest.mark.parametrize("current, target", [
        (SessionStatus.PENDING, SessionStatus.RUNNING),
        (SessionStatus.RUNNING, SessionStatus.PAUSED),
        (SessionStatus.PAUSED, SessionStatus.RUNNING),
        (SessionStatus.PAUSED, SessionStatus.STOPPED),
        (SessionStatus.RUNNING, SessionStatus.TIMEOUT),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current, target", [
        (SessionStatus.PENDING, SessionStatus.PAUSED),
        (SessionStatus.PENDING, SessionStatus.COMPLETED),
        (SessionStatus.PAUSED, SessionStatus.COMPLETED),
        (SessionStatus.COMPLETED, SessionStatus.RUNNING),
        (SessionStatus.STOPPED, SessionStatus.RUNNING),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)


class TestSignals:

    def test_resume_only_when_paused(self, tmp_path):
        session = Session(repository_path=str(tmp_path), status=SessionStatus.RUNNING)
        with pytest.raises(InvalidStateError, match="Cannot resume"):
            validate_signal(session, ControlSignal.RESUME)
        session.status = SessionStatus.PAUSED
        validate_signal(session, ControlSignal.RESUME)

    @pytest.mark.parametrize("status", [SessionStatus.PENDING, SessionStatus.COMPLETED])
    def test_stop_needs_an_active_session(self, tmp_path, status):
        session = Session(repository_path=str(tmp_path), status=status)
        with pytest.raises(InvalidStateError) as exc_info:
            validate_signal(session, ControlSignal.STOP)
        assert exc_info.value.details == {"status": status.value, "signal": "stop"}

    def test_require_status(self, tmp_path):
        session = Session(repository_path=str(tmp_path))
        require_status(session, SessionStatus.PENDING, action="start")
        with pytest.raises(InvalidStateError, match="requires paused, stopped"):
            require_status(session, SessionStatus.PAUSED, SessionStatus.STOPPED, action="restore")


class TestSessionStateMachine:

    async def test_lifecycle_timestamps_and_events(self, runtime: RecordingRuntime):
        machine = SessionStateMachine(runtime)
        session = runtime.session

        await machine.transition(SessionStatus.RUNNING, "Started")
        started_at = session.started_at
        assert started_at is not None

        await machine.transition(SessionStatus.PAUSED, "Paused")
        assert session.paused_at is not None

        await machine.transition(SessionStatus.RUNNING, "Resumed")
        assert session.paused_at is None
        assert session.started_at == started_at

        session.control_signal = ControlSignal.STOP
        await machine.transition(SessionStatus.STOPPED, "Stopped", details={"summary": {"resolved": 0}})
        assert session.completed_at is not None
        assert session.control_signal is None

        assert [e.event_type for e in runtime.events] == [
            EventType.SESSION_STARTED,
            EventType.SESSION_PAUSED,
            EventType.SESSION_RESUMED,
            EventType.SESSION_STOPPED,
        ]
        assert runtime.events[-1].details["status"] == "stopped"
        assert runtime.events[-1].details["summary"] == {"resolved": 0}
        assert runtime.saved == 4
        assert runtime.notified == 4

    async def test_same_status_is_a_no_op(self, runtime: RecordingRuntime):
        machine = SessionStateMachine(runtime)
        await machine.transition(SessionStatus.PENDING, "Nothing")
        assert runtime.events == []
        assert runtime.saved == 0

    async def test_invalid_transition_raises(self, runtime: RecordingRuntime):
        machine = SessionStateMachine(runtime)
        with pytest.raises(InvalidStateError, match="pending -> completed"):
            await machine.transition(SessionStatus.COMPLETED, "Too soon")
        assert runtime.session.status == SessionStatus.PENDING
        assert runtime.events == []
