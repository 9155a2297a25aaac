"""
Resolution Engine - Session State Machine
=========================================

pending -> running -> {paused <-> running} -> {completed, failed, stopped, timeout}

Every transition is persisted and published as exactly one event.
Control signals are validated here but only recorded; the scheduler acts
on them between dispatch cycles.
"""

import logging
from typing import TYPE_CHECKING, Any, Optional

from fixloop.core.engine.domain import (
    TERMINAL_STATUSES,
    ControlSignal,
    Session,
    SessionStatus,
    utcnow,
)
from fixloop.core.engine.events import EventBuilder, EventType
from fixloop.core.errors import InvalidStateError

if TYPE_CHECKING:
    from fixloop.core.engine.runtime import SessionRuntime

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING, SessionStatus.FAILED}),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.STOPPED,
        SessionStatus.TIMEOUT,
    }),
    SessionStatus.PAUSED: frozenset({
        SessionStatus.RUNNING,
        SessionStatus.STOPPED,
        SessionStatus.TIMEOUT,
        SessionStatus.FAILED,
    }),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.STOPPED: frozenset(),
    SessionStatus.TIMEOUT: frozenset(),
}

# Which statuses accept which control signal
SIGNAL_SOURCES: dict[ControlSignal, frozenset[SessionStatus]] = {
    ControlSignal.PAUSE: frozenset({SessionStatus.RUNNING, SessionStatus.PAUSED}),
    ControlSignal.STOP: frozenset({SessionStatus.RUNNING, SessionStatus.PAUSED}),
    ControlSignal.RESUME: frozenset({SessionStatus.PAUSED}),
}

TRANSITION_EVENTS: dict[tuple[Optional[SessionStatus], SessionStatus], EventType] = {
    (SessionStatus.PENDING, SessionStatus.RUNNING): EventType.SESSION_STARTED,
    (SessionStatus.PAUSED, SessionStatus.RUNNING): EventType.SESSION_RESUMED,
    (None, SessionStatus.PAUSED): EventType.SESSION_PAUSED,
    (None, SessionStatus.COMPLETED): EventType.SESSION_COMPLETED,
    (None, SessionStatus.FAILED): EventType.SESSION_FAILED,
    (None, SessionStatus.STOPPED): EventType.SESSION_STOPPED,
    (None, SessionStatus.TIMEOUT): EventType.SESSION_TIMEOUT,
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_signal(session: Session, signal: ControlSignal) -> None:
    """Raise ``InvalidStateError`` if ``signal`` is not valid right now."""
    allowed = SIGNAL_SOURCES[signal]
    if session.status not in allowed:
        raise InvalidStateError(
            f"Cannot {signal.value} session {session.id} in status {session.status.value}",
            details={"status": session.status.value, "signal": signal.value},
        )


def require_status(session: Session, *statuses: SessionStatus, action: str) -> None:
    if session.status not in statuses:
        expected = ", ".join(s.value for s in statuses)
        raise InvalidStateError(
            f"Cannot {action} session {session.id} in status {session.status.value} "
            f"(requires {expected})",
            details={"status": session.status.value, "action": action},
        )


class SessionStateMachine:
    """Applies validated status transitions to one session runtime."""

    def __init__(self, runtime: "SessionRuntime"):
        self.runtime = runtime

    @property
    def session(self) -> Session:
        return self.runtime.session

    async def transition(
        self,
        target: SessionStatus,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        session = self.session
        current = session.status
        if current == target:
            return
        if not can_transition(current, target):
            raise InvalidStateError(
                f"Invalid session transition {current.value} -> {target.value}",
                details={"from": current.value, "to": target.value},
            )

        now = utcnow()
        session.status = target
        if target == SessionStatus.RUNNING:
            if session.started_at is None:
                session.started_at = now
            session.paused_at = None
        elif target == SessionStatus.PAUSED:
            session.paused_at = now
        if target in TERMINAL_STATUSES:
            session.completed_at = now
            session.control_signal = None

        event_type = TRANSITION_EVENTS.get((current, target)) or TRANSITION_EVENTS[(None, target)]
        logger.info(f"Session {session.id}: {current.value} -> {target.value} ({message})")

        await self.runtime.save_session()
        await self.runtime.publish(
            EventBuilder.session_transition(
                session.id, event_type, target.value, message, details
            )
        )
        self.runtime.notify_status()
