"""
Resolution Engine - Event System
================================

Typed events for everything a session does. Each session has a single
emission point (the event bus) that stamps a per-session sequence number,
so subscribers see events in the order they were generated.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4


# ==========================================================================
# Event Categories
# ==========================================================================

class EventCategory(str, Enum):
    """Top-level event families"""
    SESSION = "session"
    ANALYSIS = "analysis"
    ISSUE = "issue"
    VERIFICATION = "verification"
    CHECKPOINT = "checkpoint"
    METRICS = "metrics"
    ERROR = "error"


class EventType(str, Enum):
    """Specific event types"""
    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_STARTED = "session.started"
    SESSION_PAUSED = "session.paused"
    SESSION_RESUMED = "session.resumed"
    SESSION_STOPPED = "session.stopped"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"
    SESSION_TIMEOUT = "session.timeout"
    SESSION_SIGNAL = "session.signal"

    # Analysis / backlog
    ANALYSIS_STARTED = "analysis.started"
    ANALYSIS_COMPLETED = "analysis.completed"
    ISSUES_ADDED = "analysis.issues_added"

    # Issue pipeline
    ISSUE_STARTED = "issue.started"
    ISSUE_PROGRESS = "issue.progress"
    ISSUE_RETRY = "issue.retry"
    ISSUE_RESOLVED = "issue.resolved"
    ISSUE_FAILED = "issue.failed"
    ISSUE_SKIPPED = "issue.skipped"
    ISSUE_RELEASED = "issue.released"

    # Verification
    VERIFICATION_STARTED = "verification.started"
    VERIFICATION_COMPLETED = "verification.completed"

    # Checkpoints
    CHECKPOINT_CREATED = "checkpoint.created"
    CHECKPOINT_RESTORED = "checkpoint.restored"
    CHECKPOINT_DELETED = "checkpoint.deleted"

    # Metrics
    METRICS_UPDATED = "metrics.updated"

    # Errors
    ERROR_OCCURRED = "error.occurred"

    @property
    def category(self) -> EventCategory:
        prefix = self.value.split(".", 1)[0]
        return EventCategory(prefix)


class Severity(str, Enum):
    """Event severity levels"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class PipelineStep(str, Enum):
    """Progress steps of one fix pipeline, in order."""
    ANALYZING = "analyzing"
    GENERATING_FIX = "generating_fix"
    APPLYING_FIX = "applying_fix"
    VERIFYING = "verifying"
    COMMITTING = "committing"


# ==========================================================================
# Core Event Structure
# ==========================================================================

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionEvent:
    """
    Base event structure for all session operations.
    ``sequence`` is assigned by the event bus on publish.
    """
    # Identity
    session_id: str
    event_type: EventType
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=_now_iso)
    sequence: int = 0

    severity: Severity = Severity.INFO

    # Context
    issue_id: Optional[str] = None

    # Content
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def category(self) -> EventCategory:
        return self.event_type.category

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["event_type"] = self.event_type.value
        data["severity"] = self.severity.value
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEvent":
        data = dict(data)
        data.pop("category", None)
        data["event_type"] = EventType(data["event_type"])
        if "severity" in data:
            data["severity"] = Severity(data["severity"])
        return cls(**data)


# ==========================================================================
# Specialized Event Builders
# ==========================================================================

class EventBuilder:
    """Factory for the events the engine emits more than once"""

    @staticmethod
    def session_transition(
        session_id: str,
        event_type: EventType,
        status: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> SessionEvent:
        severity = Severity.INFO
        if event_type == EventType.SESSION_FAILED:
            severity = Severity.ERROR
        elif event_type in (EventType.SESSION_TIMEOUT, EventType.SESSION_STOPPED):
            severity = Severity.WARNING
        return SessionEvent(
            session_id=session_id,
            event_type=event_type,
            severity=severity,
            message=message,
            details={"status": status, **(details or {})},
        )

    @staticmethod
    def issue_progress(
        session_id: str,
        issue_id: str,
        step: PipelineStep,
        attempt: int,
        message: str = "",
    ) -> SessionEvent:
        return SessionEvent(
            session_id=session_id,
            event_type=EventType.ISSUE_PROGRESS,
            issue_id=issue_id,
            message=message or f"Step {step.value} (attempt {attempt})",
            details={"step": step.value, "attempt": attempt},
        )

    @staticmethod
    def issue_terminal(
        session_id: str,
        issue_id: str,
        event_type: EventType,
        message: str,
        error_kind: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SessionEvent:
        severity = Severity.INFO
        if event_type == EventType.ISSUE_FAILED:
            severity = Severity.ERROR
        elif event_type == EventType.ISSUE_SKIPPED:
            severity = Severity.WARNING
        payload = dict(details or {})
        if error_kind:
            payload["error_kind"] = error_kind
        return SessionEvent(
            session_id=session_id,
            event_type=event_type,
            issue_id=issue_id,
            severity=severity,
            message=message,
            details=payload,
        )

    @staticmethod
    def error(
        session_id: str,
        kind: str,
        message: str,
        recoverable: bool,
        issue_id: Optional[str] = None,
    ) -> SessionEvent:
        return SessionEvent(
            session_id=session_id,
            event_type=EventType.ERROR_OCCURRED,
            issue_id=issue_id,
            severity=Severity.WARNING if recoverable else Severity.CRITICAL,
            message=message,
            details={"kind": kind, "recoverable": recoverable},
        )

    @staticmethod
    def metrics(
        session_id: str,
        metrics: Dict[str, Any],
        delta: Dict[str, Any],
    ) -> SessionEvent:
        return SessionEvent(
            session_id=session_id,
            event_type=EventType.METRICS_UPDATED,
            severity=Severity.DEBUG,
            message="Metrics updated",
            details={"metrics": metrics, "delta": delta},
        )
