"""
Fixloop Resolution Engine
=========================

Per-repository sessions that consume a prioritized issue backlog and drive
each issue through fix -> apply -> verify -> commit, with bounded
concurrency, bounded retries, checkpoints and pause/resume/stop.

Components:
- Orchestrator: Public entry point, one runtime per session
- SessionStateMachine: Session lifecycle transitions
- IssueScheduler: Priority backlog and dispatch loop
- FixPipeline: Per-issue fix-verify-commit cycle
- MutationLock: Serializes working tree mutation
- CheckpointManager: Periodic and on-demand checkpoints, restore
- EventBus: Ordered, replayable session event stream
"""

from fixloop.core.engine.domain import (
    ControlSignal,
    Issue,
    IssueCategory,
    IssueDraft,
    IssueSeverity,
    IssueStatus,
    Session,
    SessionConfig,
    SessionStatus,
)
from fixloop.core.engine.event_bus import EventBus, Subscription
from fixloop.core.engine.events import EventType, SessionEvent
from fixloop.core.engine.metrics import SessionMetrics
from fixloop.core.engine.orchestrator import Orchestrator
from fixloop.core.engine.repository import InMemoryRepository, OrchestratorRepository

__all__ = [
    "ControlSignal",
    "Issue",
    "IssueCategory",
    "IssueDraft",
    "IssueSeverity",
    "IssueStatus",
    "Session",
    "SessionConfig",
    "SessionStatus",
    "EventBus",
    "Subscription",
    "EventType",
    "SessionEvent",
    "SessionMetrics",
    "Orchestrator",
    "InMemoryRepository",
    "OrchestratorRepository",
]
