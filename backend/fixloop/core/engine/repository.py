"""
Resolution Engine - Repository Interface
========================================

Read/write-through persistence the engine depends on. The engine makes no
assumption about storage; ``InMemoryRepository`` keeps copies in dicts and
``fixloop.core.persistence.SqlAlchemyRepository`` writes to a database.
"""

import copy
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from fixloop.core.engine.domain import AttemptRecord, Checkpoint, Issue, Session
from fixloop.core.engine.metrics import SessionMetrics


class OrchestratorRepository(ABC):
    """Storage for sessions, issues, checkpoints, attempts and metrics."""

    # Sessions
    @abstractmethod
    async def save_session(self, session: Session) -> None: ...

    @abstractmethod
    async def load_session(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def list_sessions(self) -> list[Session]: ...

    # Issues
    @abstractmethod
    async def save_issue(self, issue: Issue) -> None: ...

    async def save_issues(self, issues: Iterable[Issue]) -> None:
        for issue in issues:
            await self.save_issue(issue)

    @abstractmethod
    async def load_issues(self, session_id: str) -> list[Issue]: ...

    # Checkpoints
    @abstractmethod
    async def save_checkpoint(self, checkpoint: Checkpoint) -> None: ...

    @abstractmethod
    async def load_checkpoints(self, session_id: str) -> list[Checkpoint]: ...

    @abstractmethod
    async def delete_checkpoint(self, checkpoint_id: str) -> None: ...

    # Attempt ledger
    @abstractmethod
    async def save_attempt(self, record: AttemptRecord) -> None: ...

    @abstractmethod
    async def load_attempts(self, session_id: str) -> list[AttemptRecord]: ...

    # Metrics
    @abstractmethod
    async def save_metrics(self, session_id: str, metrics: SessionMetrics) -> None: ...

    @abstractmethod
    async def load_metrics(self, session_id: str) -> Optional[SessionMetrics]: ...


class InMemoryRepository(OrchestratorRepository):
    """Dict-backed repository. Stores copies so callers cannot mutate it."""

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}
        self.issues: dict[str, Issue] = {}
        self.checkpoints: dict[str, Checkpoint] = {}
        self.attempts: dict[str, AttemptRecord] = {}
        self.metrics: dict[str, SessionMetrics] = {}

    async def save_session(self, session: Session) -> None:
        self.sessions[session.id] = copy.deepcopy(session)

    async def load_session(self, session_id: str) -> Optional[Session]:
        session = self.sessions.get(session_id)
        return copy.deepcopy(session) if session else None

    async def list_sessions(self) -> list[Session]:
        sessions = sorted(self.sessions.values(), key=lambda s: s.created_at, reverse=True)
        return [copy.deepcopy(s) for s in sessions]

    async def save_issue(self, issue: Issue) -> None:
        self.issues[issue.id] = copy.deepcopy(issue)

    async def load_issues(self, session_id: str) -> list[Issue]:
        issues = [i for i in self.issues.values() if i.session_id == session_id]
        return [copy.deepcopy(i) for i in sorted(issues, key=lambda i: i.sequence)]

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        self.checkpoints[checkpoint.id] = copy.deepcopy(checkpoint)

    async def load_checkpoints(self, session_id: str) -> list[Checkpoint]:
        checkpoints = [c for c in self.checkpoints.values() if c.session_id == session_id]
        return [copy.deepcopy(c) for c in sorted(checkpoints, key=lambda c: c.created_at)]

    async def delete_checkpoint(self, checkpoint_id: str) -> None:
        self.checkpoints.pop(checkpoint_id, None)

    async def save_attempt(self, record: AttemptRecord) -> None:
        self.attempts[record.id] = copy.deepcopy(record)

    async def load_attempts(self, session_id: str) -> list[AttemptRecord]:
        records = [r for r in self.attempts.values() if r.session_id == session_id]
        return [copy.deepcopy(r) for r in sorted(records, key=lambda r: r.created_at)]

    async def save_metrics(self, session_id: str, metrics: SessionMetrics) -> None:
        self.metrics[session_id] = copy.deepcopy(metrics)

    async def load_metrics(self, session_id: str) -> Optional[SessionMetrics]:
        metrics = self.metrics.get(session_id)
        return copy.deepcopy(metrics) if metrics else None
