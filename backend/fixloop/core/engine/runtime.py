"""
Resolution Engine - Session Runtime
===================================

Live state of one session: the session record, its issue arena, the
checkpoint and attempt ledgers, and the collaborators the scheduler,
pipelines and checkpoint manager share.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from fixloop.core.engine.domain import (
    AttemptRecord,
    Checkpoint,
    Issue,
    IssueStatus,
    Session,
    SessionConfig,
    SessionStatus,
    utcnow,
)
from fixloop.core.engine.event_bus import EventBus
from fixloop.core.engine.events import EventBuilder, EventType, SessionEvent, Severity
from fixloop.core.engine.metrics import SessionMetrics, compute_metrics, metrics_delta
from fixloop.core.engine.mutation_lock import MutationLock
from fixloop.core.engine.scheduler import IssueBacklog
from fixloop.core.engine.state_machine import SessionStateMachine
from fixloop.core.errors import DiffValidationError

if TYPE_CHECKING:
    from fixloop.core.adapters.git import VcsAdapter
    from fixloop.core.adapters.providers import FixProvider
    from fixloop.core.adapters.verification import VerificationBackend
    from fixloop.core.engine.checkpoints import CheckpointManager
    from fixloop.core.engine.pipeline import FixPipeline
    from fixloop.core.engine.repository import OrchestratorRepository
    from fixloop.core.engine.scheduler import IssueScheduler

logger = logging.getLogger(__name__)


class SessionRuntime:
    """Everything one running session needs, keyed by id."""

    def __init__(
        self,
        session: Session,
        repository: "OrchestratorRepository",
        bus: EventBus,
        vcs: "VcsAdapter",
        verifier: "VerificationBackend",
        provider: Optional["FixProvider"] = None,
        issues: Iterable[Issue] = (),
        checkpoints: Iterable[Checkpoint] = (),
        attempts: Iterable[AttemptRecord] = (),
    ):
        self.session = session
        self.repository = repository
        self.bus = bus
        self.vcs = vcs
        self.verifier = verifier
        self.provider = provider

        # Arenas
        self.issues: dict[str, Issue] = {issue.id: issue for issue in issues}
        self.checkpoints: list[Checkpoint] = sorted(checkpoints, key=lambda c: c.created_at)
        self.attempts: list[AttemptRecord] = list(attempts)

        self.state = SessionStateMachine(self)
        self.lock = MutationLock(session.id)
        self.backlog = IssueBacklog()

        # Wired by the orchestrator
        self.scheduler: Optional["IssueScheduler"] = None
        self.pipeline: Optional["FixPipeline"] = None
        self.checkpointer: Optional["CheckpointManager"] = None

        # Dispatch state
        self.wakeup = asyncio.Event()
        self.finished = asyncio.Event()
        self.in_flight: dict[str, asyncio.Task] = {}
        self.dispatch_task: Optional[asyncio.Task] = None
        self.fault: Optional[BaseException] = None
        self.stopping = False
        self.crashed_issue_ids: set[str] = set()

        # Fixes applied but not committed yet (commit_after_each_fix=False)
        self.uncommitted_issue_ids: list[str] = []
        self.uncommitted_files: set[str] = set()

        self.last_metrics: Optional[SessionMetrics] = None
        self._status_changed = asyncio.Event()

        for issue in self.issues.values():
            if issue.status == IssueStatus.PENDING:
                self.backlog.push(issue)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def config(self) -> SessionConfig:
        return self.session.config

    @property
    def root(self) -> Path:
        return Path(self.session.repository_path).resolve()

    @property
    def halted(self) -> bool:
        return self.fault is not None

    def next_sequence(self) -> int:
        if not self.issues:
            return 1
        return max(issue.sequence for issue in self.issues.values()) + 1

    def recount(self) -> None:
        """Recompute session counters from the issue arena."""
        session = self.session
        statuses = [issue.status for issue in self.issues.values()]
        session.total_issues = len(statuses)
        session.resolved_issues = statuses.count(IssueStatus.RESOLVED)
        session.failed_issues = statuses.count(IssueStatus.FAILED)
        session.skipped_issues = statuses.count(IssueStatus.SKIPPED)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_session(self) -> None:
        self.session.updated_at = utcnow()
        await self.repository.save_session(self.session)

    async def save_issue(self, issue: Issue) -> None:
        issue.updated_at = utcnow()
        self.recount()
        await self.repository.save_issue(issue)
        await self.save_session()

    async def record_attempt(self, record: AttemptRecord) -> None:
        self.attempts.append(record)
        await self.repository.save_attempt(record)

    # ------------------------------------------------------------------
    # Events and metrics
    # ------------------------------------------------------------------

    async def publish(self, event: SessionEvent) -> SessionEvent:
        return await self.bus.publish(event)

    async def emit(
        self,
        event_type: EventType,
        message: str,
        issue_id: Optional[str] = None,
        severity: Severity = Severity.INFO,
        **details: Any,
    ) -> SessionEvent:
        return await self.publish(SessionEvent(
            session_id=self.id,
            event_type=event_type,
            issue_id=issue_id,
            severity=severity,
            message=message,
            details=details,
        ))

    def compute_metrics(self) -> SessionMetrics:
        return compute_metrics(self.session, self.issues.values(), self.attempts)

    async def refresh_metrics(self) -> SessionMetrics:
        metrics = self.compute_metrics()
        delta = metrics_delta(self.last_metrics, metrics)
        self.last_metrics = metrics
        await self.repository.save_metrics(self.id, metrics)
        await self.publish(EventBuilder.metrics(self.id, metrics.to_dict(), delta))
        return metrics

    def summary(self) -> dict[str, Any]:
        """End-of-session report attached to the terminal transition."""
        m = self.compute_metrics()
        return {
            "issues": m.issue_progress,
            "commits": m.commits,
            "verification": {
                "runs": m.verification_runs,
                "passed": m.verification_passed,
                "failed": m.verification_failed,
            },
            "changes": {
                "lines_added": m.lines_added,
                "lines_removed": m.lines_removed,
                "files_modified": m.files_modified,
            },
            "provider": {
                "requests": m.provider_requests,
                "tokens": m.provider_tokens,
                "cost_usd": m.provider_cost_usd,
            },
            "elapsed_ms": m.elapsed_ms,
            "checkpoints": len(self.checkpoints),
        }

    # ------------------------------------------------------------------
    # Signalling
    # ------------------------------------------------------------------

    def wake(self) -> None:
        self.wakeup.set()

    def halt(self, exc: BaseException) -> None:
        """Record a non-recoverable fault. The dispatch loop fails the session."""
        if self.fault is None:
            logger.error(f"Session {self.id} halted: {exc!r}")
            self.fault = exc
        self.stopping = True
        self.wake()

    def notify_status(self) -> None:
        event, self._status_changed = self._status_changed, asyncio.Event()
        event.set()

    async def wait_for_status(
        self,
        *statuses: SessionStatus,
        timeout: Optional[float] = None,
    ) -> Session:
        async def _wait() -> None:
            while self.session.status not in statuses:
                await self._status_changed.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
        return self.session

    # ------------------------------------------------------------------
    # Working tree files
    # ------------------------------------------------------------------

    def resolve_path(self, relative: str) -> Path:
        root = self.root
        path = (root / relative).resolve()
        try:
            path.relative_to(root)
        except ValueError:
            raise DiffValidationError(
                f"Path {relative} is outside the repository",
                details={"path": relative},
            )
        if ".git" in path.relative_to(root).parts:
            raise DiffValidationError(f"Refusing to touch {relative}", details={"path": relative})
        return path

    def read_file(self, relative: str) -> Optional[str]:
        path = self.resolve_path(relative)
        if not path.is_file():
            return None
        with open(path, encoding="utf-8", newline="") as f:
            return f.read()

    def write_file(self, relative: str, content: Optional[str]) -> None:
        """Write ``content`` to a repository file, deleting it for ``None``."""
        path = self.resolve_path(relative)
        if content is None:
            if path.exists():
                os.remove(path)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
