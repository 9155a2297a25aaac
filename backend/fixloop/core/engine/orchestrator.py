"""
Resolution Engine - Orchestrator
================================

Public entry point of the engine. Owns one ``SessionRuntime`` per session
and wires the collaborators passed in at construction. There is no global
registry: the API layer builds one orchestrator at startup.

Usage:
    orchestrator = Orchestrator(provider=RetryingFixProvider(HttpFixProvider(url)))
    session = await orchestrator.create_session("/path/to/repo", SessionConfig(...))
    await orchestrator.add_issues(session.id, drafts)
    await orchestrator.start(session.id)
    async for event in await orchestrator.subscribe(session.id, since=0):
        ...
"""

import asyncio
from fnmatch import fnmatch
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from fixloop.core.adapters.git import GitAdapter, VcsAdapter
from fixloop.core.adapters.providers import Analyzer, FixProvider
from fixloop.core.adapters.verification import VerificationBackend, VerificationRunner
from fixloop.core.engine.checkpoints import CheckpointManager
from fixloop.core.engine.domain import (
    Checkpoint,
    ControlSignal,
    Issue,
    IssueDraft,
    IssueStatus,
    Session,
    SessionConfig,
    SessionStatus,
    utcnow,
)
from fixloop.core.engine.event_bus import EventBus, Subscription
from fixloop.core.engine.events import EventBuilder, EventType
from fixloop.core.engine.feedback import DiagnosticFeedback
from fixloop.core.engine.metrics import SessionMetrics
from fixloop.core.engine.pipeline import FixPipeline
from fixloop.core.engine.repository import InMemoryRepository, OrchestratorRepository
from fixloop.core.engine.runtime import SessionRuntime
from fixloop.core.engine.scheduler import IssueScheduler
from fixloop.core.engine.state_machine import require_status, validate_signal
from fixloop.core.errors import (
    NON_RECOVERABLE_ERRORS,
    ConfigurationError,
    InvalidStateError,
    IssueNotFoundError,
    RepositoryNotFoundError,
    SessionNotFoundError,
)

logger = structlog.get_logger()


class Orchestrator:
    """Issue resolution orchestrator for any number of repositories."""

    def __init__(
        self,
        repository: Optional[OrchestratorRepository] = None,
        vcs_factory: Optional[Callable[[str], VcsAdapter]] = None,
        provider: Optional[FixProvider] = None,
        verifier: Optional[VerificationBackend] = None,
        bus: Optional[EventBus] = None,
        analyzer: Optional[Analyzer] = None,
        feedback_factory: Callable[[], DiagnosticFeedback] = DiagnosticFeedback,
    ):
        self.repository = repository or InMemoryRepository()
        self.vcs_factory = vcs_factory or GitAdapter
        self.provider = provider
        self.verifier = verifier or VerificationRunner()
        self.bus = bus or EventBus()
        self.analyzer = analyzer
        self.feedback_factory = feedback_factory
        self.runtimes: dict[str, SessionRuntime] = {}
        self._providers: dict[str, FixProvider] = {}
        self._load_lock = asyncio.Lock()

    # ==================================================================
    # Runtime management
    # ==================================================================

    def _build_runtime(
        self,
        session: Session,
        issues: Iterable[Issue] = (),
        checkpoints: Iterable[Checkpoint] = (),
        attempts=(),
    ) -> SessionRuntime:
        rt = SessionRuntime(
            session=session,
            repository=self.repository,
            bus=self.bus,
            vcs=self.vcs_factory(session.repository_path),
            verifier=self.verifier,
            provider=self._providers.get(session.id, self.provider),
            issues=issues,
            checkpoints=checkpoints,
            attempts=attempts,
        )
        rt.pipeline = FixPipeline(rt, self.feedback_factory())
        rt.checkpointer = CheckpointManager(rt)
        rt.scheduler = IssueScheduler(rt, rt.pipeline, rt.checkpointer)
        self.runtimes[session.id] = rt
        return rt

    async def _runtime(self, session_id: str) -> SessionRuntime:
        rt = self.runtimes.get(session_id)
        if rt is not None:
            return rt
        async with self._load_lock:
            rt = self.runtimes.get(session_id)
            if rt is not None:
                return rt
            session = await self.repository.load_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            issues = await self.repository.load_issues(session_id)
            checkpoints = await self.repository.load_checkpoints(session_id)
            attempts = await self.repository.load_attempts(session_id)
            await self._recover(session, issues)
            rt = self._build_runtime(session, issues, checkpoints, attempts)
            rt.recount()
            rt.last_metrics = await self.repository.load_metrics(session_id)
            return rt

    async def _recover(self, session: Session, issues: list[Issue]) -> None:
        """A session stored as running has no dispatch loop behind it any more."""
        if session.status == SessionStatus.RUNNING:
            logger.warning("Recovering interrupted session", session_id=session.id)
            session.status = SessionStatus.PAUSED
            session.paused_at = utcnow()
            session.control_signal = None
            session.error_message = "Recovered after restart"
            await self.repository.save_session(session)
        for issue in issues:
            if issue.status == IssueStatus.IN_PROGRESS:
                issue.status = IssueStatus.PENDING
                issue.started_at = None
                await self.repository.save_issue(issue)

    def _launch_loop(self, rt: SessionRuntime) -> None:
        rt.stopping = False
        rt.finished.clear()
        rt.dispatch_task = asyncio.create_task(rt.scheduler.run(), name=f"fixloop-session-{rt.id}")

    # ==================================================================
    # Sessions
    # ==================================================================

    async def create_session(
        self,
        repository_path: str,
        config: Optional[SessionConfig] = None,
        base_branch: Optional[str] = None,
        provider: Optional[FixProvider] = None,
    ) -> Session:
        """
        Create a pending session for a repository.

        ``provider`` overrides the orchestrator's default fix provider for
        this session only.
        """
        path = Path(repository_path).expanduser()
        if not path.is_dir():
            raise RepositoryNotFoundError(
                f"Repository path {repository_path} does not exist",
                details={"repository_path": repository_path},
            )
        session = Session(
            repository_path=str(path.resolve()),
            config=config or SessionConfig(),
            base_branch=base_branch,
        )
        if provider is not None:
            self._providers[session.id] = provider
        rt = self._build_runtime(session)
        await rt.save_session()
        await rt.emit(
            EventType.SESSION_CREATED,
            f"Session created for {session.repository_path}",
            status=session.status.value,
            config=session.config.model_dump(mode="json"),
        )
        logger.info("Session created", session_id=session.id, repository=session.repository_path)
        return session

    async def get_session(self, session_id: str) -> Session:
        return (await self._runtime(session_id)).session

    async def list_sessions(self) -> list[Session]:
        stored = await self.repository.list_sessions()
        return [
            self.runtimes[s.id].session if s.id in self.runtimes else s
            for s in stored
        ]

    # ==================================================================
    # Issues
    # ==================================================================

    @staticmethod
    def _accepts(config: SessionConfig, draft: IssueDraft) -> bool:
        if config.issue_types and not (
            draft.type in config.issue_types or draft.category.value in config.issue_types
        ):
            return False
        return not any(fnmatch(draft.file_path, pattern) for pattern in config.exclude_patterns)

    async def add_issues(self, session_id: str, drafts: Iterable[IssueDraft]) -> list[Issue]:
        """
        Append issues to a session's backlog. Allowed while running.

        Drafts excluded by ``issue_types`` or ``exclude_patterns`` are dropped.
        """
        rt = await self._runtime(session_id)
        if rt.session.is_terminal or (rt.stopping and rt.dispatch_task is not None):
            raise InvalidStateError(
                f"Cannot add issues to session {session_id} in status {rt.session.status.value}",
                details={"status": rt.session.status.value},
            )

        drafts = list(drafts)
        accepted = [d for d in drafts if self._accepts(rt.config, d)]
        sequence = rt.next_sequence()
        issues = []
        for offset, draft in enumerate(accepted):
            issue = Issue.from_draft(draft, rt.id, sequence + offset)
            rt.issues[issue.id] = issue
            rt.backlog.push(issue)
            issues.append(issue)

        rt.recount()
        await self.repository.save_issues(issues)
        await rt.save_session()
        await rt.emit(
            EventType.ISSUES_ADDED,
            f"{len(issues)} issues added ({len(drafts) - len(issues)} filtered)",
            count=len(issues),
            filtered=len(drafts) - len(issues),
            issue_ids=[issue.id for issue in issues],
        )
        await rt.refresh_metrics()
        rt.wake()
        return issues

    async def analyze(self, session_id: str) -> list[Issue]:
        """Run the configured analyzer and add what it finds."""
        rt = await self._runtime(session_id)
        if self.analyzer is None:
            raise ConfigurationError("No analyzer configured")
        await rt.emit(EventType.ANALYSIS_STARTED, f"Analyzing {rt.session.repository_path}")
        drafts = await self.analyzer.analyze(
            rt.session.repository_path,
            issue_types=rt.config.issue_types,
            exclude_patterns=rt.config.exclude_patterns,
        )
        await rt.emit(
            EventType.ANALYSIS_COMPLETED,
            f"Analyzer {self.analyzer.name} reported {len(drafts)} issues",
            count=len(drafts),
            analyzer=self.analyzer.name,
        )
        return await self.add_issues(session_id, drafts)

    async def list_issues(
        self,
        session_id: str,
        status: Optional[IssueStatus] = None,
    ) -> list[Issue]:
        rt = await self._runtime(session_id)
        issues = sorted(rt.issues.values(), key=lambda i: i.sequence)
        if status is not None:
            issues = [i for i in issues if i.status == status]
        return issues

    async def get_issue(self, session_id: str, issue_id: str) -> Issue:
        rt = await self._runtime(session_id)
        issue = rt.issues.get(issue_id)
        if issue is None:
            raise IssueNotFoundError(
                f"Issue {issue_id} not found in session {session_id}",
                details={"issue_id": issue_id},
            )
        return issue

    # ==================================================================
    # Lifecycle
    # ==================================================================

    async def start(self, session_id: str) -> Session:
        """
        Start a pending session.

        Creates (or reuses) the session branch, takes the initial
        checkpoint and launches the dispatch loop.
        """
        rt = await self._runtime(session_id)
        session = rt.session
        require_status(session, SessionStatus.PENDING, action="start")
        if rt.provider is None:
            raise ConfigurationError("No fix provider configured for this session")

        try:
            async with rt.lock.hold("session", "start"):
                if session.base_branch is None:
                    session.base_branch = await rt.vcs.current_branch()
                session.cleaning_branch = await rt.vcs.create_cleaning_branch(
                    session.id, session.base_branch
                )
        except NON_RECOVERABLE_ERRORS as exc:
            session.error_message = str(exc)
            await rt.publish(EventBuilder.error(rt.id, exc.kind, str(exc), recoverable=False))
            await rt.state.transition(SessionStatus.FAILED, f"Could not prepare branch: {exc}")
            raise

        await rt.state.transition(
            SessionStatus.RUNNING,
            "Session started",
            details={"branch": session.cleaning_branch, "base_branch": session.base_branch},
        )
        try:
            await rt.checkpointer.create("Initial checkpoint", trigger="initial")
        except NON_RECOVERABLE_ERRORS as exc:
            rt.halt(exc)

        self._launch_loop(rt)
        if rt.fault is None:
            rt.checkpointer.start_periodic()
        logger.info("Session started", session_id=rt.id, branch=session.cleaning_branch)
        return session

    async def signal(self, session_id: str, signal: ControlSignal) -> Session:
        """
        Record a pause, resume or stop request.

        The dispatch loop acts on it between cycles; this call never
        changes the status itself.
        """
        rt = await self._runtime(session_id)
        session = rt.session
        validate_signal(session, signal)
        if session.control_signal == ControlSignal.STOP:
            raise InvalidStateError(
                f"Session {session_id} is already stopping",
                details={"status": session.status.value, "signal": signal.value},
            )

        session.control_signal = signal
        await rt.save_session()
        await rt.emit(
            EventType.SESSION_SIGNAL,
            f"Signal {signal.value} received",
            signal=signal.value,
            status=session.status.value,
        )

        loop_alive = rt.dispatch_task is not None and not rt.dispatch_task.done()
        if not loop_alive and signal in (ControlSignal.RESUME, ControlSignal.STOP):
            # Session was recovered from storage without a dispatch loop
            self._launch_loop(rt)
            if signal == ControlSignal.RESUME:
                rt.checkpointer.start_periodic()
        rt.wake()
        logger.info("Signal recorded", session_id=rt.id, signal=signal.value)
        return session

    async def get_status(self, session_id: str) -> dict:
        rt = await self._runtime(session_id)
        return {
            "session": rt.session.to_dict(),
            "in_flight": sorted(rt.in_flight),
            "backlog": len(rt.backlog),
            "checkpoints": len(rt.checkpoints),
            "mutation_lock_held": rt.lock.locked,
            "last_event_sequence": self.bus.last_sequence(rt.id),
        }

    async def get_metrics(self, session_id: str) -> SessionMetrics:
        rt = await self._runtime(session_id)
        return rt.compute_metrics()

    # ==================================================================
    # Checkpoints
    # ==================================================================

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        rt = await self._runtime(session_id)
        return rt.checkpointer.list_checkpoints()

    async def restore_checkpoint(self, session_id: str, checkpoint_id: str) -> Checkpoint:
        rt = await self._runtime(session_id)
        checkpoint = await rt.checkpointer.restore(checkpoint_id)
        logger.info("Checkpoint restored", session_id=rt.id, tag=checkpoint.tag)
        return checkpoint

    async def delete_checkpoint(self, session_id: str, checkpoint_id: str) -> None:
        rt = await self._runtime(session_id)
        await rt.checkpointer.delete(checkpoint_id)

    # ==================================================================
    # Events and waiting
    # ==================================================================

    async def subscribe(self, session_id: str, since: Optional[int] = None) -> Subscription:
        await self._runtime(session_id)
        return await self.bus.subscribe(session_id, since=since)

    async def wait_for_status(
        self,
        session_id: str,
        *statuses: SessionStatus,
        timeout: Optional[float] = None,
    ) -> Session:
        rt = await self._runtime(session_id)
        return await rt.wait_for_status(*statuses, timeout=timeout)

    async def wait_until_finished(self, session_id: str, timeout: Optional[float] = None) -> Session:
        """Wait until the dispatch loop has exited."""
        rt = await self._runtime(session_id)
        if rt.dispatch_task is not None:
            await asyncio.wait_for(rt.finished.wait(), timeout=timeout)
        return rt.session

    async def shutdown(self) -> None:
        """Cancel every dispatch loop. Sessions left running recover as paused."""
        tasks = []
        for rt in self.runtimes.values():
            if rt.checkpointer is not None:
                await rt.checkpointer.stop_periodic()
            if rt.dispatch_task is not None and not rt.dispatch_task.done():
                rt.dispatch_task.cancel()
                tasks.append(rt.dispatch_task)
            for task in list(rt.in_flight.values()):
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for provider in {id(p): p for p in [self.provider, *self._providers.values()] if p}.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
        logger.info("Orchestrator shut down", sessions=len(self.runtimes))
