"""
Resolution Engine - Issue Scheduler
===================================

Orders the pending backlog and drives dispatch for one session.

The dispatch loop is a single cooperative task. It never awaits a
pipeline directly: pipelines run as their own tasks and wake the loop when
they finish. The loop only sleeps until something changes (a free slot,
new backlog, a control signal) or the next deadline check is due.
"""

import asyncio
import heapq
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from fixloop.core.config import settings
from fixloop.core.engine.domain import (
    ControlSignal,
    Issue,
    IssueCategory,
    IssueSeverity,
    IssueStatus,
    SessionStatus,
    utcnow,
)
from fixloop.core.engine.events import EventBuilder, EventType
from fixloop.core.errors import FixloopError, NON_RECOVERABLE_ERRORS

if TYPE_CHECKING:
    from fixloop.core.engine.checkpoints import CheckpointManager
    from fixloop.core.engine.pipeline import FixPipeline
    from fixloop.core.engine.runtime import SessionRuntime

logger = logging.getLogger(__name__)


# ==========================================================================
# Priority
# ==========================================================================

SEVERITY_WEIGHTS: dict[str, int] = {
    IssueSeverity.CRITICAL.value: 100,
    IssueSeverity.HIGH.value: 75,
    IssueSeverity.MEDIUM.value: 50,
    IssueSeverity.LOW.value: 25,
    IssueSeverity.INFO.value: 10,
}

CATEGORY_WEIGHTS: dict[str, int] = {
    IssueCategory.ERROR.value: 9,
    IssueCategory.SECURITY.value: 8,
    IssueCategory.PERFORMANCE.value: 6,
    IssueCategory.WARNING.value: 5,
    IssueCategory.COMPLEXITY.value: 4,
    IssueCategory.MAINTAINABILITY.value: 3,
    IssueCategory.STYLE.value: 1,
}


def priority_score(issue: Issue) -> int:
    severity = issue.severity.value if hasattr(issue.severity, "value") else str(issue.severity)
    category = issue.category.value if hasattr(issue.category, "value") else str(issue.category)
    return SEVERITY_WEIGHTS.get(severity, 0) + CATEGORY_WEIGHTS.get(category, 0)


def priority_key(issue: Issue) -> tuple[int, int, str]:
    """Sort key: higher score first, then creation order, then file path."""
    return (-priority_score(issue), issue.sequence, issue.file_path)


class IssueBacklog:
    """Priority queue of pending issue ids. Only the scheduler touches it."""

    def __init__(self) -> None:
        self._heap: list[tuple[tuple[int, int, str], str]] = []
        self._queued: set[str] = set()

    def __len__(self) -> int:
        return len(self._queued)

    def __contains__(self, issue_id: str) -> bool:
        return issue_id in self._queued

    def push(self, issue: Issue) -> None:
        if issue.id in self._queued:
            return
        self._queued.add(issue.id)
        heapq.heappush(self._heap, (priority_key(issue), issue.id))

    def pop(self) -> Optional[str]:
        while self._heap:
            _, issue_id = heapq.heappop(self._heap)
            if issue_id in self._queued:
                self._queued.discard(issue_id)
                return issue_id
        return None

    def discard(self, issue_id: str) -> None:
        # Lazy removal: the heap entry is skipped on pop
        self._queued.discard(issue_id)

    def clear(self) -> None:
        self._heap.clear()
        self._queued.clear()

    def ordered(self) -> list[str]:
        return [issue_id for _, issue_id in sorted(self._heap) if issue_id in self._queued]


# ==========================================================================
# Dispatch loop
# ==========================================================================

class IssueScheduler:
    """
    Dispatch loop for one session.

    Launches up to ``config.concurrency`` pipelines, observes control
    signals and the session deadline, and drives the terminal transitions
    (paused, stopped, completed, timeout, failed).
    """

    def __init__(
        self,
        runtime: "SessionRuntime",
        pipeline: "FixPipeline",
        checkpoints: "CheckpointManager",
    ):
        self.runtime = runtime
        self.pipeline = pipeline
        self.checkpoints = checkpoints

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def deadline(self):
        session = self.runtime.session
        if session.started_at is None:
            return None
        return session.started_at + timedelta(minutes=session.config.timeout_minutes)

    def _seconds_to_deadline(self) -> Optional[float]:
        deadline = self.deadline
        if deadline is None:
            return None
        return (deadline - utcnow()).total_seconds()

    def _launch(self, issue: Issue) -> None:
        rt = self.runtime
        rt.session.current_issue_id = issue.id
        task = asyncio.create_task(
            self.pipeline.process(issue), name=f"fixloop-issue-{issue.id}"
        )
        rt.in_flight[issue.id] = task
        task.add_done_callback(lambda t, issue_id=issue.id: self._on_pipeline_done(issue_id, t))
        logger.debug(f"Dispatched issue {issue.id} ({issue.severity.value}) for session {rt.id}")

    def _on_pipeline_done(self, issue_id: str, task: asyncio.Task) -> None:
        rt = self.runtime
        rt.in_flight.pop(issue_id, None)
        if not task.cancelled():
            exc = task.exception()
            if exc is not None:
                if isinstance(exc, NON_RECOVERABLE_ERRORS):
                    rt.halt(exc)
                else:
                    # Pipelines handle per-issue errors themselves, anything
                    # else is a bug that should not take the session down
                    logger.error(f"Pipeline for issue {issue_id} crashed: {exc!r}")
                    rt.crashed_issue_ids.add(issue_id)
        issue = rt.issues.get(issue_id)
        if issue is not None and issue.status == IssueStatus.PENDING and not rt.stopping:
            # Released issues go back to the backlog
            rt.backlog.push(issue)
        rt.wake()

    async def _wait(self, timeout: Optional[float]) -> None:
        rt = self.runtime
        try:
            await asyncio.wait_for(rt.wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def _wait_timeout(self) -> float:
        tick = settings.SCHEDULER_TICK_SECONDS
        remaining = self._seconds_to_deadline()
        if remaining is not None:
            tick = min(tick, max(remaining, 0.0))
        return tick

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        rt = self.runtime
        logger.info(f"Dispatch loop started for session {rt.id}")
        try:
            while True:
                rt.wakeup.clear()

                if rt.fault is not None:
                    await self._fail()
                    return

                await self._release_crashed()

                remaining = self._seconds_to_deadline()
                if remaining is not None and remaining <= 0:
                    await self._timeout()
                    return

                signal = rt.session.control_signal
                status = rt.session.status

                if signal == ControlSignal.STOP:
                    rt.stopping = True
                    if not rt.in_flight:
                        await self._finish(SessionStatus.STOPPED, "Stopped by operator")
                        return

                elif signal == ControlSignal.PAUSE:
                    if not rt.in_flight and status == SessionStatus.RUNNING:
                        await rt.state.transition(SessionStatus.PAUSED, "Paused by operator")
                        await rt.refresh_metrics()

                elif signal == ControlSignal.RESUME:
                    rt.session.control_signal = None
                    if status == SessionStatus.PAUSED:
                        await rt.state.transition(SessionStatus.RUNNING, "Resumed by operator")
                    continue

                elif status == SessionStatus.RUNNING:
                    self._dispatch()
                    if not rt.in_flight and len(rt.backlog) == 0:
                        await self._finish(SessionStatus.COMPLETED, "All issues processed")
                        return

                await self._wait(self._wait_timeout())
        except asyncio.CancelledError:
            logger.info(f"Dispatch loop for session {rt.id} cancelled")
            raise
        except NON_RECOVERABLE_ERRORS as exc:
            rt.halt(exc)
            await self._fail()
        finally:
            rt.stopping = True
            rt.finished.set()

    def _dispatch(self) -> None:
        rt = self.runtime
        while len(rt.in_flight) < rt.config.concurrency:
            issue_id = rt.backlog.pop()
            if issue_id is None:
                return
            issue = rt.issues.get(issue_id)
            if issue is None or issue.status != IssueStatus.PENDING:
                continue
            self._launch(issue)

    async def _release_crashed(self) -> None:
        """Crashed pipelines leave their issue failed instead of stuck in progress."""
        rt = self.runtime
        while rt.crashed_issue_ids:
            issue = rt.issues.get(rt.crashed_issue_ids.pop())
            if issue is None or issue.is_terminal:
                continue
            issue.status = IssueStatus.FAILED
            issue.last_error = issue.last_error or "Pipeline crashed"
            await rt.save_issue(issue)
            await rt.publish(EventBuilder.issue_terminal(
                rt.id, issue.id, EventType.ISSUE_FAILED,
                f"Issue {issue.id} failed: pipeline crashed", error_kind="internal",
            ))

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _drain(self, grace: Optional[float] = None) -> None:
        """Wait for in-flight pipelines, cancelling the rest after ``grace``."""
        rt = self.runtime
        tasks = list(rt.in_flight.values())
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=grace)
        if pending:
            logger.warning(f"Cancelling {len(pending)} pipelines for session {rt.id}")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _finish(self, status: SessionStatus, message: str) -> None:
        rt = self.runtime
        rt.stopping = True
        await self.checkpoints.stop_periodic()
        description = {
            SessionStatus.COMPLETED: "Final checkpoint",
            SessionStatus.STOPPED: "Checkpoint before stop",
            SessionStatus.TIMEOUT: "Checkpoint before timeout",
        }[status]
        await self.checkpoints.create(description, trigger=status.value, final=True)
        if rt.fault is not None:
            await self._fail()
            return
        summary = rt.summary()
        await rt.state.transition(status, message, details={"summary": summary})
        await rt.refresh_metrics()

    async def _timeout(self) -> None:
        rt = self.runtime
        rt.stopping = True
        logger.warning(f"Session {rt.id} reached its deadline")
        await self._drain(grace=settings.TIMEOUT_GRACE_SECONDS)
        await self._finish(SessionStatus.TIMEOUT, "Session timed out")

    async def _fail(self) -> None:
        rt = self.runtime
        rt.stopping = True
        fault = rt.fault
        kind = fault.kind if isinstance(fault, FixloopError) else "internal"
        message = str(fault) if fault else "Unknown failure"

        # Let pipelines that are already past the lock finish their revert
        await self._drain(grace=settings.TIMEOUT_GRACE_SECONDS)
        await self.checkpoints.stop_periodic()

        # A pipeline that raised leaves its issue in progress
        for issue in list(rt.issues.values()):
            if issue.status == IssueStatus.IN_PROGRESS:
                issue.status = IssueStatus.PENDING
                issue.started_at = None
                await rt.save_issue(issue)

        rt.session.error_message = message
        await rt.publish(EventBuilder.error(rt.id, kind, message, recoverable=False))
        if not rt.session.is_terminal:
            await rt.state.transition(
                SessionStatus.FAILED,
                f"Non-recoverable error: {message}",
                details={"error_kind": kind},
            )
        await rt.refresh_metrics()
