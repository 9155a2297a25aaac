"""
Resolution Engine - Checkpoints
===============================

Tagged snapshots of the session branch, taken periodically from session
start, before stop/timeout, and at the start and end of a session.

Checkpoints are only ever taken at HEAD and HEAD must descend from the
previous checkpoint, so each checkpoint's commit is an ancestor of the
next one. Restoring removes the checkpoints taken after the target.
"""

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Optional

from fixloop.core.engine.domain import (
    BatchCommitPolicy,
    Checkpoint,
    IssueStatus,
    SessionStatus,
    utcnow,
)
from fixloop.core.engine.events import EventType, Severity
from fixloop.core.engine.mutation_lock import run_to_completion
from fixloop.core.engine.state_machine import require_status
from fixloop.core.errors import (
    NON_RECOVERABLE_ERRORS,
    CheckpointNotFoundError,
    UncommittedChangesError,
    WorkingTreeError,
)

if TYPE_CHECKING:
    from fixloop.core.engine.runtime import SessionRuntime

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Creates, restores and deletes checkpoints for one session."""

    def __init__(self, runtime: "SessionRuntime"):
        self.runtime = runtime
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_checkpoints(self) -> list[Checkpoint]:
        return sorted(self.runtime.checkpoints, key=lambda c: c.created_at)

    def get(self, checkpoint_id: str) -> Checkpoint:
        for checkpoint in self.runtime.checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        raise CheckpointNotFoundError(
            f"Checkpoint {checkpoint_id} not found in session {self.runtime.id}",
            details={"checkpoint_id": checkpoint_id},
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        description: str,
        trigger: str = "manual",
        final: bool = False,
    ) -> Optional[Checkpoint]:
        """
        Tag HEAD and record progress and metrics.

        Returns None when the session has already halted.

        Raises:
            WorkingTreeError: HEAD is off the session lineage
            VcsError: tagging or committing failed
        """
        rt = self.runtime
        async with rt.lock.hold("checkpoint", trigger):
            checkpoint = await run_to_completion(self._create_locked(description, trigger, final))
        if checkpoint is not None:
            await rt.refresh_metrics()
        return checkpoint

    async def _create_locked(self, description: str, trigger: str, final: bool) -> Optional[Checkpoint]:
        rt = self.runtime
        if rt.halted:
            return None

        if rt.uncommitted_files and (
            final or rt.config.batch_commit_policy == BatchCommitPolicy.CHECKPOINT
        ):
            await self.commit_batch()

        head = await rt.vcs.head()
        branch = await rt.vcs.current_branch()
        expected = rt.session.cleaning_branch
        if expected and branch != expected:
            raise WorkingTreeError(
                f"Working tree is on {branch or '(detached)'}, expected {expected}",
                details={"branch": branch, "expected": expected},
            )
        previous = rt.checkpoints[-1] if rt.checkpoints else None
        if previous is not None and not await rt.vcs.is_ancestor(previous.commit_hash, head):
            raise WorkingTreeError(
                f"HEAD {head[:10]} does not descend from checkpoint {previous.tag}",
                details={"head": head, "previous": previous.commit_hash},
            )

        tag = await rt.vcs.create_checkpoint(f"{rt.id[:8]}-{utcnow().strftime('%Y%m%d%H%M%S%f')}")
        metrics = rt.compute_metrics()
        checkpoint = Checkpoint(
            session_id=rt.id,
            commit_hash=head,
            tag=tag,
            branch=branch,
            description=description,
            issue_progress=metrics.issue_progress,
            metrics=metrics.to_dict(),
        )
        rt.checkpoints.append(checkpoint)
        await rt.repository.save_checkpoint(checkpoint)
        await rt.emit(
            EventType.CHECKPOINT_CREATED,
            f"{description} ({tag})",
            checkpoint_id=checkpoint.id,
            tag=tag,
            commit_hash=head,
            trigger=trigger,
            issue_progress=checkpoint.issue_progress,
        )
        logger.info(f"Checkpoint {tag} at {head[:10]} for session {rt.id} ({trigger})")
        return checkpoint

    async def commit_batch(self) -> Optional[str]:
        """Commit fixes applied without per-fix commits. Caller holds the lock."""
        rt = self.runtime
        if not rt.uncommitted_files:
            return None
        issue_ids = list(rt.uncommitted_issue_ids)
        files = sorted(rt.uncommitted_files)
        await rt.vcs.stage(files)
        message = "\n".join([
            f"chore(fixloop): apply {len(issue_ids)} fixes",
            "",
            *(f"Issue ID: {issue_id}" for issue_id in issue_ids),
        ])
        commit_hash = await rt.vcs.commit(message)
        rt.lock.record_commit(commit_hash)
        rt.uncommitted_issue_ids.clear()
        rt.uncommitted_files.clear()
        for issue_id in issue_ids:
            issue = rt.issues.get(issue_id)
            if issue is not None and issue.status == IssueStatus.RESOLVED:
                issue.commit_hash = commit_hash
                await rt.save_issue(issue)
        logger.info(f"Committed {len(issue_ids)} batched fixes as {commit_hash[:10]}")
        return commit_hash

    # ------------------------------------------------------------------
    # Periodic
    # ------------------------------------------------------------------

    def start_periodic(self) -> None:
        interval = self.runtime.config.checkpoint_interval_minutes
        if interval <= 0 or (self._task is not None and not self._task.done()):
            return
        self._task = asyncio.create_task(
            self._periodic(interval * 60), name=f"fixloop-checkpoints-{self.runtime.id}"
        )

    async def stop_periodic(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _periodic(self, interval: float) -> None:
        rt = self.runtime
        fired = 0
        while not rt.stopping:
            started = rt.session.started_at or utcnow()
            elapsed = (utcnow() - started).total_seconds()
            # Skip intervals that were missed (e.g. after a restart)
            fired = max(fired + 1, int(elapsed // interval) + 1)
            delay = (started + timedelta(seconds=interval * fired) - utcnow()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            if rt.stopping or rt.session.is_terminal:
                return
            if rt.session.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
                continue
            try:
                await self.create(f"Periodic checkpoint {fired}", trigger="interval")
            except NON_RECOVERABLE_ERRORS as exc:
                rt.halt(exc)
                return

    # ------------------------------------------------------------------
    # Restore / delete
    # ------------------------------------------------------------------

    async def restore(self, checkpoint_id: str) -> Checkpoint:
        """
        Reset the session branch to a checkpoint.

        Issues resolved after the checkpoint return to pending with their
        retry count cleared. Later checkpoints are deleted.

        Raises:
            InvalidStateError: session is not paused or stopped
            UncommittedChangesError: working tree is dirty
        """
        rt = self.runtime
        checkpoint = self.get(checkpoint_id)
        require_status(rt.session, SessionStatus.PAUSED, SessionStatus.STOPPED, action="restore")
        try:
            async with rt.lock.hold("checkpoint", "restore"):
                await run_to_completion(self._restore_locked(checkpoint))
        except NON_RECOVERABLE_ERRORS as exc:
            if not rt.session.is_terminal:
                rt.halt(exc)
            raise
        await rt.refresh_metrics()
        return checkpoint

    async def _restore_locked(self, checkpoint: Checkpoint) -> None:
        rt = self.runtime
        if rt.uncommitted_files or await rt.vcs.has_uncommitted_changes():
            raise UncommittedChangesError(
                "Working tree has uncommitted changes; commit or discard them before restoring",
                details={"checkpoint_id": checkpoint.id},
            )
        await rt.vcs.restore_checkpoint(checkpoint.tag)

        reset = []
        for issue in sorted(rt.issues.values(), key=lambda i: i.sequence):
            if (
                issue.status == IssueStatus.RESOLVED
                and issue.resolved_at is not None
                and issue.resolved_at > checkpoint.created_at
            ):
                issue.status = IssueStatus.PENDING
                issue.retry_count = 0
                issue.commit_hash = None
                issue.resolved_at = None
                issue.started_at = None
                issue.last_error = None
                reset.append(issue)
        for issue in reset:
            await rt.save_issue(issue)
            if not rt.session.is_terminal:
                rt.backlog.push(issue)

        later = [c for c in rt.checkpoints if c.created_at > checkpoint.created_at]
        for stale in later:
            await rt.vcs.delete_checkpoint(stale.tag)
            await rt.repository.delete_checkpoint(stale.id)
            rt.checkpoints.remove(stale)

        await rt.emit(
            EventType.CHECKPOINT_RESTORED,
            f"Restored checkpoint {checkpoint.tag}; {len(reset)} issues back to pending",
            severity=Severity.WARNING,
            checkpoint_id=checkpoint.id,
            tag=checkpoint.tag,
            commit_hash=checkpoint.commit_hash,
            reset_issue_ids=[issue.id for issue in reset],
            removed_checkpoint_ids=[c.id for c in later],
        )
        logger.info(f"Session {rt.id} restored to {checkpoint.tag}, reset {len(reset)} issues")

    async def delete(self, checkpoint_id: str) -> None:
        rt = self.runtime
        checkpoint = self.get(checkpoint_id)
        async with rt.lock.hold("checkpoint", "delete"):
            await rt.vcs.delete_checkpoint(checkpoint.tag)
            await rt.repository.delete_checkpoint(checkpoint.id)
            rt.checkpoints.remove(checkpoint)
            await rt.emit(
                EventType.CHECKPOINT_DELETED,
                f"Deleted checkpoint {checkpoint.tag}",
                checkpoint_id=checkpoint.id,
                tag=checkpoint.tag,
            )
