"""
Fixloop - SQL Persistence
=========================

``OrchestratorRepository`` backed by async SQLAlchemy.

Writes are serialized with an asyncio lock so that concurrent pipelines
never interleave two transactions on a single-writer database like SQLite.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fixloop.core.engine.domain import (
    AttemptRecord,
    Checkpoint,
    Issue,
    Session,
    SessionConfig,
)
from fixloop.core.engine.metrics import SessionMetrics
from fixloop.core.engine.repository import OrchestratorRepository
from fixloop.core.models import (
    FixAttemptRecord,
    FixCheckpoint,
    FixIssue,
    FixSession,
    MetricsSnapshot,
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every engine timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==========================================================================
# Row <-> record mapping
# ==========================================================================

def session_to_row(session: Session) -> FixSession:
    return FixSession(
        id=session.id,
        repository_path=session.repository_path,
        base_branch=session.base_branch,
        cleaning_branch=session.cleaning_branch,
        status=session.status,
        control_signal=session.control_signal,
        current_issue_id=session.current_issue_id,
        config=session.config.model_dump(mode="json"),
        total_issues=session.total_issues,
        resolved_issues=session.resolved_issues,
        failed_issues=session.failed_issues,
        skipped_issues=session.skipped_issues,
        error_message=session.error_message,
        started_at=session.started_at,
        paused_at=session.paused_at,
        completed_at=session.completed_at,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


def row_to_session(row: FixSession) -> Session:
    return Session(
        id=row.id,
        repository_path=row.repository_path,
        config=SessionConfig.model_validate(row.config),
        base_branch=row.base_branch,
        cleaning_branch=row.cleaning_branch,
        status=row.status,
        control_signal=row.control_signal,
        current_issue_id=row.current_issue_id,
        total_issues=row.total_issues,
        resolved_issues=row.resolved_issues,
        failed_issues=row.failed_issues,
        skipped_issues=row.skipped_issues,
        error_message=row.error_message,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        paused_at=_aware(row.paused_at),
        completed_at=_aware(row.completed_at),
        updated_at=_aware(row.updated_at),
    )


def issue_to_row(issue: Issue) -> FixIssue:
    return FixIssue(
        id=issue.id,
        session_id=issue.session_id,
        sequence=issue.sequence,
        type=issue.type,
        category=issue.category,
        severity=issue.severity,
        message=issue.message,
        file_path=issue.file_path,
        line=issue.line,
        column=issue.column,
        end_line=issue.end_line,
        end_column=issue.end_column,
        source=issue.source,
        rule=issue.rule,
        code_snippet=issue.code_snippet,
        suggested_fix=issue.suggested_fix,
        status=issue.status,
        retry_count=issue.retry_count,
        last_error=issue.last_error,
        commit_hash=issue.commit_hash,
        started_at=issue.started_at,
        resolved_at=issue.resolved_at,
        created_at=issue.created_at,
        updated_at=issue.updated_at,
    )


def row_to_issue(row: FixIssue) -> Issue:
    return Issue(
        id=row.id,
        session_id=row.session_id,
        sequence=row.sequence,
        type=row.type,
        category=row.category,
        severity=row.severity,
        message=row.message,
        file_path=row.file_path,
        line=row.line,
        column=row.column,
        end_line=row.end_line,
        end_column=row.end_column,
        source=row.source,
        rule=row.rule,
        code_snippet=row.code_snippet,
        suggested_fix=row.suggested_fix,
        status=row.status,
        retry_count=row.retry_count,
        last_error=row.last_error,
        commit_hash=row.commit_hash,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        resolved_at=_aware(row.resolved_at),
        updated_at=_aware(row.updated_at),
    )


def row_to_checkpoint(row: FixCheckpoint) -> Checkpoint:
    return Checkpoint(
        id=row.id,
        session_id=row.session_id,
        commit_hash=row.commit_hash,
        tag=row.tag,
        branch=row.branch,
        description=row.description,
        issue_progress=dict(row.issue_progress or {}),
        metrics=dict(row.metrics or {}),
        created_at=_aware(row.created_at),
    )


def row_to_attempt(row: FixAttemptRecord) -> AttemptRecord:
    return AttemptRecord(
        id=row.id,
        session_id=row.session_id,
        issue_id=row.issue_id,
        attempt=row.attempt,
        outcome=row.outcome,
        verification_status=row.verification_status,
        duration_ms=row.duration_ms,
        tokens_used=row.tokens_used,
        lines_added=row.lines_added,
        lines_removed=row.lines_removed,
        files=list(row.files or []),
        created_at=_aware(row.created_at),
    )


# ==========================================================================
# Repository
# ==========================================================================

class SqlAlchemyRepository(OrchestratorRepository):
    """Repository over an ``async_sessionmaker``."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from fixloop.core.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self._write_lock = asyncio.Lock()

    async def _merge(self, *rows) -> None:
        async with self._write_lock:
            async with self.session_factory() as db:
                for row in rows:
                    await db.merge(row)
                await db.commit()

    # Sessions ---------------------------------------------------------

    async def save_session(self, session: Session) -> None:
        await self._merge(session_to_row(session))

    async def load_session(self, session_id: str) -> Optional[Session]:
        async with self.session_factory() as db:
            row = await db.get(FixSession, session_id)
            return row_to_session(row) if row else None

    async def list_sessions(self) -> list[Session]:
        async with self.session_factory() as db:
            result = await db.execute(select(FixSession).order_by(FixSession.created_at.desc()))
            return [row_to_session(row) for row in result.scalars()]

    # Issues -----------------------------------------------------------

    async def save_issue(self, issue: Issue) -> None:
        await self._merge(issue_to_row(issue))

    async def save_issues(self, issues) -> None:
        rows = [issue_to_row(issue) for issue in issues]
        if rows:
            await self._merge(*rows)

    async def load_issues(self, session_id: str) -> list[Issue]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(FixIssue)
                .where(FixIssue.session_id == session_id)
                .order_by(FixIssue.sequence)
            )
            return [row_to_issue(row) for row in result.scalars()]

    # Checkpoints ------------------------------------------------------

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        await self._merge(FixCheckpoint(
            id=checkpoint.id,
            session_id=checkpoint.session_id,
            commit_hash=checkpoint.commit_hash,
            tag=checkpoint.tag,
            branch=checkpoint.branch,
            description=checkpoint.description,
            issue_progress=checkpoint.issue_progress,
            metrics=checkpoint.metrics,
            created_at=checkpoint.created_at,
            updated_at=checkpoint.created_at,
        ))

    async def load_checkpoints(self, session_id: str) -> list[Checkpoint]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(FixCheckpoint)
                .where(FixCheckpoint.session_id == session_id)
                .order_by(FixCheckpoint.created_at)
            )
            return [row_to_checkpoint(row) for row in result.scalars()]

    async def delete_checkpoint(self, checkpoint_id: str) -> None:
        async with self._write_lock:
            async with self.session_factory() as db:
                await db.execute(delete(FixCheckpoint).where(FixCheckpoint.id == checkpoint_id))
                await db.commit()

    # Attempts ---------------------------------------------------------

    async def save_attempt(self, record: AttemptRecord) -> None:
        await self._merge(FixAttemptRecord(
            id=record.id,
            session_id=record.session_id,
            issue_id=record.issue_id,
            attempt=record.attempt,
            outcome=record.outcome,
            verification_status=record.verification_status,
            duration_ms=record.duration_ms,
            tokens_used=record.tokens_used,
            lines_added=record.lines_added,
            lines_removed=record.lines_removed,
            files=list(record.files),
            created_at=record.created_at,
            updated_at=record.created_at,
        ))

    async def load_attempts(self, session_id: str) -> list[AttemptRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(FixAttemptRecord)
                .where(FixAttemptRecord.session_id == session_id)
                .order_by(FixAttemptRecord.created_at)
            )
            return [row_to_attempt(row) for row in result.scalars()]

    # Metrics ----------------------------------------------------------

    async def save_metrics(self, session_id: str, metrics: SessionMetrics) -> None:
        async with self._write_lock:
            async with self.session_factory() as db:
                db.add(MetricsSnapshot(session_id=session_id, metrics=metrics.to_dict()))
                await db.commit()

    async def load_metrics(self, session_id: str) -> Optional[SessionMetrics]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MetricsSnapshot)
                .where(MetricsSnapshot.session_id == session_id)
                .order_by(MetricsSnapshot.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return SessionMetrics(**row.metrics) if row else None
