"""
Fixloop - Database Models
=========================

SQLAlchemy rows for sessions, issues, checkpoints, the attempt ledger and
metrics snapshots. The engine works on plain records; these rows are only
touched by ``fixloop.core.persistence``.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from fixloop.core.database import Base
from fixloop.core.engine.domain import (
    AttemptOutcome,
    ControlSignal,
    IssueCategory,
    IssueSeverity,
    IssueStatus,
    SessionStatus,
)


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class FixSession(Base, TimestampMixin):
    """
    One resolution session bound to a repository and its session branch.
    """

    __tablename__ = "fix_sessions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    repository_path: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
    )
    base_branch: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    cleaning_branch: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # State
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus),
        default=SessionStatus.PENDING,
        nullable=False,
        index=True,
    )
    control_signal: Mapped[Optional[ControlSignal]] = mapped_column(
        Enum(ControlSignal),
        nullable=True,
    )
    current_issue_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        nullable=True,
    )
    config: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
    )

    # Counters (recomputed from issues on every change)
    total_issues: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resolved_issues: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_issues: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_issues: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    paused_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<FixSession {self.id[:8]} [{self.status.value}]>"


class FixIssue(Base, TimestampMixin):
    """A detected issue and its resolution state."""

    __tablename__ = "fix_issues"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("fix_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )  # Creation order, used as a priority tie-break

    # What and where
    type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    category: Mapped[IssueCategory] = mapped_column(
        Enum(IssueCategory),
        nullable=False,
    )
    severity: Mapped[IssueSeverity] = mapped_column(
        Enum(IssueSeverity),
        nullable=False,
        index=True,
    )
    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    file_path: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
    )
    line: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    column: Mapped[Optional[int]] = mapped_column("column_number", Integer, nullable=True)
    end_line: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    end_column: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    source: Mapped[str] = mapped_column(
        String(50),
        default="static",
        nullable=False,
    )  # static, lint, test, ...
    rule: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    code_snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suggested_fix: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Resolution
    status: Mapped[IssueStatus] = mapped_column(
        Enum(IssueStatus),
        default=IssueStatus.PENDING,
        nullable=False,
        index=True,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    commit_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<FixIssue {self.id[:8]} {self.file_path}:{self.line} [{self.status.value}]>"


class FixCheckpoint(Base, TimestampMixin):
    """Tagged snapshot of the session branch."""

    __tablename__ = "fix_checkpoints"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("fix_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    commit_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    tag: Mapped[str] = mapped_column(String(255), nullable=False)
    branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    issue_progress: Mapped[dict] = mapped_column(JSON, nullable=False)
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"<FixCheckpoint {self.tag} @ {self.commit_hash[:10]}>"


class FixAttemptRecord(Base, TimestampMixin):
    """One fix attempt. No diff text is kept."""

    __tablename__ = "fix_attempts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("fix_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    issue_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("fix_issues.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    outcome: Mapped[AttemptOutcome] = mapped_column(
        Enum(AttemptOutcome),
        nullable=False,
    )
    verification_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lines_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lines_removed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    files: Mapped[list] = mapped_column(JSON, nullable=False)


class MetricsSnapshot(Base, TimestampMixin):
    """Metrics as recomputed after a state change. Latest row wins."""

    __tablename__ = "metrics_snapshots"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("fix_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    metrics: Mapped[dict] = mapped_column(JSON, nullable=False)
