"""
Resolution Engine - Domain Records
==================================

Plain records for sessions, issues, attempts and checkpoints.

Records reference each other by id only. A session's issues live in an
id-keyed map owned by its runtime, checkpoints point at commit hashes.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from fixloop.core.config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ==========================================================================
# Enums
# ==========================================================================

class SessionStatus(str, Enum):
    """Lifecycle states of a resolution session."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    TIMEOUT = "timeout"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.STOPPED,
    SessionStatus.TIMEOUT,
})


class ControlSignal(str, Enum):
    """Operator requests observed by the scheduler between dispatch cycles."""
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


class IssueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    FAILED = "failed"
    SKIPPED = "skipped"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class IssueCategory(str, Enum):
    ERROR = "error"
    SECURITY = "security"
    PERFORMANCE = "performance"
    WARNING = "warning"
    COMPLEXITY = "complexity"
    MAINTAINABILITY = "maintainability"
    STYLE = "style"


class BatchCommitPolicy(str, Enum):
    """When accumulated fixes are committed if per-fix commits are disabled."""
    CHECKPOINT = "checkpoint"       # at every checkpoint and at session end
    SESSION_END = "session_end"     # once, when the session stops


class AttemptOutcome(str, Enum):
    RESOLVED = "resolved"
    VERIFICATION_FAILED = "verification_failed"
    INVALID_DIFF = "invalid_diff"
    DECLINED = "declined"
    PROVIDER_ERROR = "provider_error"
    ABORTED = "aborted"


# ==========================================================================
# Session configuration
# ==========================================================================

class SessionConfig(BaseModel):
    """Immutable per-session configuration.

    Defaults are taken from application settings at construction time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_minutes: float = Field(
        default_factory=lambda: settings.DEFAULT_TIMEOUT_MINUTES, gt=0
    )
    max_retries: int = Field(
        default_factory=lambda: settings.DEFAULT_MAX_RETRIES, ge=0, le=20
    )
    concurrency: int = Field(
        default_factory=lambda: settings.DEFAULT_CONCURRENCY, ge=1, le=32
    )
    checkpoint_interval_minutes: float = Field(
        default_factory=lambda: settings.DEFAULT_CHECKPOINT_INTERVAL_MINUTES, ge=0
    )
    commit_after_each_fix: bool = True
    run_verification_after_each_fix: bool = True
    test_command: Optional[str] = None
    lint_command: Optional[str] = None
    build_command: Optional[str] = None
    issue_types: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    batch_commit_policy: BatchCommitPolicy = BatchCommitPolicy.CHECKPOINT

    @property
    def has_verification_commands(self) -> bool:
        return bool(self.test_command or self.lint_command or self.build_command)


# ==========================================================================
# Session
# ==========================================================================

@dataclass
class Session:
    """One orchestration run bound to one repository and one isolated branch."""
    repository_path: str
    config: SessionConfig = field(default_factory=SessionConfig)
    id: str = field(default_factory=new_id)
    base_branch: Optional[str] = None
    cleaning_branch: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    control_signal: Optional[ControlSignal] = None
    current_issue_id: Optional[str] = None

    total_issues: int = 0
    resolved_issues: int = 0
    failed_issues: int = 0
    skipped_issues: int = 0

    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pending_issues(self) -> int:
        """Issues still pending or in progress."""
        return self.total_issues - self.resolved_issues - self.failed_issues - self.skipped_issues

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["config"] = self.config.model_dump(mode="json")
        data["pending_issues"] = self.pending_issues
        return data


# ==========================================================================
# Issues
# ==========================================================================

@dataclass
class IssueDraft:
    """An issue as reported by an analyzer, before it joins a session."""
    type: str
    message: str
    file_path: str
    line: int = 1
    severity: IssueSeverity = IssueSeverity.MEDIUM
    category: IssueCategory = IssueCategory.WARNING
    column: Optional[int] = None
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    source: str = "static"
    rule: Optional[str] = None
    code_snippet: Optional[str] = None
    suggested_fix: Optional[str] = None


@dataclass
class Issue:
    """One unit of work inside a session."""
    session_id: str
    type: str
    message: str
    file_path: str
    line: int = 1
    severity: IssueSeverity = IssueSeverity.MEDIUM
    category: IssueCategory = IssueCategory.WARNING
    column: Optional[int] = None
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    source: str = "static"
    rule: Optional[str] = None
    code_snippet: Optional[str] = None
    suggested_fix: Optional[str] = None

    id: str = field(default_factory=new_id)
    status: IssueStatus = IssueStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    commit_hash: Optional[str] = None
    sequence: int = 0

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_draft(cls, draft: IssueDraft, session_id: str, sequence: int) -> "Issue":
        return cls(session_id=session_id, sequence=sequence, **asdict(draft))

    @property
    def is_terminal(self) -> bool:
        return self.status in (IssueStatus.RESOLVED, IssueStatus.FAILED, IssueStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ==========================================================================
# Attempts
# ==========================================================================

@dataclass
class FixAttempt:
    """Pipeline-local record of one fix round. Never persisted."""
    number: int
    diff: Optional[str] = None
    explanation: Optional[str] = None
    verification: Optional[Any] = None
    feedback: Optional[str] = None
    diagnosis: Optional[str] = None


@dataclass
class AttemptRecord:
    """Ledger entry kept per attempt for metrics. Holds no diff text."""
    session_id: str
    issue_id: str
    attempt: int
    outcome: AttemptOutcome
    id: str = field(default_factory=new_id)
    verification_status: Optional[str] = None
    duration_ms: int = 0
    tokens_used: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    files: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


# ==========================================================================
# Checkpoints
# ==========================================================================

@dataclass
class Checkpoint:
    """Tagged snapshot of the session branch plus progress and metrics."""
    session_id: str
    commit_hash: str
    tag: str
    branch: Optional[str]
    description: str
    issue_progress: dict[str, int] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
