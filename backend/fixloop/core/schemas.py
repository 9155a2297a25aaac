"""
Fixloop - Pydantic Schemas
==========================

Request and response schemas for the HTTP API.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from fixloop.core.engine.domain import (
    ControlSignal,
    IssueCategory,
    IssueDraft,
    IssueSeverity,
    IssueStatus,
    SessionConfig,
    SessionStatus,
)


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# ==========================================================================
# Sessions
# ==========================================================================

class SessionCreate(BaseSchema):
    """Schema for creating a resolution session."""

    repository_path: str = Field(min_length=1, max_length=1024)
    base_branch: Optional[str] = Field(default=None, max_length=255)
    config: SessionConfig = Field(default_factory=SessionConfig)


class SessionResponse(BaseSchema):
    """Session state in responses."""

    id: str
    repository_path: str
    base_branch: Optional[str] = None
    cleaning_branch: Optional[str] = None
    status: SessionStatus
    control_signal: Optional[ControlSignal] = None
    current_issue_id: Optional[str] = None
    config: SessionConfig

    total_issues: int
    resolved_issues: int
    failed_issues: int
    skipped_issues: int
    pending_issues: int

    error_message: Optional[str] = None

    created_at: datetime
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime


class SessionStatusResponse(BaseSchema):
    """Session plus live dispatch state."""

    session: SessionResponse
    in_flight: list[str]
    backlog: int
    checkpoints: int
    mutation_lock_held: bool
    last_event_sequence: int


class SignalRequest(BaseSchema):
    """Operator control signal."""

    signal: ControlSignal


# ==========================================================================
# Issues
# ==========================================================================

class IssueCreate(BaseSchema):
    """An issue reported by an external analyzer."""

    type: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1)
    file_path: str = Field(min_length=1, max_length=1024)
    line: int = Field(default=1, ge=1)
    severity: IssueSeverity = IssueSeverity.MEDIUM
    category: IssueCategory = IssueCategory.WARNING
    column: Optional[int] = Field(default=None, ge=0)
    end_line: Optional[int] = Field(default=None, ge=1)
    end_column: Optional[int] = Field(default=None, ge=0)
    source: str = Field(default="static", max_length=50)
    rule: Optional[str] = Field(default=None, max_length=255)
    code_snippet: Optional[str] = None
    suggested_fix: Optional[str] = None

    def to_draft(self) -> IssueDraft:
        return IssueDraft(**self.model_dump())


class IssueBatchCreate(BaseSchema):
    issues: list[IssueCreate] = Field(min_length=1)


class IssueResponse(BaseSchema):
    """Issue and its resolution state."""

    id: str
    session_id: str
    sequence: int
    type: str
    category: IssueCategory
    severity: IssueSeverity
    message: str
    file_path: str
    line: int
    column: Optional[int] = None
    end_line: Optional[int] = None
    end_column: Optional[int] = None
    source: str
    rule: Optional[str] = None
    code_snippet: Optional[str] = None
    suggested_fix: Optional[str] = None

    status: IssueStatus
    retry_count: int
    last_error: Optional[str] = None
    commit_hash: Optional[str] = None

    created_at: datetime
    started_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    updated_at: datetime


# ==========================================================================
# Checkpoints, metrics, events
# ==========================================================================

class CheckpointResponse(BaseSchema):
    id: str
    session_id: str
    commit_hash: str
    tag: str
    branch: Optional[str] = None
    description: str
    issue_progress: dict[str, int]
    metrics: dict[str, Any]
    created_at: datetime


class MetricsResponse(BaseSchema):
    """Recomputed session metrics."""

    session_id: str
    total_issues: int
    pending_issues: int
    in_progress_issues: int
    resolved_issues: int
    failed_issues: int
    skipped_issues: int
    elapsed_ms: int
    mean_fix_duration_ms: Optional[int] = None
    verification_runs: int
    verification_passed: int
    verification_failed: int
    total_retries: int
    successful_retries: int
    lines_added: int
    lines_removed: int
    files_modified: int
    commits: int
    provider_requests: int
    provider_tokens: int
    provider_cost_usd: float


class EventResponse(BaseSchema):
    id: str
    session_id: str
    event_type: str
    category: str
    sequence: int
    timestamp: str
    severity: str
    issue_id: Optional[str] = None
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


# ==========================================================================
# Common Schemas
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    active_sessions: int = 0
