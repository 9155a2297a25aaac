"""
Resolution Engine - Metrics
===========================

Session metrics are never updated incrementally. They are recomputed from
the session record, its issues and the attempt ledger every time.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from fixloop.core.config import settings
from fixloop.core.engine.domain import (
    AttemptOutcome,
    AttemptRecord,
    Issue,
    IssueStatus,
    Session,
    utcnow,
)


@dataclass
class SessionMetrics:
    session_id: str
    total_issues: int = 0
    pending_issues: int = 0
    in_progress_issues: int = 0
    resolved_issues: int = 0
    failed_issues: int = 0
    skipped_issues: int = 0

    elapsed_ms: int = 0
    mean_fix_duration_ms: Optional[int] = None

    verification_runs: int = 0
    verification_passed: int = 0
    verification_failed: int = 0

    total_retries: int = 0
    successful_retries: int = 0

    lines_added: int = 0
    lines_removed: int = 0
    files_modified: int = 0
    commits: int = 0

    provider_requests: int = 0
    provider_tokens: int = 0
    provider_cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def issue_progress(self) -> dict[str, int]:
        return {
            "total": self.total_issues,
            "pending": self.pending_issues + self.in_progress_issues,
            "resolved": self.resolved_issues,
            "failed": self.failed_issues,
            "skipped": self.skipped_issues,
        }


# Outcomes that involved a call to the provider
_PROVIDER_OUTCOMES = {
    AttemptOutcome.RESOLVED,
    AttemptOutcome.VERIFICATION_FAILED,
    AttemptOutcome.INVALID_DIFF,
    AttemptOutcome.DECLINED,
    AttemptOutcome.PROVIDER_ERROR,
    AttemptOutcome.ABORTED,
}


def compute_metrics(
    session: Session,
    issues: Iterable[Issue],
    attempts: Iterable[AttemptRecord],
    now: Optional[datetime] = None,
    cost_per_1k_tokens: Optional[float] = None,
) -> SessionMetrics:
    """Pure function of the session, its issues and its attempt history."""
    issues = list(issues)
    attempts = list(attempts)
    now = now or utcnow()
    rate = settings.PROVIDER_COST_PER_1K_TOKENS if cost_per_1k_tokens is None else cost_per_1k_tokens

    metrics = SessionMetrics(session_id=session.id, total_issues=len(issues))
    counters = {
        IssueStatus.PENDING: "pending_issues",
        IssueStatus.IN_PROGRESS: "in_progress_issues",
        IssueStatus.RESOLVED: "resolved_issues",
        IssueStatus.FAILED: "failed_issues",
        IssueStatus.SKIPPED: "skipped_issues",
    }
    for issue in issues:
        attr = counters[issue.status]
        setattr(metrics, attr, getattr(metrics, attr) + 1)

    if session.started_at is not None:
        end = session.completed_at or now
        metrics.elapsed_ms = max(int((end - session.started_at).total_seconds() * 1000), 0)

    resolved = [i for i in issues if i.status == IssueStatus.RESOLVED]
    durations = [
        (i.resolved_at - i.started_at).total_seconds() * 1000
        for i in resolved
        if i.resolved_at is not None and i.started_at is not None
    ]
    if durations:
        metrics.mean_fix_duration_ms = int(sum(durations) / len(durations))

    metrics.total_retries = sum(i.retry_count for i in issues)
    metrics.successful_retries = sum(1 for i in resolved if i.retry_count > 0)
    metrics.commits = len({i.commit_hash for i in resolved if i.commit_hash})

    resolved_ids = {i.id for i in resolved}
    # Latest resolution per issue; a checkpoint restore undoes earlier ones
    kept: dict[str, AttemptRecord] = {}
    for record in attempts:
        if record.verification_status is not None:
            metrics.verification_runs += 1
            if record.verification_status in ("pass", "skipped"):
                metrics.verification_passed += 1
            else:
                metrics.verification_failed += 1
        if record.outcome in _PROVIDER_OUTCOMES:
            metrics.provider_requests += 1
            metrics.provider_tokens += record.tokens_used
        if record.outcome == AttemptOutcome.RESOLVED and record.issue_id in resolved_ids:
            kept[record.issue_id] = record

    files: set[str] = set()
    for record in kept.values():
        metrics.lines_added += record.lines_added
        metrics.lines_removed += record.lines_removed
        files.update(record.files)

    metrics.files_modified = len(files)
    metrics.provider_cost_usd = round(metrics.provider_tokens / 1000 * rate, 6)
    return metrics


def metrics_delta(previous: Optional[SessionMetrics], current: SessionMetrics) -> dict[str, Any]:
    """Numeric fields that changed since ``previous``."""
    if previous is None:
        return {}
    delta: dict[str, Any] = {}
    before = previous.to_dict()
    for key, value in current.to_dict().items():
        old = before.get(key)
        if isinstance(value, (int, float)) and isinstance(old, (int, float)) and value != old:
            delta[key] = round(value - old, 6) if isinstance(value, float) else value - old
    return delta
