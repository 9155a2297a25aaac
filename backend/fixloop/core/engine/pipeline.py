"""
Resolution Engine - Fix-Verify-Commit Pipeline
==============================================

Drives one issue from pending to resolved, failed or skipped.

    analyzing -> generating_fix -> applying_fix -> verifying -> committing

Generation runs without the mutation lock. Apply, verify, commit and
revert run under it as one unit that always finishes once started, even
when the pipeline is cancelled.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Optional

from fixloop.core.adapters import diff_codec
from fixloop.core.adapters.providers import FixRequest
from fixloop.core.adapters.verification import (
    VerificationResult,
    extract_verification_errors,
)
from fixloop.core.engine.domain import (
    AttemptOutcome,
    AttemptRecord,
    FixAttempt,
    Issue,
    IssueCategory,
    IssueStatus,
    utcnow,
)
from fixloop.core.engine.events import (
    EventBuilder,
    EventType,
    PipelineStep,
    Severity,
)
from fixloop.core.engine.feedback import DiagnosticFeedback
from fixloop.core.engine.mutation_lock import run_to_completion
from fixloop.core.errors import (
    DiffApplyError,
    DiffParseError,
    DiffValidationError,
    ProviderError,
    VcsError,
)

if TYPE_CHECKING:
    from fixloop.core.engine.runtime import SessionRuntime

logger = logging.getLogger(__name__)

ISSUE_GONE = "Issue no longer exists in code"
FILE_UNREADABLE = "File could not be read"

# Raised by reading or writing a working tree file
FILE_ERRORS = (UnicodeError, OSError)


@dataclass
class AttemptResult:
    """What the locked section of one attempt produced."""
    outcome: AttemptOutcome
    error: Optional[str] = None
    error_kind: Optional[str] = None
    verification: Optional[VerificationResult] = None
    lines_added: int = 0
    lines_removed: int = 0
    files: list[str] = field(default_factory=list)


def commit_message(issue: Issue) -> str:
    """Conventional-commit message referencing the issue."""
    kind = "fix" if issue.category in (IssueCategory.ERROR, IssueCategory.SECURITY) else "refactor"
    scope = PurePosixPath(issue.file_path).stem or "repo"
    subject = issue.message.strip().splitlines()[0] if issue.message.strip() else issue.type
    lines = [
        f"{kind}({scope}): {subject[:50]}",
        "",
        f"Issue ID: {issue.id}",
    ]
    if issue.rule:
        lines.append(f"Rule: {issue.rule}")
    lines.append(f"Source: {issue.file_path}:{issue.line}")
    return "\n".join(lines)


class FixPipeline:
    """Per-issue fix loop with bounded retries and diagnostic feedback."""

    def __init__(self, runtime: "SessionRuntime", feedback: Optional[DiagnosticFeedback] = None):
        self.runtime = runtime
        self.feedback = feedback or DiagnosticFeedback()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process(self, issue: Issue) -> None:
        rt = self.runtime
        issue.status = IssueStatus.IN_PROGRESS
        issue.started_at = utcnow()
        issue.last_error = None
        await rt.save_issue(issue)
        await rt.emit(
            EventType.ISSUE_STARTED,
            f"Processing {issue.type} in {issue.file_path}:{issue.line}",
            issue_id=issue.id,
            severity_level=issue.severity.value,
            retry_count=issue.retry_count,
        )
        try:
            await self._run(issue)
        except asyncio.CancelledError:
            if issue.status == IssueStatus.IN_PROGRESS:
                await self._release(issue, "Pipeline cancelled")
            raise

    async def _run(self, issue: Issue) -> None:
        rt = self.runtime
        await self._progress(issue, PipelineStep.ANALYZING, 1)
        try:
            reason = self._check_still_exists(issue)
        except FILE_ERRORS as e:
            await self._skip(issue, FILE_UNREADABLE, "file_unreadable", detail=f"{issue.file_path}: {e}")
            return
        if reason:
            await self._skip(issue, ISSUE_GONE, "issue_gone", detail=reason)
            return

        attempts: list[FixAttempt] = []
        number = 0
        while True:
            number += 1
            if number > 1 and (rt.stopping or rt.halted):
                await self._release(issue, "Session is stopping")
                return

            attempt = FixAttempt(number=number)
            started = time.monotonic()

            # Generate (unlocked)
            await self._progress(issue, PipelineStep.GENERATING_FIX, number)
            try:
                content = rt.read_file(issue.file_path) or ""
            except FILE_ERRORS as e:
                await self._skip(issue, FILE_UNREADABLE, "file_unreadable", detail=f"{issue.file_path}: {e}")
                return
            context = self.feedback.build_context(issue, attempts, rt.root)
            try:
                response = await rt.provider.fix(FixRequest(issue=issue, file_content=content, context=context))
            except ProviderError as e:
                await self._record(issue, number, AttemptOutcome.PROVIDER_ERROR, started)
                await self._skip(issue, f"Fix provider error: {e}", e.kind)
                return

            if not response.success or not response.diff:
                await self._record(issue, number, AttemptOutcome.DECLINED, started, tokens=response.tokens_used)
                reason = response.error or "Fix provider returned no diff"
                await self._skip(issue, f"Fix declined: {reason}", "declined")
                return

            if rt.halted:
                # Session moved on while the provider was answering
                await self._release(issue, "Session halted")
                return

            attempt.diff = response.diff
            attempt.explanation = response.explanation

            # Apply, verify, commit (locked)
            async with rt.lock.hold(issue.id, "fix"):
                result = await run_to_completion(
                    self._locked_attempt(issue, attempt, started, response.tokens_used)
                )

            if result.outcome == AttemptOutcome.RESOLVED:
                return
            if result.outcome == AttemptOutcome.ABORTED:
                await self._release(issue, "Session halted")
                return

            # Failed attempt: feed the error into the next one
            attempt.verification = result.verification
            diagnosis = self.feedback.record_failure(attempt, result.error or "")
            attempts.append(attempt)
            issue.last_error = (result.error or "")[:2000] or "Attempt failed"

            if issue.retry_count < rt.config.max_retries:
                issue.retry_count += 1
                await rt.save_issue(issue)
                await rt.emit(
                    EventType.ISSUE_RETRY,
                    f"Attempt {number} failed ({diagnosis.kind.value}), retrying "
                    f"({issue.retry_count}/{rt.config.max_retries})",
                    issue_id=issue.id,
                    severity=Severity.WARNING,
                    attempt=number,
                    retry_count=issue.retry_count,
                    error_kind=result.error_kind,
                    diagnosis=diagnosis.kind.value,
                )
                continue

            issue.status = IssueStatus.FAILED
            await rt.save_issue(issue)
            await rt.publish(EventBuilder.issue_terminal(
                rt.id, issue.id, EventType.ISSUE_FAILED,
                f"Issue {issue.id} failed after {number} attempts: {issue.last_error[:200]}",
                error_kind=result.error_kind,
                details={"attempts": number, "retry_count": issue.retry_count},
            ))
            await rt.refresh_metrics()
            return

    # ------------------------------------------------------------------
    # Locked section
    # ------------------------------------------------------------------

    async def _locked_attempt(
        self,
        issue: Issue,
        attempt: FixAttempt,
        started: float,
        tokens: int,
    ) -> AttemptResult:
        """Locked section plus its ledger entry, so both survive cancellation."""
        result = await self._apply_verify_commit(issue, attempt)
        await self._record(
            issue, attempt.number, result.outcome, started,
            tokens=tokens,
            verification=result.verification,
            lines_added=result.lines_added,
            lines_removed=result.lines_removed,
            files=result.files,
        )
        if result.outcome == AttemptOutcome.RESOLVED:
            await self.runtime.refresh_metrics()
        return result

    async def _apply_verify_commit(self, issue: Issue, attempt: FixAttempt) -> AttemptResult:
        rt = self.runtime
        if rt.halted:
            return AttemptResult(AttemptOutcome.ABORTED)

        await self._progress(issue, PipelineStep.APPLYING_FIX, attempt.number)
        try:
            file_diffs, changes = self.validate_diff(issue, attempt.diff or "")
        except (DiffParseError, DiffApplyError, DiffValidationError) as e:
            logger.info(f"Attempt {attempt.number} for issue {issue.id} produced an unusable diff: {e}")
            return AttemptResult(
                AttemptOutcome.INVALID_DIFF,
                error=f"Patch could not be applied: {e}",
                error_kind=e.kind,
            )

        originals = {path: rt.read_file(path) for path in changes}
        try:
            for path, content in changes.items():
                rt.write_file(path, content)
        except FILE_ERRORS as e:
            logger.warning(f"Writing attempt {attempt.number} for issue {issue.id} failed: {e}")
            self._restore(originals)
            return AttemptResult(
                AttemptOutcome.INVALID_DIFF,
                error=f"Patch could not be written: {e}",
                error_kind="write_failed",
            )
        added, removed, paths = diff_codec.stats(file_diffs)

        verification = None
        if rt.config.run_verification_after_each_fix:
            await self._progress(issue, PipelineStep.VERIFYING, attempt.number)
            await rt.emit(
                EventType.VERIFICATION_STARTED,
                f"Verifying attempt {attempt.number}",
                issue_id=issue.id,
                attempt=attempt.number,
            )
            try:
                verification = await rt.verifier.run_all(rt.config, cwd=rt.session.repository_path)
            except BaseException:
                self._restore(originals)
                raise
            await rt.emit(
                EventType.VERIFICATION_COMPLETED,
                f"Verification {verification.overall.value}",
                issue_id=issue.id,
                severity=Severity.INFO if verification.passed else Severity.WARNING,
                attempt=attempt.number,
                **verification.summary(),
            )
            if not verification.passed:
                self._restore(originals)
                return AttemptResult(
                    AttemptOutcome.VERIFICATION_FAILED,
                    error=extract_verification_errors(verification),
                    error_kind="verification",
                    verification=verification,
                )

        await self._progress(issue, PipelineStep.COMMITTING, attempt.number)
        commit_hash = None
        if rt.config.commit_after_each_fix:
            try:
                await rt.vcs.stage(list(changes))
                commit_hash = await rt.vcs.commit(commit_message(issue))
            except VcsError:
                self._restore(originals)
                raise
            rt.lock.record_commit(commit_hash)
        else:
            rt.uncommitted_issue_ids.append(issue.id)
            rt.uncommitted_files.update(changes)

        issue.status = IssueStatus.RESOLVED
        issue.commit_hash = commit_hash
        issue.resolved_at = utcnow()
        issue.last_error = None
        await rt.save_issue(issue)
        await rt.publish(EventBuilder.issue_terminal(
            rt.id, issue.id, EventType.ISSUE_RESOLVED,
            f"Issue {issue.id} resolved on attempt {attempt.number}",
            details={
                "attempt": attempt.number,
                "commit_hash": commit_hash,
                "explanation": attempt.explanation,
                "files": paths,
            },
        ))
        return AttemptResult(
            AttemptOutcome.RESOLVED,
            verification=verification,
            lines_added=added,
            lines_removed=removed,
            files=paths,
        )

    def validate_diff(
        self,
        issue: Issue,
        diff_text: str,
    ) -> tuple[list[diff_codec.FileDiff], dict[str, Optional[str]]]:
        """
        Parse and dry-run a candidate diff against the working tree.

        Returns the parsed file diffs and the new content per path
        (``None`` for deleted files). Nothing is written.

        Raises:
            DiffParseError: diff text is malformed
            DiffApplyError: a hunk does not match the current file
            DiffValidationError: wrong target, no-op, or failed round trip
        """
        rt = self.runtime
        file_diffs = diff_codec.parse(diff_text)
        if not file_diffs:
            raise DiffValidationError("Diff is empty")

        target = PurePosixPath(issue.file_path).as_posix()
        if target not in {PurePosixPath(f.path).as_posix() for f in file_diffs}:
            raise DiffValidationError(
                f"Diff does not touch {issue.file_path}",
                details={"paths": [f.path for f in file_diffs]},
            )

        changes: dict[str, Optional[str]] = {}
        for file_diff in file_diffs:
            path = file_diff.path
            try:
                current = rt.read_file(path)
            except FILE_ERRORS as e:
                raise DiffApplyError(f"{path} could not be read: {e}", details={"path": path})
            if current is None and not file_diff.is_new_file:
                raise DiffApplyError(f"{path} does not exist", details={"path": path})
            old = current or ""
            new = diff_codec.apply(old, file_diff)
            if diff_codec.apply(old, diff_codec.create(old, new, path)) != new:
                raise DiffValidationError(f"Round-trip check failed for {path}", details={"path": path})
            if new != old or file_diff.is_deleted_file:
                changes[path] = None if file_diff.is_deleted_file else new

        if not changes:
            raise DiffValidationError("Diff makes no changes")
        return file_diffs, changes

    def _restore(self, originals: dict[str, Optional[str]]) -> None:
        for path, content in originals.items():
            self.runtime.write_file(path, content)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_still_exists(self, issue: Issue) -> Optional[str]:
        """Reason the issue is gone, or None if it can still be worked on."""
        try:
            content = self.runtime.read_file(issue.file_path)
        except DiffValidationError as e:
            return str(e)
        if content is None:
            return f"{issue.file_path} no longer exists"
        line_count = len(diff_codec.split_lines(content))
        if issue.line > max(line_count, 1):
            return f"Line {issue.line} is past the end of {issue.file_path} ({line_count} lines)"
        snippet = (issue.code_snippet or "").strip()
        if snippet and snippet not in content:
            return "Reported code snippet not found"
        return None

    async def _progress(self, issue: Issue, step: PipelineStep, attempt: int) -> None:
        await self.runtime.publish(EventBuilder.issue_progress(self.runtime.id, issue.id, step, attempt))

    async def _record(
        self,
        issue: Issue,
        number: int,
        outcome: AttemptOutcome,
        started: float,
        tokens: int = 0,
        verification: Optional[VerificationResult] = None,
        lines_added: int = 0,
        lines_removed: int = 0,
        files: Optional[list[str]] = None,
    ) -> None:
        rt = self.runtime
        await rt.record_attempt(AttemptRecord(
            session_id=rt.id,
            issue_id=issue.id,
            attempt=number,
            outcome=outcome,
            verification_status=verification.overall.value if verification else None,
            duration_ms=int((time.monotonic() - started) * 1000),
            tokens_used=tokens,
            lines_added=lines_added,
            lines_removed=lines_removed,
            files=list(files or []),
        ))

    async def _skip(self, issue: Issue, reason: str, error_kind: str, detail: Optional[str] = None) -> None:
        rt = self.runtime
        issue.status = IssueStatus.SKIPPED
        issue.last_error = reason if detail is None else f"{reason}: {detail}"
        await rt.save_issue(issue)
        await rt.publish(EventBuilder.issue_terminal(
            rt.id, issue.id, EventType.ISSUE_SKIPPED,
            f"Issue {issue.id} skipped: {issue.last_error}",
            error_kind=error_kind,
            details={"reason": reason},
        ))
        await rt.refresh_metrics()

    async def _release(self, issue: Issue, reason: str) -> None:
        """Hand an unfinished issue back as pending."""
        rt = self.runtime
        issue.status = IssueStatus.PENDING
        issue.started_at = None
        await rt.save_issue(issue)
        await rt.emit(
            EventType.ISSUE_RELEASED,
            f"Issue {issue.id} returned to pending: {reason}",
            issue_id=issue.id,
            reason=reason,
        )
