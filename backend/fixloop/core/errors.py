"""
Fixloop - Error Types
=====================

Exception hierarchy shared by the orchestrator, its adapters and the API.

Every error carries a machine-readable ``kind`` that is forwarded in
``error.occurred`` events and API error bodies.
"""

from typing import Optional


class FixloopError(Exception):
    """Base class for all fixloop errors."""

    kind = "internal"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ==========================================================================
# Caller errors
# ==========================================================================

class InvalidStateError(FixloopError):
    """Operation is not valid for the session's current status."""

    kind = "invalid_state"


class SessionNotFoundError(FixloopError):
    kind = "session_not_found"


class IssueNotFoundError(FixloopError):
    kind = "issue_not_found"


class CheckpointNotFoundError(FixloopError):
    kind = "checkpoint_not_found"


class RepositoryNotFoundError(FixloopError):
    kind = "repository_not_found"


class UncommittedChangesError(FixloopError):
    """Working tree has uncommitted changes where a clean tree is required."""

    kind = "uncommitted_changes"


class ConfigurationError(FixloopError):
    """A collaborator the operation needs was never configured."""

    kind = "configuration"


# ==========================================================================
# Recoverable per issue
# ==========================================================================

class DiffParseError(FixloopError):
    kind = "diff_parse"


class DiffApplyError(FixloopError):
    """Hunk context or line numbers do not match the target content."""

    kind = "diff_apply"


class DiffValidationError(FixloopError):
    """Diff parsed but targets the wrong file or fails the round-trip check."""

    kind = "diff_validation"


# ==========================================================================
# Recoverable infrastructure
# ==========================================================================

class ProviderError(FixloopError):
    """Fix provider call failed.

    ``retryable`` marks transient failures (rate limit, timeout, 5xx) that
    are retried with backoff at the call site.
    """

    kind = "provider"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.retryable = retryable
        self.status_code = status_code


class VerificationError(FixloopError):
    """Verification runner could not execute a command at all."""

    kind = "verification"


# ==========================================================================
# Non-recoverable
# ==========================================================================

class VcsError(FixloopError):
    """Version control command failed."""

    kind = "vcs"

    def __init__(
        self,
        message: str,
        *,
        command: Optional[list[str]] = None,
        stderr: str = "",
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.command = command or []
        self.stderr = stderr


class DangerousOperationError(VcsError):
    """VCS operation refused because it could destroy work outside the session."""

    kind = "dangerous_operation"


class WorkingTreeError(VcsError):
    """Working tree is off the session's commit lineage or otherwise unusable."""

    kind = "working_tree"


NON_RECOVERABLE_ERRORS = (VcsError,)
