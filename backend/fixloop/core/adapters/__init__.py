"""
Fixloop Adapters
================

Collaborators the resolution engine drives through interfaces.

Components:
- diff_codec: Unified diff parse / apply / create
- VerificationRunner: Build, lint and test commands with parsed results
- GitAdapter: Session branch, commits and checkpoint tags
- HttpFixProvider / RetryingFixProvider: Fix generation over HTTP with backoff
"""

from fixloop.core.adapters import diff_codec
from fixloop.core.adapters.git import GitAdapter, VcsAdapter, VcsStatus
from fixloop.core.adapters.providers import (
    Analyzer,
    FixContext,
    FixProvider,
    FixRequest,
    FixResponse,
    HttpFixProvider,
    RetryingFixProvider,
)
from fixloop.core.adapters.verification import (
    CheckStatus,
    VerificationBackend,
    VerificationResult,
    VerificationRunner,
    extract_verification_errors,
)

__all__ = [
    "diff_codec",
    "GitAdapter",
    "VcsAdapter",
    "VcsStatus",
    "Analyzer",
    "FixContext",
    "FixProvider",
    "FixRequest",
    "FixResponse",
    "HttpFixProvider",
    "RetryingFixProvider",
    "CheckStatus",
    "VerificationBackend",
    "VerificationResult",
    "VerificationRunner",
    "extract_verification_errors",
]
