"""
Resolution Engine - Diagnostic Feedback
=======================================

Turns a failed attempt into context for the next one.

The verification error summary is classified, the files it mentions are
extracted, and a short correction brief is assembled together with the
history of earlier attempts.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from fixloop.core.adapters.providers import FixContext
from fixloop.core.engine.domain import FixAttempt, Issue

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    """Kinds of failure a fix attempt can run into."""
    TEST_FAILURE = "test_failure"
    LINT_ERROR = "lint_error"
    TYPE_ERROR = "type_error"
    BUILD_FAILURE = "build_failure"
    SYNTAX_ERROR = "syntax_error"
    TIMEOUT = "timeout"
    DEPENDENCY_ERROR = "dependency_error"
    PATCH_MISMATCH = "patch_mismatch"
    UNKNOWN = "unknown"


@dataclass
class Diagnosis:
    """Result of failure diagnosis."""
    kind: FailureKind
    description: str
    affected_files: list[str] = field(default_factory=list)
    suggested_fix: str = ""
    confidence: float = 0.0  # 0-1


class DiagnosticFeedback:
    """
    Builds retry context from failed attempts.

    1. Diagnose the failure kind from the error summary
    2. Pull out the files the error mentions
    3. Write a correction brief for the provider
    """

    # Checked in order, first match wins
    ERROR_PATTERNS = {
        FailureKind.PATCH_MISMATCH: [
            "does not match",
            "hunk",
            "failed to parse diff",
            "round-trip",
        ],
        FailureKind.SYNTAX_ERROR: [
            "SyntaxError",
            "IndentationError",
            "unexpected token",
            "parse error",
        ],
        FailureKind.TIMEOUT: [
            "timed out",
            "timeout",
            "deadline exceeded",
        ],
        FailureKind.DEPENDENCY_ERROR: [
            "ModuleNotFoundError",
            "ImportError",
            "Cannot find module",
        ],
        FailureKind.TYPE_ERROR: [
            "TypeError",
            "mypy",
            "error TS",
        ],
        FailureKind.BUILD_FAILURE: [
            "BUILD ERRORS",
            "build failed",
            "compilation error",
        ],
        FailureKind.LINT_ERROR: [
            "LINT ERRORS",
            "ruff",
            "eslint",
            "flake8",
            "unused",
        ],
        FailureKind.TEST_FAILURE: [
            "TEST FAILURES",
            "AssertionError",
            "FAILED",
        ],
    }

    CORRECTION_STRATEGIES = {
        FailureKind.PATCH_MISMATCH: "Regenerate the diff against the current file content shown, with exact context lines",
        FailureKind.SYNTAX_ERROR: "Fix the syntax error introduced by the previous change",
        FailureKind.TIMEOUT: "Avoid changes that make the test suite slower or hang",
        FailureKind.DEPENDENCY_ERROR: "Do not introduce imports of modules that are not available",
        FailureKind.TYPE_ERROR: "Keep function signatures and types consistent with their callers",
        FailureKind.BUILD_FAILURE: "Make sure the change compiles",
        FailureKind.LINT_ERROR: "Address the reported lint findings without disabling rules",
        FailureKind.TEST_FAILURE: "Keep existing behaviour so the failing tests pass again",
        FailureKind.UNKNOWN: "Review the error output and make a smaller, safer change",
    }

    FILE_PATTERNS = [
        r'File "([^"]+\.\w+)"',                       # Python tracebacks
        r"at ([^\s()]+\.(?:ts|tsx|js|jsx)):\d+",      # JavaScript stacks
        r"^\s*([^\s:]+\.\w+):\d+(?::\d+)?",           # path:line[:col]
        r"([^\s(]+\.\w+)\(\d+,\d+\)",                 # tsc path(line,col)
    ]

    MAX_RELATED_FILES = 3
    MAX_RELATED_CHARS = 4000
    MAX_ERROR_CHARS = 4000

    def diagnose(self, error_text: str) -> Diagnosis:
        """
        Classify an error summary.

        Args:
            error_text: Compact error text from verification or patching

        Returns:
            Diagnosis with kind, affected files and a suggested fix
        """
        error_lower = error_text.lower()
        detected = FailureKind.UNKNOWN
        confidence = 0.0

        for kind, patterns in self.ERROR_PATTERNS.items():
            if any(pattern.lower() in error_lower for pattern in patterns):
                detected = kind
                confidence = 0.8
                break

        return Diagnosis(
            kind=detected,
            description=f"{detected.value}: {error_text[:200]}",
            affected_files=self.extract_affected_files(error_text),
            suggested_fix=self.CORRECTION_STRATEGIES[detected],
            confidence=confidence,
        )

    def extract_affected_files(self, error_text: str) -> list[str]:
        files: list[str] = []
        for pattern in self.FILE_PATTERNS:
            for match in re.findall(pattern, error_text, flags=re.MULTILINE):
                path = match[0] if isinstance(match, tuple) else match
                if path not in files:
                    files.append(path)
        return files

    def brief(self, diagnosis: Diagnosis, error_text: str) -> str:
        """Correction brief handed to the provider with the next request."""
        affected = ", ".join(diagnosis.affected_files) if diagnosis.affected_files else "unknown"
        return "\n".join([
            f"Previous attempt failed ({diagnosis.kind.value}).",
            f"Affected files: {affected}",
            f"Suggested fix: {diagnosis.suggested_fix}",
            "Errors:",
            error_text[: self.MAX_ERROR_CHARS],
        ])

    def record_failure(self, attempt: FixAttempt, error_text: str) -> Diagnosis:
        """Fill ``attempt.feedback`` and ``attempt.diagnosis`` from an error summary."""
        error_text = error_text.strip() or "Verification failed without error output"
        diagnosis = self.diagnose(error_text)
        attempt.feedback = error_text
        attempt.diagnosis = self.brief(diagnosis, error_text)
        logger.debug(f"Attempt {attempt.number} diagnosed as {diagnosis.kind.value}")
        return diagnosis

    def build_context(
        self,
        issue: Issue,
        attempts: list[FixAttempt],
        repository_root: Optional[Path] = None,
    ) -> FixContext:
        """Context for the next provider request."""
        previous = [
            {
                "attempt": a.number,
                "diff": a.diff,
                "explanation": a.explanation,
                "feedback": a.feedback,
            }
            for a in attempts
        ]
        last = attempts[-1] if attempts else None
        related: dict[str, str] = {}
        if last and last.feedback and repository_root is not None:
            related = self._related_files(issue, last.feedback, repository_root)
        return FixContext(
            previous_attempts=previous,
            last_verification_error=last.feedback if last else None,
            diagnostic_feedback=last.diagnosis if last else None,
            related_files=related,
        )

    def _related_files(self, issue: Issue, error_text: str, root: Path) -> dict[str, str]:
        related: dict[str, str] = {}
        root = root.resolve()
        for candidate in self.extract_affected_files(error_text):
            if len(related) >= self.MAX_RELATED_FILES:
                break
            path = (root / candidate).resolve()
            try:
                relative = path.relative_to(root).as_posix()
            except ValueError:
                continue
            if relative == issue.file_path or not path.is_file():
                continue
            try:
                related[relative] = path.read_text(encoding="utf-8")[: self.MAX_RELATED_CHARS]
            except (OSError, UnicodeDecodeError):
                continue
        return related
