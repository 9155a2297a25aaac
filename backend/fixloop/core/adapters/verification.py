"""
Verification Runner
===================

Runs the session's build, lint and test commands against the working tree
and parses their output into structured results.

Build runs first; if it fails nothing else runs. Lint and tests then run
concurrently.
"""

import asyncio
import logging
import os
import re
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional

from fixloop.core.config import settings

if TYPE_CHECKING:
    from fixloop.core.engine.domain import SessionConfig

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


@dataclass
class TestFailure:
    test_name: str
    message: str


@dataclass
class LintFinding:
    file_path: str
    line: int
    column: int
    severity: str  # error | warning
    message: str
    rule: str = ""


@dataclass
class BuildFinding:
    message: str
    file_path: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    code: Optional[str] = None


@dataclass
class CommandOutcome:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool
    duration_ms: int

    @property
    def output(self) -> str:
        text = self.stdout
        if self.stderr:
            text += ("\n" if text else "") + self.stderr
        if self.timed_out:
            text += "\n[Process timed out]"
        return text

    @property
    def status(self) -> CheckStatus:
        if self.timed_out:
            return CheckStatus.TIMEOUT
        if self.exit_code == 0:
            return CheckStatus.PASS
        if self.exit_code == -1:
            return CheckStatus.ERROR
        return CheckStatus.FAIL


@dataclass
class TestResult:
    """Result of test execution."""
    status: CheckStatus
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    duration_ms: int = 0
    output: str = ""
    errors: list[TestFailure] = field(default_factory=list)


@dataclass
class LintResult:
    """Result of lint check."""
    status: CheckStatus
    error_count: int = 0
    warning_count: int = 0
    duration_ms: int = 0
    output: str = ""
    errors: list[LintFinding] = field(default_factory=list)


@dataclass
class BuildResult:
    status: CheckStatus
    duration_ms: int = 0
    output: str = ""
    errors: list[BuildFinding] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Complete verification result."""
    overall: CheckStatus
    tests: Optional[TestResult] = None
    lint: Optional[LintResult] = None
    build: Optional[BuildResult] = None
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def passed(self) -> bool:
        return self.overall in (CheckStatus.PASS, CheckStatus.SKIPPED)

    def summary(self) -> dict:
        return {
            "overall": self.overall.value,
            "duration_ms": self.duration_ms,
            "tests": self.tests.status.value if self.tests else None,
            "lint": self.lint.status.value if self.lint else None,
            "build": self.build.status.value if self.build else None,
        }


# ==========================================================================
# Interface
# ==========================================================================

class VerificationBackend(ABC):
    """Anything that can verify the working tree for a session config."""

    @abstractmethod
    async def run_all(
        self,
        config: "SessionConfig",
        cwd: str,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        ...


# ==========================================================================
# Runner
# ==========================================================================

class VerificationRunner(VerificationBackend):
    """Runs shell commands with asyncio subprocesses."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        output_limit: Optional[int] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.timeout = timeout or settings.VERIFICATION_TIMEOUT_SECONDS
        self.output_limit = output_limit or settings.VERIFICATION_OUTPUT_LIMIT
        self.env = env

    async def run_all(
        self,
        config: "SessionConfig",
        cwd: str,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        started = time.monotonic()
        result = VerificationResult(overall=CheckStatus.PASS)
        logger.info(
            f"Running verification in {cwd} "
            f"(build={bool(config.build_command)}, lint={bool(config.lint_command)}, "
            f"tests={bool(config.test_command)})"
        )

        if config.build_command:
            result.build = await self.run_build(config.build_command, cwd, timeout)
            if result.build.status in (CheckStatus.FAIL, CheckStatus.ERROR, CheckStatus.TIMEOUT):
                # No point linting or testing code that does not build
                result.overall = result.build.status
                result.duration_ms = int((time.monotonic() - started) * 1000)
                return result

        jobs = []
        if config.lint_command:
            jobs.append(self.run_lint(config.lint_command, cwd, timeout))
        if config.test_command:
            jobs.append(self.run_tests(config.test_command, cwd, timeout))
        outcomes = await asyncio.gather(*jobs)
        for outcome in outcomes:
            if isinstance(outcome, LintResult):
                result.lint = outcome
            else:
                result.tests = outcome

        result.overall = determine_overall(result)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Verification finished: {result.overall.value} in {result.duration_ms}ms")
        return result

    async def run_tests(self, command: str, cwd: str, timeout: Optional[float] = None) -> TestResult:
        outcome = await self._execute(command, cwd, timeout)
        result = TestResult(
            status=outcome.status,
            duration_ms=outcome.duration_ms,
            output=outcome.output[: self.output_limit],
        )
        parse_test_output(result, outcome.output)
        return result

    async def run_lint(self, command: str, cwd: str, timeout: Optional[float] = None) -> LintResult:
        outcome = await self._execute(command, cwd, timeout)
        result = LintResult(
            status=outcome.status,
            duration_ms=outcome.duration_ms,
            output=outcome.output[: self.output_limit],
        )
        parse_lint_output(result, outcome.output)
        return result

    async def run_build(self, command: str, cwd: str, timeout: Optional[float] = None) -> BuildResult:
        outcome = await self._execute(command, cwd, timeout)
        result = BuildResult(
            status=outcome.status,
            duration_ms=outcome.duration_ms,
            output=outcome.output[: self.output_limit],
        )
        parse_build_output(result, outcome.output)
        return result

    async def _execute(self, command: str, cwd: str, timeout: Optional[float]) -> CommandOutcome:
        timeout = timeout or self.timeout
        started = time.monotonic()
        env = {**os.environ, "CI": "1", **(self.env or {})}
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Could not start '{command}': {e}")
            return CommandOutcome(-1, "", str(e), False, 0)

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
            timed_out = False
        except asyncio.TimeoutError:
            logger.warning(f"'{command}' timed out after {timeout}s")
            self._kill(process)
            stdout, stderr = await process.communicate()
            timed_out = True
        except asyncio.CancelledError:
            self._kill(process)
            raise

        return CommandOutcome(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            timed_out=timed_out,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, AttributeError):
            process.kill()


# ==========================================================================
# Output parsing
# ==========================================================================

def determine_overall(result: VerificationResult) -> CheckStatus:
    statuses = [r.status for r in (result.build, result.tests, result.lint) if r is not None]
    if not statuses:
        return CheckStatus.SKIPPED
    if CheckStatus.ERROR in statuses:
        return CheckStatus.ERROR
    if CheckStatus.TIMEOUT in statuses:
        return CheckStatus.TIMEOUT
    if CheckStatus.FAIL in statuses:
        return CheckStatus.FAIL
    return CheckStatus.PASS


def _count(pattern: str, text: str) -> Optional[int]:
    match = re.search(pattern, text, flags=re.IGNORECASE)
    return int(match.group(1)) if match else None


def parse_test_output(result: TestResult, output: str) -> None:
    # pytest: "==== 1 failed, 3 passed, 1 skipped in 0.12s ===="
    pytest_summary = re.search(r"=+ (.*?) in [\d.]+s(?: \([^)]*\))? =+", output)
    if pytest_summary:
        summary = pytest_summary.group(1)
        result.passed = _count(r"(\d+) passed", summary) or 0
        result.failed = (_count(r"(\d+) failed", summary) or 0) + (_count(r"(\d+) errors?", summary) or 0)
        result.skipped = _count(r"(\d+) skipped", summary) or 0
        result.total = result.passed + result.failed + result.skipped
    else:
        # jest: "Tests: 1 failed, 2 skipped, 3 passed, 6 total"
        jest = re.search(r"Tests:\s+(.*?)(\d+)\s+total", output, flags=re.IGNORECASE)
        if jest:
            summary = jest.group(1)
            result.failed = _count(r"(\d+)\s+failed", summary) or 0
            result.skipped = _count(r"(\d+)\s+skipped", summary) or 0
            result.passed = _count(r"(\d+)\s+passed", summary) or 0
            result.total = int(jest.group(2))
        else:
            # mocha: "3 passing", "1 failing"
            result.passed = _count(r"(\d+)\s+passing", output) or 0
            result.failed = _count(r"(\d+)\s+failing", output) or 0
            result.total = result.passed + result.failed

    result.errors = parse_test_failures(output)


def parse_test_failures(output: str) -> list[TestFailure]:
    failures: list[TestFailure] = []

    # pytest short summary: "FAILED tests/test_x.py::test_a - AssertionError: boom"
    for match in re.finditer(r"^(?:FAILED|ERROR) (\S+)(?: - (.+))?$", output, flags=re.MULTILINE):
        failures.append(TestFailure(match.group(1), (match.group(2) or "failed").strip()))

    # jest: "● Suite › test name" followed by a blank line and the message
    for match in re.finditer(r"●\s+(.+?)\n\n\s+(.+?)(?:\n|$)", output):
        failures.append(TestFailure(match.group(1).strip(), match.group(2).strip()))

    # mocha: "  1) suite test:\n     Error: message"
    for match in re.finditer(r"^\s+\d+\)\s+(.+?):\n\s+(.+?)$", output, flags=re.MULTILINE):
        failures.append(TestFailure(match.group(1).strip(), match.group(2).strip()))

    for match in re.finditer(r"AssertionError[:\s]+(.+?)$", output, flags=re.MULTILINE):
        message = match.group(1).strip()
        if not any(message in f.message for f in failures):
            failures.append(TestFailure("Unknown test", message))

    return failures


def parse_lint_output(result: LintResult, output: str) -> None:
    findings: list[LintFinding] = []

    # ruff / flake8 / pylint: "path.py:12:5: F841 message"
    for match in re.finditer(
        r"^([^\s:][^:\n]*):(\d+):(\d+):\s+([A-Z]+\d+)\s+(.+)$", output, flags=re.MULTILINE
    ):
        findings.append(LintFinding(
            file_path=match.group(1),
            line=int(match.group(2)),
            column=int(match.group(3)),
            severity="warning" if match.group(4).startswith("W") else "error",
            message=match.group(5).strip(),
            rule=match.group(4),
        ))

    # eslint stylish: file path line, then "  12:5  error  message  rule"
    current_file = ""
    for line in output.split("\n"):
        if re.match(r"^(/|\.|\w).*\.(ts|tsx|js|jsx|vue|svelte|mjs|cjs)$", line.strip()) and not line.startswith(" "):
            current_file = line.strip()
            continue
        match = re.match(r"^\s+(\d+):(\d+)\s+(error|warning)\s+(.+?)\s{2,}(\S+)\s*$", line)
        if match and current_file:
            findings.append(LintFinding(
                file_path=current_file,
                line=int(match.group(1)),
                column=int(match.group(2)),
                severity=match.group(3),
                message=match.group(4).strip(),
                rule=match.group(5),
            ))

    result.errors = findings

    eslint_summary = re.search(
        r"(\d+)\s+problems?\s+\((\d+)\s+errors?,?\s*(\d+)\s+warnings?\)", output, flags=re.IGNORECASE
    )
    if eslint_summary:
        result.error_count = int(eslint_summary.group(2))
        result.warning_count = int(eslint_summary.group(3))
    else:
        result.error_count = sum(1 for f in findings if f.severity == "error")
        result.warning_count = sum(1 for f in findings if f.severity == "warning")


def parse_build_output(result: BuildResult, output: str) -> None:
    # tsc: "src/a.ts(3,7): error TS2322: message"
    for match in re.finditer(r"^(.+?)\((\d+),(\d+)\):\s+error\s+(TS\d+):\s+(.+)$", output, flags=re.MULTILINE):
        result.errors.append(BuildFinding(
            message=match.group(5).strip(),
            file_path=match.group(1).strip(),
            line=int(match.group(2)),
            column=int(match.group(3)),
            code=match.group(4),
        ))

    # python: 'File "x.py", line 3' ... 'SyntaxError: message'
    for match in re.finditer(
        r'File "([^"]+)", line (\d+)(?:.*\n)*?\s*(\w*Error): (.+)$', output, flags=re.MULTILINE
    ):
        result.errors.append(BuildFinding(
            message=f"{match.group(3)}: {match.group(4).strip()}",
            file_path=match.group(1),
            line=int(match.group(2)),
        ))

    for match in re.finditer(r"^error(?:\[[^\]]+\])?:\s+(.+)$", output, flags=re.MULTILINE | re.IGNORECASE):
        message = match.group(1).strip()
        if not any(message in e.message for e in result.errors):
            result.errors.append(BuildFinding(message=message))


# ==========================================================================
# Summaries
# ==========================================================================

def extract_verification_errors(result: VerificationResult) -> str:
    """
    Compact error text from a failing result, used as retry context.

    Falls back to the tail of raw output when nothing could be parsed.
    """
    parts: list[str] = []

    if result.build and result.build.status != CheckStatus.PASS:
        parts.append("BUILD ERRORS:")
        if result.build.errors:
            for error in result.build.errors:
                if error.file_path and error.line:
                    parts.append(f"  {error.file_path}:{error.line}:{error.column or 0} - {error.message}")
                else:
                    parts.append(f"  {error.message}")
        else:
            parts.append(_tail(result.build.output))

    if result.lint and result.lint.status != CheckStatus.PASS:
        parts.append("LINT ERRORS:")
        errors = [e for e in result.lint.errors if e.severity == "error"] or result.lint.errors
        if errors:
            for error in errors:
                rule = f"[{error.rule}] " if error.rule else ""
                parts.append(f"  {error.file_path}:{error.line}:{error.column} - {rule}{error.message}")
        else:
            parts.append(_tail(result.lint.output))

    if result.tests and result.tests.status != CheckStatus.PASS:
        parts.append("TEST FAILURES:")
        if result.tests.errors:
            for failure in result.tests.errors:
                parts.append(f"  {failure.test_name}: {failure.message}")
        else:
            parts.append(_tail(result.tests.output))

    return "\n".join(parts)


def _tail(output: str, lines: int = 30) -> str:
    tail = [line for line in output.strip().split("\n") if line.strip()][-lines:]
    return "\n".join(f"  {line}" for line in tail)


def format_verification_result(result: VerificationResult) -> str:
    """Human-readable multi-line summary."""
    lines = [f"Verification {result.overall.value.upper()} ({result.duration_ms}ms)"]
    if result.build:
        lines.append(f"Build: {result.build.status.value} ({len(result.build.errors)} errors)")
    if result.lint:
        lines.append(
            f"Lint: {result.lint.status.value} "
            f"({result.lint.error_count} errors, {result.lint.warning_count} warnings)"
        )
    if result.tests:
        lines.append(
            f"Tests: {result.tests.status.value} "
            f"(passed {result.tests.passed}, failed {result.tests.failed}, skipped {result.tests.skipped})"
        )
    return "\n".join(lines)
