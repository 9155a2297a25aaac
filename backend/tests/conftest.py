"""
Fixloop - Test Fixtures
=======================

Shared pytest fixtures for all tests.

The engine is driven against a real temporary working tree, with scripted
stand-ins for the fix provider, the verification runner and version
control.
"""

import asyncio
import hashlib
import itertools
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import pytest
import pytest_asyncio

from fixloop.core.adapters import diff_codec
from fixloop.core.adapters.git import VcsAdapter, VcsStatus
from fixloop.core.adapters.providers import FixProvider, FixRequest, FixResponse
from fixloop.core.adapters.verification import (
    CheckStatus,
    LintFinding,
    LintResult,
    TestFailure,
    TestResult,
    VerificationBackend,
    VerificationResult,
)
from fixloop.core.config import settings
from fixloop.core.engine.domain import (
    IssueCategory,
    IssueDraft,
    IssueSeverity,
    SessionConfig,
)
from fixloop.core.engine.orchestrator import Orchestrator
from fixloop.core.engine.repository import InMemoryRepository
from fixloop.core.errors import VcsError


# ==========================================================================
# Sample Repository
# ==========================================================================

SAMPLE_FILES = {
    "app.py": "import os\n\nx = 1\n\n\ndef main():\n    return os.getcwd()\n",
    "utils.py": "def add(a, b):\n    return a+b\n",
    "models.py": "class User:\n    name = 'x'  \n",
    "views.py": "def index():\n    print('debug')\n    return 'ok'\n",
}


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """Working tree with a handful of small Python files."""
    root = tmp_path / "repo"
    root.mkdir()
    for name, content in SAMPLE_FILES.items():
        (root / name).write_bytes(content.encode())
    return root


# ==========================================================================
# Version Control
# ==========================================================================

@dataclass
class FakeCommit:
    hash: str
    parent: Optional[str]
    message: str
    tree: dict[str, bytes]


class FakeVcs(VcsAdapter):
    """
    In-process version control over a plain directory.

    Every commit snapshots the whole tree, so restoring a checkpoint puts
    file contents back exactly.
    """

    def __init__(self, repository_path: str):
        self.root = Path(repository_path)
        self.branch: Optional[str] = "main"
        self.commits: dict[str, FakeCommit] = {}
        self.log: list[str] = []
        self.tags: dict[str, str] = {}
        self.staged: set[str] = set()
        self.dirty = False
        self.fail_commit = False
        self._counter = itertools.count(1)
        self.head_hash = self._record("Initial commit", None)

    def _snapshot(self) -> dict[str, bytes]:
        return {
            path.relative_to(self.root).as_posix(): path.read_bytes()
            for path in self.root.rglob("*")
            if path.is_file()
        }

    def _record(self, message: str, parent: Optional[str]) -> str:
        commit_hash = hashlib.sha1(f"{next(self._counter)}:{message}".encode()).hexdigest()
        self.commits[commit_hash] = FakeCommit(commit_hash, parent, message, self._snapshot())
        self.log.append(commit_hash)
        return commit_hash

    def commits_for(self, issue_id: str) -> list[FakeCommit]:
        return [self.commits[h] for h in self.log if f"Issue ID: {issue_id}" in self.commits[h].message]

    async def create_cleaning_branch(self, session_id: str, base_branch: Optional[str] = None) -> str:
        self.branch = f"{settings.BRANCH_PREFIX}{session_id[:8]}"
        return self.branch

    async def current_branch(self) -> Optional[str]:
        return self.branch

    async def stage(self, files: Sequence[str]) -> None:
        self.staged.update(files)

    async def stage_all(self) -> None:
        self.staged.update(self._snapshot())

    async def commit(self, message: str) -> str:
        if self.fail_commit:
            raise VcsError("git commit failed: index.lock exists", command=["commit"])
        self.head_hash = self._record(message, self.head_hash)
        self.staged.clear()
        return self.head_hash

    async def head(self) -> str:
        return self.head_hash

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        current: Optional[str] = descendant
        while current is not None:
            if current == ancestor:
                return True
            current = self.commits[current].parent
        return False

    async def create_checkpoint(self, name: str) -> str:
        tag = f"{settings.CHECKPOINT_TAG_PREFIX}{name}"
        self.tags[tag] = self.head_hash
        return tag

    async def restore_checkpoint(self, tag: str) -> None:
        commit = self.commits[self.tags[tag]]
        for path in list(self.root.rglob("*")):
            if path.is_file() and path.relative_to(self.root).as_posix() not in commit.tree:
                path.unlink()
        for name, content in commit.tree.items():
            (self.root / name).write_bytes(content)
        self.head_hash = commit.hash

    async def delete_checkpoint(self, tag: str) -> None:
        self.tags.pop(tag, None)

    async def has_uncommitted_changes(self) -> bool:
        return self.dirty

    async def get_status(self) -> VcsStatus:
        return VcsStatus(branch=self.branch, head=self.head_hash, clean=not self.dirty)


# ==========================================================================
# Fix Provider
# ==========================================================================

Scripted = Union[FixResponse, Exception, Callable[[FixRequest], FixResponse]]


def replace_fix(old: str, new: str, tokens: int = 120) -> Callable[[FixRequest], FixResponse]:
    """Response that replaces ``old`` with ``new`` in the issue's file as it is now."""

    def _respond(request: FixRequest) -> FixResponse:
        content = request.file_content
        return FixResponse(
            success=True,
            diff=diff_codec.create(content, content.replace(old, new, 1), request.issue.file_path),
            explanation=f"Replace {old.strip()!r}",
            tokens_used=tokens,
        )

    return _respond


class FakeFixProvider(FixProvider):
    """
    Provider answering from per-message scripts.

    The last scripted response for a message repeats. A gate blocks calls
    for that message until it is set.
    """

    name = "fake"

    def __init__(self) -> None:
        self.scripts: dict[str, list[Scripted]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.requests: list[FixRequest] = []

    def script(self, message: str, *responses: Scripted) -> None:
        self.scripts.setdefault(message, []).extend(responses)

    def gate(self, message: str) -> asyncio.Event:
        return self.gates.setdefault(message, asyncio.Event())

    def requests_for(self, message: str) -> list[FixRequest]:
        return [r for r in self.requests if r.issue.message == message]

    async def wait_for_requests(self, count: int, timeout: float = 5.0) -> None:
        await wait_for(lambda: len(self.requests) >= count, timeout=timeout)

    async def fix(self, request: FixRequest) -> FixResponse:
        self.requests.append(request)
        gate = self.gates.get(request.issue.message)
        if gate is not None:
            await gate.wait()
        queue = self.scripts.get(request.issue.message)
        if not queue:
            return FixResponse(success=False, error="No fix scripted")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        return item


# ==========================================================================
# Verification
# ==========================================================================

def passing_result() -> VerificationResult:
    return VerificationResult(
        overall=CheckStatus.PASS,
        lint=LintResult(status=CheckStatus.PASS),
        tests=TestResult(status=CheckStatus.PASS, passed=3, total=3),
    )


def lint_failure(
    message: str = "unused variable `x`",
    path: str = "app.py",
    line: int = 3,
) -> VerificationResult:
    return VerificationResult(
        overall=CheckStatus.FAIL,
        lint=LintResult(
            status=CheckStatus.FAIL,
            error_count=1,
            errors=[LintFinding(path, line, 1, "error", message, "F841")],
        ),
    )


def failing_tests(
    name: str = "tests/test_app.py::test_main",
    message: str = "AssertionError: boom",
) -> VerificationResult:
    return VerificationResult(
        overall=CheckStatus.FAIL,
        tests=TestResult(
            status=CheckStatus.FAIL,
            passed=2,
            failed=1,
            total=3,
            errors=[TestFailure(name, message)],
        ),
    )


class FakeVerificationRunner(VerificationBackend):
    """Returns queued results in order, then passes."""

    def __init__(self, results: Sequence[VerificationResult] = (), delay: float = 0.0):
        self.results = list(results)
        self.delay = delay
        self.calls = 0

    def queue(self, *results: VerificationResult) -> None:
        self.results.extend(results)

    async def run_all(
        self,
        config: SessionConfig,
        cwd: str,
        timeout: Optional[float] = None,
    ) -> VerificationResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        return passing_result()


# ==========================================================================
# Engine Fixtures
# ==========================================================================

@pytest.fixture(autouse=True)
def fast_scheduler(monkeypatch: pytest.MonkeyPatch) -> None:
    """Short idle ticks and grace periods."""
    monkeypatch.setattr(settings, "SCHEDULER_TICK_SECONDS", 0.05)
    monkeypatch.setattr(settings, "TIMEOUT_GRACE_SECONDS", 0.2)


@pytest.fixture
def vcs_instances() -> dict[str, FakeVcs]:
    return {}


@pytest.fixture
def vcs_factory(vcs_instances: dict[str, FakeVcs]) -> Callable[[str], FakeVcs]:
    """One FakeVcs per repository path, shared by every runtime built for it."""

    def _factory(path: str) -> FakeVcs:
        key = str(Path(path).resolve())
        if key not in vcs_instances:
            vcs_instances[key] = FakeVcs(key)
        return vcs_instances[key]

    return _factory


@pytest.fixture
def provider() -> FakeFixProvider:
    return FakeFixProvider()


@pytest.fixture
def verifier() -> FakeVerificationRunner:
    return FakeVerificationRunner()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest_asyncio.fixture
async def orchestrator(
    repository: InMemoryRepository,
    vcs_factory: Callable[[str], FakeVcs],
    provider: FakeFixProvider,
    verifier: FakeVerificationRunner,
) -> AsyncGenerator[Orchestrator, None]:
    """Orchestrator wired to the fakes. Shut down after the test."""
    orch = Orchestrator(
        repository=repository,
        vcs_factory=vcs_factory,
        provider=provider,
        verifier=verifier,
    )
    yield orch
    await orch.shutdown()


# ==========================================================================
# Helper Functions
# ==========================================================================

def make_config(**overrides: Any) -> SessionConfig:
    """Session config with periodic checkpoints off unless asked for."""
    values: dict[str, Any] = {
        "lint_command": "ruff check .",
        "checkpoint_interval_minutes": 0,
    }
    values.update(overrides)
    return SessionConfig(**values)


def make_draft(
    message: str,
    file_path: str = "app.py",
    line: int = 1,
    severity: IssueSeverity = IssueSeverity.MEDIUM,
    category: IssueCategory = IssueCategory.WARNING,
    **kwargs: Any,
) -> IssueDraft:
    return IssueDraft(
        type=kwargs.pop("type", "lint"),
        message=message,
        file_path=file_path,
        line=line,
        severity=severity,
        category=category,
        **kwargs,
    )


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout=timeout)


def read(repo: Path, name: str) -> str:
    return (repo / name).read_bytes().decode()
