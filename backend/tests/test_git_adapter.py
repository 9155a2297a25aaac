"""
Tests for the git adapter against real temporary repositories.
"""

import shutil
import subprocess
from pathlib import Path

import pytest

from conftest import (
    SAMPLE_FILES,
    FakeFixProvider,
    FakeVerificationRunner,
    make_config,
    make_draft,
    read,
    replace_fix,
)
from fixloop.core.adapters.git import GitAdapter
from fixloop.core.engine.domain import ControlSignal, IssueStatus, SessionStatus
from fixloop.core.engine.orchestrator import Orchestrator
from fixloop.core.errors import DangerousOperationError, VcsError

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=test", "-c", "user.email=test@localhost", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(repo: Path) -> Path:
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "Initial commit")
    return repo


class TestGitAdapter:

    async def test_cleaning_branch_and_commit(self, git_repo: Path):
        adapter = GitAdapter(str(git_repo))
        assert await adapter.current_branch() == "main"

        branch = await adapter.create_cleaning_branch("abcdef12-3456", "main")
        assert branch == "fixloop/session-abcdef12"
        assert await adapter.current_branch() == branch

        root = await adapter.head()
        (git_repo / "utils.py").write_text("def add(a, b):\n    return a + b\n")
        assert await adapter.has_uncommitted_changes()
        status = await adapter.get_status()
        assert status.modified == ["utils.py"]
        assert not status.clean

        await adapter.stage(["utils.py"])
        commit = await adapter.commit("refactor(utils): spacing")

        assert commit == await adapter.head()
        assert commit != root
        assert await adapter.is_ancestor(root, commit)
        assert not await adapter.is_ancestor(commit, root)
        assert not await adapter.has_uncommitted_changes()
        assert git(git_repo, "log", "-1", "--format=%an") == "fixloop"

    async def test_untracked_files_do_not_make_the_tree_dirty(self, git_repo: Path):
        (git_repo / ".pytest_cache").mkdir()
        (git_repo / ".pytest_cache" / "README.md").write_text("cache\n")
        (git_repo / "notes.txt").write_text("scratch\n")
        adapter = GitAdapter(str(git_repo))

        assert not await adapter.has_uncommitted_changes()
        status = await adapter.get_status()
        assert "notes.txt" in status.untracked
        assert status.modified == []

        # Branch setup goes ahead with untracked files present
        branch = await adapter.create_cleaning_branch("abcdef12")
        assert await adapter.current_branch() == branch
        assert (git_repo / "notes.txt").exists()

    async def test_existing_branch_is_reused(self, git_repo: Path):
        adapter = GitAdapter(str(git_repo))
        first = await adapter.create_cleaning_branch("abcdef12")
        git(git_repo, "checkout", "-q", "main")
        again = await adapter.create_cleaning_branch("abcdef12")
        assert first == again
        assert await adapter.current_branch() == first

    async def test_dirty_tree_refuses_branch_switch(self, git_repo: Path):
        (git_repo / "app.py").write_text("changed\n")
        adapter = GitAdapter(str(git_repo))
        with pytest.raises(DangerousOperationError):
            await adapter.create_cleaning_branch("abcdef12")

    async def test_not_a_repository(self, tmp_path: Path):
        adapter = GitAdapter(str(tmp_path))
        with pytest.raises(VcsError, match="not a git working tree"):
            await adapter.create_cleaning_branch("abcdef12")

    async def test_commit_refused_outside_session_branch(self, git_repo: Path):
        adapter = GitAdapter(str(git_repo))
        (git_repo / "app.py").write_text("changed\n")
        await adapter.stage(["app.py"])
        with pytest.raises(DangerousOperationError, match="not a session branch"):
            await adapter.commit("should not land on main")

    async def test_checkpoint_restore_and_delete(self, git_repo: Path):
        adapter = GitAdapter(str(git_repo))
        await adapter.create_cleaning_branch("abcdef12")
        tag = await adapter.create_checkpoint("abcdef12-1")
        assert tag == "fixloop-cp-abcdef12-1"
        checkpoint_head = await adapter.head()

        (git_repo / "app.py").write_text("changed\n")
        await adapter.stage(["app.py"])
        await adapter.commit("change app")

        await adapter.restore_checkpoint(tag)
        assert await adapter.head() == checkpoint_head
        assert read(git_repo, "app.py") == SAMPLE_FILES["app.py"]

        await adapter.delete_checkpoint(tag)
        assert git(git_repo, "tag", "--list", tag) == ""

    async def test_restore_refuses_non_checkpoint_tags(self, git_repo: Path):
        adapter = GitAdapter(str(git_repo))
        await adapter.create_cleaning_branch("abcdef12")
        with pytest.raises(DangerousOperationError):
            await adapter.restore_checkpoint("v1.0.0")
        with pytest.raises(DangerousOperationError):
            await adapter.delete_checkpoint("v1.0.0")


class TestSessionOnGit:
    """A whole session against a real repository."""

    async def test_fix_commit_stop_and_restore(self, repository, git_repo: Path):
        provider = FakeFixProvider()
        provider.script("unused variable", replace_fix("x = 1\n", ""))
        provider.script("missing spaces", replace_fix("a+b", "a + b"))
        gate = provider.gate("missing spaces")
        orch = Orchestrator(repository=repository, provider=provider, verifier=FakeVerificationRunner())
        try:
            session = await orch.create_session(str(git_repo), make_config())
            first, second = await orch.add_issues(session.id, [
                make_draft("unused variable", "app.py", line=3),
                make_draft("missing spaces", "utils.py", line=2),
            ])
            await orch.start(session.id)
            await provider.wait_for_requests(2)
            await orch.signal(session.id, ControlSignal.STOP)
            gate.set()
            await orch.wait_until_finished(session.id, timeout=10)

            assert session.status == SessionStatus.STOPPED
            assert session.base_branch == "main"
            assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == session.cleaning_branch
            subjects = git(git_repo, "log", "--format=%s", "main..HEAD").splitlines()
            assert subjects == ["refactor(utils): missing spaces", "refactor(app): unused variable"]
            assert f"Issue ID: {first.id}" in git(git_repo, "log", "-1", "--format=%B", first.commit_hash)

            initial = (await orch.list_checkpoints(session.id))[0]
            await orch.restore_checkpoint(session.id, initial.id)

            assert first.status == IssueStatus.PENDING
            assert second.status == IssueStatus.PENDING
            assert git(git_repo, "rev-parse", "HEAD") == initial.commit_hash
            assert read(git_repo, "app.py") == SAMPLE_FILES["app.py"]
            assert git(git_repo, "tag", "--list", "fixloop-cp-*").splitlines() == [initial.tag]
        finally:
            await orch.shutdown()
