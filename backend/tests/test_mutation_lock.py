"""
Tests for the mutation lock and its hold ledger.
"""

import asyncio
from pathlib import Path

import pytest

from conftest import (
    FakeFixProvider,
    FakeVerificationRunner,
    make_config,
    make_draft,
    replace_fix,
    wait_for,
)
from fixloop.core.engine.domain import AttemptOutcome, IssueStatus, SessionStatus
from fixloop.core.engine.mutation_lock import LockWindow, MutationLock, run_to_completion
from fixloop.core.engine.orchestrator import Orchestrator


class TestMutationLock:
    """Unit behaviour of the lock ledger."""

    async def test_windows_are_recorded_in_order(self):
        lock = MutationLock("s1")
        async with lock.hold("issue-1", "fix") as window:
            assert lock.locked
            assert lock.current is window
        async with lock.hold("checkpoint", "interval"):
            pass

        first, second = lock.windows
        assert not lock.locked
        assert lock.current is None
        assert (first.holder, first.operation) == ("issue-1", "fix")
        assert first.acquired_seq < first.released_seq < second.acquired_seq < second.released_seq
        assert not first.overlaps(second)

    async def test_commit_outside_hold_raises(self):
        lock = MutationLock("s1")
        with pytest.raises(RuntimeError, match="outside the mutation lock"):
            lock.record_commit("abc123")

    async def test_commit_recorded_on_open_window(self):
        lock = MutationLock("s1")
        async with lock.hold("issue-1", "fix"):
            lock.record_commit("abc123")
        async with lock.hold("checkpoint", "interval"):
            pass

        assert [w.commits for w in lock.commit_windows()] == [["abc123"]]

    async def test_contending_holders_are_serialized(self):
        lock = MutationLock("s1")
        inside = 0
        peak = 0

        async def worker(name: str):
            nonlocal inside, peak
            async with lock.hold(name, "fix"):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker(f"w{i}") for i in range(4)))

        assert peak == 1
        assert len(lock.windows) == 4
        for a, b in zip(lock.windows, lock.windows[1:]):
            assert not a.overlaps(b)

    def test_open_window_overlaps_everything(self):
        closed = LockWindow("a", "fix", acquired_seq=1, acquired_at=0.0, released_seq=2, released_at=0.1)
        open_window = LockWindow("b", "fix", acquired_seq=3, acquired_at=0.2)
        assert open_window.is_open
        assert closed.overlaps(open_window)

    async def test_window_ledger_is_bounded(self):
        lock = MutationLock("s1", keep_windows=3)
        for i in range(5):
            async with lock.hold(f"h{i}", "fix"):
                pass
        assert [w.holder for w in lock.windows] == ["h2", "h3", "h4"]


class TestRunToCompletion:
    """Work past lock acquisition survives cancellation of its caller."""

    async def test_returns_result(self):
        async def work():
            await asyncio.sleep(0)
            return 42

        assert await run_to_completion(work()) == 42

    async def test_inner_work_finishes_when_caller_is_cancelled(self):
        finished = asyncio.Event()
        started = asyncio.Event()

        async def work():
            started.set()
            await asyncio.sleep(0.05)
            finished.set()
            return "done"

        caller = asyncio.create_task(run_to_completion(work()))
        await started.wait()
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller
        assert finished.is_set()

    async def test_inner_error_outranks_cancellation(self):
        started = asyncio.Event()

        async def work():
            started.set()
            await asyncio.sleep(0.02)
            raise ValueError("revert failed")

        caller = asyncio.create_task(run_to_completion(work()))
        await started.wait()
        caller.cancel()

        with pytest.raises(ValueError, match="revert failed"):
            await caller


class TestSessionMutations:
    """Concurrent pipelines never mutate the tree at the same time."""

    async def test_commits_happen_inside_disjoint_windows(
        self,
        repository,
        vcs_factory,
        vcs_instances: dict,
        repo: Path,
    ):
        provider = FakeFixProvider()
        provider.script("unused variable", replace_fix("x = 1\n", ""))
        provider.script("missing spaces", replace_fix("a+b", "a + b"))
        provider.script("debug print", replace_fix("    print('debug')\n", ""))
        provider.script("trailing whitespace", replace_fix("'x'  \n", "'x'\n"))
        verifier = FakeVerificationRunner(delay=0.02)

        orch = Orchestrator(repository=repository, vcs_factory=vcs_factory, provider=provider, verifier=verifier)
        try:
            session = await orch.create_session(str(repo), make_config(concurrency=3))
            issues = await orch.add_issues(session.id, [
                make_draft("unused variable", "app.py", line=3),
                make_draft("missing spaces", "utils.py", line=2),
                make_draft("debug print", "views.py", line=2),
                make_draft("trailing whitespace", "models.py", line=2),
            ])
            await orch.start(session.id)
            session = await orch.wait_until_finished(session.id, timeout=5)
        finally:
            await orch.shutdown()

        assert session.status == SessionStatus.COMPLETED
        assert all(i.status == IssueStatus.RESOLVED for i in issues)
        assert verifier.calls == 4

        windows = orch.runtimes[session.id].lock.windows
        assert all(not w.is_open for w in windows)
        for i, a in enumerate(windows):
            for b in windows[i + 1:]:
                assert not a.overlaps(b)

        # Every commit after the root was made inside exactly one fix window
        vcs = vcs_instances[str(repo.resolve())]
        made = vcs.log[1:]
        recorded = [c for w in windows for c in w.commits]
        assert sorted(made) == sorted(recorded)
        assert {w.holder for w in windows if w.commits} == {i.id for i in issues}

    async def test_cancelled_pipeline_still_records_its_attempt(
        self,
        repository,
        vcs_factory,
        repo: Path,
    ):
        provider = FakeFixProvider()
        provider.script("unused variable", replace_fix("x = 1\n", ""))
        verifier = FakeVerificationRunner(delay=0.2)

        orch = Orchestrator(repository=repository, vcs_factory=vcs_factory, provider=provider, verifier=verifier)
        try:
            session = await orch.create_session(str(repo), make_config())
            (issue,) = await orch.add_issues(session.id, [make_draft("unused variable", "app.py", line=3)])
            await orch.start(session.id)

            # Cancel while verification holds the lock
            await wait_for(lambda: verifier.calls == 1)
            orch.runtimes[session.id].in_flight[issue.id].cancel()

            session = await orch.wait_until_finished(session.id, timeout=5)
            issue = await orch.get_issue(session.id, issue.id)
        finally:
            await orch.shutdown()

        assert session.status == SessionStatus.COMPLETED
        assert issue.status == IssueStatus.RESOLVED

        (record,) = await repository.load_attempts(session.id)
        assert record.outcome == AttemptOutcome.RESOLVED
        assert record.tokens_used == 120
        assert record.lines_removed == 1
        assert record.files == ["app.py"]
