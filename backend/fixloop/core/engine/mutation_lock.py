"""
Resolution Engine - Mutation Lock
=================================

The session-wide gate in front of the working tree. Apply, verify, commit,
revert, checkpoint and rollback all run while holding it; fix generation
never does.

Every hold is recorded as a window so the ordering of tree mutations can
be inspected after the fact.
"""

import asyncio
import itertools
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class LockWindow:
    """One continuous hold of the mutation lock."""
    holder: str
    operation: str
    acquired_seq: int
    acquired_at: float
    released_seq: Optional[int] = None
    released_at: Optional[float] = None
    commits: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.released_seq is None

    def overlaps(self, other: "LockWindow") -> bool:
        if self.is_open or other.is_open:
            return True
        return not (
            self.released_seq < other.acquired_seq or other.released_seq < self.acquired_seq
        )


class MutationLock:
    """asyncio.Lock with a ledger of hold windows."""

    def __init__(self, session_id: str, keep_windows: int = 10000):
        self.session_id = session_id
        self.keep_windows = keep_windows
        self.windows: list[LockWindow] = []
        self._lock = asyncio.Lock()
        self._counter = itertools.count(1)
        self._current: Optional[LockWindow] = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def current(self) -> Optional[LockWindow]:
        return self._current

    @asynccontextmanager
    async def hold(self, holder: str, operation: str) -> AsyncIterator[LockWindow]:
        """Acquire the lock for ``operation`` on behalf of ``holder``."""
        await self._lock.acquire()
        window = LockWindow(
            holder=holder,
            operation=operation,
            acquired_seq=next(self._counter),
            acquired_at=time.monotonic(),
        )
        self._current = window
        self.windows.append(window)
        if len(self.windows) > self.keep_windows:
            del self.windows[: len(self.windows) - self.keep_windows]
        try:
            yield window
        finally:
            window.released_seq = next(self._counter)
            window.released_at = time.monotonic()
            self._current = None
            self._lock.release()

    def record_commit(self, commit_hash: str) -> None:
        """Attach a commit to the open window. Commits outside a hold are a bug."""
        if self._current is None:
            raise RuntimeError(f"Commit {commit_hash} recorded outside the mutation lock")
        self._current.commits.append(commit_hash)

    def commit_windows(self) -> list[LockWindow]:
        return [w for w in self.windows if w.commits]


async def run_to_completion(awaitable: Awaitable[T]) -> T:
    """
    Await ``awaitable`` so that cancelling the caller does not interrupt it.

    If the caller is cancelled the inner work still runs to the end, then
    the cancellation is re-raised. Used for sections already past lock
    acquisition, which must finish their commit or revert.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                continue
        if not task.cancelled() and task.exception() is not None:
            # Inner failure outranks the cancellation
            raise task.exception()
        raise
