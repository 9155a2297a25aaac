"""
VCS Adapter
===========

Branch isolation, commits and checkpoint tags for one repository.

``GitAdapter`` shells out to ``git`` with asyncio subprocesses. Every
operation that rewrites history is restricted to the session branch.
"""

import asyncio
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from fixloop.core.config import settings
from fixloop.core.errors import DangerousOperationError, VcsError, WorkingTreeError

logger = logging.getLogger(__name__)


@dataclass
class VcsStatus:
    branch: Optional[str]
    head: Optional[str]
    clean: bool
    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)


class VcsAdapter(ABC):
    """Version control operations the engine needs."""

    @abstractmethod
    async def create_cleaning_branch(self, session_id: str, base_branch: Optional[str] = None) -> str:
        """Create (or reuse) the session branch and check it out. Returns its name."""

    @abstractmethod
    async def current_branch(self) -> Optional[str]:
        ...

    @abstractmethod
    async def stage(self, files: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def stage_all(self) -> None:
        ...

    @abstractmethod
    async def commit(self, message: str) -> str:
        """Commit staged changes, returning the new commit hash."""

    @abstractmethod
    async def head(self) -> str:
        ...

    @abstractmethod
    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        ...

    @abstractmethod
    async def create_checkpoint(self, name: str) -> str:
        """Tag HEAD, returning the tag name."""

    @abstractmethod
    async def restore_checkpoint(self, tag: str) -> None:
        """Reset the session branch to a checkpoint tag."""

    @abstractmethod
    async def delete_checkpoint(self, tag: str) -> None:
        ...

    @abstractmethod
    async def has_uncommitted_changes(self) -> bool:
        ...

    @abstractmethod
    async def get_status(self) -> VcsStatus:
        ...


class GitAdapter(VcsAdapter):
    """Git implementation backed by the ``git`` CLI."""

    def __init__(
        self,
        repository_path: str,
        git_binary: Optional[str] = None,
        branch_prefix: Optional[str] = None,
        tag_prefix: Optional[str] = None,
    ):
        self.repository_path = str(Path(repository_path).resolve())
        self.git_binary = git_binary or settings.GIT_BINARY
        self.branch_prefix = branch_prefix or settings.BRANCH_PREFIX
        self.tag_prefix = tag_prefix or settings.CHECKPOINT_TAG_PREFIX
        self.session_branch: Optional[str] = None

    async def _git(self, *args: str, check: bool = True) -> tuple[int, str, str]:
        command = [
            self.git_binary,
            "-c", f"user.name={settings.GIT_AUTHOR_NAME}",
            "-c", f"user.email={settings.GIT_AUTHOR_EMAIL}",
            *args,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.repository_path,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise VcsError(f"Cannot run git in {self.repository_path}: {e}", command=list(args))
        stdout, stderr = await process.communicate()
        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        if check and process.returncode != 0:
            raise VcsError(
                f"git {' '.join(args)} failed: {err.strip() or out.strip()}",
                command=list(args),
                stderr=err,
            )
        return process.returncode, out, err

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def _branch_exists(self, name: str) -> bool:
        code, _, _ = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return code == 0

    async def create_cleaning_branch(self, session_id: str, base_branch: Optional[str] = None) -> str:
        code, out, _ = await self._git("rev-parse", "--is-inside-work-tree", check=False)
        if code != 0 or out.strip() != "true":
            raise VcsError(f"{self.repository_path} is not a git working tree")

        if await self.has_uncommitted_changes():
            raise DangerousOperationError(
                "Repository has uncommitted changes; refusing to switch branches"
            )

        name = f"{self.branch_prefix}{session_id[:8]}"
        if await self._branch_exists(name):
            await self._git("checkout", name)
            logger.info(f"Reusing session branch {name}")
        else:
            base = base_branch or await self.current_branch() or "HEAD"
            await self._git("checkout", "-b", name, base)
            logger.info(f"Created session branch {name} from {base}")
        self.session_branch = name
        return name

    async def current_branch(self) -> Optional[str]:
        code, out, _ = await self._git("symbolic-ref", "--short", "-q", "HEAD", check=False)
        return out.strip() if code == 0 and out.strip() else None

    async def _require_session_branch(self) -> str:
        branch = await self.current_branch()
        if branch is None or not branch.startswith(self.branch_prefix):
            raise DangerousOperationError(
                f"Refusing to rewrite branch {branch or '(detached)'}: not a session branch"
            )
        if self.session_branch and branch != self.session_branch:
            raise WorkingTreeError(
                f"Checked out branch {branch} is not the session branch {self.session_branch}"
            )
        return branch

    # ------------------------------------------------------------------
    # Commits
    # ------------------------------------------------------------------

    async def stage(self, files: Sequence[str]) -> None:
        if files:
            await self._git("add", "--", *files)

    async def stage_all(self) -> None:
        await self._git("add", "-A")

    async def commit(self, message: str) -> str:
        await self._require_session_branch()
        await self._git("commit", "--no-verify", "-m", message)
        return await self.head()

    async def head(self) -> str:
        _, out, _ = await self._git("rev-parse", "HEAD")
        return out.strip()

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        code, _, err = await self._git("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        if code == 0:
            return True
        if code == 1:
            return False
        raise VcsError(f"Cannot compare {ancestor[:10]} and {descendant[:10]}: {err.strip()}")

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def create_checkpoint(self, name: str) -> str:
        tag = name if name.startswith(self.tag_prefix) else f"{self.tag_prefix}{name}"
        await self._git("tag", "-f", tag)
        return tag

    async def restore_checkpoint(self, tag: str) -> None:
        if not tag.startswith(self.tag_prefix):
            raise DangerousOperationError(f"{tag} is not a checkpoint tag")
        await self._require_session_branch()
        if await self.has_uncommitted_changes():
            raise DangerousOperationError("Refusing to reset a working tree with uncommitted changes")
        await self._git("reset", "--hard", f"refs/tags/{tag}")
        logger.info(f"Restored {self.repository_path} to {tag}")

    async def delete_checkpoint(self, tag: str) -> None:
        if not tag.startswith(self.tag_prefix):
            raise DangerousOperationError(f"{tag} is not a checkpoint tag")
        await self._git("tag", "-d", tag, check=False)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def has_uncommitted_changes(self) -> bool:
        _, out, _ = await self._git("status", "--porcelain", "--untracked-files=no")
        return bool(out.strip())

    async def get_status(self) -> VcsStatus:
        _, out, _ = await self._git("status", "--porcelain")
        staged, modified, untracked = [], [], []
        for line in out.splitlines():
            if len(line) < 4:
                continue
            index, worktree, path = line[0], line[1], line[3:]
            if index == "?" and worktree == "?":
                untracked.append(path)
                continue
            if index not in (" ", "?"):
                staged.append(path)
            if worktree not in (" ", "?"):
                modified.append(path)
        code, head, _ = await self._git("rev-parse", "HEAD", check=False)
        return VcsStatus(
            branch=await self.current_branch(),
            head=head.strip() if code == 0 else None,
            clean=not out.strip(),
            staged=staged,
            modified=modified,
            untracked=untracked,
        )
