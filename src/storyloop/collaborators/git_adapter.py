"""Version control adapter that shells out to ``git``.

Workspaces that are not git repositories are treated as clean: nothing to
snapshot, revert or commit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from storyloop.collaborators.base import SnapshotRef, VersionControlAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str


class GitCommandError(RuntimeError):
    pass


class GitVersionControlAdapter(VersionControlAdapter):
    def __init__(self, git_binary: str = "git", timeout_seconds: float = 60.0) -> None:
        self._git = git_binary
        self._timeout = timeout_seconds

    async def _git_run(self, workspace_path: str, *args: str) -> GitResult:
        proc = await asyncio.create_subprocess_exec(
            self._git,
            *args,
            cwd=workspace_path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.communicate()
            raise GitCommandError(f"git {' '.join(args)} timed out in {workspace_path}")
        return GitResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _checked(self, workspace_path: str, *args: str) -> GitResult:
        result = await self._git_run(workspace_path, *args)
        if result.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed ({result.returncode}): {result.stderr}"
            )
        return result

    async def is_repo(self, workspace_path: str) -> bool:
        result = await self._git_run(workspace_path, "rev-parse", "--is-inside-work-tree")
        return result.returncode == 0 and result.stdout == "true"

    async def is_dirty(self, workspace_path: str) -> bool:
        if not await self.is_repo(workspace_path):
            return False
        status = await self._checked(workspace_path, "status", "--porcelain")
        return bool(status.stdout)

    async def snapshot(self, workspace_path: str) -> SnapshotRef:
        if not await self.is_repo(workspace_path):
            return SnapshotRef()
        head = await self._git_run(workspace_path, "rev-parse", "HEAD")
        if head.returncode != 0:
            return SnapshotRef()
        stash_sha: Optional[str] = None
        status = await self._checked(workspace_path, "status", "--porcelain")
        if status.stdout:
            stash = await self._git_run(workspace_path, "stash", "create")
            stash_sha = stash.stdout or None
        return SnapshotRef(head_sha=head.stdout, stash_sha=stash_sha)

    async def revert_to_clean(self, workspace_path: str) -> None:
        if not await self.is_repo(workspace_path):
            return
        head = await self._git_run(workspace_path, "rev-parse", "--verify", "-q", "HEAD")
        if head.returncode == 0:
            # Resets the index as well, so staged edits are dropped too.
            await self._checked(workspace_path, "reset", "--hard", "HEAD")
        else:
            # Unborn branch: nothing to reset to, only unstage.
            await self._git_run(workspace_path, "reset", "-q")
        await self._checked(workspace_path, "clean", "-fd")
        logger.info("Reverted uncommitted changes in %s", workspace_path)

    async def commit(self, workspace_path: str, message: str) -> Optional[str]:
        if not await self.is_repo(workspace_path):
            return None
        await self._checked(workspace_path, "add", "-A")
        diff = await self._git_run(workspace_path, "diff", "--cached", "--quiet")
        if diff.returncode == 0:
            return None
        await self._checked(workspace_path, "commit", "-m", message)
        head = await self._checked(workspace_path, "rev-parse", "HEAD")
        return head.stdout or None
