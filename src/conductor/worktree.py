from __future__ import annotations

import asyncio
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from conductor.errors import WorktreeError
from conductor.models import ManifestEntry

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9-]")


@dataclass(slots=True)
class WorktreeInfo:
    path: str
    branch: str


@dataclass(slots=True)
class RepoRef:
    name: str
    path: str


@dataclass(slots=True)
class MultiWorktree:
    session_dir: str
    entries: list[ManifestEntry]


def sanitize_name(name: str) -> str:
    return _UNSAFE_CHARS.sub("-", name).lower()


class WorktreeManager:
    """Creates and removes per-task git worktrees under one base directory.

    Each task gets ``<base>/<sanitized-name>-<short-id>``. Multi-repository
    tasks use that directory as a shared session directory holding one
    worktree per repository.
    """

    def __init__(self, base_dir: Path, *, branch_prefix: str = "conductor") -> None:
        self.base_dir = base_dir
        self.branch_prefix = branch_prefix

    async def _run_git(self, args: list[str], cwd: str | Path) -> str:
        process = await asyncio.create_subprocess_exec(
            "git",
            "--no-pager",
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise WorktreeError(f"git {' '.join(args)} failed: {detail}")
        return stdout.decode("utf-8", errors="replace")

    def _new_slot(self, task_name: str) -> tuple[str, Path]:
        slug = f"{sanitize_name(task_name)}-{uuid.uuid4().hex[:8]}"
        return slug, self.base_dir / slug

    async def is_git_repo(self, path: str | Path) -> bool:
        if not Path(path).is_dir():
            return False
        try:
            output = await self._run_git(["rev-parse", "--is-inside-work-tree"], path)
        except WorktreeError:
            return False
        return output.strip() == "true"

    async def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        try:
            await self._run_git(
                ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], repo_path
            )
        except WorktreeError:
            return False
        return True

    async def _add_worktree(
        self,
        repo_path: str | Path,
        target: Path,
        branch: str,
        *,
        new_branch: bool,
    ) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if new_branch:
            await self._run_git(["worktree", "add", str(target), "-b", branch], repo_path)
        else:
            await self._run_git(["worktree", "add", str(target), branch], repo_path)

    async def _resolve_branch(self, repo_path: str | Path, branch: str, create: bool) -> bool:
        """Return True when ``branch`` has to be created."""
        if await self.branch_exists(repo_path, branch):
            return False
        if not create:
            raise WorktreeError(f"Branch {branch!r} does not exist in {repo_path}")
        return True

    async def create_worktree(self, repo_path: str | Path, task_name: str) -> WorktreeInfo:
        slug, target = self._new_slot(task_name)
        branch = f"{self.branch_prefix}/{slug}"
        await self._add_worktree(repo_path, target, branch, new_branch=True)
        logger.info(f"Created worktree {target} on {branch}")
        return WorktreeInfo(path=str(target), branch=branch)

    async def create_branch_worktree(
        self,
        repo_path: str | Path,
        branch: str,
        task_name: str,
        *,
        create: bool = False,
    ) -> WorktreeInfo:
        new_branch = await self._resolve_branch(repo_path, branch, create)
        _, target = self._new_slot(task_name)
        await self._add_worktree(repo_path, target, branch, new_branch=new_branch)
        logger.info(f"Created worktree {target} for existing branch {branch}")
        return WorktreeInfo(path=str(target), branch=branch)

    async def checkout_branch(
        self, repo_path: str | Path, branch: str, *, create: bool = False
    ) -> None:
        if await self._resolve_branch(repo_path, branch, create):
            await self._run_git(["checkout", "-b", branch], repo_path)
        else:
            await self._run_git(["checkout", branch], repo_path)

    async def create_multi_worktree(
        self,
        repos: list[RepoRef],
        task_name: str,
        *,
        branch: str | None = None,
        create: bool = False,
    ) -> MultiWorktree:
        slug, session_dir = self._new_slot(task_name)
        session_dir.mkdir(parents=True, exist_ok=True)
        entries: list[ManifestEntry] = []
        try:
            for repo in repos:
                target = session_dir / sanitize_name(repo.name)
                if branch is None:
                    repo_branch = f"{self.branch_prefix}/{slug}"
                    await self._add_worktree(repo.path, target, repo_branch, new_branch=True)
                else:
                    repo_branch = branch
                    new_branch = await self._resolve_branch(repo.path, branch, create)
                    await self._add_worktree(repo.path, target, branch, new_branch=new_branch)
                entries.append(
                    ManifestEntry(
                        repo_name=repo.name,
                        repo_path=repo.path,
                        worktree_path=str(target),
                        branch=repo_branch,
                    )
                )
        except WorktreeError:
            await self.remove_multi_worktree(entries, str(session_dir))
            raise
        logger.info(f"Created {len(entries)} worktrees under {session_dir}")
        return MultiWorktree(session_dir=str(session_dir), entries=entries)

    async def remove_worktree(self, repo_path: str | Path, worktree_path: str | Path) -> None:
        if not Path(repo_path).is_dir():
            logger.warning(f"Repository {repo_path} is gone; deleting {worktree_path} directly")
            shutil.rmtree(worktree_path, ignore_errors=True)
            return
        if Path(worktree_path).exists():
            await self._run_git(["worktree", "remove", str(worktree_path), "--force"], repo_path)
        else:
            await self._run_git(["worktree", "prune"], repo_path)

    async def remove_multi_worktree(self, entries: list[ManifestEntry], session_dir: str) -> None:
        for entry in entries:
            await self.remove_worktree(entry.repo_path, entry.worktree_path)
        shutil.rmtree(session_dir, ignore_errors=True)

    async def list_branches(self, repo_path: str | Path) -> list[str]:
        output = await self._run_git(
            ["for-each-ref", "--format=%(refname:short)", "refs/heads"], repo_path
        )
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def list_worktrees(self, repo_path: str | Path) -> list[WorktreeInfo]:
        output = await self._run_git(["worktree", "list", "--porcelain"], repo_path)
        worktrees: list[WorktreeInfo] = []
        current_path: str | None = None
        current_branch = "HEAD"
        for line in [*output.splitlines(), ""]:
            if line.startswith("worktree "):
                current_path = line.removeprefix("worktree ")
                current_branch = "HEAD"
            elif line.startswith("branch "):
                current_branch = line.removeprefix("branch ").removeprefix("refs/heads/")
            elif not line and current_path is not None:
                worktrees.append(WorktreeInfo(path=current_path, branch=current_branch))
                current_path = None
        return worktrees
