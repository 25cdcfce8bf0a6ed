from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from codecrew.config import WorkspaceConfig
from codecrew.errors import CrewTimeoutError, WorkspaceError
from codecrew.models import Workspace

logger = logging.getLogger(__name__)

SAFE_NAME_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")
LOCAL_COPY_IGNORE = shutil.ignore_patterns(".git", ".codecrew", "__pycache__")


@dataclass(slots=True)
class MergeOutcome:
    merged: bool
    conflict: bool
    commits: int
    detail: str = ""


def _safe_name(value: str) -> str:
    return SAFE_NAME_PATTERN.sub("-", value).strip("-") or "task"


class WorkspaceManager:
    """Hands each task attempt its own git worktree and branch."""

    def __init__(self, repo_root: Path, config: WorkspaceConfig) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        root = Path(config.root)
        self.root = root if root.is_absolute() else self.repo_root / root
        self._git_enabled: bool | None = None
        self._merge_lock = asyncio.Lock()

    def path_for(self, task_id: str, attempt: int) -> Path:
        return self.root / f"{_safe_name(task_id)}-attempt-{attempt}"

    @staticmethod
    def branch_for(task_id: str, attempt: int) -> str:
        return f"crew/{_safe_name(task_id)}/attempt-{attempt}"

    async def _run_git_once(self, args: list[str], cwd: Path) -> tuple[str, str, int]:
        proc = await asyncio.create_subprocess_exec(
            "git",
            "--no-pager",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.config.op_timeout_seconds
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return (
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
            proc.returncode or 0,
        )

    async def _run_git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        task_id: str | None = None,
    ) -> tuple[str, str, int]:
        workdir = cwd or self.repo_root
        for attempt in range(self.config.op_retries + 1):
            try:
                return await self._run_git_once(args, workdir)
            except TimeoutError:
                logger.warning(
                    "git %s timed out (attempt %d/%d)",
                    args[0],
                    attempt + 1,
                    self.config.op_retries + 1,
                )
        raise CrewTimeoutError(
            f"git {args[0]} timed out after {self.config.op_timeout_seconds:.1f}s "
            f"({self.config.op_retries + 1} attempts).",
            reason="workspace_op",
            task_id=task_id,
        )

    async def _git(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        task_id: str | None = None,
    ) -> str:
        stdout, stderr, rc = await self._run_git(args, cwd=cwd, task_id=task_id)
        if rc != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed: {stderr or stdout}",
                reason="git_failure",
                task_id=task_id,
            )
        return stdout

    async def git_enabled(self) -> bool:
        if self._git_enabled is None:
            if shutil.which("git") is None:
                self._git_enabled = False
            else:
                _, _, rc = await self._run_git(["rev-parse", "--verify", "HEAD"])
                self._git_enabled = rc == 0
            if not self._git_enabled:
                logger.info("No usable git history at %s; using plain directories.", self.repo_root)
        return self._git_enabled

    async def acquire(self, task_id: str, attempt: int) -> Workspace:
        path = self.path_for(task_id, attempt)
        if path.exists():
            logger.warning("Removing stale workspace %s", path)
            await self._remove_path(path, task_id=task_id)
        self.root.mkdir(parents=True, exist_ok=True)

        if not await self.git_enabled():
            await asyncio.to_thread(
                shutil.copytree, self.repo_root, path, ignore=LOCAL_COPY_IGNORE
            )
            return Workspace(task_id=task_id, attempt=attempt, path=path)

        base_ref = await self._git(["rev-parse", "HEAD"], task_id=task_id)
        branch = self.branch_for(task_id, attempt)
        _, stderr, rc = await self._run_git(
            ["worktree", "add", str(path), "-b", branch, base_ref], task_id=task_id
        )
        if rc != 0 and "already exists" in stderr:
            _, stderr, rc = await self._run_git(
                ["worktree", "add", "-B", branch, str(path), base_ref], task_id=task_id
            )
        if rc != 0:
            raise WorkspaceError(
                f"Could not create worktree for {task_id}: {stderr}",
                reason="worktree_add",
                task_id=task_id,
            )
        logger.debug("Acquired workspace %s on %s", path, branch)
        return Workspace(
            task_id=task_id, attempt=attempt, path=path, branch=branch, base_ref=base_ref
        )

    async def commit_pending(self, workspace: Workspace) -> bool:
        if workspace.branch is None:
            return False
        status = await self._git(
            ["status", "--porcelain"], cwd=workspace.path, task_id=workspace.task_id
        )
        if not status:
            return False
        await self._git(["add", "-A"], cwd=workspace.path, task_id=workspace.task_id)
        await self._git(
            ["commit", "-m", f"{workspace.task_id}: agent changes (attempt {workspace.attempt})"],
            cwd=workspace.path,
            task_id=workspace.task_id,
        )
        return True

    async def commit_count(self, workspace: Workspace) -> int:
        if workspace.branch is None or workspace.base_ref is None:
            return 0
        output = await self._git(
            ["rev-list", "--count", f"{workspace.base_ref}..{workspace.branch}"],
            task_id=workspace.task_id,
        )
        return int(output or "0")

    async def merge(self, workspace: Workspace) -> MergeOutcome:
        if workspace.branch is None:
            await asyncio.to_thread(
                shutil.copytree, workspace.path, self.repo_root, dirs_exist_ok=True
            )
            return MergeOutcome(merged=True, conflict=False, commits=0)

        await self.commit_pending(workspace)
        commits = await self.commit_count(workspace)
        if commits == 0:
            return MergeOutcome(merged=True, conflict=False, commits=0, detail="no changes")

        async with self._merge_lock:
            stdout, stderr, rc = await self._run_git(
                [
                    "merge",
                    "--no-ff",
                    workspace.branch,
                    "-m",
                    f"Merge {workspace.task_id} (attempt {workspace.attempt})",
                ],
                task_id=workspace.task_id,
            )
            if rc == 0:
                return MergeOutcome(merged=True, conflict=False, commits=commits, detail=stdout)
            await self._run_git(["merge", "--abort"], task_id=workspace.task_id)
        logger.warning("Merge of %s conflicted: %s", workspace.branch, stderr or stdout)
        return MergeOutcome(merged=False, conflict=True, commits=commits, detail=stderr or stdout)

    async def release(self, workspace: Workspace, *, keep_branch: bool = False) -> None:
        await self._remove_path(workspace.path, task_id=workspace.task_id)
        if workspace.branch and not keep_branch:
            await self._run_git(["branch", "-D", workspace.branch], task_id=workspace.task_id)

    async def discard(self, workspace: Workspace) -> None:
        await self.release(workspace)
        logger.debug("Discarded workspace %s", workspace.path)

    def leftovers(self, task_id: str) -> list[Path]:
        if not self.root.exists():
            return []
        return sorted(self.root.glob(f"{_safe_name(task_id)}-attempt-*"))

    async def cleanup_task(self, task_id: str) -> int:
        removed = 0
        for path in self.leftovers(task_id):
            await self._remove_path(path, task_id=task_id)
            removed += 1
        return removed

    async def cleanup_all(self) -> int:
        removed = 0
        if self.root.exists():
            for path in sorted(self.root.iterdir()):
                if path.is_dir():
                    await self._remove_path(path)
                    removed += 1
        if await self.git_enabled():
            await self._run_git(["worktree", "prune"])
        return removed

    async def _remove_path(self, path: Path, *, task_id: str | None = None) -> None:
        if await self.git_enabled():
            _, stderr, rc = await self._run_git(
                ["worktree", "remove", "--force", str(path)], task_id=task_id
            )
            if rc != 0:
                logger.debug("worktree remove %s: %s", path, stderr)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
        if await self.git_enabled():
            await self._run_git(["worktree", "prune"], task_id=task_id)
