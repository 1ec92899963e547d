"""
Git merge execution against a local working copy.

The executor is the only component that touches a repository on disk. It
answers one question, "merge branch A into branch B", with either the
resulting commit SHA or the list of conflicted files. Everything else that
can go wrong (missing path, failed fetch, rejected push) is an
``GitOperationError`` so callers can tell a content conflict apart from an
infrastructure fault.

Deploy sequence (``merge_branch``):
    1. ``git fetch <remote>``
    2. ``git checkout <target>``
    3. ``git reset --hard <remote>/<target>``
    4. ``git merge --no-ff --no-edit <remote>/<source>``
       - on conflict: collect ``git diff --name-only --diff-filter=U``,
         ``git merge --abort`` and report the files
    5. ``git commit --allow-empty -m <deploy marker>``
    6. ``git push <remote> <target>``
    7. ``git rev-parse HEAD``
    finally: check out the branch that was active before

Branch sync (``update_branch``) runs the inverse: the base branch is merged
into the task branch, which is fast-forwarded from the remote instead of
being reset.

Thread Safety:
    A working copy is a single mutable resource. Callers must serialize
    calls per repository path; the executor does not lock.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import structlog

from task_reconciler.exceptions import GitOperationError
from task_reconciler.git.commands import GitResult, run_git

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MergeSucceeded:
    commit_sha: str


@dataclass(frozen=True)
class MergeConflicted:
    conflicted_files: tuple[str, ...]


MergeOutcome = MergeSucceeded | MergeConflicted


class GitMergeExecutor(ABC):
    """Collaborator interface consumed by the deploy engine."""

    @abstractmethod
    async def merge_branch(self, repo_path: Path, source: str, target: str) -> MergeOutcome:
        """Merge ``source`` into ``target`` and publish ``target``."""
        pass

    @abstractmethod
    async def update_branch(self, repo_path: Path, branch: str, from_branch: str) -> MergeOutcome:
        """Merge ``from_branch`` into ``branch`` and publish ``branch``."""
        pass


class SubprocessGitExecutor(GitMergeExecutor):
    """Executor that shells out to the ``git`` binary.

    Args:
        remote: Remote to fetch from and push to
        commit_message: Deploy marker commit message; ``{user}`` is replaced
            with the working copy's ``user.name``
        marker_commit: Whether to record the deploy marker commit at all
    """

    def __init__(
        self,
        remote: str = "origin",
        commit_message: str = "chore: [{user}] [deploy]",
        marker_commit: bool = True,
    ) -> None:
        self.remote = remote
        self.commit_message = commit_message
        self.marker_commit = marker_commit

    async def _git(self, repo_path: Path, *args: str) -> GitResult:
        try:
            return await run_git(repo_path, *args)
        except FileNotFoundError as e:
            raise GitOperationError(f"Cannot run git in {repo_path}: {e}", code="GIT_UNAVAILABLE") from e
        except OSError as e:
            raise GitOperationError(f"Cannot run git in {repo_path}: {e}", code="GIT_ERROR") from e

    async def _require(self, repo_path: Path, code: str, message: str, *args: str) -> GitResult:
        result = await self._git(repo_path, *args)
        if not result.ok:
            raise GitOperationError(f"{message}: {result.stderr}", code=code, stderr=result.stderr)
        return result

    def _check_path(self, repo_path: Path) -> Path:
        resolved = Path(repo_path).expanduser()
        if not resolved.is_dir():
            raise GitOperationError(f"Repository path does not exist: {repo_path}", code="REPO_PATH_NOT_FOUND")
        return resolved

    async def _current_branch(self, repo_path: Path) -> str:
        result = await self._require(
            repo_path, "GIT_ERROR", "Failed to get current branch", "rev-parse", "--abbrev-ref", "HEAD"
        )
        return result.stdout

    async def _user_name(self, repo_path: Path) -> str:
        result = await self._git(repo_path, "config", "user.name")
        return result.stdout if result.ok and result.stdout else "unknown"

    async def _conflicted_files(self, repo_path: Path) -> list[str]:
        result = await self._git(repo_path, "diff", "--name-only", "--diff-filter=U")
        return result.lines()

    async def _merge(self, repo_path: Path, ref: str) -> MergeConflicted | None:
        """Merge ``ref`` into HEAD; returns the conflict, or None on success."""
        result = await self._git(repo_path, "merge", "--no-ff", "--no-edit", ref)
        if result.ok:
            return None
        conflicted = await self._conflicted_files(repo_path)
        if conflicted:
            await self._git(repo_path, "merge", "--abort")
            return MergeConflicted(conflicted_files=tuple(conflicted))
        raise GitOperationError(f"Merge failed: {result.stderr}", code="MERGE_FAILED", stderr=result.stderr)

    async def _restore(self, repo_path: Path, branch: str) -> None:
        # A cancelled merge can leave MERGE_HEAD behind; abort it before switching back.
        if (repo_path / ".git" / "MERGE_HEAD").exists():
            await self._git(repo_path, "merge", "--abort")
        result = await self._git(repo_path, "checkout", branch)
        if not result.ok:
            log.warning("git_restore_branch_failed", repo=str(repo_path), branch=branch, stderr=result.stderr)

    async def _head_sha(self, repo_path: Path) -> str:
        result = await self._require(repo_path, "GIT_ERROR", "Failed to read HEAD", "rev-parse", "HEAD")
        return result.stdout

    async def merge_branch(self, repo_path: Path, source: str, target: str) -> MergeOutcome:
        repo_path = self._check_path(repo_path)
        previous = await self._current_branch(repo_path)
        user = await self._user_name(repo_path)
        log.info("git_merge_started", repo=str(repo_path), source=source, target=target)

        try:
            await self._require(repo_path, "FETCH_FAILED", "Failed to fetch", "fetch", self.remote)
            await self._require(
                repo_path, "CHECKOUT_FAILED", f"Failed to checkout branch {target}", "checkout", target
            )
            await self._require(
                repo_path,
                "RESET_FAILED",
                f"Failed to reset to {self.remote}/{target}",
                "reset",
                "--hard",
                f"{self.remote}/{target}",
            )

            conflict = await self._merge(repo_path, f"{self.remote}/{source}")
            if conflict is not None:
                log.info("git_merge_conflict", source=source, target=target, files=list(conflict.conflicted_files))
                return conflict

            if self.marker_commit:
                commit = await self._git(
                    repo_path, "commit", "--allow-empty", "-m", self.commit_message.format(user=user)
                )
                if not commit.ok and "nothing to commit" not in commit.stderr + commit.stdout:
                    raise GitOperationError(
                        f"Failed to create commit: {commit.stderr}", code="COMMIT_FAILED", stderr=commit.stderr
                    )

            await self._require(repo_path, "PUSH_FAILED", "Failed to push", "push", self.remote, target)
            sha = await self._head_sha(repo_path)
            log.info("git_merge_succeeded", source=source, target=target, commit_sha=sha)
            return MergeSucceeded(commit_sha=sha)
        finally:
            await self._restore(repo_path, previous)

    async def update_branch(self, repo_path: Path, branch: str, from_branch: str) -> MergeOutcome:
        repo_path = self._check_path(repo_path)
        previous = await self._current_branch(repo_path)
        log.info("git_update_started", repo=str(repo_path), branch=branch, from_branch=from_branch)

        try:
            await self._require(repo_path, "FETCH_FAILED", "Failed to fetch", "fetch", self.remote)
            await self._require(
                repo_path, "CHECKOUT_FAILED", f"Failed to checkout branch {branch}", "checkout", branch
            )
            # The branch may have no upstream yet; a failed fast-forward is fine.
            await self._git(repo_path, "pull", self.remote, branch, "--ff-only")

            conflict = await self._merge(repo_path, f"{self.remote}/{from_branch}")
            if conflict is not None:
                return conflict

            await self._require(repo_path, "PUSH_FAILED", "Failed to push", "push", self.remote, branch)
            return MergeSucceeded(commit_sha=await self._head_sha(repo_path))
        finally:
            await self._restore(repo_path, previous)
