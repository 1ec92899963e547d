"""
Deploy engine: merge a task's branch into a deployment branch.

A deploy either succeeds with a commit SHA, or returns a conflict with the
conflicted files. Conflicts are results, not exceptions; infrastructure
failures (git errors, timeouts) raise. Bulk deploy turns every per-task
outcome into a result entry so one failing task never stops the others.

Concurrency Model:
    A working copy is a single mutable resource. Every executor call holds
    a lock keyed by the resolved repository path, so deploys against the
    same repository queue up. Bulk deploy walks each repository's tasks in
    order and runs different repositories concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import structlog

from task_reconciler.enums import DeployOutcome, LogSource
from task_reconciler.exceptions import (
    DeployPreconditionError,
    GitTimeoutError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from task_reconciler.git.executor import GitMergeExecutor, MergeConflicted, MergeOutcome
from task_reconciler.models.domain import Repository, Task
from task_reconciler.models.results import (
    BranchSyncSuccess,
    BulkDeployResult,
    BulkDeployTaskResult,
    DeployConflict,
    DeploySuccess,
)
from task_reconciler.store.task_store import TaskStore

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeployTarget:
    """A task resolved against its repository, ready for the executor."""

    task: Task
    repository: Repository
    path: Path

    @property
    def branch(self) -> str:
        return self.task.head_branch or ""


class DeployEngine:
    """Runs branch deploys through a git merge executor.

    Args:
        store: Task store
        executor: Git merge executor
        merge_timeout: Seconds allowed per executor call
    """

    def __init__(self, store: TaskStore, executor: GitMergeExecutor, merge_timeout: float = 45.0) -> None:
        self.store = store
        self.executor = executor
        self.merge_timeout = merge_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, path: Path) -> asyncio.Lock:
        key = str(path.resolve())
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _resolve(self, task_id: int) -> DeployTarget:
        """Check task and repository preconditions shared by every deploy.

        Raises:
            NotFoundError: Unknown task
            DeployPreconditionError: The task cannot be deployed
        """
        async with self.store.snapshot() as session:
            task = session.require_task(task_id)
            repository = session.get_repository(task.repository_id)

        if not task.head_branch:
            raise DeployPreconditionError("Task has no associated branch", code="TASK_NO_BRANCH")
        if repository is None:
            raise DeployPreconditionError("Task has no associated repository", code="NO_REPOSITORY")
        path = repository.working_copy()
        if path is None:
            raise DeployPreconditionError("Repository local path not configured", code="REPO_PATH_NOT_CONFIGURED")
        if not path.is_dir():
            raise DeployPreconditionError(
                f"Repository path does not exist: {repository.local_path}", code="REPO_PATH_NOT_FOUND"
            )
        return DeployTarget(task=task, repository=repository, path=path)

    def _check_target(self, target: DeployTarget, target_branch: str) -> None:
        branches = target.repository.deployment_branches
        if not branches:
            raise DeployPreconditionError(
                f"Repository {target.repository.full_name} has no deployment branches",
                code="NO_DEPLOYMENT_BRANCHES",
            )
        if target_branch not in branches:
            raise DeployPreconditionError(
                f"Invalid target branch. Allowed: {', '.join(branches)}", code="INVALID_TARGET_BRANCH"
            )

    async def _run(self, path: Path, operation: Callable[[], Awaitable[MergeOutcome]]) -> MergeOutcome:
        """Run one executor call under the working copy lock and the timeout."""
        async with self._lock_for(path):
            try:
                return await asyncio.wait_for(operation(), timeout=self.merge_timeout)
            except TimeoutError as e:
                log.error("git_merge_timeout", path=str(path), timeout=self.merge_timeout)
                raise GitTimeoutError("Merge attempt timed out", timeout_seconds=self.merge_timeout) from e

    async def _record(self, task_id: int, content: str) -> None:
        async with self.store.transaction() as session:
            if session.get_task(task_id) is not None:
                session.add_log(content, LogSource.DEPLOY, task_id)

    async def _record_outcome(self, task_id: int, content: str) -> None:
        """Record the result of a merge that already ran.

        The remote has changed by now, so a failed store write is logged and
        the caller still reports the real outcome.
        """
        try:
            await self._record(task_id, content)
        except InfrastructureError as e:
            log.error("deploy_log_write_failed", task_id=task_id, error=e.message, exc_info=True)

    async def _deploy_target(self, target: DeployTarget, target_branch: str) -> DeploySuccess | DeployConflict:
        log.info("deploy_started", task_id=target.task.id, source=target.branch, target=target_branch)
        try:
            outcome = await self._run(
                target.path, lambda: self.executor.merge_branch(target.path, target.branch, target_branch)
            )
        except InfrastructureError as e:
            await self._record(target.task.id, f"Deploy to {target_branch} failed: {e.message}")
            raise

        if isinstance(outcome, MergeConflicted):
            files = list(outcome.conflicted_files)
            await self._record_outcome(
                target.task.id, f"Deploy to {target_branch} failed: merge conflict in {', '.join(files)}"
            )
            log.info("deploy_conflict", task_id=target.task.id, target=target_branch, files=files)
            return DeployConflict(conflicted_files=files)

        await self._record_outcome(target.task.id, f"Deployed to {target_branch} ({outcome.commit_sha[:7]})")
        log.info("deploy_succeeded", task_id=target.task.id, target=target_branch, commit_sha=outcome.commit_sha)
        return DeploySuccess(target_branch=target_branch, source_branch=target.branch, commit_sha=outcome.commit_sha)

    async def deploy_branch(self, task_id: int, target_branch: str) -> DeploySuccess | DeployConflict:
        """Merge the task's head branch into ``target_branch``.

        Raises:
            NotFoundError: Unknown task
            DeployPreconditionError: The task or repository is not deployable
            InfrastructureError: git failed or timed out
        """
        target = await self._resolve(task_id)
        self._check_target(target, target_branch)
        return await self._deploy_target(target, target_branch)

    async def _bulk_item(self, task_id: int, target_branch: str) -> BulkDeployTaskResult:
        try:
            result = await self.deploy_branch(task_id, target_branch)
        except NotFoundError:
            return BulkDeployTaskResult(task_id=task_id, status=DeployOutcome.SKIPPED, reason="task not found")
        except ValidationError as e:
            return BulkDeployTaskResult(task_id=task_id, status=DeployOutcome.SKIPPED, reason=e.message)
        except InfrastructureError as e:
            log.warning("bulk_deploy_item_failed", task_id=task_id, error=e.message)
            return BulkDeployTaskResult(
                task_id=task_id, status=DeployOutcome.SKIPPED, reason=f"deploy error: {e.message}"
            )
        except Exception as e:
            log.error("bulk_deploy_item_crashed", task_id=task_id, error=str(e), exc_info=True)
            return BulkDeployTaskResult(task_id=task_id, status=DeployOutcome.SKIPPED, reason=f"deploy error: {e}")

        if isinstance(result, DeployConflict):
            return BulkDeployTaskResult(
                task_id=task_id, status=DeployOutcome.CONFLICT, conflicted_files=result.conflicted_files
            )
        return BulkDeployTaskResult(task_id=task_id, status=DeployOutcome.SUCCESS, commit_sha=result.commit_sha)

    async def _bulk_group(self, task_ids: list[int], target_branch: str) -> list[BulkDeployTaskResult]:
        return [await self._bulk_item(task_id, target_branch) for task_id in task_ids]

    async def bulk_deploy(self, task_ids: list[int], target_branch: str) -> BulkDeployResult:
        """Deploy many tasks; each gets its own success, conflict or skip entry.

        Tasks sharing a repository run one after another in the given order;
        different repositories run concurrently. Results keep the input order.
        """
        async with self.store.snapshot() as session:
            groups: dict[int | None, list[int]] = {}
            for task_id in dict.fromkeys(task_ids):
                task = session.get_task(task_id)
                groups.setdefault(task.repository_id if task else None, []).append(task_id)

        log.info("bulk_deploy_started", tasks=len(task_ids), repositories=len(groups), target=target_branch)
        grouped = await asyncio.gather(*(self._bulk_group(ids, target_branch) for ids in groups.values()))
        by_id = {r.task_id: r for results in grouped for r in results}

        result = BulkDeployResult.from_results([by_id[task_id] for task_id in dict.fromkeys(task_ids)])
        log.info(
            "bulk_deploy_completed",
            success=result.summary.success,
            conflict=result.summary.conflict,
            skipped=result.summary.skipped,
        )
        return result

    async def sync_branch(self, task_id: int) -> BranchSyncSuccess | DeployConflict:
        """Merge the task's base branch into its head branch.

        Raises:
            NotFoundError: Unknown task
            DeployPreconditionError: No head or base branch, or no usable repository
            InfrastructureError: git failed or timed out
        """
        target = await self._resolve(task_id)
        base_branch = target.task.base_branch
        if not base_branch:
            raise DeployPreconditionError("Task has no base branch", code="TASK_NO_BASE_BRANCH")

        log.info("branch_sync_started", task_id=task_id, branch=target.branch, base=base_branch)
        outcome = await self._run(
            target.path, lambda: self.executor.update_branch(target.path, target.branch, base_branch)
        )
        if isinstance(outcome, MergeConflicted):
            files = list(outcome.conflicted_files)
            await self._record_outcome(
                task_id, f"Sync with {base_branch} failed: merge conflict in {', '.join(files)}"
            )
            return DeployConflict(conflicted_files=files)

        await self._record_outcome(task_id, f"Synced {target.branch} with {base_branch} ({outcome.commit_sha[:7]})")
        return BranchSyncSuccess(task_branch=target.branch, main_branch=base_branch, commit_sha=outcome.commit_sha)
