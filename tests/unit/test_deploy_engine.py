"""Tests for task_reconciler/engine/deploy.py."""

import asyncio

import pytest
import pytest_asyncio

from task_reconciler.engine.deploy import DeployEngine
from task_reconciler.enums import DeployOutcome, LogSource
from task_reconciler.exceptions import (
    DeployPreconditionError,
    GitOperationError,
    GitTimeoutError,
    InfrastructureError,
    NotFoundError,
)
from task_reconciler.git.executor import GitMergeExecutor, MergeConflicted, MergeSucceeded
from task_reconciler.models.domain import Task
from task_reconciler.models.results import BranchSyncSuccess, DeployConflict, DeploySuccess


class SlowExecutor(GitMergeExecutor):
    """Tracks how many calls run at once."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def merge_branch(self, repo_path, source, target):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return MergeSucceeded(commit_sha="feedface00")

    async def update_branch(self, repo_path, branch, from_branch):
        return await self.merge_branch(repo_path, branch, from_branch)


def pr_task(number, head_branch, repository_id=1, **fields):
    return Task(
        title=f"PR {number}",
        pr_number=number,
        repository_id=repository_id,
        head_branch=head_branch,
        base_branch="main",
        pr_state="open",
        **fields,
    )


@pytest_asyncio.fixture
async def repository(add_repository, repo_dir):
    return await add_repository(local_path=str(repo_dir), deployment_branches=["qa", "staging"])


class TestDeployBranch:
    @pytest.mark.asyncio
    async def test_success(self, store, seed, repository, executor, repo_dir):
        (task,) = await seed(pr_task(7, "feature/login"))
        engine = DeployEngine(store, executor)

        result = await engine.deploy_branch(task.id, "qa")

        assert result == DeploySuccess(target_branch="qa", source_branch="feature/login", commit_sha="abc1234def5678")
        assert executor.calls == [(repo_dir, "feature/login", "qa")]
        (entry,) = await store.list_logs(task_id=task.id)
        assert entry.source is LogSource.DEPLOY
        assert entry.content == "Deployed to qa (abc1234)"

    @pytest.mark.asyncio
    async def test_conflict_is_a_result(self, store, seed, repository, make_executor):
        (task,) = await seed(pr_task(7, "feature/login"))
        executor = make_executor({"feature/login": MergeConflicted(conflicted_files=("a.py", "b.py"))})
        engine = DeployEngine(store, executor)

        result = await engine.deploy_branch(task.id, "qa")

        assert result == DeployConflict(conflicted_files=["a.py", "b.py"])
        (entry,) = await store.list_logs(task_id=task.id)
        assert entry.content == "Deploy to qa failed: merge conflict in a.py, b.py"

    @pytest.mark.asyncio
    async def test_invalid_target_branch(self, store, seed, repository, executor):
        (task,) = await seed(pr_task(7, "feature/login"))
        engine = DeployEngine(store, executor)

        with pytest.raises(DeployPreconditionError) as exc_info:
            await engine.deploy_branch(task.id, "production")

        assert exc_info.value.code == "INVALID_TARGET_BRANCH"
        assert "qa, staging" in exc_info.value.message
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_no_deployment_branches(self, store, seed, add_repository, repo_dir, executor):
        await add_repository(local_path=str(repo_dir))
        (task,) = await seed(pr_task(7, "feature/login"))

        with pytest.raises(DeployPreconditionError) as exc_info:
            await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        assert exc_info.value.code == "NO_DEPLOYMENT_BRANCHES"

    @pytest.mark.asyncio
    async def test_task_without_branch(self, store, seed, repository, executor):
        (task,) = await seed(Task(title="manual"))

        with pytest.raises(DeployPreconditionError) as exc_info:
            await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        assert exc_info.value.code == "TASK_NO_BRANCH"

    @pytest.mark.asyncio
    async def test_unknown_repository(self, store, seed, repository, executor):
        (task,) = await seed(pr_task(7, "feature/login", repository_id=42))

        with pytest.raises(DeployPreconditionError) as exc_info:
            await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        assert exc_info.value.code == "NO_REPOSITORY"

    @pytest.mark.asyncio
    async def test_path_not_configured(self, store, seed, add_repository, executor):
        await add_repository(deployment_branches=["qa"])
        (task,) = await seed(pr_task(7, "feature/login"))

        with pytest.raises(DeployPreconditionError) as exc_info:
            await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        assert exc_info.value.code == "REPO_PATH_NOT_CONFIGURED"

    @pytest.mark.asyncio
    async def test_path_missing(self, store, seed, add_repository, tmp_path, executor):
        await add_repository(local_path=str(tmp_path / "gone"), deployment_branches=["qa"])
        (task,) = await seed(pr_task(7, "feature/login"))

        with pytest.raises(DeployPreconditionError) as exc_info:
            await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        assert exc_info.value.code == "REPO_PATH_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unknown_task(self, store, executor):
        with pytest.raises(NotFoundError):
            await DeployEngine(store, executor).deploy_branch(5, "qa")

    @pytest.mark.asyncio
    async def test_git_failure_logged_and_raised(self, store, seed, repository, make_executor):
        (task,) = await seed(pr_task(7, "feature/login"))
        executor = make_executor({"feature/login": GitOperationError("Failed to push: denied", code="PUSH_FAILED")})

        with pytest.raises(GitOperationError):
            await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        (entry,) = await store.list_logs(task_id=task.id)
        assert entry.content == "Deploy to qa failed: Failed to push: denied"

    @pytest.mark.asyncio
    async def test_timeout(self, store, seed, repository):
        (task,) = await seed(pr_task(7, "feature/login"))
        engine = DeployEngine(store, SlowExecutor(delay=5), merge_timeout=0.05)

        with pytest.raises(GitTimeoutError) as exc_info:
            await engine.deploy_branch(task.id, "qa")

        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_log_write_failure_keeps_success(self, store, seed, repository, executor, monkeypatch):
        (task,) = await seed(pr_task(7, "feature/login"))

        async def failing_persist(data):
            raise InfrastructureError("Cannot write task store: disk full")

        monkeypatch.setattr(store, "_persist", failing_persist)

        result = await DeployEngine(store, executor).deploy_branch(task.id, "qa")

        assert isinstance(result, DeploySuccess)
        assert result.commit_sha == "abc1234def5678"
        assert await store.list_logs(task_id=task.id) == []

    @pytest.mark.asyncio
    async def test_same_repository_serialized(self, store, seed, repository):
        a, b = await seed(pr_task(7, "feature/a"), pr_task(8, "feature/b"))
        executor = SlowExecutor()
        engine = DeployEngine(store, executor)

        results = await asyncio.gather(engine.deploy_branch(a.id, "qa"), engine.deploy_branch(b.id, "qa"))

        assert all(isinstance(r, DeploySuccess) for r in results)
        assert executor.max_active == 1


class TestBulkDeploy:
    @pytest.mark.asyncio
    async def test_conflict_does_not_stop_others(self, store, seed, repository, make_executor):
        tasks = await seed(pr_task(1, "feature/a"), pr_task(2, "feature/b"), pr_task(3, "feature/c"))
        executor = make_executor({"feature/b": MergeConflicted(conflicted_files=("app.py",))})
        engine = DeployEngine(store, executor)

        result = await engine.bulk_deploy([t.id for t in tasks], "qa")

        assert [r.status for r in result.results] == [
            DeployOutcome.SUCCESS,
            DeployOutcome.CONFLICT,
            DeployOutcome.SUCCESS,
        ]
        assert result.results[1].conflicted_files == ["app.py"]
        assert (result.summary.success, result.summary.conflict, result.summary.skipped) == (2, 1, 0)
        assert [call[1] for call in executor.calls] == ["feature/a", "feature/b", "feature/c"]

    @pytest.mark.asyncio
    async def test_skip_reasons(self, store, seed, repository, make_executor):
        good, manual, failing = await seed(pr_task(1, "feature/a"), Task(title="manual"), pr_task(2, "feature/x"))
        executor = make_executor({"feature/x": GitOperationError("Failed to fetch: offline", code="FETCH_FAILED")})
        engine = DeployEngine(store, executor)

        result = await engine.bulk_deploy([good.id, 99, manual.id, failing.id], "qa")

        by_id = {r.task_id: r for r in result.results}
        assert by_id[good.id].status is DeployOutcome.SUCCESS
        assert by_id[99].reason == "task not found"
        assert by_id[manual.id].reason == "Task has no associated branch"
        assert by_id[failing.id].reason == "deploy error: Failed to fetch: offline"
        assert result.summary.skipped == 3
        assert [r.task_id for r in result.results] == [good.id, 99, manual.id, failing.id]

    @pytest.mark.asyncio
    async def test_invalid_target_skips_all(self, store, seed, repository, executor):
        tasks = await seed(pr_task(1, "feature/a"), pr_task(2, "feature/b"))

        result = await DeployEngine(store, executor).bulk_deploy([t.id for t in tasks], "main")

        assert result.summary.skipped == 2
        assert result.results[0].reason.startswith("Invalid target branch")
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_ids_deployed_once(self, store, seed, repository, executor):
        (task,) = await seed(pr_task(1, "feature/a"))

        result = await DeployEngine(store, executor).bulk_deploy([task.id, task.id], "qa")

        assert len(result.results) == 1
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_multiple_repositories(self, store, seed, add_repository, tmp_path, executor):
        paths = []
        for name in ("api", "web"):
            path = tmp_path / name
            path.mkdir()
            paths.append(path)
            await add_repository(repo=name, local_path=str(path), deployment_branches=["qa"])
        a, b = await seed(pr_task(1, "feature/a", repository_id=1), pr_task(1, "feature/b", repository_id=2))

        result = await DeployEngine(store, executor).bulk_deploy([a.id, b.id], "qa")

        assert result.summary.success == 2
        assert sorted(call[0] for call in executor.calls) == sorted(paths)

    @pytest.mark.asyncio
    async def test_unexpected_error_isolated_per_task(self, store, seed, add_repository, tmp_path, make_executor):
        for name in ("api", "web"):
            path = tmp_path / name
            path.mkdir()
            await add_repository(repo=name, local_path=str(path), deployment_branches=["qa"])
        a, b = await seed(pr_task(1, "feature/a", repository_id=1), pr_task(1, "feature/b", repository_id=2))
        executor = make_executor({"feature/b": PermissionError(13, "Permission denied")})

        result = await DeployEngine(store, executor).bulk_deploy([a.id, b.id], "qa")

        assert [r.status for r in result.results] == [DeployOutcome.SUCCESS, DeployOutcome.SKIPPED]
        assert result.results[0].commit_sha == "abc1234def5678"
        assert result.results[1].reason == "deploy error: [Errno 13] Permission denied"

    @pytest.mark.asyncio
    async def test_log_write_failure_still_reports_success(self, store, seed, repository, executor, monkeypatch):
        (task,) = await seed(pr_task(1, "feature/a"))

        async def failing_persist(data):
            raise InfrastructureError("Cannot write task store: disk full")

        monkeypatch.setattr(store, "_persist", failing_persist)

        result = await DeployEngine(store, executor).bulk_deploy([task.id], "qa")

        assert result.results[0].status is DeployOutcome.SUCCESS


class TestSyncBranch:
    @pytest.mark.asyncio
    async def test_success(self, store, seed, repository, executor, repo_dir):
        (task,) = await seed(pr_task(7, "feature/login"))

        result = await DeployEngine(store, executor).sync_branch(task.id)

        assert result == BranchSyncSuccess(task_branch="feature/login", main_branch="main", commit_sha="abc1234def5678")
        assert executor.calls == [(repo_dir, "feature/login", "main")]
        (entry,) = await store.list_logs(task_id=task.id)
        assert entry.content == "Synced feature/login with main (abc1234)"

    @pytest.mark.asyncio
    async def test_conflict(self, store, seed, repository, make_executor):
        (task,) = await seed(pr_task(7, "feature/login"))
        executor = make_executor({"feature/login": MergeConflicted(conflicted_files=("README.md",))})

        result = await DeployEngine(store, executor).sync_branch(task.id)

        assert result == DeployConflict(conflicted_files=["README.md"])

    @pytest.mark.asyncio
    async def test_requires_base_branch(self, store, seed, repository, executor):
        (task,) = await seed(Task(title="x", pr_number=3, repository_id=1, head_branch="feature/x"))

        with pytest.raises(DeployPreconditionError) as exc_info:
            await DeployEngine(store, executor).sync_branch(task.id)

        assert exc_info.value.code == "TASK_NO_BASE_BRANCH"
