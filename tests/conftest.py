"""Pytest configuration and shared fixtures."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from task_reconciler.config.settings import GitHubConfig, JiraConfig, ReconcilerSettings
from task_reconciler.exceptions import ProviderError
from task_reconciler.git.executor import GitMergeExecutor, MergeOutcome, MergeSucceeded
from task_reconciler.models.domain import Repository, Task
from task_reconciler.providers.base import SnapshotContext
from task_reconciler.providers.github import GitHubProvider
from task_reconciler.providers.jira import JiraProvider
from task_reconciler.services import Services, build_services
from task_reconciler.store.task_store import TaskStore


class SnapshotJiraProvider(JiraProvider):
    """Jira provider serving a fixed, editable list of issues."""

    def __init__(self, issues: list[dict[str, Any]] | None = None) -> None:
        super().__init__(JiraConfig(base_url="https://acme.atlassian.net", email="dev@acme.io", api_token="token"))
        self.issues = issues or []
        self.contexts: list[SnapshotContext] = []

    async def fetch_snapshot(self, context: SnapshotContext) -> list[dict[str, Any]]:
        self.contexts.append(context)
        return list(self.issues)

    async def fetch_item(self, task: Task, context: SnapshotContext) -> dict[str, Any]:
        self.contexts.append(context)
        for issue in self.issues:
            if issue["key"] == task.jira_key:
                return issue
        raise ProviderError(f"Issue {task.jira_key} not found in Jira", upstream_status=404)


class SnapshotGitHubProvider(GitHubProvider):
    """GitHub provider serving a fixed, editable list of pull request items."""

    def __init__(self, pulls: list[dict[str, Any]] | None = None) -> None:
        super().__init__(GitHubConfig(token="ghp_test"), client=MagicMock())
        self.pulls = pulls or []

    async def fetch_snapshot(self, context: SnapshotContext) -> list[dict[str, Any]]:
        return [dict(p) for p in self.pulls]

    async def fetch_item(self, task: Task, context: SnapshotContext) -> dict[str, Any]:
        for pull in self.pulls:
            if pull["number"] == task.pr_number and pull["repository_id"] == task.repository_id:
                return dict(pull)
        raise ProviderError(f"Pull request #{task.pr_number} not found", upstream_status=404)


class FakeExecutor(GitMergeExecutor):
    """Records calls; outcomes are looked up by source branch."""

    def __init__(self, outcomes: dict[str, MergeOutcome | Exception] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.calls: list[tuple[Path, str, str]] = []

    async def _outcome(self, repo_path: Path, branch: str, other: str) -> MergeOutcome:
        self.calls.append((repo_path, branch, other))
        outcome = self.outcomes.get(branch, MergeSucceeded(commit_sha="abc1234def5678"))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def merge_branch(self, repo_path: Path, source: str, target: str) -> MergeOutcome:
        return await self._outcome(repo_path, source, target)

    async def update_branch(self, repo_path: Path, branch: str, from_branch: str) -> MergeOutcome:
        return await self._outcome(repo_path, branch, from_branch)


def jira_issue(key: str, summary: str = "Fix login", status: str = "To Do", **fields: Any) -> dict[str, Any]:
    """Jira search API issue payload."""
    return {
        "id": key.split("-")[-1],
        "key": key,
        "fields": {
            "summary": summary,
            "status": {"name": status},
            "issuetype": {"name": "Story"},
            "assignee": {"displayName": "Dana Dev"},
            "priority": {"name": "Medium"},
            **fields,
        },
    }


def pull_request(number: int, head_ref: str, repository_id: int = 1, **overrides: Any) -> dict[str, Any]:
    """Pull request snapshot item as produced by the GitHub provider."""
    item = {
        "repository_id": repository_id,
        "owner": "acme",
        "repo": "api",
        "number": number,
        "title": f"Change {number}",
        "state": "open",
        "merged": False,
        "draft": False,
        "author": "octocat",
        "head_ref": head_ref,
        "base_ref": "main",
        "approved_review_count": 0,
        "checks_status": "passed",
        "unresolved_comment_count": 0,
    }
    item.update(overrides)
    return item


@pytest.fixture
def store() -> TaskStore:
    """In-memory task store."""
    return TaskStore()


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    return tmp_path / "store" / "store.json"


@pytest.fixture
def settings(store_path: Path) -> ReconcilerSettings:
    return ReconcilerSettings(store={"path": str(store_path)})


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def jira_provider() -> SnapshotJiraProvider:
    return SnapshotJiraProvider()


@pytest.fixture
def github_provider() -> SnapshotGitHubProvider:
    return SnapshotGitHubProvider()


@pytest.fixture
def services(
    settings: ReconcilerSettings,
    store: TaskStore,
    executor: FakeExecutor,
    jira_provider: SnapshotJiraProvider,
    github_provider: SnapshotGitHubProvider,
) -> Services:
    """Fully wired services over an in-memory store and fake collaborators."""
    providers = {"jira": jira_provider, "github": github_provider}
    return build_services(
        settings,
        store=store,
        executor=executor,
        provider_factory=lambda name: providers[name.value],
    )


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    """Stand-in working copy directory."""
    path = tmp_path / "work" / "api"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def seed(store: TaskStore) -> Callable[..., Awaitable[list[Task]]]:
    """Insert tasks and return them with their assigned ids."""

    async def _seed(*tasks: Task) -> list[Task]:
        async with store.transaction() as session:
            return [session.insert_task(task) for task in tasks]

    return _seed


@pytest.fixture
def add_repository(store: TaskStore) -> Callable[..., Awaitable[Repository]]:
    async def _add(**fields: Any) -> Repository:
        data = {"owner": "acme", "repo": "api", **fields}
        async with store.transaction() as session:
            return session.add_repository(Repository(**data))

    return _add


@pytest.fixture
def make_issue() -> Callable[..., dict[str, Any]]:
    return jira_issue


@pytest.fixture
def make_pull() -> Callable[..., dict[str, Any]]:
    return pull_request


@pytest.fixture
def make_executor() -> Callable[..., FakeExecutor]:
    return FakeExecutor
