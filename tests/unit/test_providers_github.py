"""Tests for task_reconciler/providers/github.py."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import httpx
import pytest
import requests
from github import GithubException

from task_reconciler.config.settings import GitHubConfig
from task_reconciler.exceptions import ProviderAuthError, ProviderError, SnapshotError
from task_reconciler.models.domain import Repository, Task
from task_reconciler.providers.base import SnapshotContext
from task_reconciler.providers.github import GitHubProvider, aggregate_checks, count_approvals


def graphql_handler(unresolved=0, resolved=0):
    nodes = [{"isResolved": False}] * unresolved + [{"isResolved": True}] * resolved

    def handler(request):
        body = {"data": {"repository": {"pullRequest": {"reviewThreads": {"nodes": nodes}}}}}
        return httpx.Response(200, json=body)

    return handler


def make_pr(number=7, head_ref="abc-1-fix", login="octocat", reviews=(), **attrs):
    pr = MagicMock()
    pr.number = number
    pr.title = attrs.get("title", f"Change {number}")
    pr.state = attrs.get("state", "open")
    pr.merged = attrs.get("merged", False)
    pr.draft = attrs.get("draft", False)
    pr.user.login = login
    pr.head.ref = head_ref
    pr.head.sha = f"sha-{number}"
    pr.base.ref = "main"
    review_mocks = []
    for reviewer, state in reviews:
        review = MagicMock(state=state)
        review.user.login = reviewer
        review_mocks.append(review)
    pr.get_reviews.return_value = review_mocks
    return pr


def make_run(name, status="completed", conclusion="success", started_at=None):
    run = MagicMock(status=status, conclusion=conclusion, started_at=started_at)
    run.name = name
    return run


def make_client(pulls=(), runs=(), statuses=(), single=None):
    gh_repo = MagicMock()
    gh_repo.get_pulls.return_value = list(pulls)
    commit = gh_repo.get_commit.return_value
    commit.get_check_runs.return_value = list(runs)
    commit.get_combined_status.return_value.statuses = list(statuses)
    if single is not None:
        gh_repo.get_pull.side_effect = single
    client = MagicMock()
    client.get_repo.return_value = gh_repo
    return client, gh_repo


def make_provider(client, username=None, handler=None):
    config = GitHubConfig(token="ghp_test", username=username)
    return GitHubProvider(config, client=client, transport=httpx.MockTransport(handler or graphql_handler()))


@pytest.fixture
def repository():
    return Repository(id=1, owner="acme", repo="api", enabled=True)


class TestAggregateChecks:
    def test_empty(self):
        assert aggregate_checks([]) is None

    def test_failure_wins(self):
        details = [
            {"status": "in_progress", "conclusion": None},
            {"status": "completed", "conclusion": "timed_out"},
        ]
        assert aggregate_checks(details) == "failed"

    def test_pending(self):
        details = [{"status": "completed", "conclusion": "success"}, {"status": "queued", "conclusion": None}]
        assert aggregate_checks(details) == "pending"

    def test_passed(self):
        details = [{"status": "completed", "conclusion": "success"}, {"status": "completed", "conclusion": "skipped"}]
        assert aggregate_checks(details) == "passed"


class TestCountApprovals:
    def test_latest_review_per_user(self):
        reviews = [
            ("alice", "APPROVED"),
            ("bob", "APPROVED"),
            ("bob", "CHANGES_REQUESTED"),
            ("carol", "COMMENTED"),
            ("carol", "APPROVED"),
            (None, "APPROVED"),
        ]
        assert count_approvals(reviews) == 2


class TestFetchSnapshot:
    @pytest.mark.asyncio
    async def test_open_pulls_described(self, repository):
        pulls = [make_pr(7, reviews=[("alice", "APPROVED")])]
        client, gh_repo = make_client(pulls=pulls, runs=[make_run("ci")])
        provider = make_provider(client, handler=graphql_handler(unresolved=2, resolved=1))

        items = await provider.fetch_snapshot(SnapshotContext(repositories=[repository]))

        client.get_repo.assert_called_once_with("acme/api")
        gh_repo.get_pulls.assert_called_once_with(state="open")
        (item,) = items
        assert item["repository_id"] == 1
        assert item["head_ref"] == "abc-1-fix"
        assert item["approved_review_count"] == 1
        assert item["checks_status"] == "passed"
        assert item["unresolved_comment_count"] == 2

    @pytest.mark.asyncio
    async def test_username_filter(self, repository):
        pulls = [make_pr(7, login="octocat"), make_pr(8, login="someone-else")]
        client, _ = make_client(pulls=pulls)

        items = await make_provider(client, username="octocat").fetch_snapshot(
            SnapshotContext(repositories=[repository])
        )

        assert [i["number"] for i in items] == [7]

    @pytest.mark.asyncio
    async def test_disabled_repositories_skipped(self, repository):
        client, _ = make_client(pulls=[make_pr(7)])
        disabled = repository.model_copy(update={"enabled": False})

        assert await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[disabled])) == []
        client.get_repo.assert_not_called()

    @pytest.mark.asyncio
    async def test_tracked_open_prs_refreshed(self, repository):
        merged = make_pr(5, head_ref="old-branch", state="closed", merged=True)
        client, gh_repo = make_client(pulls=[make_pr(7)], single=lambda number: merged)
        tracked = [
            Task(id=1, title="a", pr_number=5, repository_id=1, pr_state="open"),
            Task(id=2, title="b", pr_number=6, repository_id=1, pr_state="merged"),
            Task(id=3, title="c", pr_number=7, repository_id=1, pr_state="open"),
        ]

        items = await make_provider(client).fetch_snapshot(
            SnapshotContext(repositories=[repository], tracked=tracked)
        )

        gh_repo.get_pull.assert_called_once_with(5)
        assert sorted(i["number"] for i in items) == [5, 7]
        assert next(i for i in items if i["number"] == 5)["merged"] is True

    @pytest.mark.asyncio
    async def test_tracked_refresh_failure_skips_pr(self, repository):
        def missing(number):
            raise GithubException(404, {"message": "Not Found"}, None)

        client, _ = make_client(single=missing)
        tracked = [Task(id=1, title="a", pr_number=5, repository_id=1, pr_state="open")]

        items = await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[repository], tracked=tracked))

        assert items == []

    @pytest.mark.asyncio
    async def test_auth_failure(self, repository):
        client = MagicMock()
        client.get_repo.side_effect = GithubException(401, {"message": "Bad credentials"}, None)

        with pytest.raises(ProviderAuthError):
            await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[repository]))

    @pytest.mark.asyncio
    async def test_forbidden(self, repository):
        client = MagicMock()
        client.get_repo.side_effect = GithubException(403, {"message": "rate limited"}, None)

        with pytest.raises(ProviderError) as exc_info:
            await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[repository]))

        assert exc_info.value.code == "GITHUB_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_graphql_failure_counts_zero(self, repository):
        client, _ = make_client(pulls=[make_pr(7)])
        provider = make_provider(client, handler=lambda request: httpx.Response(502))

        (item,) = await provider.fetch_snapshot(SnapshotContext(repositories=[repository]))

        assert item["unresolved_comment_count"] == 0

    @pytest.mark.asyncio
    async def test_network_failure_is_provider_error(self, repository):
        client = MagicMock()
        client.get_repo.side_effect = requests.exceptions.ConnectionError("connection reset by peer")

        with pytest.raises(ProviderError, match="Failed to reach GitHub"):
            await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[repository]))

    @pytest.mark.asyncio
    async def test_deployment_branches_detected(self, repository):
        client, gh_repo = make_client(pulls=[make_pr(7)])
        gh_repo.compare.side_effect = lambda base, head: MagicMock(ahead_by=0 if base == "qa" else 3)
        with_branches = repository.model_copy(update={"deployment_branches": ["qa", "staging"]})

        (item,) = await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[with_branches]))

        assert item["on_deployment_branches"] == ["qa"]
        gh_repo.compare.assert_any_call("qa", "abc-1-fix")
        gh_repo.compare.assert_any_call("staging", "abc-1-fix")

    @pytest.mark.asyncio
    async def test_compare_failure_leaves_branch_out(self, repository):
        client, gh_repo = make_client(pulls=[make_pr(7)])
        gh_repo.compare.side_effect = GithubException(404, {"message": "No common ancestor"}, None)
        with_branches = repository.model_copy(update={"deployment_branches": ["qa"]})

        (item,) = await make_provider(client).fetch_snapshot(SnapshotContext(repositories=[with_branches]))

        assert item["on_deployment_branches"] == []


class TestFetchItem:
    @pytest.mark.asyncio
    async def test_fetches_single_pull(self, repository):
        client, gh_repo = make_client(single=lambda number: make_pr(number, state="closed", merged=True))
        provider = make_provider(client, handler=graphql_handler(unresolved=1))
        task = Task(id=1, title="a", pr_number=5, repository_id=1)

        item = await provider.fetch_item(task, SnapshotContext(repositories=[repository]))

        gh_repo.get_pull.assert_called_once_with(5)
        assert (item["number"], item["merged"]) == (5, True)
        assert item["unresolved_comment_count"] == 1
        assert provider.to_orphan_fields(item)["pr_state"] == "merged"

    @pytest.mark.asyncio
    async def test_missing_pull(self, repository):
        def missing(number):
            raise GithubException(404, {"message": "Not Found"}, None)

        client, _ = make_client(single=missing)
        task = Task(id=1, title="a", pr_number=5, repository_id=1)

        with pytest.raises(ProviderError) as exc_info:
            await make_provider(client).fetch_item(task, SnapshotContext(repositories=[repository]))

        assert exc_info.value.code == "GITHUB_PR_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_repository_not_configured(self):
        client, _ = make_client()
        task = Task(id=1, title="a", pr_number=5, repository_id=4)

        with pytest.raises(ProviderError) as exc_info:
            await make_provider(client).fetch_item(task, SnapshotContext())

        assert exc_info.value.code == "GITHUB_REPO_NOT_CONFIGURED"
        client.get_repo.assert_not_called()


class TestChecksStatus:
    def test_latest_rerun_wins(self):
        now = datetime(2024, 1, 1, 12, 0)
        runs = [
            make_run("ci", conclusion="failure", started_at=now),
            make_run("ci", conclusion="success", started_at=now + timedelta(minutes=5)),
        ]
        _, gh_repo = make_client(runs=runs)

        assert make_provider(MagicMock())._checks_status(gh_repo, "sha") == "passed"

    def test_commit_status_failure(self):
        status = MagicMock(context="ci/legacy", state="error")
        _, gh_repo = make_client(runs=[make_run("build")], statuses=[status])

        assert make_provider(MagicMock())._checks_status(gh_repo, "sha") == "failed"

    def test_api_error_gives_none(self):
        gh_repo = MagicMock()
        gh_repo.get_commit.side_effect = GithubException(500, {"message": "boom"}, None)

        assert make_provider(MagicMock())._checks_status(gh_repo, "sha") is None


class TestToOrphanFields:
    def test_open_ready_pr(self, make_pull):
        fields = make_provider(MagicMock()).to_orphan_fields(make_pull(7, "abc-1-fix", approved_review_count=2))

        assert fields["pr_number"] == 7
        assert fields["title"] == "Change 7"
        assert fields["pr_state"] == "open"
        assert fields["status"] == "code_review"
        assert fields["approved_review_count"] == 2
        assert fields["is_draft"] is False

    def test_merged_flag_folds_into_state(self, make_pull):
        fields = make_provider(MagicMock()).to_orphan_fields(make_pull(7, "x", state="closed", merged=True))

        assert fields["pr_state"] == "merged"
        assert fields["status"] == "done"

    def test_title_falls_back_to_branch(self, make_pull):
        fields = make_provider(MagicMock()).to_orphan_fields(make_pull(7, "feature/x", title=None))

        assert fields["title"] == "feature/x"

    def test_deployment_branches(self, make_pull):
        provider = make_provider(MagicMock())

        on_qa = provider.to_orphan_fields(make_pull(7, "x", on_deployment_branches=["qa"]))
        on_none = provider.to_orphan_fields(make_pull(7, "x", on_deployment_branches=[]))

        assert on_qa["on_deployment_branches"] == ["qa"]
        assert on_none["on_deployment_branches"] is None

    @pytest.mark.parametrize(
        "overrides", [{"number": None}, {"number": "7"}, {"head_ref": None}, {"repository_id": None}]
    )
    def test_malformed(self, make_pull, overrides):
        with pytest.raises(SnapshotError):
            make_provider(MagicMock()).to_orphan_fields({**make_pull(7, "x"), **overrides})


class TestOwnedUpdates:
    def test_orphan_gets_title_and_status_on_state_change(self, make_pull):
        provider = make_provider(MagicMock())
        existing = Task(
            id=1, title="old", status="code_review", pr_number=7, repository_id=1, pr_state="open", is_draft=False
        )
        fields = provider.to_orphan_fields(make_pull(7, "x", draft=True))

        updates = provider.owned_updates(existing, fields)

        assert updates["title"] == "Change 7"
        assert updates["status"] == "in_progress"

    def test_orphan_status_kept_without_state_change(self, make_pull):
        provider = make_provider(MagicMock())
        existing = Task(
            id=1, title="old", status="blocked", pr_number=7, repository_id=1, pr_state="open", is_draft=False
        )

        updates = provider.owned_updates(existing, provider.to_orphan_fields(make_pull(7, "x")))

        assert "status" not in updates

    def test_linked_never_gets_title_or_status(self, make_pull):
        provider = make_provider(MagicMock())
        existing = Task(id=1, title="Jira title", jira_key="ABC-1", pr_number=7, repository_id=1, pr_state="open")

        updates = provider.owned_updates(existing, provider.to_orphan_fields(make_pull(7, "x", merged=True)))

        assert "title" not in updates
        assert "status" not in updates
        assert updates["pr_state"] == "merged"

    def test_created_log(self):
        task = Task(id=1, title="x", pr_number=7, repository_id=1, head_branch="abc", pr_state="open", is_draft=False)

        assert make_provider(MagicMock()).created_log(task) == "# Task created\nReady - open - #7 - abc"


class TestGraphqlUrl:
    def test_public(self):
        assert make_provider(MagicMock()).graphql_url == "https://api.github.com/graphql"

    def test_enterprise(self):
        config = GitHubConfig(token="t", base_url="https://ghe.acme.io/api/v3")

        assert GitHubProvider(config, client=MagicMock()).graphql_url == "https://ghe.acme.io/api/graphql"
