"""GitHub provider using PyGithub for REST calls and httpx for GraphQL."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import requests
import structlog
from github import Auth, Github, GithubException  # type: ignore[import-not-found]
from github.PullRequest import PullRequest as GHPullRequest  # type: ignore[import-not-found]
from github.Repository import Repository as GHRepository  # type: ignore[import-not-found]

from task_reconciler.config.settings import GitHubConfig
from task_reconciler.enums import LogSource, PrState, ProviderName
from task_reconciler.exceptions import ProviderAuthError, ProviderError, SnapshotError
from task_reconciler.models.domain import Repository, Task, pr_task_status
from task_reconciler.providers.base import SnapshotContext, SyncProvider
from task_reconciler.store.task_store import StoreSession

log = structlog.get_logger(__name__)

T = TypeVar("T")

# PR fields GitHub owns on every task it is bound to.
PR_OWNED = (
    "repository_id",
    "pr_title",
    "head_branch",
    "base_branch",
    "pr_state",
    "pr_author",
    "is_draft",
    "checks_status",
    "approved_review_count",
    "unresolved_comment_count",
    "on_deployment_branches",
)

UNRESOLVED_THREADS_QUERY = """
query($owner: String!, $repo: String!, $prNumber: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $prNumber) {
      reviewThreads(first: 100) {
        nodes { isResolved }
      }
    }
  }
}
"""

FAILED_CONCLUSIONS = ("failure", "timed_out")


async def _run_sync(func: Callable[[], T]) -> T:
    """Run a blocking PyGithub call in a worker thread."""
    return await asyncio.to_thread(func)


def aggregate_checks(details: list[dict[str, Any]]) -> str | None:
    """Fold individual check results into failed / pending / passed."""
    if not details:
        return None
    if any(d.get("conclusion") in FAILED_CONCLUSIONS for d in details):
        return "failed"
    if any(d.get("status") != "completed" for d in details):
        return "pending"
    return "passed"


def _started_later(run: Any, other: Any) -> bool:
    """Reruns share a name; the most recently started one counts."""
    if run.started_at is None:
        return False
    return other.started_at is None or run.started_at > other.started_at


def count_approvals(reviews: list[tuple[str | None, str | None]]) -> int:
    """Users whose latest review approves. ``reviews`` is (login, state) in order."""
    latest: dict[str, str] = {}
    for login, state in reviews:
        if login:
            latest[login] = state or ""
    return sum(1 for state in latest.values() if state == "APPROVED")


class GitHubProvider(SyncProvider):
    """Fetches open pull requests in enabled repositories.

    Pull requests already tracked in the store that are missing from the
    open snapshot are fetched individually so merges and closes are seen.

    Args:
        config: GitHub connection settings
        client: Optional pre-built PyGithub client
        transport: Optional httpx transport for the GraphQL client
    """

    name = ProviderName.GITHUB
    log_source = LogSource.GITHUB
    synced_at_field = "pr_synced_at"

    def __init__(
        self,
        config: GitHubConfig,
        client: Github | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        token = config.token.get_secret_value().strip()
        self._client = client or Github(auth=Auth.Token(token), base_url=self.base_url)
        self._graphql = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {token}"},
            timeout=10.0,
            transport=transport,
        )

    @property
    def graphql_url(self) -> str:
        if self.base_url.endswith("/v3"):
            return self.base_url[: -len("/v3")] + "/graphql"
        return f"{self.base_url}/graphql"

    async def close(self) -> None:
        await self._graphql.aclose()
        await _run_sync(self._client.close)

    def _translate(self, error: GithubException, action: str) -> ProviderError:
        status = getattr(error, "status", None)
        if status == 401:
            return ProviderAuthError(
                "GitHub authentication failed. Check your token.",
                provider=self.name.value,
                upstream_status=status,
            )
        if status == 403:
            return ProviderError(
                "GitHub rate limit exceeded or insufficient permissions",
                provider=self.name.value,
                upstream_status=status,
                code="GITHUB_FORBIDDEN",
            )
        return ProviderError(f"Failed to {action}", provider=self.name.value, upstream_status=status)

    def _checks_status(self, gh_repo: GHRepository, sha: str | None) -> str | None:
        """Aggregate check runs and commit statuses; check runs win on name clashes."""
        if not sha:
            return None
        try:
            commit = gh_repo.get_commit(sha)
            details: dict[str, dict[str, Any]] = {}
            for status in commit.get_combined_status().statuses:
                details[status.context] = {
                    "status": "in_progress" if status.state == "pending" else "completed",
                    "conclusion": {"success": "success", "pending": None}.get(status.state, "failure"),
                }
            latest_runs: dict[str, Any] = {}
            for run in commit.get_check_runs():
                current = latest_runs.get(run.name)
                if current is None or _started_later(run, current):
                    latest_runs[run.name] = run
            for name, run in latest_runs.items():
                details[name] = {"status": run.status, "conclusion": run.conclusion}
            return aggregate_checks(list(details.values()))
        except GithubException as e:
            log.warning("github_checks_failed", sha=sha, error=str(e))
            return None

    def _deployment_branches_containing(self, gh_repo: GHRepository, head_ref: str, branches: list[str]) -> list[str]:
        """Deployment branches that already hold every commit of ``head_ref``. Blocking."""
        found = []
        for branch in branches:
            try:
                if gh_repo.compare(branch, head_ref).ahead_by == 0:
                    found.append(branch)
            except GithubException as e:
                log.debug("github_compare_failed", base=branch, head=head_ref, error=str(e))
        return found

    def _describe(self, gh_repo: GHRepository, pr: GHPullRequest, repository: Repository) -> dict[str, Any]:
        """Flatten a PyGithub pull request into a snapshot item. Blocking."""
        reviews = [(r.user.login if r.user else None, r.state) for r in pr.get_reviews()]
        head_ref = pr.head.ref if pr.head else None
        on_branches: list[str] = []
        if pr.state == "open" and not pr.merged and head_ref and repository.deployment_branches:
            on_branches = self._deployment_branches_containing(gh_repo, head_ref, repository.deployment_branches)
        return {
            "repository_id": repository.id,
            "owner": repository.owner,
            "repo": repository.repo,
            "number": pr.number,
            "title": pr.title,
            "state": pr.state,
            "merged": bool(pr.merged),
            "draft": bool(pr.draft),
            "author": pr.user.login if pr.user else None,
            "head_ref": head_ref,
            "base_ref": pr.base.ref if pr.base else None,
            "approved_review_count": count_approvals(reviews),
            "checks_status": self._checks_status(gh_repo, pr.head.sha if pr.head else None),
            "on_deployment_branches": on_branches,
        }

    def _fetch_repository(self, repository: Repository, tracked_numbers: list[int]) -> list[dict[str, Any]]:
        """Open PRs plus the tracked ones no longer open. Blocking."""
        gh_repo = self._client.get_repo(repository.full_name)
        items: list[dict[str, Any]] = []
        seen: set[int] = set()
        for pr in gh_repo.get_pulls(state="open"):
            if self.config.username and (not pr.user or pr.user.login != self.config.username):
                continue
            items.append(self._describe(gh_repo, pr, repository))
            seen.add(pr.number)

        for number in tracked_numbers:
            if number in seen:
                continue
            try:
                items.append(self._describe(gh_repo, gh_repo.get_pull(number), repository))
            except GithubException as e:
                log.warning("github_tracked_pr_refresh_failed", repo=repository.full_name, number=number, error=str(e))
        return items

    async def _unresolved_comments(self, item: dict[str, Any]) -> int:
        variables = {"owner": item["owner"], "repo": item["repo"], "prNumber": item["number"]}
        try:
            response = await self._graphql.post(
                self.graphql_url, json={"query": UNRESOLVED_THREADS_QUERY, "variables": variables}
            )
            response.raise_for_status()
            nodes = response.json()["data"]["repository"]["pullRequest"]["reviewThreads"]["nodes"]
            return sum(1 for node in nodes if not node.get("isResolved"))
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log.debug("github_unresolved_comments_failed", number=item["number"], error=str(e))
            return 0

    async def fetch_snapshot(self, context: SnapshotContext) -> list[dict[str, Any]]:
        repositories = [r for r in context.repositories if r.enabled]
        log.info("github_fetch_started", repositories=len(repositories), username=self.config.username)

        items: list[dict[str, Any]] = []
        for repository in repositories:
            # Closed and merged PRs are terminal; only open ones need refreshing.
            tracked = [
                t.pr_number
                for t in context.tracked
                if t.repository_id == repository.id
                and t.pr_number is not None
                and t.pr_state in (None, PrState.OPEN.value)
            ]
            try:
                items.extend(await _run_sync(lambda: self._fetch_repository(repository, tracked)))
            except GithubException as e:
                log.error("github_fetch_failed", repo=repository.full_name, error=str(e))
                raise self._translate(e, f"fetch pull requests for {repository.full_name}") from e
            except requests.RequestException as e:
                log.error("github_fetch_failed", repo=repository.full_name, error=str(e))
                raise ProviderError(f"Failed to reach GitHub: {e}", provider=self.name.value) from e

        counts = await asyncio.gather(*(self._unresolved_comments(item) for item in items))
        for item, count in zip(items, counts, strict=True):
            item["unresolved_comment_count"] = count

        log.info("github_fetch_completed", pull_requests=len(items))
        return items

    async def fetch_item(self, task: Task, context: SnapshotContext) -> dict[str, Any]:
        repository = next((r for r in context.repositories if r.id == task.repository_id), None)
        if repository is None:
            raise ProviderError(
                f"Repository {task.repository_id} not configured",
                provider=self.name.value,
                code="GITHUB_REPO_NOT_CONFIGURED",
            )
        number = task.pr_number
        log.info("github_fetch_pull_request", repo=repository.full_name, number=number)

        def fetch() -> dict[str, Any]:
            gh_repo = self._client.get_repo(repository.full_name)
            return self._describe(gh_repo, gh_repo.get_pull(number), repository)

        try:
            item = await _run_sync(fetch)
        except GithubException as e:
            if getattr(e, "status", None) == 404:
                raise ProviderError(
                    f"PR #{number} not found in {repository.full_name}",
                    provider=self.name.value,
                    upstream_status=404,
                    code="GITHUB_PR_NOT_FOUND",
                ) from e
            raise self._translate(e, f"fetch PR #{number} from {repository.full_name}") from e
        except requests.RequestException as e:
            raise ProviderError(f"Failed to reach GitHub: {e}", provider=self.name.value) from e

        item["unresolved_comment_count"] = await self._unresolved_comments(item)
        return item

    def to_orphan_fields(self, item: Any) -> dict[str, Any]:
        if not isinstance(item, dict):
            raise SnapshotError("Pull request item is not an object", provider=self.name.value)
        number = item.get("number")
        repository_id = item.get("repository_id")
        head_ref = item.get("head_ref")
        if not isinstance(number, int) or repository_id is None or not head_ref:
            raise SnapshotError(
                f"Pull request without number, repository or head branch: {number}",
                provider=self.name.value,
            )

        pr_state = PrState.MERGED.value if item.get("merged") else (item.get("state") or PrState.OPEN.value)
        is_draft = bool(item.get("draft"))
        title = item.get("title") or head_ref
        return {
            "pr_number": number,
            "repository_id": repository_id,
            "title": title,
            "status": pr_task_status(pr_state, is_draft),
            "pr_title": title,
            "head_branch": head_ref,
            "base_branch": item.get("base_ref"),
            "pr_state": pr_state,
            "pr_author": item.get("author"),
            "is_draft": is_draft,
            "checks_status": item.get("checks_status"),
            "approved_review_count": item.get("approved_review_count") or 0,
            "unresolved_comment_count": item.get("unresolved_comment_count") or 0,
            "on_deployment_branches": item.get("on_deployment_branches") or None,
        }

    def find_existing(self, session: StoreSession, fields: dict[str, Any]) -> Task | None:
        return session.find_by_pr(fields["repository_id"], fields["pr_number"])

    def owned_updates(self, existing: Task, fields: dict[str, Any]) -> dict[str, Any]:
        updates = {name: fields[name] for name in PR_OWNED}
        if existing.jira_key is None:
            # Jira owns title and status on linked tasks.
            updates["title"] = fields["title"]
            if (existing.pr_state, existing.is_draft) != (fields["pr_state"], fields["is_draft"]):
                updates["status"] = fields["status"]
        return updates

    def created_log(self, task: Task) -> str:
        draft = "Draft" if task.is_draft else "Ready"
        return f"# Task created\n{draft} - {task.pr_state} - #{task.pr_number} - {task.head_branch}"

    def is_tracked(self, task: Task) -> bool:
        return task.pr_number is not None
