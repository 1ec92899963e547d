"""Jira Cloud provider using the enhanced JQL search endpoint."""

from __future__ import annotations

import json
from typing import Any

import httpx
import structlog

from task_reconciler.config.settings import JiraConfig
from task_reconciler.enums import LogSource, ProviderName
from task_reconciler.exceptions import ProviderAuthError, ProviderError, SnapshotError
from task_reconciler.models.domain import Task
from task_reconciler.providers.base import SnapshotContext, SyncProvider
from task_reconciler.store.task_store import StoreSession
from task_reconciler.utils.retry import async_retry

log = structlog.get_logger(__name__)

SEARCH_PATH = "/rest/api/3/search/jql"
ISSUE_PATH = "/rest/api/3/issue"
BASE_FIELDS = ["summary", "description", "status", "issuetype", "assignee", "priority", "parent"]

# Fields Jira owns on a task, linked or not. ``status`` is gated on ``jira_status``.
JIRA_OWNED = ("title", "description", "jira_status", "issue_type", "assignee", "priority", "sprint", "epic_key")


def _stringify_description(description: Any) -> str | None:
    if not description:
        return None
    if isinstance(description, str):
        return description
    # Atlassian Document Format
    return json.dumps(description)


def _epic_key(fields: dict[str, Any]) -> str | None:
    parent = fields.get("parent") or {}
    key = parent.get("key")
    parent_type = ((parent.get("fields") or {}).get("issuetype") or {}).get("name") or ""
    if key and parent_type.lower() == "epic":
        return key
    return None


def _sprint_name(value: Any) -> str | None:
    """Sprint custom fields hold a list of sprint objects; prefer the active one."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("name")
    if isinstance(value, list):
        sprints = [s for s in value if isinstance(s, dict)]
        active = [s for s in sprints if s.get("state") == "active"]
        chosen = (active or sprints or [None])[-1]
        return chosen.get("name") if chosen else None
    return None


def _name(value: Any, attr: str = "name") -> str | None:
    if isinstance(value, dict):
        return value.get(attr) or None
    return None


class JiraProvider(SyncProvider):
    """Fetches issues matching a JQL query.

    Args:
        config: Jira connection settings
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        retry_backoff: Base of the retry backoff for transport failures
    """

    name = ProviderName.JIRA
    log_source = LogSource.JIRA
    synced_at_field = "jira_synced_at"
    large_fields = ("description",)

    def __init__(
        self,
        config: JiraConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff: float = 2.0,
    ) -> None:
        self.config = config
        self.base_url = str(config.base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(config.email, config.api_token.get_secret_value()),
            headers={"Accept": "application/json"},
            timeout=30.0,
            transport=transport,
        )
        self._post = async_retry(
            max_attempts=3,
            backoff_factor=retry_backoff,
            exceptions=(httpx.TransportError,),
        )(self._client.post)
        self._get = async_retry(
            max_attempts=3,
            backoff_factor=retry_backoff,
            exceptions=(httpx.TransportError,),
        )(self._client.get)

    @property
    def fields(self) -> list[str]:
        if self.config.sprint_field:
            return [*BASE_FIELDS, self.config.sprint_field]
        return list(BASE_FIELDS)

    async def close(self) -> None:
        await self._client.aclose()

    def _payload(self, response: httpx.Response, failure: str) -> dict[str, Any]:
        """Decode a Jira response body, mapping every failure to ``ProviderError``."""
        if response.status_code in (401, 403):
            raise ProviderAuthError(
                "Jira authentication failed. Check your API token and email.",
                provider=self.name.value,
                upstream_status=response.status_code,
            )
        if response.is_error:
            raise ProviderError(failure, provider=self.name.value, upstream_status=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError("Jira returned a non-JSON response", provider=self.name.value) from e
        if not isinstance(payload, dict):
            raise ProviderError("Jira returned an unexpected response body", provider=self.name.value)
        return payload

    async def fetch_snapshot(self, context: SnapshotContext) -> list[dict[str, Any]]:
        jql = self.config.effective_jql()
        log.info("jira_fetch_started", jql=jql)

        issues: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            body: dict[str, Any] = {"jql": jql, "maxResults": self.config.page_size, "fields": self.fields}
            if page_token:
                body["nextPageToken"] = page_token

            try:
                response = await self._post(SEARCH_PATH, json=body)
            except httpx.HTTPError as e:
                log.error("jira_fetch_failed", error=str(e))
                raise ProviderError(f"Failed to reach Jira: {e}", provider=self.name.value) from e

            payload = self._payload(response, "Failed to fetch issues from Jira")
            page = payload.get("issues") or []
            if not isinstance(page, list):
                raise ProviderError("Jira returned an unexpected response body", provider=self.name.value)
            if not page:
                break
            issues.extend(page)
            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        log.info("jira_fetch_completed", issues=len(issues))
        return issues

    async def fetch_item(self, task: Task, context: SnapshotContext) -> dict[str, Any]:
        key = task.jira_key
        log.info("jira_fetch_issue", key=key)
        try:
            response = await self._get(f"{ISSUE_PATH}/{key}", params={"fields": ",".join(self.fields)})
        except httpx.HTTPError as e:
            log.error("jira_fetch_failed", key=key, error=str(e))
            raise ProviderError(f"Failed to reach Jira: {e}", provider=self.name.value) from e

        if response.status_code == 404:
            raise ProviderError(
                f"Issue {key} not found in Jira",
                provider=self.name.value,
                upstream_status=404,
                code="JIRA_ISSUE_NOT_FOUND",
            )
        return self._payload(response, f"Failed to fetch issue {key} from Jira")

    def to_orphan_fields(self, item: Any) -> dict[str, Any]:
        if not isinstance(item, dict):
            raise SnapshotError("Jira issue is not an object", provider=self.name.value)
        key = item.get("key")
        fields = item.get("fields")
        if not key or not isinstance(key, str) or not isinstance(fields, dict):
            raise SnapshotError(f"Jira issue without key or fields: {item.get('id')}", provider=self.name.value)

        status = _name(fields.get("status"))
        result: dict[str, Any] = {
            "jira_key": key,
            "title": fields.get("summary") or key,
            "description": _stringify_description(fields.get("description")),
            "status": status or "todo",
            "jira_status": status,
            "issue_type": _name(fields.get("issuetype")),
            "assignee": _name(fields.get("assignee"), "displayName"),
            "priority": _name(fields.get("priority")),
            "sprint": _sprint_name(fields.get(self.config.sprint_field)) if self.config.sprint_field else None,
            "epic_key": _epic_key(fields),
        }
        return result

    def find_existing(self, session: StoreSession, fields: dict[str, Any]) -> Task | None:
        return session.find_by_jira_key(fields["jira_key"])

    def owned_updates(self, existing: Task, fields: dict[str, Any]) -> dict[str, Any]:
        updates = {name: fields[name] for name in JIRA_OWNED}
        # The task status follows Jira only when Jira's own status moves.
        if existing.jira_status != fields["jira_status"]:
            updates["status"] = fields["status"]
        return updates

    def created_log(self, task: Task) -> str:
        return f"# Task created\n{task.jira_key} - {task.status}"

    def is_tracked(self, task: Task) -> bool:
        return task.jira_key is not None
