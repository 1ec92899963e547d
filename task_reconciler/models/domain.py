"""
Domain records for the reconciliation engine.

A Task is the unification point between a Jira issue and a GitHub pull
request. Its fields fall into clusters: core fields, Jira-side fields (only
meaningful while ``jira_key`` is set), PR-side fields (only meaningful while
``pr_number`` is set) and user content that sync never overwrites. The cluster
rule is enforced by a model validator, so a Task that exists is always exactly
one of the four kinds in ``TaskKind``.

Records serialize with camelCase aliases (``jiraKey``, ``headBranch``...) both
in the store file and over the API.

Example:
    Building a Jira orphan and linking PR fields onto it::

        task = Task(id=1, title="Fix login", jira_key="ABC-1", status="To Do")
        assert task.kind is TaskKind.ORPHAN_JIRA

        linked = task.with_fields(pr_number=7, repository_id=1, head_branch="abc-1-fix")
        assert linked.kind is TaskKind.LINKED
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from task_reconciler.enums import LogSource, TaskKind

# Jira-side fields other than the key itself.
JIRA_FIELDS: tuple[str, ...] = (
    "jira_status",
    "issue_type",
    "assignee",
    "priority",
    "sprint",
    "epic_key",
    "jira_synced_at",
)

# PR-side fields other than the PR number itself.
PR_FIELDS: tuple[str, ...] = (
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
    "pr_synced_at",
)

USER_FIELDS: tuple[str, ...] = ("notes", "instructions")


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def pr_task_status(pr_state: str | None, is_draft: bool | None) -> str:
    """Task status for a PR-only task: done once merged or closed, else by draft flag."""
    if pr_state in ("merged", "closed"):
        return "done"
    if is_draft:
        return "in_progress"
    return "code_review"


class ReconcilerModel(BaseModel):
    """Base model: snake_case attributes, camelCase wire names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self, exclude_none: bool = False) -> dict[str, Any]:
        """JSON-compatible dict using wire (camelCase) names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)


class Record(ReconcilerModel):
    """Persisted record. Frozen: updates always produce a new instance."""

    model_config = ConfigDict(frozen=True)


class Task(Record):
    """A unit of engineering work, optionally bound to a Jira issue and/or a PR."""

    id: int | None = None
    title: str
    description: str | None = None
    status: str = "todo"
    created_at: datetime | None = None
    updated_at: datetime | None = None

    # Jira side
    jira_key: str | None = None
    jira_status: str | None = None  # last status seen in Jira
    issue_type: str | None = Field(default=None, alias="type")
    assignee: str | None = None
    priority: str | None = None
    sprint: str | None = None
    epic_key: str | None = None
    jira_synced_at: datetime | None = None

    # PR side
    pr_number: int | None = None
    repository_id: int | None = None
    pr_title: str | None = None
    head_branch: str | None = None
    base_branch: str | None = None
    pr_state: str | None = None
    pr_author: str | None = None
    is_draft: bool | None = None
    checks_status: str | None = None
    approved_review_count: int | None = None
    unresolved_comment_count: int | None = None
    on_deployment_branches: list[str] | None = None
    pr_synced_at: datetime | None = None

    # User content
    notes: str | None = None
    instructions: str | None = None

    @model_validator(mode="after")
    def check_field_clusters(self) -> Task:
        """Reject Jira-side or PR-side values without their owning key."""
        if self.jira_key is None:
            stray = [name for name in JIRA_FIELDS if getattr(self, name) is not None]
            if stray:
                raise ValueError(f"Jira fields set without jiraKey: {', '.join(stray)}")
        if self.pr_number is None:
            stray = [name for name in PR_FIELDS if getattr(self, name) is not None]
            if stray:
                raise ValueError(f"PR fields set without prNumber: {', '.join(stray)}")
        return self

    @property
    def kind(self) -> TaskKind:
        has_jira = self.jira_key is not None
        has_pr = self.pr_number is not None
        if has_jira and has_pr:
            return TaskKind.LINKED
        if has_jira:
            return TaskKind.ORPHAN_JIRA
        if has_pr:
            return TaskKind.ORPHAN_PR
        return TaskKind.MANUAL

    def with_fields(self, **updates: Any) -> Task:
        """Return a re-validated copy with ``updates`` applied.

        Unlike ``model_copy(update=...)`` this runs the cluster validator, so an
        update can never leave the task in a mixed state.
        """
        data = self.model_dump()
        data.update(updates)
        return Task.model_validate(data)

    def jira_side(self) -> dict[str, Any]:
        """Jira key plus every Jira-side field."""
        return {"jira_key": self.jira_key, **{name: getattr(self, name) for name in JIRA_FIELDS}}

    def pr_side(self) -> dict[str, Any]:
        """PR number plus every PR-side field."""
        return {"pr_number": self.pr_number, **{name: getattr(self, name) for name in PR_FIELDS}}


class Todo(Record):
    """Checklist item belonging to a task."""

    id: int | None = None
    task_id: int
    content: str
    done: bool = False
    position: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class BlockedBy(Record):
    """Directed edge: ``blocked_task_id`` is blocked by a task or by a todo."""

    id: int | None = None
    blocked_task_id: int
    blocker_task_id: int | None = None
    blocker_todo_id: int | None = None

    @model_validator(mode="after")
    def check_single_blocker(self) -> BlockedBy:
        if (self.blocker_task_id is None) == (self.blocker_todo_id is None):
            raise ValueError("Exactly one of blockerTaskId or blockerTodoId must be set")
        if self.blocker_task_id is not None and self.blocker_task_id == self.blocked_task_id:
            raise ValueError("A task cannot block itself")
        return self


class Repository(Record):
    """GitHub repository binding plus the local working copy used for deploys."""

    id: int | None = None
    owner: str
    repo: str
    enabled: bool = True
    local_path: str | None = None
    deployment_branches: list[str] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def deploy_eligible(self) -> bool:
        """Deploys need both a working copy and at least one allowed target."""
        return bool(self.local_path) and bool(self.deployment_branches)

    def working_copy(self) -> Path | None:
        """Local path with ``~`` expanded, or None when not configured."""
        if not self.local_path:
            return None
        return Path(self.local_path).expanduser()


class LogEntry(Record):
    """User-visible activity record."""

    id: int | None = None
    task_id: int | None = None
    content: str
    source: LogSource
    created_at: datetime | None = None
