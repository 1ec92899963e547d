"""Enumerations shared across the reconciliation engines."""

from enum import Enum


class TaskKind(str, Enum):
    """Which external sources a task is bound to.

    The kind is derived from which field cluster is populated and is never
    stored: ``jiraKey`` set means Jira-backed, ``prNumber`` set means PR-backed.
    """

    MANUAL = "manual"
    ORPHAN_JIRA = "orphan-jira"
    ORPHAN_PR = "orphan-pr"
    LINKED = "linked"

    def __str__(self) -> str:
        return self.value

    @property
    def is_orphan(self) -> bool:
        return self in (TaskKind.ORPHAN_JIRA, TaskKind.ORPHAN_PR)


class ProviderName(str, Enum):
    """External systems that feed tasks."""

    JIRA = "jira"
    GITHUB = "github"

    def __str__(self) -> str:
        return self.value


class PrState(str, Enum):
    """Pull request states, with GitHub's merged flag folded into the state."""

    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"

    def __str__(self) -> str:
        return self.value


class DeployOutcome(str, Enum):
    """Per-task outcome of a bulk deploy."""

    SUCCESS = "success"
    CONFLICT = "conflict"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class LogSource(str, Enum):
    """Origin of an activity log entry."""

    JIRA = "jira"
    GITHUB = "github"
    MERGE = "merge"
    DEPLOY = "deploy"
    SYNC = "sync"
    SYSTEM = "system"

    def __str__(self) -> str:
        return self.value
