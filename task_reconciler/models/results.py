"""Result shapes returned by the engines and rendered by the API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import Field

from task_reconciler.enums import DeployOutcome
from task_reconciler.models.domain import ReconcilerModel, Task


class SyncResult(ReconcilerModel):
    """Per-provider tally of one sync run.

    ``skipped`` counts snapshot items that could not be transformed; they are
    not part of created/updated/unchanged. ``merged`` is filled in by the
    auto-match pass that follows the sync.
    """

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    merged: int = 0


class SyncAllResult(ReconcilerModel):
    """Combined Jira + GitHub sync. A failed provider leaves its slot empty."""

    jira: SyncResult | None = None
    github: SyncResult | None = None
    merged: int = 0
    errors: dict[str, str] = Field(default_factory=dict)


class MatchPair(ReconcilerModel):
    jira_task_id: int
    pr_task_id: int
    jira_key: str


class MergeAttempt(ReconcilerModel):
    """Outcome of merging one pair inside a batch."""

    jira_task_id: int
    pr_task_id: int
    ok: bool
    task: Task | None = None
    error: dict[str, Any] | None = None


class BatchMergeResult(ReconcilerModel):
    results: list[MergeAttempt] = Field(default_factory=list)

    @property
    def merged(self) -> int:
        return sum(1 for attempt in self.results if attempt.ok)

    @property
    def failed(self) -> int:
        return sum(1 for attempt in self.results if not attempt.ok)

    def to_api(self, exclude_none: bool = False) -> dict[str, Any]:
        payload = super().to_api(exclude_none=exclude_none)
        payload["merged"] = self.merged
        payload["failed"] = self.failed
        return payload


class SplitResult(ReconcilerModel):
    jira_task: Task
    pr_task: Task


class DeploySuccess(ReconcilerModel):
    status: Literal["success"] = "success"
    target_branch: str
    source_branch: str
    commit_sha: str


class DeployConflict(ReconcilerModel):
    status: Literal["conflict"] = "conflict"
    conflicted_files: list[str]


class BranchSyncSuccess(ReconcilerModel):
    status: Literal["success"] = "success"
    task_branch: str
    main_branch: str
    commit_sha: str


class BulkDeployTaskResult(ReconcilerModel):
    task_id: int
    status: DeployOutcome
    commit_sha: str | None = None
    conflicted_files: list[str] | None = None
    reason: str | None = None


class BulkDeploySummary(ReconcilerModel):
    success: int = 0
    conflict: int = 0
    skipped: int = 0


class BulkDeployResult(ReconcilerModel):
    results: list[BulkDeployTaskResult] = Field(default_factory=list)
    summary: BulkDeploySummary = Field(default_factory=BulkDeploySummary)

    @classmethod
    def from_results(cls, results: list[BulkDeployTaskResult]) -> BulkDeployResult:
        summary = BulkDeploySummary(
            success=sum(1 for r in results if r.status is DeployOutcome.SUCCESS),
            conflict=sum(1 for r in results if r.status is DeployOutcome.CONFLICT),
            skipped=sum(1 for r in results if r.status is DeployOutcome.SKIPPED),
        )
        return cls(results=results, summary=summary)


RefreshOutcome = Literal["created", "updated", "unchanged"]


class RefreshResult(ReconcilerModel):
    """Single-task refresh. A side the task is not bound to stays None."""

    task_id: int
    jira: RefreshOutcome | None = None
    github: RefreshOutcome | None = None
    task: Task | None = None
