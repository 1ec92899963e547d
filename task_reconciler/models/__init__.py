"""Domain records and engine result shapes.

Key Models:
    - Task: Work item with Jira-side and PR-side field clusters
    - Todo: Ordered checklist item of a task
    - BlockedBy: Task blocked by another task or by a todo
    - Repository: GitHub repository with deploy configuration
    - LogEntry: User-visible activity record

Example:
    >>> from task_reconciler.models import Task
    >>> task = Task(title="Fix login", jira_key="ABC-1")
    >>> task.kind
    <TaskKind.ORPHAN_JIRA: 'orphan-jira'>
"""

from task_reconciler.models.domain import BlockedBy, LogEntry, Repository, Task, Todo
from task_reconciler.models.results import (
    BatchMergeResult,
    BranchSyncSuccess,
    BulkDeployResult,
    BulkDeploySummary,
    BulkDeployTaskResult,
    DeployConflict,
    DeploySuccess,
    MatchPair,
    MergeAttempt,
    SplitResult,
    SyncAllResult,
    SyncResult,
)

__all__ = [
    "BatchMergeResult",
    "BlockedBy",
    "BranchSyncSuccess",
    "BulkDeployResult",
    "BulkDeploySummary",
    "BulkDeployTaskResult",
    "DeployConflict",
    "DeploySuccess",
    "LogEntry",
    "MatchPair",
    "MergeAttempt",
    "Repository",
    "SplitResult",
    "SyncAllResult",
    "SyncResult",
    "Task",
    "Todo",
]
