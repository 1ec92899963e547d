"""Sync providers for external systems.

Example:
    >>> from task_reconciler.providers import create_provider
    >>> provider = create_provider("jira", settings)
    >>> items = await provider.fetch_snapshot(SnapshotContext())
"""

from task_reconciler.providers.base import SnapshotContext, SyncProvider
from task_reconciler.providers.factory import create_provider
from task_reconciler.providers.github import GitHubProvider
from task_reconciler.providers.jira import JiraProvider

__all__ = [
    "GitHubProvider",
    "JiraProvider",
    "SnapshotContext",
    "SyncProvider",
    "create_provider",
]
