"""Configuration for the reconciliation engine.

Type-safe settings loaded from YAML with environment variable interpolation.

Key Components:
    - ReconcilerSettings: Main configuration container with YAML loading support
    - JiraConfig / GitHubConfig: Optional provider sections
    - MatchingConfig: Auto-match behavior
    - DeployConfig: Git remote, merge timeout and deploy marker commit

Example:
    >>> from task_reconciler.config import ReconcilerSettings
    >>> settings = ReconcilerSettings.from_yaml("reconciler.yaml")
    >>> settings.deploy.merge_timeout
    45.0
"""

from task_reconciler.config.settings import (
    DEFAULT_COMPLETED_STATUSES,
    DeployConfig,
    GitHubConfig,
    JiraConfig,
    MatchingConfig,
    ReconcilerSettings,
    ServerConfig,
    StoreConfig,
)

__all__ = [
    "DEFAULT_COMPLETED_STATUSES",
    "DeployConfig",
    "GitHubConfig",
    "JiraConfig",
    "MatchingConfig",
    "ReconcilerSettings",
    "ServerConfig",
    "StoreConfig",
]
