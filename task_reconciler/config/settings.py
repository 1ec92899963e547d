"""
Configuration system using Pydantic for type-safe settings management.

A configuration file looks like::

    store:
      path: .reconciler/store.json
    jira:
      base_url: https://acme.atlassian.net
      email: dev@acme.io
      api_token: ${JIRA_API_TOKEN}
    github:
      token: ${GITHUB_TOKEN}
      username: octocat
    matching:
      project_keys: [ABC, OPS]
    deploy:
      merge_timeout: 60

Provider sections are optional. A provider without a section is simply not
configured, and syncing it raises ``ConfigurationError``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from task_reconciler.exceptions import ConfigurationError

DEFAULT_COMPLETED_STATUSES: tuple[str, ...] = (
    "ready to prod",
    "completed",
    "done",
    "closed",
    "cancelled",
    "rejected",
    "define preventive measures",
)


class StoreConfig(BaseModel):
    """Task store location."""

    path: str = Field(default=".reconciler/store.json", description="JSON file backing the task store")


class JiraConfig(BaseModel):
    """Jira Cloud connection and issue query."""

    base_url: HttpUrl = Field(..., description="Jira site URL, e.g. https://acme.atlassian.net")
    email: str = Field(..., description="Account email used for basic auth and the default JQL")
    api_token: SecretStr = Field(..., description="Jira API token")
    jql: str | None = Field(default=None, description="Issue query; defaults to open issues assigned to email")
    sprint_field: str | None = Field(
        default=None, description="Custom field id holding the sprint, e.g. customfield_10020"
    )
    page_size: int = Field(default=50, ge=1, le=100, description="Issues per search page")

    def effective_jql(self) -> str:
        if self.jql:
            return self.jql
        return f'assignee = "{self.email}" AND statusCategory != Done AND type != Epic ORDER BY updated DESC'


class GitHubConfig(BaseModel):
    """GitHub API access. Repositories come from the task store."""

    token: SecretStr = Field(..., description="Personal access token")
    username: str | None = Field(default=None, description="Only sync pull requests authored by this login")
    base_url: str = Field(default="https://api.github.com", description="API base URL (GitHub Enterprise)")


class MatchingConfig(BaseModel):
    """Orphan matching behavior."""

    project_keys: list[str] = Field(default_factory=list, description="Allowed Jira key prefixes; empty allows any")
    completed_statuses: list[str] = Field(
        default_factory=lambda: list(DEFAULT_COMPLETED_STATUSES),
        description="Jira statuses excluded from matching (case-insensitive)",
    )
    auto_merge: bool = Field(default=True, description="Merge proposed pairs at the end of every sync")

    @field_validator("project_keys")
    @classmethod
    def normalize_keys(cls, value: list[str]) -> list[str]:
        return [key.strip().upper() for key in value if key.strip()]


class DeployConfig(BaseModel):
    """Branch deploy behavior."""

    remote: str = Field(default="origin", description="Git remote to fetch from and push to")
    merge_timeout: float = Field(default=45.0, ge=5.0, le=600.0, description="Seconds allowed per merge attempt")
    commit_message: str = Field(
        default="chore: [{user}] [deploy]",
        description="Deploy marker commit message; {user} is the working copy's user.name",
    )


class ServerConfig(BaseModel):
    """HTTP API server binding."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)


class ReconcilerSettings(BaseSettings):
    """Main settings.

    Combines all configuration sections and provides YAML loading with
    environment variable interpolation. Environment overrides use the
    ``RECONCILER_`` prefix, e.g. ``RECONCILER_DEPLOY__MERGE_TIMEOUT=90``.
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    store: StoreConfig = Field(default_factory=StoreConfig)
    jira: JiraConfig | None = None
    github: GitHubConfig | None = None
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def store_path(self) -> Path:
        return Path(self.store.path).expanduser()

    def require_jira(self) -> JiraConfig:
        if self.jira is None:
            raise ConfigurationError("Jira is not configured (missing 'jira' section)")
        return self.jira

    def require_github(self) -> GitHubConfig:
        if self.github is None:
            raise ConfigurationError("GitHub is not configured (missing 'github' section)")
        return self.github

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> ReconcilerSettings:
        """Load settings from YAML file with environment variable interpolation.

        Raises:
            ConfigurationError: If the file is missing, unreadable, not valid
                YAML, references an unset variable or fails validation
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ``${VAR}`` and ``${VAR:-default}`` placeholders.

        Comment lines are left alone so documentation examples survive.

        Raises:
            ValueError: If a variable without default is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)
            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
