"""Build sync providers from settings."""

from task_reconciler.config.settings import ReconcilerSettings
from task_reconciler.enums import ProviderName
from task_reconciler.exceptions import ConfigurationError
from task_reconciler.providers.base import SyncProvider
from task_reconciler.providers.github import GitHubProvider
from task_reconciler.providers.jira import JiraProvider


def create_provider(name: ProviderName | str, settings: ReconcilerSettings) -> SyncProvider:
    """Create the provider called ``name``.

    Raises:
        ConfigurationError: Unknown provider, or its settings section is missing
    """
    try:
        provider = ProviderName(name)
    except ValueError as e:
        raise ConfigurationError(f"Unknown provider: {name}") from e

    if provider is ProviderName.JIRA:
        return JiraProvider(settings.require_jira())
    return GitHubProvider(settings.require_github())
