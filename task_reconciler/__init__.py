"""Task reconciliation engine: Jira issues and GitHub pull requests as unified tasks."""

__version__ = "0.3.0"
