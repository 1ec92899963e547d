"""Custom exception hierarchy for the task reconciliation engine.

Every error carries a human-readable ``message``, the HTTP ``status_code`` the
API layer answers with, and a machine-readable ``code`` that clients switch on.

Exception Hierarchy:
    TaskReconcilerError (base)
    ├── ConfigurationError
    ├── ValidationError
    │   ├── InvalidMergeKindError
    │   ├── NotLinkedError
    │   ├── DeployPreconditionError
    │   └── BlockedByError
    ├── NotFoundError
    ├── DuplicateKeyError
    ├── ConflictError
    ├── ProviderError
    │   ├── ProviderAuthError
    │   └── SnapshotError
    └── InfrastructureError
        ├── GitOperationError
        └── GitTimeoutError

Example Usage:
    >>> from task_reconciler.exceptions import NotFoundError
    >>> try:
    ...     task = session.require_task(42)
    ... except NotFoundError as e:
    ...     print(e.code, e.message)
"""

from typing import Any


class TaskReconcilerError(Exception):
    """Base exception for all reconciliation errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code
        status_code: HTTP status used when the error reaches the API boundary
        details: Optional structured payload rendered alongside the message
    """

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            code: Error code overriding the class default
            details: Structured error details
        """
        self.message = message
        self.code = code or self.default_code
        self.details = details
        super().__init__(message)

    def to_payload(self) -> dict[str, Any]:
        """Render the error as the API error body."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error}


class ConfigurationError(TaskReconcilerError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found or not valid YAML
        - Provider section missing when that provider is synced
        - Invalid configuration values
    """

    default_code = "CONFIGURATION_ERROR"


class ValidationError(TaskReconcilerError):
    """Caller supplied a request the engine refuses. Never retried."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class InvalidMergeKindError(ValidationError):
    """Merge requested between tasks that are not one orphan-jira and one orphan-pr."""

    default_code = "INVALID_MERGE_KIND"


class NotLinkedError(ValidationError):
    """Split requested on a task that is not linked."""

    default_code = "NOT_LINKED"


class DeployPreconditionError(ValidationError):
    """A task or repository is not eligible for a deploy.

    The ``code`` identifies the failed precondition (``TASK_NO_BRANCH``,
    ``NO_REPOSITORY``, ``REPO_PATH_NOT_CONFIGURED``, ``INVALID_TARGET_BRANCH``...)
    so bulk deploy can turn it into a skip reason.
    """

    default_code = "DEPLOY_PRECONDITION_FAILED"


class BlockedByError(ValidationError):
    """A blocked-by edge is malformed, a self loop, or would close a cycle."""

    default_code = "INVALID_BLOCKED_BY"


class NotFoundError(TaskReconcilerError):
    """Unknown task, todo, repository or edge id."""

    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any = None) -> None:
        """Initialize exception.

        Args:
            resource: Resource type name (e.g. "Task")
            identifier: The id that could not be resolved
        """
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} with id {identifier} not found"
        super().__init__(message)


class DuplicateKeyError(TaskReconcilerError):
    """A second task would claim an external key already owned by another task."""

    status_code = 409
    default_code = "DUPLICATE_KEY"


class ConflictError(TaskReconcilerError):
    """Git merge conflict surfaced at the HTTP boundary.

    Conflicts are an expected outcome inside the engines, which return a
    ``DeployConflict`` result. The API converts that result into this error so
    the client receives a 409 with the conflicted file list.
    """

    status_code = 409
    default_code = "MERGE_CONFLICT"

    def __init__(self, conflicted_files: list[str], message: str = "Merge conflict detected") -> None:
        self.conflicted_files = conflicted_files
        super().__init__(message, details={"conflictedFiles": conflicted_files})


class ProviderError(TaskReconcilerError):
    """Jira or GitHub call failed.

    Attributes:
        provider: Name of the provider that failed ("jira" or "github")
        upstream_status: HTTP status returned by the provider, if any
    """

    status_code = 502
    default_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        upstream_status: int | None = None,
        code: str | None = None,
    ) -> None:
        self.provider = provider
        self.upstream_status = upstream_status
        full_message = message
        if upstream_status:
            full_message = f"{message} (HTTP {upstream_status})"
        super().__init__(full_message, code=code)


class ProviderAuthError(ProviderError):
    """Provider rejected the configured credentials."""

    default_code = "PROVIDER_AUTH_FAILED"


class SnapshotError(ProviderError):
    """A single snapshot item could not be transformed into task fields.

    Raised per item; the sync engine skips the item and keeps going.
    """

    status_code = 422
    default_code = "MALFORMED_SNAPSHOT"


class InfrastructureError(TaskReconcilerError):
    """Git executor, disk or timeout failure. Fatal for the single operation."""

    default_code = "INFRASTRUCTURE_ERROR"


class GitOperationError(InfrastructureError):
    """A git command failed for a reason other than a content conflict.

    Codes: ``REPO_PATH_NOT_FOUND``, ``FETCH_FAILED``, ``CHECKOUT_FAILED``,
    ``RESET_FAILED``, ``MERGE_FAILED``, ``COMMIT_FAILED``, ``PUSH_FAILED``.
    """

    default_code = "GIT_ERROR"

    def __init__(self, message: str, code: str | None = None, stderr: str | None = None) -> None:
        self.stderr = stderr
        super().__init__(message, code=code)


class GitTimeoutError(InfrastructureError):
    """A merge attempt exceeded the configured timeout."""

    status_code = 504
    default_code = "GIT_TIMEOUT"

    def __init__(self, message: str, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message)
