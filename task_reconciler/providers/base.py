"""
Abstract base class for sync providers.

A provider turns an external system (Jira, GitHub) into orphan task fields.
The sync engine is provider-agnostic: it asks the provider for a snapshot,
converts each item with ``to_orphan_fields`` and lets the provider decide
which stored task an item belongs to and which fields it owns.

Network access happens only in ``fetch_snapshot`` and ``fetch_item``.
Everything else is a pure function over already fetched data and runs
inside a store transaction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from task_reconciler.enums import LogSource, ProviderName
from task_reconciler.models.domain import Repository, Task
from task_reconciler.store.task_store import StoreSession


@dataclass(frozen=True)
class SnapshotContext:
    """Store state a provider may need to build its query.

    Read before the snapshot is fetched, outside any transaction.

    Attributes:
        repositories: Enabled repository bindings
        tracked: Tasks already bound to this provider's external keys
    """

    repositories: list[Repository] = field(default_factory=list)
    tracked: list[Task] = field(default_factory=list)


class SyncProvider(ABC):
    """Contract every provider implements.

    Class Attributes:
        name: Provider identifier used in results and errors
        log_source: Source recorded on activity log entries
        synced_at_field: Task field stamped when provider fields change
        large_fields: Fields rendered as "(changed)" in diff logs
    """

    name: ProviderName
    log_source: LogSource
    synced_at_field: str
    large_fields: tuple[str, ...] = ()

    @abstractmethod
    async def fetch_snapshot(self, context: SnapshotContext) -> list[Any]:
        """Return the current provider items.

        Raises:
            ProviderError: The provider could not be queried at all
        """
        pass

    @abstractmethod
    async def fetch_item(self, task: Task, context: SnapshotContext) -> Any:
        """Fetch the single provider item ``task`` is bound to.

        The item has the same shape as a ``fetch_snapshot`` entry.

        Raises:
            ProviderError: The item could not be fetched or no longer exists
        """
        pass

    @abstractmethod
    def to_orphan_fields(self, item: Any) -> dict[str, Any]:
        """Convert one snapshot item into task fields (snake_case).

        The result always contains the external key and every
        provider-owned field, but never the synced-at stamp.

        Raises:
            SnapshotError: The item is malformed
        """
        pass

    @abstractmethod
    def find_existing(self, session: StoreSession, fields: dict[str, Any]) -> Task | None:
        """Locate the stored task owning the item's external key."""
        pass

    @abstractmethod
    def owned_updates(self, existing: Task, fields: dict[str, Any]) -> dict[str, Any]:
        """Fields the provider may overwrite on ``existing``.

        Values equal to the stored ones are filtered out by the caller.
        """
        pass

    @abstractmethod
    def created_log(self, task: Task) -> str:
        """Activity log content recorded when a new orphan is created."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    @abstractmethod
    def is_tracked(self, task: Task) -> bool:
        """Whether ``task`` is bound to this provider's external keys."""
        pass
