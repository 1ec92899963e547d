"""
Sync engine: reconcile provider snapshots into the task store.

Each snapshot item ends up in exactly one bucket:

    created    no task owns the item's external key; a new orphan is inserted
    updated    a provider-owned field differs; only those fields are written
               and the provider's synced-at stamp is refreshed
    unchanged  nothing differs; no write happens, ``updated_at`` stays put
    skipped    the item is malformed and is ignored

The snapshot is fetched before the transaction is opened, so no store lock
is ever held across a network call. Re-running a sync against an unchanged
upstream is a no-op for every task.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pydantic
import structlog

from task_reconciler.engine.diff import diff_task, format_diff_log, format_sync_summary
from task_reconciler.engine.matching import MatchEngine
from task_reconciler.enums import LogSource, ProviderName, TaskKind
from task_reconciler.exceptions import ConfigurationError, ProviderError, SnapshotError, ValidationError
from task_reconciler.models.domain import Task, utc_now
from task_reconciler.models.results import RefreshResult, SyncAllResult, SyncResult
from task_reconciler.providers.base import SnapshotContext, SyncProvider
from task_reconciler.store.task_store import StoreSession, TaskStore

log = structlog.get_logger(__name__)

PROVIDER_LABELS = {ProviderName.JIRA: "Jira", ProviderName.GITHUB: "GitHub"}

ProviderFactory = Callable[[ProviderName], SyncProvider]


class SyncEngine:
    """Pulls provider snapshots and reconciles them against the store.

    Args:
        store: Task store
        provider_factory: Builds a provider by name; raises
            ``ConfigurationError`` when that provider is not configured
        match_engine: Runs the auto-merge pass after a sync
        auto_merge: Whether syncs end with an auto-merge pass
    """

    def __init__(
        self,
        store: TaskStore,
        provider_factory: ProviderFactory,
        match_engine: MatchEngine | None = None,
        auto_merge: bool = True,
    ) -> None:
        self.store = store
        self.provider_factory = provider_factory
        self.match_engine = match_engine
        self.auto_merge = auto_merge

    async def _context(self, provider: SyncProvider) -> SnapshotContext:
        async with self.store.snapshot() as session:
            return SnapshotContext(
                repositories=session.list_repositories(enabled_only=True),
                tracked=session.list_tasks(provider.is_tracked),
            )

    def _reconcile_item(self, session: StoreSession, provider: SyncProvider, fields: dict[str, Any]) -> str:
        now = utc_now()
        existing = provider.find_existing(session, fields)
        if existing is None:
            task = session.insert_task(Task.model_validate({**fields, provider.synced_at_field: now}))
            session.add_log(provider.created_log(task), provider.log_source, task.id)
            return "created"

        updates = provider.owned_updates(existing, fields)
        diffs = diff_task(existing, updates)
        if not diffs:
            return "unchanged"

        changes = {d.field: updates[d.field] for d in diffs}
        task = session.save_task(existing.with_fields(**changes, **{provider.synced_at_field: now}))
        session.add_log(format_diff_log(diffs, provider.large_fields), provider.log_source, task.id)
        return "updated"

    async def sync(self, provider: SyncProvider, auto_match: bool | None = None) -> SyncResult:
        """Reconcile one provider's snapshot.

        Raises:
            ProviderError: The snapshot could not be fetched; nothing is written
        """
        provider_name = provider.name.value
        log.info("sync_started", provider=provider_name)

        context = await self._context(provider)
        try:
            items = await provider.fetch_snapshot(context)
        except ProviderError as e:
            log.error("sync_provider_failed", provider=provider_name, error=e.message, exc_info=True)
            raise

        result = SyncResult()
        async with self.store.transaction() as session:
            for item in items:
                try:
                    fields = provider.to_orphan_fields(item)
                    outcome = self._reconcile_item(session, provider, fields)
                except (SnapshotError, pydantic.ValidationError) as e:
                    result.skipped += 1
                    log.warning("sync_item_skipped", provider=provider_name, error=str(e))
                    continue
                setattr(result, outcome, getattr(result, outcome) + 1)

            session.add_log(
                format_sync_summary(PROVIDER_LABELS[provider.name], result.created, result.updated, result.unchanged),
                provider.log_source,
            )

        log.info(
            "sync_completed",
            provider=provider_name,
            created=result.created,
            updated=result.updated,
            unchanged=result.unchanged,
            skipped=result.skipped,
        )

        if self.match_engine is not None and (self.auto_merge if auto_match is None else auto_match):
            result.merged = await self.match_engine.auto_merge()
        return result

    async def sync_provider(self, name: ProviderName | str) -> SyncResult:
        """Build the named provider, sync it and release it.

        Raises:
            ConfigurationError: The provider is not configured
            ProviderError: The snapshot could not be fetched
        """
        provider = self.provider_factory(ProviderName(name))
        try:
            return await self.sync(provider)
        finally:
            await provider.close()

    async def sync_all(self) -> SyncAllResult:
        """Sync Jira then GitHub, then run one auto-merge pass.

        A provider that fails (or is not configured) is reported in
        ``errors``; the other provider still runs.
        """
        result = SyncAllResult()
        for name in (ProviderName.JIRA, ProviderName.GITHUB):
            try:
                provider = self.provider_factory(name)
            except ConfigurationError as e:
                log.warning("sync_provider_not_configured", provider=name.value, error=e.message)
                result.errors[name.value] = e.message
                continue
            try:
                setattr(result, name.value, await self.sync(provider, auto_match=False))
            except ProviderError as e:
                result.errors[name.value] = e.message
                async with self.store.transaction() as session:
                    session.add_log(f"{PROVIDER_LABELS[name]} sync failed: {e.message}", LogSource.SYNC)
            finally:
                await provider.close()

        if self.match_engine is not None and self.auto_merge:
            result.merged = await self.match_engine.auto_merge()
        return result

    async def _refresh_side(self, name: ProviderName, task: Task) -> str:
        provider = self.provider_factory(name)
        try:
            async with self.store.snapshot() as session:
                repository = session.get_repository(task.repository_id)
            context = SnapshotContext(repositories=[repository] if repository else [], tracked=[task])
            item = await provider.fetch_item(task, context)

            async with self.store.transaction() as session:
                fields = provider.to_orphan_fields(item)
                try:
                    outcome = self._reconcile_item(session, provider, fields)
                except pydantic.ValidationError as e:
                    raise SnapshotError(f"Malformed {PROVIDER_LABELS[name]} item: {e}", provider=name.value) from e
        finally:
            await provider.close()

        log.info("task_refreshed", task_id=task.id, provider=name.value, outcome=outcome)
        return outcome

    async def refresh(self, task_id: int) -> RefreshResult:
        """Re-fetch the Jira issue and pull request one task is bound to.

        Each side goes through the same reconcile path as a full sync, so
        user content and gated statuses are left alone. No auto-merge pass
        runs afterwards.

        Raises:
            NotFoundError: Unknown task
            ValidationError: The task is bound to neither provider
            ConfigurationError: A provider the task needs is not configured
            ProviderError: The item could not be fetched or is malformed
        """
        task = await self.store.get_task(task_id)
        if task.kind is TaskKind.MANUAL:
            raise ValidationError("Task has no Jira issue or pull request to refresh", code="NOTHING_TO_REFRESH")

        result = RefreshResult(task_id=task_id)
        if task.jira_key is not None:
            result.jira = await self._refresh_side(ProviderName.JIRA, task)
        if task.pr_number is not None:
            result.github = await self._refresh_side(ProviderName.GITHUB, task)
        result.task = await self.store.get_task(task_id)
        return result
