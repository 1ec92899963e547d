"""Wiring of the store, providers, executor and engines from settings."""

from __future__ import annotations

from dataclasses import dataclass

from task_reconciler.config.settings import ReconcilerSettings
from task_reconciler.engine.deploy import DeployEngine
from task_reconciler.engine.matching import MatchEngine
from task_reconciler.engine.merge import MergeEngine
from task_reconciler.engine.sync import ProviderFactory, SyncEngine
from task_reconciler.enums import ProviderName
from task_reconciler.git.executor import GitMergeExecutor, SubprocessGitExecutor
from task_reconciler.providers.base import SyncProvider
from task_reconciler.providers.factory import create_provider
from task_reconciler.store.task_store import TaskStore


@dataclass
class Services:
    """Everything the API and the CLI operate on."""

    settings: ReconcilerSettings
    store: TaskStore
    merge: MergeEngine
    match: MatchEngine
    sync: SyncEngine
    deploy: DeployEngine


def build_services(
    settings: ReconcilerSettings,
    store: TaskStore | None = None,
    executor: GitMergeExecutor | None = None,
    provider_factory: ProviderFactory | None = None,
) -> Services:
    """Assemble the engines.

    Collaborators default to the real implementations; tests pass an
    in-memory store, a fake executor or a fake provider factory.
    """
    store = store or TaskStore(settings.store_path)

    def default_factory(name: ProviderName) -> SyncProvider:
        return create_provider(name, settings)

    merge = MergeEngine(store)
    match = MatchEngine(
        store,
        merge,
        project_keys=settings.matching.project_keys,
        completed_statuses=settings.matching.completed_statuses,
    )
    sync = SyncEngine(
        store,
        provider_factory or default_factory,
        match_engine=match,
        auto_merge=settings.matching.auto_merge,
    )
    executor = executor or SubprocessGitExecutor(
        remote=settings.deploy.remote,
        commit_message=settings.deploy.commit_message,
    )
    deploy = DeployEngine(store, executor, merge_timeout=settings.deploy.merge_timeout)
    return Services(settings=settings, store=store, merge=merge, match=match, sync=sync, deploy=deploy)
