"""Reconciliation engines.

Components:
    - SyncEngine: Reconciles provider snapshots into the store
    - MatchEngine: Proposes and applies Jira/PR orphan pairings
    - MergeEngine: Merges orphan pairs and splits linked tasks
    - DeployEngine: Single, bulk and branch-sync git merges

Example:
    >>> store = TaskStore(".reconciler/store.json")
    >>> merges = MergeEngine(store)
    >>> matcher = MatchEngine(store, merges, project_keys=["ABC"])
    >>> pairs = await matcher.propose_matches()
"""

from task_reconciler.engine.deploy import DeployEngine
from task_reconciler.engine.matching import MatchEngine, extract_jira_key, key_pattern, propose_pairs
from task_reconciler.engine.merge import MergeEngine
from task_reconciler.engine.sync import SyncEngine

__all__ = [
    "DeployEngine",
    "MatchEngine",
    "MergeEngine",
    "SyncEngine",
    "extract_jira_key",
    "key_pattern",
    "propose_pairs",
]
