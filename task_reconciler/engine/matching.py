"""
Orphan matching.

For every eligible orphan-pr task a Jira key is extracted from the head
branch, then from the PR title; the first key found wins, so a branch
``feature/ABC-123-fix`` beats a title mentioning ``XYZ-9``. When that key
belongs to an eligible orphan-jira task the two form a candidate pair.

Eligibility:
    - orphan-jira tasks whose status is a completed status are ignored
    - orphan-pr tasks whose PR is merged or closed are ignored
    - each Jira task is claimed by at most one PR task (lowest id first)
"""

from __future__ import annotations

import re
from collections.abc import Iterable

import structlog

from task_reconciler.config.settings import DEFAULT_COMPLETED_STATUSES
from task_reconciler.enums import PrState, TaskKind
from task_reconciler.engine.merge import MergeEngine
from task_reconciler.models.domain import Task
from task_reconciler.models.results import MatchPair
from task_reconciler.store.task_store import TaskStore

log = structlog.get_logger(__name__)

CLOSED_PR_STATES = (PrState.MERGED.value, PrState.CLOSED.value)


def key_pattern(project_keys: Iterable[str] = ()) -> re.Pattern[str]:
    """Pattern for Jira keys, optionally restricted to known project prefixes."""
    keys = [re.escape(k.upper()) for k in project_keys]
    if not keys:
        return re.compile(r"[A-Z]+-\d+")
    return re.compile(rf"(?<![A-Z])(?:{'|'.join(keys)})-\d+")


def extract_jira_key(task: Task, pattern: re.Pattern[str]) -> str | None:
    """First Jira key in the head branch, falling back to the PR title."""
    for text in (task.head_branch, task.pr_title or task.title):
        if not text:
            continue
        match = pattern.search(text.upper())
        if match:
            return match.group(0)
    return None


def propose_pairs(
    tasks: Iterable[Task],
    pattern: re.Pattern[str],
    completed_statuses: Iterable[str] = DEFAULT_COMPLETED_STATUSES,
) -> list[MatchPair]:
    """Candidate merges for the given tasks. Pure."""
    completed = {s.lower() for s in completed_statuses}
    ordered = sorted(tasks, key=lambda t: t.id or 0)

    jira_orphans = {
        t.jira_key.upper(): t
        for t in ordered
        if t.kind is TaskKind.ORPHAN_JIRA and t.jira_key and t.status.lower() not in completed
    }
    pairs: list[MatchPair] = []
    claimed: set[str] = set()
    for task in ordered:
        if task.kind is not TaskKind.ORPHAN_PR or task.pr_state in CLOSED_PR_STATES:
            continue
        key = extract_jira_key(task, pattern)
        if key is None or key in claimed or key not in jira_orphans:
            continue
        claimed.add(key)
        jira_task = jira_orphans[key]
        pairs.append(MatchPair(jira_task_id=jira_task.id, pr_task_id=task.id, jira_key=jira_task.jira_key))
    return pairs


class MatchEngine:
    """Proposes and applies orphan pairings.

    Args:
        store: Task store
        merge_engine: Used to apply proposals
        project_keys: Allowed key prefixes; empty accepts any key
        completed_statuses: Jira statuses excluded from matching
    """

    def __init__(
        self,
        store: TaskStore,
        merge_engine: MergeEngine,
        project_keys: Iterable[str] = (),
        completed_statuses: Iterable[str] = DEFAULT_COMPLETED_STATUSES,
    ) -> None:
        self.store = store
        self.merge_engine = merge_engine
        self.pattern = key_pattern(project_keys)
        self.completed_statuses = tuple(completed_statuses)

    async def propose_matches(self) -> list[MatchPair]:
        """Current candidate pairs. Does not modify the store."""
        tasks = await self.store.list_tasks(lambda t: t.kind.is_orphan)
        pairs = propose_pairs(tasks, self.pattern, self.completed_statuses)
        log.debug("matches_proposed", count=len(pairs))
        return pairs

    async def apply(self, pairs: Iterable[MatchPair]) -> int:
        """Merge the given pairs; returns how many merged."""
        result = await self.merge_engine.batch_merge((p.jira_task_id, p.pr_task_id) for p in pairs)
        return result.merged

    async def auto_merge(self) -> int:
        """Merge every proposal; returns how many merged."""
        pairs = await self.propose_matches()
        if not pairs:
            return 0
        merged = await self.apply(pairs)
        log.info("auto_merge_completed", proposed=len(pairs), merged=merged)
        return merged
