"""
Merge and split of orphan tasks.

Merge combines one orphan-jira task and one orphan-pr task into a single
linked task. The Jira-side task always survives: it keeps its id, key, title
and status, receives every PR-side field, and inherits the PR task's todos and
blocked-by edges before the PR task is deleted. Split reverses the operation by
moving the PR-side fields onto a freshly created task.

Both operations run in one store transaction each, so either every step
(field copy, todo repoint, edge repoint, delete) is applied or none is.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog

from task_reconciler.enums import LogSource, TaskKind
from task_reconciler.exceptions import (
    DuplicateKeyError,
    InvalidMergeKindError,
    NotFoundError,
    NotLinkedError,
    ValidationError,
)
from task_reconciler.models.domain import PR_FIELDS, Task, pr_task_status
from task_reconciler.models.results import BatchMergeResult, MergeAttempt, SplitResult
from task_reconciler.store.task_store import StoreSession, TaskStore

log = structlog.get_logger(__name__)


def _combine_text(kept: str | None, incoming: str | None) -> str | None:
    """Keep user content from both sides of a merge."""
    if not incoming or incoming == kept:
        return kept
    if not kept:
        return incoming
    return f"{kept}\n\n{incoming}"


def split_title(task: Task) -> str:
    return task.pr_title or task.head_branch or f"PR #{task.pr_number}"


class MergeEngine:
    """Applies merges and splits against the task store."""

    def __init__(self, store: TaskStore) -> None:
        self.store = store

    def merge_in_session(self, session: StoreSession, target_id: int, source_id: int) -> Task:
        """Merge two orphans inside an open transaction and return the survivor.

        ``target_id`` and ``source_id`` may be given in either order; the
        orphan-jira task survives regardless.

        Raises:
            NotFoundError: Either task does not exist
            InvalidMergeKindError: Same task twice, or not one orphan of each kind
        """
        if target_id == source_id:
            raise InvalidMergeKindError("Cannot merge a task with itself")

        target = session.require_task(target_id)
        source = session.require_task(source_id)
        kinds = {target.kind, source.kind}
        if kinds != {TaskKind.ORPHAN_JIRA, TaskKind.ORPHAN_PR}:
            raise InvalidMergeKindError(
                f"Merge requires one orphan-jira and one orphan-pr task, got {target.kind} and {source.kind}"
            )

        jira_task, pr_task = (target, source) if target.kind is TaskKind.ORPHAN_JIRA else (source, target)

        todos = session.repoint_todos(pr_task.id, jira_task.id)
        edges = session.repoint_blocked_by(pr_task.id, jira_task.id)
        session.delete_task(pr_task.id)

        merged = session.save_task(
            jira_task.with_fields(
                **pr_task.pr_side(),
                notes=_combine_text(jira_task.notes, pr_task.notes),
                instructions=_combine_text(jira_task.instructions, pr_task.instructions),
            )
        )
        session.add_log(
            f"Merged PR #{pr_task.pr_number} ({pr_task.head_branch}) into {jira_task.jira_key}",
            LogSource.MERGE,
            merged.id,
        )
        log.info(
            "task_merged",
            task_id=merged.id,
            removed_task_id=pr_task.id,
            jira_key=merged.jira_key,
            pr_number=merged.pr_number,
            todos_moved=todos,
            edges_repointed=edges,
        )
        return merged

    async def merge(self, target_id: int, source_id: int) -> Task:
        """Merge two orphan tasks into one linked task."""
        async with self.store.transaction() as session:
            return self.merge_in_session(session, target_id, source_id)

    async def batch_merge(self, pairs: Iterable[tuple[int, int]]) -> BatchMergeResult:
        """Merge each (jira_task_id, pr_task_id) pair in its own transaction.

        A failing pair is reported in the result and does not stop the rest.
        """
        result = BatchMergeResult()
        for jira_task_id, pr_task_id in pairs:
            try:
                task = await self.merge(jira_task_id, pr_task_id)
            except (ValidationError, NotFoundError, DuplicateKeyError) as e:
                log.warning(
                    "batch_merge_pair_failed", jira_task_id=jira_task_id, pr_task_id=pr_task_id, error=e.message
                )
                result.results.append(
                    MergeAttempt(
                        jira_task_id=jira_task_id,
                        pr_task_id=pr_task_id,
                        ok=False,
                        error=e.to_payload()["error"],
                    )
                )
                continue
            result.results.append(MergeAttempt(jira_task_id=jira_task_id, pr_task_id=pr_task_id, ok=True, task=task))
        log.info("batch_merge_completed", merged=result.merged, failed=result.failed)
        return result

    async def split(self, task_id: int) -> SplitResult:
        """Undo a merge: move the PR-side fields onto a new orphan-pr task.

        Todos and blocked-by edges stay with the original task id.

        Raises:
            NotFoundError: Unknown task
            NotLinkedError: The task is not linked
        """
        async with self.store.transaction() as session:
            task = session.require_task(task_id)
            if task.kind is not TaskKind.LINKED:
                raise NotLinkedError(f"Task {task_id} is {task.kind}, only linked tasks can be split")

            pr_side = task.pr_side()
            jira_task = session.save_task(task.with_fields(**{name: None for name in ("pr_number", *PR_FIELDS)}))
            pr_task = session.insert_task(
                Task(
                    title=split_title(task),
                    status=pr_task_status(task.pr_state, task.is_draft),
                    **pr_side,
                )
            )

            session.add_log(f"Split PR #{pr_task.pr_number} into task {pr_task.id}", LogSource.MERGE, jira_task.id)
            session.add_log(f"Split from {jira_task.jira_key} (task {jira_task.id})", LogSource.MERGE, pr_task.id)

        log.info("task_split", task_id=jira_task.id, pr_task_id=pr_task.id, pr_number=pr_task.pr_number)
        return SplitResult(jira_task=jira_task, pr_task=pr_task)
