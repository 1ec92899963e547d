"""Git merge execution for deploys and branch syncs.

Example:
    >>> from task_reconciler.git import SubprocessGitExecutor, MergeConflicted
    >>> executor = SubprocessGitExecutor(remote="origin")
    >>> outcome = await executor.merge_branch(Path("~/src/api"), "feature/ABC-1", "staging")
    >>> if isinstance(outcome, MergeConflicted):
    ...     print(outcome.conflicted_files)
"""

from task_reconciler.git.executor import (
    GitMergeExecutor,
    MergeConflicted,
    MergeOutcome,
    MergeSucceeded,
    SubprocessGitExecutor,
)

__all__ = [
    "GitMergeExecutor",
    "MergeConflicted",
    "MergeOutcome",
    "MergeSucceeded",
    "SubprocessGitExecutor",
]
