"""Transactional task store."""

from task_reconciler.store.task_store import StoreSession, TaskStore

__all__ = ["StoreSession", "TaskStore"]
