"""
Transactional persistence for tasks and their related records.

The store keeps every record (tasks, todos, blocked-by edges, repositories,
activity logs and settings) in a single JSON document. Integrity comes from:

- A store-wide asyncio lock, so writers never interleave
- Copy-on-write sessions: a transaction works on its own copy of the tables
  and the copy only replaces the live data after a clean exit
- Atomic file writes using a temporary file and rename
- Uniqueness checks on external keys inside every write

Store File Structure::

    {
        "version": 1,
        "sequences": {"tasks": 12, "todos": 4, ...},
        "tasks": [{"id": 1, "title": "...", "jiraKey": "ABC-1", ...}],
        "todos": [...],
        "blockedBy": [...],
        "repositories": [...],
        "logs": [...],
        "settings": {"key": "value"}
    }

Transaction Support:
    >>> async with store.transaction() as session:
    ...     task = session.require_task(1)
    ...     session.save_task(task.with_fields(notes="checked"))
    >>> # Persisted on exit; an exception inside the block discards everything

Concurrency Model:
    All access goes through one lock. Provider network calls must happen
    before a transaction is opened, never inside one.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from task_reconciler.enums import LogSource
from task_reconciler.exceptions import (
    BlockedByError,
    DuplicateKeyError,
    InfrastructureError,
    NotFoundError,
)
from task_reconciler.models.domain import (
    BlockedBy,
    LogEntry,
    Repository,
    Task,
    Todo,
    utc_now,
)

log = structlog.get_logger(__name__)

STORE_VERSION = 1


@dataclass
class StoreData:
    """In-memory tables. Records are frozen, so copying the dicts is enough."""

    tasks: dict[int, Task] = field(default_factory=dict)
    todos: dict[int, Todo] = field(default_factory=dict)
    blocked_by: dict[int, BlockedBy] = field(default_factory=dict)
    repositories: dict[int, Repository] = field(default_factory=dict)
    logs: dict[int, LogEntry] = field(default_factory=dict)
    settings: dict[str, str | None] = field(default_factory=dict)
    sequences: dict[str, int] = field(default_factory=dict)

    def copy(self) -> StoreData:
        return StoreData(
            tasks=dict(self.tasks),
            todos=dict(self.todos),
            blocked_by=dict(self.blocked_by),
            repositories=dict(self.repositories),
            logs=dict(self.logs),
            settings=dict(self.settings),
            sequences=dict(self.sequences),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "version": STORE_VERSION,
            "sequences": self.sequences,
            "tasks": [t.to_api() for t in self.tasks.values()],
            "todos": [t.to_api() for t in self.todos.values()],
            "blockedBy": [e.to_api() for e in self.blocked_by.values()],
            "repositories": [r.to_api() for r in self.repositories.values()],
            "logs": [entry.to_api() for entry in self.logs.values()],
            "settings": self.settings,
        }

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> StoreData:
        def index(records: Iterable[Any]) -> dict[int, Any]:
            return {record.id: record for record in records}

        return cls(
            tasks=index(Task.model_validate(t) for t in document.get("tasks", [])),
            todos=index(Todo.model_validate(t) for t in document.get("todos", [])),
            blocked_by=index(BlockedBy.model_validate(e) for e in document.get("blockedBy", [])),
            repositories=index(Repository.model_validate(r) for r in document.get("repositories", [])),
            logs=index(LogEntry.model_validate(entry) for entry in document.get("logs", [])),
            settings=dict(document.get("settings", {})),
            sequences={k: int(v) for k, v in document.get("sequences", {}).items()},
        )


class StoreSession:
    """Read/write view over one copy of the store tables.

    Sessions are handed out by ``TaskStore.transaction()`` and
    ``TaskStore.snapshot()``. Every mutating method marks the session dirty;
    a dirty session is persisted when its transaction exits cleanly.
    """

    def __init__(self, data: StoreData) -> None:
        self.data = data
        self.dirty = False

    def _next_id(self, table: str) -> int:
        value = self.data.sequences.get(table, 0) + 1
        self.data.sequences[table] = value
        return value

    # -- tasks -------------------------------------------------------------

    def get_task(self, task_id: int) -> Task | None:
        return self.data.tasks.get(task_id)

    def require_task(self, task_id: int) -> Task:
        task = self.data.tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def list_tasks(self, predicate: Callable[[Task], bool] | None = None) -> list[Task]:
        tasks = sorted(self.data.tasks.values(), key=lambda t: t.id or 0)
        if predicate is None:
            return tasks
        return [t for t in tasks if predicate(t)]

    def find_by_jira_key(self, jira_key: str) -> Task | None:
        for task in self.data.tasks.values():
            if task.jira_key == jira_key:
                return task
        return None

    def find_by_pr(self, repository_id: int | None, pr_number: int) -> Task | None:
        for task in self.data.tasks.values():
            if task.pr_number == pr_number and task.repository_id == repository_id:
                return task
        return None

    def _check_unique(self, task: Task) -> None:
        if task.jira_key is not None:
            owner = self.find_by_jira_key(task.jira_key)
            if owner is not None and owner.id != task.id:
                raise DuplicateKeyError(f"Jira key {task.jira_key} already belongs to task {owner.id}")
        if task.pr_number is not None:
            owner = self.find_by_pr(task.repository_id, task.pr_number)
            if owner is not None and owner.id != task.id:
                raise DuplicateKeyError(
                    f"PR #{task.pr_number} in repository {task.repository_id} already belongs to task {owner.id}"
                )

    def insert_task(self, task: Task) -> Task:
        """Assign an id and timestamps, then store the task."""
        now = utc_now()
        stored = task.model_copy(update={"id": self._next_id("tasks"), "created_at": now, "updated_at": now})
        self._check_unique(stored)
        self.data.tasks[stored.id] = stored
        self.dirty = True
        return stored

    def save_task(self, task: Task, touch: bool = True) -> Task:
        """Replace an existing task, stamping ``updated_at`` unless ``touch`` is False."""
        if task.id is None or task.id not in self.data.tasks:
            raise NotFoundError("Task", task.id)
        self._check_unique(task)
        if touch:
            task = task.model_copy(update={"updated_at": utc_now()})
        self.data.tasks[task.id] = task
        self.dirty = True
        return task

    def delete_task(self, task_id: int) -> None:
        """Delete a task together with any edge still pointing at it."""
        self.require_task(task_id)
        del self.data.tasks[task_id]
        for edge_id, edge in list(self.data.blocked_by.items()):
            if task_id in (edge.blocked_task_id, edge.blocker_task_id):
                del self.data.blocked_by[edge_id]
        self.dirty = True

    # -- todos -------------------------------------------------------------

    def list_todos(self, task_id: int | None = None) -> list[Todo]:
        """Todos ordered by position; unpositioned todos sort last, then by id."""
        todos = [t for t in self.data.todos.values() if task_id is None or t.task_id == task_id]
        return sorted(todos, key=lambda t: (t.position is None, t.position or 0, t.id or 0))

    def require_todo(self, todo_id: int) -> Todo:
        todo = self.data.todos.get(todo_id)
        if todo is None:
            raise NotFoundError("Todo", todo_id)
        return todo

    def add_todo(self, task_id: int, content: str, position: int | None = None) -> Todo:
        self.require_task(task_id)
        if position is None:
            positions = [t.position for t in self.list_todos(task_id) if t.position is not None]
            position = max(positions, default=-1) + 1
        now = utc_now()
        todo = Todo(
            id=self._next_id("todos"),
            task_id=task_id,
            content=content,
            position=position,
            created_at=now,
            updated_at=now,
        )
        self.data.todos[todo.id] = todo
        self.dirty = True
        return todo

    def update_todo(self, todo_id: int, **changes: Any) -> Todo:
        todo = self.require_todo(todo_id)
        if "task_id" in changes:
            self.require_task(changes["task_id"])
        updated = Todo.model_validate({**todo.model_dump(), **changes, "updated_at": utc_now()})
        self.data.todos[todo_id] = updated
        self.dirty = True
        return updated

    def delete_todo(self, todo_id: int) -> None:
        self.require_todo(todo_id)
        del self.data.todos[todo_id]
        for edge_id, edge in list(self.data.blocked_by.items()):
            if edge.blocker_todo_id == todo_id:
                del self.data.blocked_by[edge_id]
        self.dirty = True

    def repoint_todos(self, from_task_id: int, to_task_id: int) -> int:
        """Move every todo of one task onto another; returns how many moved."""
        moved = 0
        now = utc_now()
        for todo_id, todo in list(self.data.todos.items()):
            if todo.task_id == from_task_id:
                self.data.todos[todo_id] = todo.model_copy(update={"task_id": to_task_id, "updated_at": now})
                moved += 1
        if moved:
            self.dirty = True
        return moved

    # -- blocked-by --------------------------------------------------------

    def list_blocked_by(
        self,
        blocked_task_id: int | None = None,
        blocker_task_id: int | None = None,
        blocker_todo_id: int | None = None,
    ) -> list[BlockedBy]:
        edges = sorted(self.data.blocked_by.values(), key=lambda e: e.id or 0)
        if blocked_task_id is not None:
            edges = [e for e in edges if e.blocked_task_id == blocked_task_id]
        if blocker_task_id is not None:
            edges = [e for e in edges if e.blocker_task_id == blocker_task_id]
        if blocker_todo_id is not None:
            edges = [e for e in edges if e.blocker_todo_id == blocker_todo_id]
        return edges

    def _blocks_transitively(self, start_task_id: int, target_task_id: int) -> bool:
        """True when ``start`` is (transitively) blocked by ``target``."""
        stack = [start_task_id]
        seen: set[int] = set()
        while stack:
            current = stack.pop()
            if current == target_task_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(
                e.blocker_task_id
                for e in self.data.blocked_by.values()
                if e.blocked_task_id == current and e.blocker_task_id is not None
            )
        return False

    def add_blocked_by(self, edge: BlockedBy) -> BlockedBy:
        """Store a new edge after existence, duplicate and cycle checks."""
        self.require_task(edge.blocked_task_id)
        if edge.blocker_task_id is not None:
            self.require_task(edge.blocker_task_id)
            if self._blocks_transitively(edge.blocker_task_id, edge.blocked_task_id):
                raise BlockedByError(
                    f"Task {edge.blocked_task_id} blocked by task {edge.blocker_task_id} would create a cycle"
                )
        if edge.blocker_todo_id is not None:
            self.require_todo(edge.blocker_todo_id)
        for existing in self.data.blocked_by.values():
            if (
                existing.blocked_task_id == edge.blocked_task_id
                and existing.blocker_task_id == edge.blocker_task_id
                and existing.blocker_todo_id == edge.blocker_todo_id
            ):
                raise BlockedByError("Blocked-by relation already exists")
        stored = edge.model_copy(update={"id": self._next_id("blocked_by")})
        self.data.blocked_by[stored.id] = stored
        self.dirty = True
        return stored

    def delete_blocked_by(self, edge_id: int) -> None:
        if edge_id not in self.data.blocked_by:
            raise NotFoundError("BlockedBy", edge_id)
        del self.data.blocked_by[edge_id]
        self.dirty = True

    def repoint_blocked_by(self, from_task_id: int, to_task_id: int) -> int:
        """Rewrite edges that reference ``from_task_id`` on either end.

        Edges that would become a self loop, or duplicate an edge already
        present on the target, are dropped. Returns the number of edges
        rewritten (dropped edges included).
        """
        touched = 0
        keys: set[tuple[int, int | None, int | None]] = {
            (e.blocked_task_id, e.blocker_task_id, e.blocker_todo_id)
            for e in self.data.blocked_by.values()
            if from_task_id not in (e.blocked_task_id, e.blocker_task_id)
        }
        for edge_id, edge in sorted(self.data.blocked_by.items()):
            if from_task_id not in (edge.blocked_task_id, edge.blocker_task_id):
                continue
            touched += 1
            blocked = to_task_id if edge.blocked_task_id == from_task_id else edge.blocked_task_id
            blocker = to_task_id if edge.blocker_task_id == from_task_id else edge.blocker_task_id
            key = (blocked, blocker, edge.blocker_todo_id)
            if blocker == blocked or key in keys:
                del self.data.blocked_by[edge_id]
                continue
            keys.add(key)
            self.data.blocked_by[edge_id] = edge.model_copy(
                update={"blocked_task_id": blocked, "blocker_task_id": blocker}
            )
        if touched:
            self.dirty = True
        return touched

    # -- repositories ------------------------------------------------------

    def list_repositories(self, enabled_only: bool = False) -> list[Repository]:
        repos = sorted(self.data.repositories.values(), key=lambda r: r.id or 0)
        if enabled_only:
            return [r for r in repos if r.enabled]
        return repos

    def get_repository(self, repository_id: int | None) -> Repository | None:
        if repository_id is None:
            return None
        return self.data.repositories.get(repository_id)

    def require_repository(self, repository_id: int) -> Repository:
        repo = self.get_repository(repository_id)
        if repo is None:
            raise NotFoundError("Repository", repository_id)
        return repo

    def add_repository(self, repository: Repository) -> Repository:
        for existing in self.data.repositories.values():
            if existing.full_name.lower() == repository.full_name.lower():
                raise DuplicateKeyError(f"Repository {repository.full_name} already exists")
        stored = repository.model_copy(update={"id": self._next_id("repositories")})
        self.data.repositories[stored.id] = stored
        self.dirty = True
        return stored

    def save_repository(self, repository: Repository) -> Repository:
        self.require_repository(repository.id)
        self.data.repositories[repository.id] = repository
        self.dirty = True
        return repository

    # -- logs --------------------------------------------------------------

    def add_log(self, content: str, source: LogSource, task_id: int | None = None) -> LogEntry:
        entry = LogEntry(
            id=self._next_id("logs"),
            task_id=task_id,
            content=content,
            source=source,
            created_at=utc_now(),
        )
        self.data.logs[entry.id] = entry
        self.dirty = True
        return entry

    def list_logs(self, task_id: int | None = None, limit: int | None = None) -> list[LogEntry]:
        """Newest first."""
        entries = [e for e in self.data.logs.values() if task_id is None or e.task_id == task_id]
        entries.sort(key=lambda e: e.id or 0, reverse=True)
        return entries[:limit] if limit is not None else entries

    # -- settings ----------------------------------------------------------

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        return self.data.settings.get(key, default)

    def set_setting(self, key: str, value: str | None) -> None:
        self.data.settings[key] = value
        self.dirty = True


class TaskStore:
    """Persisted collection of tasks and related records.

    Attributes:
        path: JSON file backing the store, or None for a memory-only store.

    Example:
        >>> store = TaskStore(".reconciler/store.json")
        >>> async with store.transaction() as session:
        ...     session.insert_task(Task(title="Write release notes"))
        >>> tasks = await store.list_tasks()
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._data: StoreData | None = None
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> StoreData:
        """Load the document on first use. Caller must hold the lock."""
        if self._data is not None:
            return self._data
        if self.path is None or not self.path.exists():
            self._data = StoreData()
            return self._data
        try:
            async with aiofiles.open(self.path) as f:
                content = await f.read()
            self._data = StoreData.from_document(json.loads(content))
        except (OSError, ValueError) as e:
            log.error("store_load_failed", path=str(self.path), error=str(e))
            raise InfrastructureError(f"Cannot load task store {self.path}: {e}") from e
        log.debug("store_loaded", path=str(self.path), tasks=len(self._data.tasks))
        return self._data

    async def _persist(self, data: StoreData) -> None:
        """Write the document atomically via a temporary file."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(data.to_document(), indent=2))
            tmp_path.replace(self.path)
        except OSError as e:
            log.error("store_write_failed", path=str(self.path), error=str(e))
            raise InfrastructureError(f"Cannot write task store {self.path}: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreSession]:
        """Atomic read-modify-write over the whole store.

        Changes made through the yielded session become visible (and are
        persisted) only if the block exits without an exception.

        Note:
            The lock is held for the entire duration of the block. Keep
            transactions short and never await network calls inside one.
        """
        async with self._lock:
            current = await self._ensure_loaded()
            session = StoreSession(current.copy())
            try:
                yield session
            except Exception:
                log.debug("store_transaction_rolled_back")
                raise
            if session.dirty:
                await self._persist(session.data)
                self._data = session.data

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[StoreSession]:
        """Consistent read-only view; writes made through it are discarded."""
        async with self._lock:
            current = await self._ensure_loaded()
            yield StoreSession(current.copy())

    async def get_task(self, task_id: int) -> Task:
        async with self.snapshot() as session:
            return session.require_task(task_id)

    async def list_tasks(self, predicate: Callable[[Task], bool] | None = None) -> list[Task]:
        async with self.snapshot() as session:
            return session.list_tasks(predicate)

    async def list_repositories(self, enabled_only: bool = False) -> list[Repository]:
        async with self.snapshot() as session:
            return session.list_repositories(enabled_only=enabled_only)

    async def list_logs(self, task_id: int | None = None, limit: int | None = None) -> list[LogEntry]:
        async with self.snapshot() as session:
            return session.list_logs(task_id=task_id, limit=limit)
