"""HTTP API for the reconciliation engine.

All routes live under ``/api/v1``. Request and response bodies use camelCase
keys. Errors render as ``{"error": {"code", "message", "details"?}}`` with
the status code carried by the exception.
"""

from __future__ import annotations

from typing import Any

import pydantic
import structlog
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field, field_validator

from task_reconciler import __version__
from task_reconciler.enums import ProviderName, TaskKind
from task_reconciler.exceptions import BlockedByError, ConflictError, TaskReconcilerError
from task_reconciler.models.domain import BlockedBy, ReconcilerModel, Repository, Task
from task_reconciler.models.results import DeployConflict
from task_reconciler.services import Services

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1")


class MergeRequest(ReconcilerModel):
    source_task_id: int


class PairRequest(ReconcilerModel):
    jira_task_id: int
    pr_task_id: int


class BatchMergeRequest(ReconcilerModel):
    pairs: list[PairRequest] = Field(min_length=1)


class CreateTaskRequest(ReconcilerModel):
    title: str = Field(min_length=1)
    description: str | None = None
    status: str = "todo"
    notes: str | None = None
    instructions: str | None = None


class UpdateTaskRequest(ReconcilerModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: str | None = Field(default=None, min_length=1)
    notes: str | None = None
    instructions: str | None = None

    @field_validator("title", "status")
    @classmethod
    def reject_null(cls, value: str | None) -> str | None:
        # Omit the key to leave the field alone; these two cannot be cleared.
        if value is None:
            raise ValueError("must not be null")
        return value


class CreateTodoRequest(ReconcilerModel):
    content: str = Field(min_length=1)
    position: int | None = None


class UpdateTodoRequest(ReconcilerModel):
    content: str | None = Field(default=None, min_length=1)
    done: bool | None = None
    position: int | None = None


class BlockedByRequest(ReconcilerModel):
    blocker_task_id: int | None = None
    blocker_todo_id: int | None = None


class CreateRepositoryRequest(ReconcilerModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    enabled: bool = True
    local_path: str | None = None
    deployment_branches: list[str] = Field(default_factory=list)


class UpdateRepositoryRequest(ReconcilerModel):
    enabled: bool | None = None
    local_path: str | None = None
    deployment_branches: list[str] | None = None


class DeployRequest(ReconcilerModel):
    target_branch: str = Field(min_length=1)


class BulkDeployRequest(ReconcilerModel):
    task_ids: list[int] = Field(min_length=1)
    target_branch: str = Field(min_length=1)


def get_services(request: Request) -> Services:
    return request.app.state.services


def task_payload(task: Task) -> dict[str, Any]:
    return {**task.to_api(), "kind": task.kind.value}


# -- sync and matching ------------------------------------------------------


@router.post("/sync/all")
async def sync_all(request: Request) -> dict[str, Any]:
    result = await get_services(request).sync.sync_all()
    return result.to_api()


@router.post("/sync/match")
async def sync_match(request: Request) -> dict[str, Any]:
    return {"merged": await get_services(request).match.auto_merge()}


@router.post("/sync/{provider}")
async def sync_provider(provider: ProviderName, request: Request) -> dict[str, Any]:
    result = await get_services(request).sync.sync_provider(provider)
    return result.to_api()


@router.post("/tasks/auto-match")
async def auto_match(request: Request) -> dict[str, Any]:
    matches = await get_services(request).match.propose_matches()
    return {"matches": [m.to_api() for m in matches], "total": len(matches)}


@router.post("/tasks/batch-merge")
async def batch_merge(body: BatchMergeRequest, request: Request) -> dict[str, Any]:
    result = await get_services(request).merge.batch_merge((p.jira_task_id, p.pr_task_id) for p in body.pairs)
    return result.to_api()


@router.post("/tasks/{task_id}/merge")
async def merge_tasks(task_id: int, body: MergeRequest, request: Request) -> dict[str, Any]:
    task = await get_services(request).merge.merge(task_id, body.source_task_id)
    return task_payload(task)


@router.post("/tasks/{task_id}/refresh")
async def refresh_task(task_id: int, request: Request) -> dict[str, Any]:
    result = await get_services(request).sync.refresh(task_id)
    return {"taskId": result.task_id, "jira": result.jira, "github": result.github, "task": task_payload(result.task)}


@router.post("/tasks/{task_id}/split")
async def split_task(task_id: int, request: Request) -> dict[str, Any]:
    result = await get_services(request).merge.split(task_id)
    return {"jiraTask": task_payload(result.jira_task), "prTask": task_payload(result.pr_task)}


# -- tasks ------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request, kind: TaskKind | None = None) -> list[dict[str, Any]]:
    tasks = await get_services(request).store.list_tasks(None if kind is None else lambda t: t.kind is kind)
    return [task_payload(t) for t in tasks]


@router.post("/tasks", status_code=201)
async def create_task(body: CreateTaskRequest, request: Request) -> dict[str, Any]:
    async with get_services(request).store.transaction() as session:
        task = session.insert_task(Task(**body.model_dump()))
    log.info("task_created", task_id=task.id)
    return task_payload(task)


@router.get("/tasks/{task_id}")
async def get_task(task_id: int, request: Request) -> dict[str, Any]:
    return task_payload(await get_services(request).store.get_task(task_id))


@router.patch("/tasks/{task_id}")
async def update_task(task_id: int, body: UpdateTaskRequest, request: Request) -> dict[str, Any]:
    changes = body.model_dump(exclude_unset=True)
    async with get_services(request).store.transaction() as session:
        task = session.require_task(task_id)
        if changes:
            task = session.save_task(task.with_fields(**changes))
    return task_payload(task)


# -- todos ------------------------------------------------------------------


@router.get("/tasks/{task_id}/todos")
async def list_todos(task_id: int, request: Request) -> list[dict[str, Any]]:
    async with get_services(request).store.snapshot() as session:
        session.require_task(task_id)
        return [t.to_api() for t in session.list_todos(task_id)]


@router.post("/tasks/{task_id}/todos", status_code=201)
async def create_todo(task_id: int, body: CreateTodoRequest, request: Request) -> dict[str, Any]:
    async with get_services(request).store.transaction() as session:
        todo = session.add_todo(task_id, body.content, body.position)
    return todo.to_api()


@router.patch("/todos/{todo_id}")
async def update_todo(todo_id: int, body: UpdateTodoRequest, request: Request) -> dict[str, Any]:
    async with get_services(request).store.transaction() as session:
        todo = session.update_todo(todo_id, **body.model_dump(exclude_unset=True))
    return todo.to_api()


@router.delete("/todos/{todo_id}", status_code=204)
async def delete_todo(todo_id: int, request: Request) -> None:
    async with get_services(request).store.transaction() as session:
        session.delete_todo(todo_id)


# -- blocked-by -------------------------------------------------------------


@router.get("/tasks/{task_id}/blocked-by")
async def list_blocked_by(task_id: int, request: Request) -> list[dict[str, Any]]:
    async with get_services(request).store.snapshot() as session:
        session.require_task(task_id)
        return [e.to_api() for e in session.list_blocked_by(blocked_task_id=task_id)]


@router.post("/tasks/{task_id}/blocked-by", status_code=201)
async def create_blocked_by(task_id: int, body: BlockedByRequest, request: Request) -> dict[str, Any]:
    try:
        edge = BlockedBy(
            blocked_task_id=task_id,
            blocker_task_id=body.blocker_task_id,
            blocker_todo_id=body.blocker_todo_id,
        )
    except pydantic.ValidationError as e:
        raise BlockedByError(e.errors()[0]["msg"].removeprefix("Value error, ")) from e
    async with get_services(request).store.transaction() as session:
        stored = session.add_blocked_by(edge)
    return stored.to_api()


@router.delete("/blocked-by/{edge_id}", status_code=204)
async def delete_blocked_by(edge_id: int, request: Request) -> None:
    async with get_services(request).store.transaction() as session:
        session.delete_blocked_by(edge_id)


# -- repositories -----------------------------------------------------------


@router.get("/repositories")
async def list_repositories(request: Request) -> list[dict[str, Any]]:
    return [r.to_api() for r in await get_services(request).store.list_repositories()]


@router.post("/repositories", status_code=201)
async def create_repository(body: CreateRepositoryRequest, request: Request) -> dict[str, Any]:
    async with get_services(request).store.transaction() as session:
        repository = session.add_repository(Repository(**body.model_dump()))
    return repository.to_api()


@router.patch("/repositories/{repository_id}")
async def update_repository(repository_id: int, body: UpdateRepositoryRequest, request: Request) -> dict[str, Any]:
    changes = body.model_dump(exclude_unset=True)
    async with get_services(request).store.transaction() as session:
        repository = session.require_repository(repository_id)
        if changes:
            repository = session.save_repository(Repository.model_validate({**repository.model_dump(), **changes}))
    return repository.to_api()


# -- logs -------------------------------------------------------------------


@router.get("/logs")
async def list_logs(
    request: Request,
    task_id: int | None = Query(default=None, alias="taskId"),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[dict[str, Any]]:
    entries = await get_services(request).store.list_logs(task_id=task_id, limit=limit)
    return [e.to_api() for e in entries]


# -- deploy -----------------------------------------------------------------


@router.post("/deploy/bulk")
async def bulk_deploy(body: BulkDeployRequest, request: Request) -> dict[str, Any]:
    result = await get_services(request).deploy.bulk_deploy(body.task_ids, body.target_branch)
    return result.to_api()


@router.post("/deploy/{task_id}")
async def deploy(task_id: int, body: DeployRequest, request: Request) -> dict[str, Any]:
    result = await get_services(request).deploy.deploy_branch(task_id, body.target_branch)
    if isinstance(result, DeployConflict):
        raise ConflictError(result.conflicted_files)
    return result.to_api()


@router.post("/sync-branch/{task_id}")
async def sync_branch(task_id: int, request: Request) -> dict[str, Any]:
    result = await get_services(request).deploy.sync_branch(task_id)
    if isinstance(result, DeployConflict):
        raise ConflictError(result.conflicted_files)
    return result.to_api()


async def handle_reconciler_error(request: Request, exc: TaskReconcilerError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    else:
        log.info("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Invalid request"
    payload = {
        "error": {
            "code": "VALIDATION_ERROR",
            "message": message,
            "details": {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in errors]},
        }
    }
    return JSONResponse(status_code=400, content=payload)


def create_app(services: Services) -> FastAPI:
    """Build the FastAPI application around already wired services."""
    app = FastAPI(title="Task Reconciler", version=__version__)
    app.state.services = services
    app.include_router(router)
    app.add_exception_handler(TaskReconcilerError, handle_reconciler_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "service": "task-reconciler"}

    return app
