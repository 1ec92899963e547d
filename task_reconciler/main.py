"""CLI entry point for the task reconciler."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
import structlog

from task_reconciler.config.settings import ReconcilerSettings
from task_reconciler.exceptions import ConfigurationError, TaskReconcilerError
from task_reconciler.models.results import DeployConflict, SyncResult
from task_reconciler.services import Services, build_services
from task_reconciler.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG = "reconciler.yaml"


def _run(command: str, action: Callable[[], Awaitable[T]]) -> T:
    """Run an async action with the CLI's error conventions."""
    try:
        return asyncio.run(action())
    except TaskReconcilerError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{command}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


def _services(ctx: click.Context) -> Services:
    return ctx.obj["services"]


def _format_sync(label: str, result: SyncResult | None) -> str:
    if result is None:
        return f"{label}: failed"
    return (
        f"{label}: {result.created} new, {result.updated} updated, "
        f"{result.unchanged} unchanged, {result.skipped} skipped"
    )


@click.group()
@click.option("--config", default=None, help=f"Path to configuration file (default: {DEFAULT_CONFIG} if present)")
@click.option("--log-level", default="WARNING", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """reconciler: Keep Jira issues, pull requests and tasks in step."""
    configure_logging(log_level, json_output=False)

    ctx.ensure_object(dict)
    if "services" in ctx.obj:
        return

    try:
        if config is not None:
            settings = ReconcilerSettings.from_yaml(config)
        elif Path(DEFAULT_CONFIG).exists():
            settings = ReconcilerSettings.from_yaml(DEFAULT_CONFIG)
        else:
            settings = ReconcilerSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj["services"] = build_services(settings)


@cli.command()
@click.argument("provider", type=click.Choice(["jira", "github", "all"]))
@click.pass_context
def sync(ctx: click.Context, provider: str) -> None:
    """Sync Jira issues and/or GitHub pull requests into tasks."""
    services = _services(ctx)

    if provider == "all":
        result = _run("sync", services.sync.sync_all)
        click.echo(_format_sync("Jira", result.jira))
        click.echo(_format_sync("GitHub", result.github))
        for name, message in result.errors.items():
            click.echo(f"Error ({name}): {message}", err=True)
        click.echo(f"Auto-merged: {result.merged}")
        if result.errors and result.jira is None and result.github is None:
            sys.exit(1)
        return

    single = _run("sync", lambda: services.sync.sync_provider(provider))
    click.echo(_format_sync("Jira" if provider == "jira" else "GitHub", single))
    click.echo(f"Auto-merged: {single.merged}")


@cli.command()
@click.option("--apply", "apply_all", is_flag=True, help="Merge every proposed pair")
@click.option("--interactive", is_flag=True, help="Confirm each proposed pair before merging")
@click.pass_context
def match(ctx: click.Context, apply_all: bool, interactive: bool) -> None:
    """Show (and optionally merge) proposed Jira/PR pairs."""
    services = _services(ctx)
    pairs = _run("match", services.match.propose_matches)
    if not pairs:
        click.echo("No matches found")
        return

    for pair in pairs:
        click.echo(f"{pair.jira_key}: task {pair.jira_task_id} <- PR task {pair.pr_task_id}")

    if interactive:
        selected = [
            p for p in pairs if click.confirm(f"Merge PR task {p.pr_task_id} into {p.jira_key}?", default=True)
        ]
    elif apply_all:
        selected = pairs
    else:
        return

    if not selected:
        click.echo("Nothing merged")
        return
    merged = _run("match", lambda: services.match.apply(selected))
    click.echo(f"Merged {merged} of {len(selected)} pair(s)")


@cli.command()
@click.argument("target", type=int)
@click.argument("source", type=int)
@click.pass_context
def merge(ctx: click.Context, target: int, source: int) -> None:
    """Merge an orphan-jira task and an orphan-pr task."""
    services = _services(ctx)
    task = _run("merge", lambda: services.merge.merge(target, source))
    click.echo(f"Task {task.id} ({task.jira_key}) linked to PR #{task.pr_number}")


@cli.command()
@click.argument("task_id", type=int)
@click.pass_context
def split(ctx: click.Context, task_id: int) -> None:
    """Split a linked task back into its Jira and PR halves."""
    services = _services(ctx)
    result = _run("split", lambda: services.merge.split(task_id))
    click.echo(f"Task {result.jira_task.id} keeps {result.jira_task.jira_key}")
    click.echo(f"Task {result.pr_task.id} now holds PR #{result.pr_task.pr_number}")


@cli.command()
@click.argument("task_id", type=int)
@click.pass_context
def refresh(ctx: click.Context, task_id: int) -> None:
    """Re-fetch the Jira issue and pull request behind one task."""
    services = _services(ctx)
    result = _run("refresh", lambda: services.sync.refresh(task_id))
    if result.jira is not None:
        click.echo(f"Jira: {result.jira}")
    if result.github is not None:
        click.echo(f"GitHub: {result.github}")


def _echo_conflict(files: list[str]) -> None:
    click.echo("Merge conflict in:", err=True)
    for path in files:
        click.echo(f"  {path}", err=True)


@cli.command()
@click.argument("task_id", type=int)
@click.option("--branch", "target_branch", required=True, help="Deployment branch to merge into")
@click.pass_context
def deploy(ctx: click.Context, task_id: int, target_branch: str) -> None:
    """Merge a task's branch into a deployment branch."""
    services = _services(ctx)
    result = _run("deploy", lambda: services.deploy.deploy_branch(task_id, target_branch))
    if isinstance(result, DeployConflict):
        _echo_conflict(result.conflicted_files)
        sys.exit(1)
    click.echo(f"Deployed {result.source_branch} to {result.target_branch} ({result.commit_sha[:7]})")


@cli.command("bulk-deploy")
@click.argument("task_ids", type=int, nargs=-1, required=True)
@click.option("--branch", "target_branch", required=True, help="Deployment branch to merge into")
@click.pass_context
def bulk_deploy(ctx: click.Context, task_ids: tuple[int, ...], target_branch: str) -> None:
    """Deploy several tasks; conflicts and skips do not stop the others."""
    services = _services(ctx)
    result = _run("bulk_deploy", lambda: services.deploy.bulk_deploy(list(task_ids), target_branch))
    for item in result.results:
        detail: Any = item.commit_sha[:7] if item.commit_sha else item.reason
        if item.conflicted_files:
            detail = ", ".join(item.conflicted_files)
        click.echo(f"Task {item.task_id}: {item.status.value} ({detail})")
    summary = result.summary
    click.echo(f"Success: {summary.success}, conflict: {summary.conflict}, skipped: {summary.skipped}")


@cli.command("sync-branch")
@click.argument("task_id", type=int)
@click.pass_context
def sync_branch(ctx: click.Context, task_id: int) -> None:
    """Merge a task's base branch into its head branch."""
    services = _services(ctx)
    result = _run("sync_branch", lambda: services.deploy.sync_branch(task_id))
    if isinstance(result, DeployConflict):
        _echo_conflict(result.conflicted_files)
        sys.exit(1)
    click.echo(f"Synced {result.task_branch} with {result.main_branch} ({result.commit_sha[:7]})")


@cli.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API."""
    import uvicorn

    from task_reconciler.api.app import create_app

    services = _services(ctx)
    server = services.settings.server
    uvicorn.run(create_app(services), host=host or server.host, port=port or server.port)


if __name__ == "__main__":
    cli()
