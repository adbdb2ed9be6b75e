from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import click

from taskrun import __version__
from taskrun.backends import BACKENDS
from taskrun.config import TaskrunConfig, apply_env_overrides, load_config, save_config
from taskrun.daemon import (
    Daemon,
    DaemonAlreadyRunning,
    Orchestrator,
    is_daemon_running,
    read_daemon_pid,
    remove_pid_file,
    run_local_task,
    stop_daemon,
    write_pid_file,
)
from taskrun.remote import QueueClient
from taskrun.storage import LockHeld, StorageError, TaskStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_CONFIG = "taskrun.toml"


def configure_logging(level: str, log_file: str | None = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _resolve_config_path(config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = Path.cwd() / config_path
    return config_path.resolve()


def _load(config_value: str) -> TaskrunConfig:
    return apply_env_overrides(load_config(_resolve_config_path(config_value)), os.environ)


def _store(config: TaskrunConfig) -> TaskStore:
    return TaskStore(config.storage.home_path, lock_lease_seconds=config.storage.lock_stale_seconds)


def _resolve_project(store: TaskStore, project: str) -> str:
    slug = store.resolve_project_slug(project)
    if store.read_project_state(slug) is None:
        raise click.ClickException(f"Project not found: {project}")
    return slug


def _task_summary(store: TaskStore, project_slug: str, task_slug: str) -> dict[str, Any]:
    state = store.read_task_state(project_slug, task_slug) or {}
    last_run = store.read_last_run(project_slug, task_slug).get("overall") or {}
    return {
        "task": task_slug,
        "status": state.get("status"),
        "request": state.get("user_request"),
        "updated_at": state.get("updated_at"),
        "last_run": last_run or None,
        "runs": len(store.list_run_ids(project_slug, task_slug)),
        "locked": store.is_task_locked(project_slug, task_slug),
    }


@click.group()
@click.version_option(__version__, prog_name="taskrun")
@click.option("--log-level", default="INFO", show_default=True)
@click.option("--log-file", default=None, help="Also write log records to this file.")
def cli(log_level: str, log_file: str | None) -> None:
    """taskrun: durable execute/verify loops for AI agent tasks."""

    configure_logging(log_level, log_file)


@cli.command("init")
@click.option("--provider", type=click.Choice(sorted(BACKENDS)), default=None)
@click.option("--home", default=None, help="Storage home directory.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(provider: str | None, home: str | None, config_value: str) -> None:
    config_path = _resolve_config_path(config_value)
    config = load_config(config_path)
    if provider:
        config.engine.provider = provider  # type: ignore[assignment]
    if home:
        config.storage.home = home
    save_config(config_path, config)
    config.storage.projects_root.mkdir(parents=True, exist_ok=True)

    click.echo(f"Config: {config_path}")
    click.echo(f"Home: {config.storage.home_path}")
    click.echo(f"Provider: {config.engine.provider}")


@cli.command("run")
@click.argument("request")
@click.option("--project", default=None, help="Project label (defaults to the repo name).")
@click.option("--task", "task_slug", default=None, help="Reuse or create this task slug.")
@click.option("--provider", type=click.Choice(sorted(BACKENDS)), default=None)
@click.option("--model", default=None)
@click.option("--swarm", is_flag=True, default=False)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(
    request: str,
    project: str | None,
    task_slug: str | None,
    provider: str | None,
    model: str | None,
    swarm: bool,
    max_iterations: int | None,
    config_value: str,
) -> None:
    config = _load(config_value)
    if max_iterations:
        config.loop.max_iterations = max_iterations
        config.loop.swarm_max_iterations = max_iterations
    orchestrator = Orchestrator.from_config(config)
    try:
        project_slug, slug, result = asyncio.run(
            run_local_task(
                orchestrator,
                request=request,
                project=project,
                task_slug=task_slug,
                provider=provider,
                model=model,
                swarm=swarm,
            )
        )
    except LockHeld as exc:
        raise click.ClickException(f"Task is busy: {exc}") from exc
    except (StorageError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    decision = result.decision
    click.echo(f"Task: {project_slug}/{slug}")
    click.echo(f"Decision: {decision.decision} after {result.iterations} iteration(s)")
    if result.last_run is not None:
        click.echo(f"Run: {result.last_run.paths.root}")
    if decision.summary or decision.explanation:
        click.echo(decision.summary or decision.explanation)
    if result.code != 0:
        raise SystemExit(result.code)


@cli.command("status")
@click.option("--project", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(project: str | None, config_value: str) -> None:
    config = _load(config_value)
    store = _store(config)
    projects = [_resolve_project(store, project)] if project else store.list_projects()
    payload = {
        "home": str(config.storage.home_path),
        "daemon": {
            "running": is_daemon_running(config.storage.home_path),
            "pid": read_daemon_pid(config.storage.home_path),
        },
        "projects": {
            slug: [_task_summary(store, slug, task) for task in store.list_task_slugs(slug)]
            for slug in projects
        },
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("gc")
@click.option("--project", default=None)
@click.option("--keep", type=click.IntRange(min=0), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def gc_command(project: str | None, keep: int | None, config_value: str) -> None:
    config = _load(config_value)
    store = _store(config)
    keep_runs = config.storage.keep_runs if keep is None else keep
    projects = [_resolve_project(store, project)] if project else store.list_projects()
    for slug in projects:
        result = store.gc_project(
            slug,
            keep=keep_runs,
            preserve_blocked_failed=config.storage.preserve_blocked_failed,
        )
        click.echo(
            f"{slug}: deleted {result.deleted}, kept {result.preserved}, "
            f"protected {len(result.protected)}"
        )
        if result.busy:
            click.echo(f"{slug}: skipped busy tasks: {', '.join(result.busy)}")


@cli.command("recover")
@click.argument("project")
@click.argument("task_slug")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def recover_command(project: str, task_slug: str, config_value: str) -> None:
    store = _store(_load(config_value))
    project_slug = _resolve_project(store, project)
    if store.read_task_state(project_slug, task_slug) is None:
        raise click.ClickException(f"Task not found: {project_slug}/{task_slug}")
    try:
        lock = store.acquire_task_lock(project_slug, task_slug)
    except LockHeld as exc:
        raise click.ClickException(f"Task is busy: {exc}") from exc
    try:
        runs = store.recover_incomplete_runs(project_slug, task_slug)
    finally:
        store.release_task_lock(lock)
    if not runs:
        click.echo("No incomplete runs.")
        return
    for run in runs:
        click.echo(f"Recovered into resume run {run.run_id}")


@cli.group("daemon")
def daemon_group() -> None:
    """Remote queue daemon."""


async def _serve(config: TaskrunConfig, max_workers: int | None) -> int:
    remote = QueueClient.from_config(config.remote)
    orchestrator = Orchestrator.from_config(config, remote=remote)
    daemon = Daemon(orchestrator, max_workers=max_workers)
    try:
        await daemon.run()
    finally:
        await orchestrator.aclose()
    return daemon.processed


@daemon_group.command("start")
@click.option("--workers", "max_workers", type=click.IntRange(min=1), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def daemon_start_command(max_workers: int | None, config_value: str) -> None:
    config = _load(config_value)
    home = config.storage.home_path
    try:
        write_pid_file(home)
    except DaemonAlreadyRunning as exc:
        raise click.ClickException(str(exc)) from exc
    try:
        processed = asyncio.run(_serve(config, max_workers))
    finally:
        remove_pid_file(home, os.getpid())
    click.echo(f"Daemon stopped after {processed} task(s).")


@daemon_group.command("stop")
@click.option("--timeout", type=float, default=5.0, show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def daemon_stop_command(timeout: float, config_value: str) -> None:
    home = _load(config_value).storage.home_path
    pid = read_daemon_pid(home)
    if pid is None or not is_daemon_running(home):
        remove_pid_file(home)
        click.echo("Daemon is not running.")
        return
    if not stop_daemon(pid, timeout):
        raise click.ClickException(f"Daemon {pid} did not exit.")
    remove_pid_file(home, pid)
    click.echo(f"Stopped daemon {pid}.")


@daemon_group.command("status")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def daemon_status_command(config_value: str) -> None:
    home = _load(config_value).storage.home_path
    pid = read_daemon_pid(home)
    if pid is not None and is_daemon_running(home):
        click.echo(f"Daemon running (pid {pid}).")
    else:
        click.echo("Daemon is not running.")
