"""Queue daemon: claims remote tasks and drives them through the iteration loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import socket
import time
import traceback
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from taskrun.artifacts import DAEMON_ERROR_LOG, append_container_log, local_artifact_key
from taskrun.backends import ProcessSupervisor, ResilientRunner, RetryPolicy
from taskrun.cancellation import CancellationWatcher
from taskrun.config import TaskrunConfig
from taskrun.decision import DECISION_VALUES, Decision
from taskrun.loop import IterationLoop, LoopContext, LoopResult
from taskrun.prompts import build_task_context
from taskrun.remote import QueueClient, RemoteAPIError, build_terminal_patch
from taskrun.stages import build_stage_requirement_prompt, map_remote_stage, resolve_stage_objective
from taskrun.storage import LockHandle, LockHeld, Run, StorageError, TaskStore, renew_task_lock
from taskrun.storage.atomic import ensure_dir
from taskrun.storage.layout import slugify, with_hash_suffix
from taskrun.storage.locks import is_process_alive

logger = logging.getLogger(__name__)

PID_FILE = "daemon.pid"
MIN_POLL_SECONDS = 0.2
STOP_POLL_SECONDS = 0.1
STOP_KILL_SETTLE_SECONDS = 0.15
DEFAULT_STOP_TIMEOUT_SECONDS = 5.0
# Renew the lock lease this many times per lease period.
HEARTBEAT_DIVISOR = 3


class DaemonAlreadyRunning(RuntimeError):
    def __init__(self, pid: int) -> None:
        super().__init__(f"Daemon already running (pid {pid}).")
        self.pid = pid


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _log_engine_event(event: dict[str, Any]) -> None:
    logger.info("Engine event %s: %s", event.get("event"), event)


@dataclass(slots=True)
class Orchestrator:
    """Session object shared by the daemon workers and local runs."""

    config: TaskrunConfig
    store: TaskStore
    runner: ResilientRunner
    remote: QueueClient | None = None
    cwd: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_config(
        cls,
        config: TaskrunConfig,
        *,
        remote: QueueClient | None = None,
        cwd: Path | None = None,
    ) -> Orchestrator:
        store = TaskStore(
            config.storage.home_path, lock_lease_seconds=config.storage.lock_stale_seconds
        )
        supervisor = ProcessSupervisor(kill_grace_seconds=config.engine.kill_grace_seconds)
        policy = RetryPolicy(
            max_retries=max(0, int(config.engine.max_retries)),
            backoff_seconds=max(0.0, float(config.engine.retry_backoff_seconds)),
        )
        runner = ResilientRunner(supervisor, policy, event_hook=_log_engine_event)
        return cls(
            config=config,
            store=store,
            runner=runner,
            remote=remote,
            cwd=(cwd or Path.cwd()).resolve(),
        )

    def iteration_loop(self) -> IterationLoop:
        return IterationLoop(self.store, self.runner, self.config, remote=self.remote)

    async def aclose(self) -> None:
        if self.remote is not None:
            await self.remote.aclose()


# Remote task helpers


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def remote_project_identity(task: dict[str, Any]) -> dict[str, str | None]:
    project = task.get("project")
    project_obj = project if isinstance(project, dict) else {}
    project_id = task.get("project_id") or project_obj.get("id")
    project_slug = (
        task.get("project_slug")
        or project_obj.get("slug")
        or (project if isinstance(project, str) else None)
    )
    project_name = task.get("project_name") or project_obj.get("name")
    return {
        "project_id": str(project_id) if project_id else None,
        "project_slug": str(project_slug) if project_slug else None,
        "project_name": str(project_name) if project_name else None,
    }


def _detect_repo_name(cwd: Path) -> str:
    for directory in (cwd, *cwd.parents):
        if (directory / ".git").exists():
            return directory.name
    return cwd.name


def render_working_set(task: dict[str, Any]) -> str:
    """Working set markdown from the remote task's structured fields; empty when none are set."""

    plan = _text(task.get("current_plan"))
    blockers = [str(item) for item in task.get("open_blockers") or [] if item]
    next_action = _text(task.get("next_action"))
    if not plan and not blockers and not next_action:
        return ""

    lines = ["# Working Set", ""]
    if plan:
        lines.extend(["## Current Plan", "", plan, ""])
    if blockers:
        lines.extend(["## Open Blockers", ""])
        lines.extend(f"- {blocker}" for blocker in blockers)
        lines.append("")
    if next_action:
        lines.extend(["## Next Action", "", next_action, ""])
    return "\n".join(lines).strip() + "\n"


def normalize_remote_decision(
    decision: Decision | dict[str, Any] | None,
    fallback_summary: str = "",
    *,
    error: str = "",
) -> dict[str, str]:
    """Shape a loop decision into the completion payload the queue expects."""

    payload = decision.to_dict() if isinstance(decision, Decision) else (decision or {})
    value = _text(payload.get("decision"))
    value = value if value in DECISION_VALUES else "failed"
    error = error.strip()
    explanation = (
        _text(payload.get("explanation")) or error or fallback_summary or f"Daemon decision: {value}"
    )
    return {
        "decision": value,
        "explanation": explanation,
        "final_result": _text(payload.get("final_result")) or explanation,
        "summary": _text(payload.get("summary")) or error,
    }


def build_outcome_comment(
    stage: str, payload: dict[str, str], last_run: Run | None = None
) -> str:
    lines = [
        f"## {stage or 'stage'} completed",
        "",
        f"Decision: {payload['decision']}",
        "",
        payload.get("summary") or payload.get("explanation") or "",
    ]
    if last_run is not None:
        lines.extend(["", f"(Local run id: {last_run.run_id}, stage: {last_run.stage})"])
    return "\n".join(line for line in lines if line)


class TaskRunner(Protocol):
    async def run_task(self, task: dict[str, Any]) -> dict[str, str] | None: ...


class TaskExecutor:
    """Runs one claimed remote task end to end and reports its outcome."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        if orchestrator.remote is None:
            raise ValueError("The daemon needs a remote queue client.")
        self.orchestrator = orchestrator
        self.remote: QueueClient = orchestrator.remote
        self.store = orchestrator.store
        self.config = orchestrator.config

    # Local task bookkeeping

    def project_label(self, task: dict[str, Any]) -> str:
        identity = remote_project_identity(task)
        return (
            identity["project_slug"]
            or identity["project_name"]
            or _detect_repo_name(self.orchestrator.cwd)
        )

    def resolve_slugs(self, task: dict[str, Any], task_id: str) -> tuple[str, str]:
        project_slug = self.store.resolve_project_slug(self.project_label(task))

        desired = slugify(_text(task.get("slug")) or task_id, max_length=64)
        existing = self.store.read_task_state(project_slug, desired)
        owner = ((existing or {}).get("remote") or {}).get("task_id")
        if existing is None or not owner or owner == task_id:
            return project_slug, desired
        return project_slug, with_hash_suffix(desired, task_id)

    def ensure_task(self, task: dict[str, Any], task_id: str) -> tuple[str, str]:
        """Resolve slugs and create the local task if missing. Existing task state is untouched."""

        project_slug, task_slug = self.resolve_slugs(task, task_id)
        self.store.write_project_state(
            project_slug,
            {
                "label": self.project_label(task),
                "repo_path": str(self.orchestrator.cwd),
                "remote": remote_project_identity(task),
            },
        )

        if self.store.read_task_state(project_slug, task_slug) is None:
            title = (
                _text(task.get("title"))
                or _text(task.get("user_request"))
                or _text(task.get("goal"))
                or f"Remote task {task_id}"
            )
            self.store.create_task(
                project_slug,
                user_request=title,
                goal=_text(task.get("goal")) or title,
                task_slug=task_slug,
            )
        return project_slug, task_slug

    def stamp_task(
        self, project_slug: str, task_slug: str, task: dict[str, Any], task_id: str
    ) -> None:
        """Record the remote linkage and working set. Call with the task lock held."""

        identity = remote_project_identity(task)
        self.store.update_task_state(
            project_slug,
            task_slug,
            {
                "remote": {
                    "task_id": task_id,
                    "task_slug": _text(task.get("slug")) or None,
                    "project_id": identity["project_id"],
                    "project_slug": identity["project_slug"],
                }
            },
        )

        working_set = render_working_set(task)
        if working_set:
            self.store.write_working_set(project_slug, task_slug, working_set)

    def collect_garbage(self, project_slug: str, task_slug: str, last_run: Run | None) -> None:
        if self.config.storage.keep_runs <= 0:
            return
        try:
            self.store.gc_runs(
                project_slug,
                task_slug,
                keep=self.config.storage.keep_runs,
                active_run_ids=[last_run.run_id] if last_run else (),
                preserve_blocked_failed=self.config.storage.preserve_blocked_failed,
            )
        except StorageError as exc:
            logger.warning("Run GC for %s/%s failed: %s", project_slug, task_slug, exc)

    def _latest_run_container(self, project_slug: str | None, task_slug: str | None) -> Path | None:
        if not project_slug or not task_slug:
            return None
        run_ids = self.store.list_run_ids(project_slug, task_slug)
        if not run_ids:
            return None
        return self.store.layout.run_container(project_slug, task_slug, run_ids[-1])

    async def _heartbeat(self, handle: LockHandle) -> None:
        lease = self.store.lock_lease_seconds
        if not lease:
            return
        interval = max(1.0, lease / HEARTBEAT_DIVISOR)
        while True:
            await asyncio.sleep(interval)
            try:
                renew_task_lock(handle)
            except (LockHeld, StorageError) as exc:
                logger.error("Lost lease on %s: %s", handle.path, exc)
                return

    # Main entry

    async def run_task(self, task: dict[str, Any]) -> dict[str, str] | None:
        task_id = str(task.get("id") or "").strip()
        if not task_id:
            raise ValueError("Queue returned a task without an id.")

        provider = str(
            task.get("provider") or task.get("engine") or self.config.engine.provider
        ).lower()
        model = _text(task.get("model")) or self.config.engine.model
        stage = _text(task.get("stage"))
        logger.info(
            "[daemon] picked %s (%s) via %s%s",
            task_id,
            stage or "unknown",
            provider,
            f"/{model}" if model else "",
        )

        watcher = CancellationWatcher(
            self.remote.get_task, task_id, poll_seconds=self.config.daemon.cancel_poll_seconds
        )
        project_slug: str | None = None
        task_slug: str | None = None
        lock: LockHandle | None = None
        heartbeat: asyncio.Task[None] | None = None
        result: LoopResult | None = None

        try:
            project_slug, task_slug = self.ensure_task(task, task_id)
            try:
                lock = self.store.acquire_task_lock(project_slug, task_slug)
            except LockHeld as exc:
                logger.warning("[daemon] skipping %s: %s", task_id, exc)
                await self.remote.post_log_safe(task_id, f"[daemon] task is locked: {exc}", "error")
                return None

            self.stamp_task(project_slug, task_slug, task, task_id)
            heartbeat = asyncio.create_task(self._heartbeat(lock), name=f"lease-{task_id}")
            self.store.recover_incomplete_runs(project_slug, task_slug)
            self.store.update_task_state(project_slug, task_slug, {"status": "running"})

            stage_prompt = resolve_stage_objective(task, stage, "")
            initial_context = build_task_context(
                task,
                stage=stage or "unknown",
                stage_prompt=stage_prompt or "No stage objective defined.",
                stage_requirement=build_stage_requirement_prompt(stage, stage_prompt),
                working_set=self.store.read_working_set(project_slug, task_slug),
            )
            repo_path = Path(_text(task.get("repo_path")) or self.orchestrator.cwd)
            ctx = LoopContext(
                project_slug=project_slug,
                task_slug=task_slug,
                task=task,
                task_id=task_id,
                stage=stage,
                local_stage=map_remote_stage(stage),
                provider=provider,
                model=model,
                cwd=repo_path if repo_path.is_dir() else self.orchestrator.cwd,
                initial_context=initial_context,
                cancellation=watcher,
            )

            watcher.start()
            loop = self.orchestrator.iteration_loop()
            if task.get("swarm"):
                providers = [str(name) for name in task.get("swarm_providers") or [] if name]
                result = await loop.run_swarm(ctx, providers or None)
            else:
                result = await loop.run_single(ctx)

            payload = normalize_remote_decision(
                result.decision,
                "Execution completed." if result.code == 0 else "Execution failed.",
                error=_text(task.get("error")),
            )
        except Exception as exc:
            message = str(exc) or "Daemon execution failed."
            logger.exception("[daemon] execution of %s failed", task_id)
            container = (
                result.last_run.container
                if result and result.last_run
                else self._latest_run_container(project_slug, task_slug)
            )
            append_container_log(
                container, DAEMON_ERROR_LOG, f"[{_utcnow_iso()}] {traceback.format_exc()}"
            )
            if lock is not None and project_slug and task_slug:
                with contextlib.suppress(StorageError):
                    self.store.update_task_state(project_slug, task_slug, {"status": "failed"})
            payload = {
                "decision": "failed",
                "explanation": message,
                "final_result": message,
                "summary": message,
            }
        finally:
            await watcher.close()
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            if lock is not None:
                assert project_slug is not None and task_slug is not None
                self.collect_garbage(project_slug, task_slug, result.last_run if result else None)
                self.store.release_task_lock(lock)

        last_run = result.last_run if result else None
        await self.complete(task_id, stage, payload, last_run)
        return payload

    async def complete(
        self, task_id: str, stage: str, payload: dict[str, str], last_run: Run | None
    ) -> None:
        completion: dict[str, Any] = {
            "log": payload["summary"] or payload["explanation"],
            "decision": payload["decision"],
            "final_result": payload["final_result"],
            "explanation": payload["explanation"],
        }
        if last_run is not None:
            completion.update(
                {
                    "artifact_path": str(last_run.paths.root),
                    "artifact_host": socket.gethostname(),
                    "artifact_key": local_artifact_key(last_run.paths.root),
                }
            )
        response = await self.remote.complete_task(task_id, completion)

        new_stage = response.get("newStage")
        if not new_stage and isinstance(response.get("task"), dict):
            new_stage = response["task"].get("stage")
        if not new_stage:
            try:
                new_stage = (await self.remote.get_task(task_id)).get("stage")
            except RemoteAPIError as exc:
                logger.warning("Unable to refresh task %s: %s", task_id, exc)
        patch = build_terminal_patch(payload["decision"], new_stage)
        if patch:
            await self.remote.patch_task_safe(task_id, patch)

        await self.remote.post_comment_safe(
            task_id, build_outcome_comment(stage, payload, last_run)
        )
        logger.info("[daemon] completed %s -> %s", task_id, payload["decision"])


async def run_local_task(
    orchestrator: Orchestrator,
    *,
    request: str,
    project: str | None = None,
    task_slug: str | None = None,
    provider: str | None = None,
    model: str | None = None,
    swarm: bool = False,
    stage: str = "execute",
) -> tuple[str, str, LoopResult]:
    """Run one task from the command line without a remote queue."""

    store = orchestrator.store
    label = project or _detect_repo_name(orchestrator.cwd)
    project_slug = store.resolve_project_slug(label)
    store.write_project_state(project_slug, {"label": label, "repo_path": str(orchestrator.cwd)})

    existing = store.read_task_state(project_slug, task_slug) if task_slug else None
    if existing is None:
        created = store.create_task(project_slug, user_request=request, task_slug=task_slug)
        task_slug = str(created["task_slug"])
        existing = created
    assert task_slug is not None

    lock = store.acquire_task_lock(project_slug, task_slug)
    try:
        store.recover_incomplete_runs(project_slug, task_slug)
        store.update_task_state(project_slug, task_slug, {"status": "running"})
        task = {**existing, "title": request, "stage": stage}
        stage_prompt = resolve_stage_objective(task, stage, "")
        ctx = LoopContext(
            project_slug=project_slug,
            task_slug=task_slug,
            task=task,
            task_id=task_slug,
            stage=stage,
            local_stage=map_remote_stage(stage),
            provider=(provider or orchestrator.config.engine.provider).lower(),
            model=model if model is not None else orchestrator.config.engine.model,
            cwd=orchestrator.cwd,
            initial_context=build_task_context(
                task,
                stage=stage,
                stage_prompt=stage_prompt or "No stage objective defined.",
                stage_requirement=build_stage_requirement_prompt(stage, stage_prompt),
                working_set=store.read_working_set(project_slug, task_slug),
            ),
        )
        loop = orchestrator.iteration_loop()
        result = await (loop.run_swarm(ctx) if swarm else loop.run_single(ctx))
    finally:
        store.release_task_lock(lock)
    return project_slug, task_slug, result


class Daemon:
    """Worker pool polling the remote queue with a bounded in-flight map."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        *,
        executor: TaskRunner | None = None,
        max_workers: int | None = None,
        poll_seconds: float | None = None,
    ) -> None:
        if orchestrator.remote is None:
            raise ValueError("The daemon needs a remote queue client.")
        daemon_config = orchestrator.config.daemon
        self.orchestrator = orchestrator
        self.remote: QueueClient = orchestrator.remote
        self.executor: TaskRunner = executor or TaskExecutor(orchestrator)
        self.max_workers = max(1, int(max_workers or daemon_config.max_workers))
        self.poll_seconds = max(
            MIN_POLL_SECONDS, float(poll_seconds or daemon_config.poll_seconds)
        )
        self.drain_timeout_seconds = daemon_config.drain_timeout_seconds
        self.in_flight: dict[str, asyncio.Task[Any]] = {}
        self.processed = 0
        self._stopping = False
        self._stop_event: asyncio.Event | None = None

    @property
    def stopping(self) -> bool:
        return self._stopping

    def request_stop(self, signal_name: str | None = None) -> None:
        if self._stopping:
            return
        self._stopping = True
        logger.info(
            "[daemon] stopping%s... waiting for %d active task(s)",
            f" ({signal_name})" if signal_name else "",
            len(self.in_flight),
        )
        if self._stop_event is not None:
            self._stop_event.set()

    async def _sleep_with_stop(self, seconds: float) -> None:
        if self._stop_event is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    async def _worker(self, index: int) -> None:
        label = f"worker-{index}"
        while not self._stopping:
            try:
                task = await self.remote.get_next_task()
            except RemoteAPIError as exc:
                logger.error("[daemon][%s] queue poll failed: %s", label, exc)
                await self._sleep_with_stop(self.poll_seconds)
                continue

            if task is None:
                await self._sleep_with_stop(self.poll_seconds)
                continue

            task_id = str(task.get("id") or "").strip()
            if not task_id or task_id in self.in_flight:
                await self._sleep_with_stop(self.poll_seconds)
                continue

            execution = asyncio.create_task(self.executor.run_task(task), name=f"task-{task_id}")
            self.in_flight[task_id] = execution
            try:
                await execution
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[daemon][%s] task %s failed", label, task_id)
            finally:
                self.in_flight.pop(task_id, None)
                self.processed += 1

    @contextlib.contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.request_stop, signum.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Only the main thread of a Unix event loop can own signal handlers.
                continue
            installed.append(signum)
        try:
            yield
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    async def run(self) -> None:
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()
        with self._signal_handlers():
            logger.info(
                "Daemon loop started (workers=%d, poll=%.1fs)", self.max_workers, self.poll_seconds
            )
            workers = [
                asyncio.create_task(self._worker(index), name=f"worker-{index}")
                for index in range(1, self.max_workers + 1)
            ]
            try:
                await self._stop_event.wait()
            finally:
                timeout = self.drain_timeout_seconds or None
                _, pending = await asyncio.wait(workers, timeout=timeout)
                if pending:
                    logger.warning(
                        "[daemon] drain timed out; cancelling %d worker(s)", len(pending)
                    )
                    for worker in pending:
                        worker.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Daemon stopped after %d task(s)", self.processed)


# PID file


def pid_file_path(home: Path) -> Path:
    return Path(home) / PID_FILE


def read_daemon_pid(home: Path) -> int | None:
    try:
        raw = pid_file_path(home).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        pid = int(raw)
    except ValueError:
        return None
    return pid if pid > 0 else None


def is_daemon_running(home: Path) -> bool:
    pid = read_daemon_pid(home)
    return pid is not None and is_process_alive(pid)


def write_pid_file(home: Path, pid: int | None = None) -> Path:
    """Claim the PID file for ``pid``; a live owner raises DaemonAlreadyRunning."""

    pid = pid or os.getpid()
    path = pid_file_path(home)
    ensure_dir(path.parent)
    existing = read_daemon_pid(home)
    if existing is not None and existing != pid and is_process_alive(existing):
        raise DaemonAlreadyRunning(existing)
    if path.exists():
        logger.info("Removing stale PID file %s", path)
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as exc:
        raise DaemonAlreadyRunning(read_daemon_pid(home) or -1) from exc
    try:
        os.write(fd, f"{pid}\n".encode())
    finally:
        os.close(fd)
    return path


def remove_pid_file(home: Path, pid: int | None = None) -> bool:
    """Delete the PID file when it belongs to ``pid`` (or unconditionally without one)."""

    path = pid_file_path(home)
    if pid is not None and read_daemon_pid(home) not in (pid, None):
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def stop_daemon(pid: int, timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> bool:
    """SIGTERM the daemon, escalate to SIGKILL after ``timeout``. True once it is gone."""

    if not is_process_alive(pid):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_alive(pid):
            return True
        time.sleep(STOP_POLL_SECONDS)

    logger.warning("Daemon %d ignored SIGTERM; sending SIGKILL", pid)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    time.sleep(STOP_KILL_SETTLE_SECONDS)
    return not is_process_alive(pid)
