import asyncio
import json
import os
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any

import httpx
import pytest

from taskrun.daemon import (
    Daemon,
    DaemonAlreadyRunning,
    Orchestrator,
    TaskExecutor,
    build_outcome_comment,
    is_daemon_running,
    normalize_remote_decision,
    read_daemon_pid,
    remote_project_identity,
    remove_pid_file,
    render_working_set,
    stop_daemon,
    write_pid_file,
)
from taskrun.decision import Decision
from taskrun.remote import QueueClient
from taskrun.storage import read_events
from taskrun.storage.events import RECOVERY_DETECTED

from conftest import FakeAgentEnv


class FakeQueue:
    """In-memory stand-in for the queue API, served through httpx.MockTransport."""

    def __init__(self, tasks: list[dict[str, Any]] | None = None) -> None:
        self.pending = list(tasks or [])
        self.requests: list[tuple[str, str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if request.url.path == "/api/queue":
            task = self.pending.pop(0) if self.pending else None
            return httpx.Response(200, json={"task": task})
        if request.method == "GET" and request.url.path.startswith("/api/tasks/"):
            task_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(
                200, json={"task": {"id": task_id, "status": "running", "stage": "execute"}}
            )
        return httpx.Response(200, json={"ok": True})

    def bodies(self, method: str, path: str) -> list[Any]:
        return [body for m, p, body in self.requests if m == method and p == path]

    def client(self) -> QueueClient:
        return QueueClient("http://queue.test", transport=httpx.MockTransport(self))


def _remote_task(fake_agent: FakeAgentEnv, **fields: Any) -> dict[str, Any]:
    task = {
        "id": "t-1",
        "title": "Add a health endpoint",
        "stage": "execute",
        "provider": "fake",
        "project_slug": "demo",
        "repo_path": str(fake_agent.repo),
    }
    task.update(fields)
    return task


def _executor(fake_agent: FakeAgentEnv, queue: FakeQueue) -> TaskExecutor:
    orchestrator = Orchestrator.from_config(
        fake_agent.config(), remote=queue.client(), cwd=fake_agent.repo
    )
    return TaskExecutor(orchestrator)


def test_executor_runs_task_and_reports_completion(fake_agent: FakeAgentEnv) -> None:
    queue = FakeQueue()
    executor = _executor(fake_agent, queue)

    async def scenario() -> Any:
        try:
            return await executor.run_task(_remote_task(fake_agent))
        finally:
            await executor.orchestrator.aclose()

    payload = asyncio.run(scenario())

    assert payload["decision"] == "done"
    assert payload["final_result"] == "Health endpoint shipped."

    completion = queue.bodies("POST", "/api/queue/complete")[0]
    assert completion["taskId"] == "t-1"
    assert completion["decision"] == "done"
    assert completion["log"] == "Complete."
    assert completion["artifact_key"].startswith("local://")
    assert completion["artifact_path"].endswith("/verify")

    patches = queue.bodies("PATCH", "/api/tasks/t-1")
    assert {"progress": 50} in patches
    assert patches[-1]["status"] == "completed"

    logs = queue.bodies("POST", "/api/tasks/t-1/logs")
    assert {"content": "[learning] fixtures live in tests/", "log_type": "system"} in logs
    assert {"content": "[checkpoint] route added", "log_type": "checkpoint"} in logs

    comments = [body["content"] for body in queue.bodies("POST", "/api/tasks/t-1/comments")]
    assert comments[0] == "Complete."
    assert comments[-1].startswith("## execute completed\nDecision: done")

    store = executor.store
    state = store.read_task_state("demo", "t-1")
    assert state["status"] == "done"
    assert state["remote"]["task_id"] == "t-1"
    assert store.read_project_state("demo")["remote"]["project_slug"] == "demo"
    assert store.is_task_locked("demo", "t-1") is False


def test_executor_backs_off_when_task_is_locked(fake_agent: FakeAgentEnv) -> None:
    queue = FakeQueue()
    executor = _executor(fake_agent, queue)
    handle = executor.store.acquire_task_lock("demo", "t-1")

    async def scenario() -> Any:
        try:
            return await executor.run_task(_remote_task(fake_agent))
        finally:
            await executor.orchestrator.aclose()

    try:
        result = asyncio.run(scenario())
    finally:
        executor.store.release_task_lock(handle)

    assert result is None
    assert queue.bodies("POST", "/api/queue/complete") == []
    logs = queue.bodies("POST", "/api/tasks/t-1/logs")
    assert logs[0]["log_type"] == "error"
    assert "task is locked" in logs[0]["content"]
    assert fake_agent.verify_calls() == 0


def test_executor_reports_unexpected_errors_as_failed(fake_agent: FakeAgentEnv) -> None:
    queue = FakeQueue()
    executor = _executor(fake_agent, queue)

    async def scenario() -> Any:
        try:
            return await executor.run_task(_remote_task(fake_agent, provider="copilot"))
        finally:
            await executor.orchestrator.aclose()

    payload = asyncio.run(scenario())

    assert payload["decision"] == "failed"
    assert "Unknown provider" in payload["explanation"]
    assert queue.bodies("POST", "/api/queue/complete")[0]["decision"] == "failed"
    assert queue.bodies("PATCH", "/api/tasks/t-1")[-1]["status"] == "failed"
    assert executor.store.read_task_state("demo", "t-1")["status"] == "failed"
    assert executor.store.is_task_locked("demo", "t-1") is False


def test_locked_pickup_leaves_task_state_untouched(fake_agent: FakeAgentEnv) -> None:
    queue = FakeQueue()
    executor = _executor(fake_agent, queue)
    store = executor.store
    store.write_project_state("demo", {"label": "demo"})
    store.create_task("demo", user_request="Add a health endpoint", task_slug="t-1")
    handle = store.acquire_task_lock("demo", "t-1")
    store.write_working_set("demo", "t-1", "## Learnings\n- holder note\n")
    task_file = store.layout.task_file("demo", "t-1")
    working_set_file = store.layout.working_set_file("demo", "t-1")
    task_before = task_file.read_bytes()
    working_set_before = working_set_file.read_bytes()

    async def scenario() -> Any:
        try:
            return await executor.run_task(
                _remote_task(fake_agent, current_plan="daemon plan", next_action="ship it")
            )
        finally:
            await executor.orchestrator.aclose()

    try:
        result = asyncio.run(scenario())
    finally:
        store.release_task_lock(handle)

    assert result is None
    assert task_file.read_bytes() == task_before
    assert working_set_file.read_bytes() == working_set_before
    assert store.read_task_state("demo", "t-1").get("remote") is None
    assert store.list_run_ids("demo", "t-1") == []


def test_executor_collects_garbage_while_holding_the_lock(
    fake_agent: FakeAgentEnv, monkeypatch: pytest.MonkeyPatch
) -> None:
    queue = FakeQueue()
    executor = _executor(fake_agent, queue)
    store = executor.store
    original_gc = store.gc_runs
    locked_during_gc: list[bool] = []

    def recording_gc(project_slug: str, task_slug: str, **kwargs: Any) -> Any:
        locked_during_gc.append(store.is_task_locked(project_slug, task_slug))
        return original_gc(project_slug, task_slug, **kwargs)

    monkeypatch.setattr(store, "gc_runs", recording_gc)

    async def scenario() -> Any:
        try:
            return await executor.run_task(_remote_task(fake_agent))
        finally:
            await executor.orchestrator.aclose()

    payload = asyncio.run(scenario())

    assert payload["decision"] == "done"
    assert locked_during_gc == [True]
    assert store.is_task_locked("demo", "t-1") is False


def test_pickup_recovers_crashed_run_before_new_execute(fake_agent: FakeAgentEnv) -> None:
    queue = FakeQueue()
    executor = _executor(fake_agent, queue)
    store = executor.store
    store.write_project_state("demo", {"label": "demo"})
    store.create_task("demo", user_request="Add a health endpoint", task_slug="t-1")
    crashed = store.create_run(
        "demo", "t-1", "execute", engine="fake", run_id="20200101-000000-aaaa"
    )

    async def scenario() -> Any:
        try:
            return await executor.run_task(_remote_task(fake_agent))
        finally:
            await executor.orchestrator.aclose()

    payload = asyncio.run(scenario())

    assert payload["decision"] == "done"
    records = store.list_runs("demo", "t-1")
    detected = [
        event
        for record in records
        for event in read_events(
            store.layout.run_paths("demo", "t-1", record.run_id, record.stage).events,
            RECOVERY_DETECTED,
        )
    ]
    assert len(detected) == 1
    assert detected[0]["incomplete_run_id"] == crashed.run_id

    resume = next(record for record in records if record.stage == "resume")
    fresh = next(
        record
        for record in records
        if record.stage == "execute" and record.run_id != crashed.run_id
    )
    assert resume.meta["created_ns"] < fresh.meta["created_ns"]
    assert store.read_decision("demo", "t-1", crashed.run_id, "execute")["error_code"] == "CRASHED"
    assert store.find_incomplete_runs("demo", "t-1") == []


class RecordingExecutor:
    def __init__(self, stop_after: int) -> None:
        self.stop_after = stop_after
        self.seen: list[str] = []
        self.daemon: Daemon | None = None

    async def run_task(self, task: dict[str, Any]) -> dict[str, str]:
        self.seen.append(task["id"])
        if len(self.seen) >= self.stop_after and self.daemon is not None:
            self.daemon.request_stop("test")
        return {"decision": "done", "explanation": "ok", "final_result": "ok", "summary": ""}


def test_daemon_polls_queue_until_stopped(fake_agent: FakeAgentEnv) -> None:
    queue = FakeQueue([{"id": "t-1"}, {"id": "t-2"}, {"id": "t-3"}])
    orchestrator = Orchestrator.from_config(fake_agent.config(), remote=queue.client())
    executor = RecordingExecutor(stop_after=2)
    daemon = Daemon(orchestrator, executor=executor, max_workers=1, poll_seconds=0.2)
    executor.daemon = daemon

    async def scenario() -> None:
        try:
            await asyncio.wait_for(daemon.run(), timeout=10)
        finally:
            await orchestrator.aclose()

    asyncio.run(scenario())

    assert executor.seen == ["t-1", "t-2"]
    assert daemon.processed == 2
    assert daemon.stopping is True
    assert daemon.in_flight == {}
    assert queue.pending == [{"id": "t-3"}]


class HangingExecutor:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def run_task(self, task: dict[str, Any]) -> None:
        self.started.set()
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_daemon_cancels_workers_after_drain_timeout(fake_agent: FakeAgentEnv) -> None:
    config = fake_agent.config()
    config.daemon.drain_timeout_seconds = 0.3
    queue = FakeQueue([{"id": "t-1"}])
    orchestrator = Orchestrator.from_config(config, remote=queue.client())

    async def scenario() -> tuple[Daemon, HangingExecutor, float]:
        executor = HangingExecutor()
        daemon = Daemon(orchestrator, executor=executor, max_workers=2, poll_seconds=0.2)
        runner = asyncio.create_task(daemon.run())
        await asyncio.wait_for(executor.started.wait(), timeout=5)
        started = time.monotonic()
        daemon.request_stop("SIGTERM")
        await asyncio.wait_for(runner, timeout=10)
        await orchestrator.aclose()
        return daemon, executor, time.monotonic() - started

    daemon, executor, elapsed = asyncio.run(scenario())

    assert executor.cancelled is True
    assert daemon.in_flight == {}
    assert elapsed < 5


def test_remote_helpers() -> None:
    identity = remote_project_identity({"project": {"id": 9, "slug": "web", "name": "Web App"}})
    assert identity == {"project_id": "9", "project_slug": "web", "project_name": "Web App"}
    assert remote_project_identity({"project": "api"})["project_slug"] == "api"

    assert render_working_set({}) == ""
    working_set = render_working_set(
        {"current_plan": "Ship v2", "open_blockers": ["No staging DB"], "next_action": "Ask ops"}
    )
    assert "## Current Plan\n\nShip v2" in working_set
    assert "- No staging DB" in working_set
    assert "## Next Action\n\nAsk ops" in working_set

    payload = normalize_remote_decision(Decision(decision="blocked", explanation="Need keys"))
    assert payload == {
        "decision": "blocked",
        "explanation": "Need keys",
        "final_result": "Need keys",
        "summary": "",
    }
    assert normalize_remote_decision({"decision": "weird"}, "Execution failed.")["decision"] == (
        "failed"
    )
    assert normalize_remote_decision(None, "Execution failed.")["explanation"] == (
        "Execution failed."
    )
    assert build_outcome_comment("review", payload) == (
        "## review completed\nDecision: blocked\nNeed keys"
    )


def test_pid_file_lifecycle(tmp_path: Path) -> None:
    home = tmp_path / "home"

    path = write_pid_file(home)
    assert path.read_text().strip() == str(os.getpid())
    assert read_daemon_pid(home) == os.getpid()
    assert is_daemon_running(home) is True
    with pytest.raises(DaemonAlreadyRunning):
        write_pid_file(home, pid=os.getpid() + 1)
    assert remove_pid_file(home, pid=os.getpid() + 1) is False
    assert remove_pid_file(home, pid=os.getpid()) is True
    assert read_daemon_pid(home) is None

    path.write_text("999999999\n")
    assert is_daemon_running(home) is False
    write_pid_file(home)
    assert read_daemon_pid(home) == os.getpid()


def test_stop_daemon_terminates_process() -> None:
    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    # Reap the child as soon as it exits so the pid stops probing as alive.
    reaper = threading.Thread(target=process.wait, daemon=True)
    reaper.start()

    assert stop_daemon(process.pid, timeout=5.0) is True
    reaper.join(timeout=5)
    assert process.returncode is not None
    assert stop_daemon(999999999) is True
