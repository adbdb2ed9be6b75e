import asyncio
import sys
import time
from pathlib import Path
from typing import Any

import pytest

from taskrun.backends import (
    AgentBackend,
    BackendExecutionError,
    ClaudeCodeBackend,
    CodexBackend,
    EngineCall,
    GeminiBackend,
    OllamaBackend,
    ProcessEvent,
    ProcessSupervisor,
    ResilientRunner,
    RetryPolicy,
    SubprocessFailed,
    SubprocessTimeout,
    TailBuffer,
    build_backend,
)
from taskrun.cancellation import CancellationRequested, CancellationWatcher


class ScriptBackend(AgentBackend):
    name = "script"

    def __init__(self, script: str, binary: str | None = None) -> None:
        super().__init__(binary or sys.executable)
        self.script = script

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        return [self.binary, "-c", self.script, prompt]


ECHO_SCRIPT = """
import sys
sys.stderr.write("thinking\\n")
print("answer: " + sys.argv[1].upper())
"""

FAIL_SCRIPT = """
import sys
sys.stderr.write("model overloaded\\n")
sys.exit(3)
"""

SLEEP_SCRIPT = "import time; time.sleep(30)"

FLAKY_SCRIPT = """
import os, sys
path = os.environ["FLAKY_COUNTER"]
count = int(open(path).read()) if os.path.exists(path) else 0
open(path, "w").write(str(count + 1))
if count == 0:
    sys.exit(1)
print("recovered")
"""


def _call(script: str, prompt: str = "hello", timeout: float | None = 10.0) -> EngineCall:
    return EngineCall(backend=ScriptBackend(script), prompt=prompt, timeout_seconds=timeout)


def test_provider_command_shapes() -> None:
    assert ClaudeCodeBackend().build_command("fix it", "sonnet") == [
        "claude",
        "--dangerously-skip-permissions",
        "--model",
        "sonnet",
        "-p",
        "fix it",
    ]
    assert CodexBackend(binary="/opt/codex").build_command("fix it")[:2] == ["/opt/codex", "exec"]
    assert "-m" not in CodexBackend().build_command("fix it")
    assert GeminiBackend().build_command("fix it", "pro")[-4:] == ["-m", "pro", "-p", "fix it"]
    assert OllamaBackend().build_command("fix it") == ["ollama", "run", "llama3.2:3b", "fix it"]
    assert build_backend("Claude", {"claude": "/bin/claude"}).binary == "/bin/claude"
    with pytest.raises(ValueError):
        build_backend("copilot")


def test_backend_env_forces_dumb_terminal() -> None:
    env = ClaudeCodeBackend().build_env({"PATH": "/usr/bin", "TERM": "xterm-256color"})

    assert env == {"PATH": "/usr/bin", "TERM": "dumb"}


def test_tail_buffer_keeps_last_characters() -> None:
    tail = TailBuffer(limit=5)
    tail.append("abc")
    tail.append("defgh")
    tail.append("")

    assert tail.text == "defgh"
    assert len(tail) == 5


def test_supervisor_streams_output_and_exit() -> None:
    events: list[ProcessEvent] = []
    supervisor = ProcessSupervisor(observers=[events.append])

    result = asyncio.run(supervisor.run(_call(ECHO_SCRIPT)))

    assert result.output == "answer: HELLO"
    assert result.stderr == "thinking\n"
    assert result.exit_code == 0
    assert result.pid is not None
    kinds = [event.kind for event in events]
    assert kinds[0] == "started"
    assert kinds[-1] == "exit"
    assert "stdout" in kinds
    assert "stderr" in kinds
    assert events[-1].stdout_tail.strip() == "answer: HELLO"


def test_supervisor_nonzero_exit_is_retriable_failure() -> None:
    supervisor = ProcessSupervisor()

    with pytest.raises(SubprocessFailed) as excinfo:
        asyncio.run(supervisor.run(_call(FAIL_SCRIPT)))

    assert excinfo.value.exit_code == 3
    assert excinfo.value.retriable is True
    assert "model overloaded" in str(excinfo.value)


def test_supervisor_kills_on_timeout() -> None:
    events: list[ProcessEvent] = []
    supervisor = ProcessSupervisor(kill_grace_seconds=0.1)
    started = time.monotonic()

    with pytest.raises(SubprocessTimeout) as excinfo:
        asyncio.run(supervisor.run(_call(SLEEP_SCRIPT, timeout=0.3), observers=[events.append]))

    assert time.monotonic() - started < 10
    assert excinfo.value.retriable is False
    assert events[-1].kind == "timeout"


def test_supervisor_reports_missing_binary() -> None:
    events: list[ProcessEvent] = []
    call = EngineCall(backend=ScriptBackend("", binary="/nonexistent/agent-bin"), prompt="x")

    with pytest.raises(SubprocessFailed) as excinfo:
        asyncio.run(ProcessSupervisor().run(call, observers=[events.append]))

    assert excinfo.value.retriable is False
    assert "binary not found" in str(excinfo.value)
    assert [event.kind for event in events] == ["error"]


def test_supervisor_terminates_on_cancellation() -> None:
    polls: list[str] = []

    async def query(task_id: str) -> dict[str, Any]:
        polls.append(task_id)
        return {"status": "running"} if len(polls) == 1 else {"status": "cancelled"}

    async def scenario() -> None:
        watcher = CancellationWatcher(query, "task-9", poll_seconds=0.2)
        watcher.start()
        try:
            await ProcessSupervisor(kill_grace_seconds=0.2).run(
                _call(SLEEP_SCRIPT, timeout=20), cancellation=watcher
            )
        finally:
            await watcher.close()

    started = time.monotonic()
    with pytest.raises(CancellationRequested):
        asyncio.run(scenario())

    assert time.monotonic() - started < 10
    assert len(polls) == 2


def test_supervisor_checks_cancellation_after_exit() -> None:
    events: list[ProcessEvent] = []

    async def query(task_id: str) -> dict[str, Any]:
        return {"status": "running"}

    async def scenario() -> None:
        watcher = CancellationWatcher(query, "task-9", poll_seconds=0.2)

        # The cancel lands after the process has already exited cleanly.
        def on_event(event: ProcessEvent) -> None:
            events.append(event)
            if event.kind == "exit":
                watcher.mark_cancelled({"status": "cancelled", "reason": "Stopped late"})

        await ProcessSupervisor().run(_call(ECHO_SCRIPT), cancellation=watcher, observers=[on_event])

    with pytest.raises(CancellationRequested) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.reason == "Stopped late"
    assert events[-1].kind == "exit"
    assert events[-1].exit_code == 0


def test_runner_retries_with_backoff_events(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FLAKY_COUNTER", str(tmp_path / "count.txt"))
    events: list[dict[str, Any]] = []
    runner = ResilientRunner(
        ProcessSupervisor(),
        RetryPolicy(max_retries=2, backoff_seconds=0.01),
        event_hook=events.append,
    )

    result = asyncio.run(runner.run(_call(FLAKY_SCRIPT)))

    assert result.output == "recovered"
    assert result.call.attempt == 1
    assert [event["event"] for event in events] == ["engine_attempt_failed", "engine_retry"]
    assert events[1]["delay_seconds"] == pytest.approx(0.01)


def test_runner_gives_up_after_max_retries() -> None:
    events: list[dict[str, Any]] = []
    runner = ResilientRunner(
        ProcessSupervisor(),
        RetryPolicy(max_retries=1, backoff_seconds=0.0),
        event_hook=events.append,
    )

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(runner.run(_call(FAIL_SCRIPT)))

    assert "All attempts failed" in str(excinfo.value)
    assert excinfo.value.exit_code == 3
    assert [event["event"] for event in events].count("engine_attempt_failed") == 2


def test_runner_never_retries_timeouts() -> None:
    events: list[dict[str, Any]] = []
    runner = ResilientRunner(
        ProcessSupervisor(kill_grace_seconds=0.1),
        RetryPolicy(max_retries=3, backoff_seconds=0.0),
        event_hook=events.append,
    )

    with pytest.raises(SubprocessTimeout):
        asyncio.run(runner.run(_call(SLEEP_SCRIPT, timeout=0.3)))

    assert [event["event"] for event in events] == ["engine_attempt_failed"]
    assert RetryPolicy(backoff_seconds=0.5).delay_for(3) == 2.0
