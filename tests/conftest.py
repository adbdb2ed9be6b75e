import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

from taskrun.backends import BACKENDS, AgentBackend
from taskrun.config import TaskrunConfig

# Verifier prompts carry the strict output contract; everything else is an execute call.
FAKE_AGENT_SCRIPT = r"""
import json, os, sys, time

prompt = sys.argv[-1]
if "Output contract (strict)" in prompt:
    decisions = os.environ.get("FAKE_DECISIONS", "done").split(",")
    counter = os.environ["FAKE_COUNTER"]
    index = int(open(counter).read()) if os.path.exists(counter) else 0
    open(counter, "w").write(str(index + 1))
    value = decisions[min(index, len(decisions) - 1)]
    if value == "garbage":
        print("I could not reach a conclusion.")
        sys.exit(0)
    payloads = {
        "done": {
            "done": True,
            "decision": "done",
            "explanation": "All checks pass.",
            "final_result": "Health endpoint shipped.",
            "summary": "Complete.",
            "plan_md": "# Plan\n- add route",
        },
        "not_done": {
            "done": False,
            "decision": "not_done",
            "explanation": "Tests still failing.",
            "next_prompt": "Fix the failing test in tests/test_api.py.",
            "summary": "Route added, tests red.",
        },
        "blocked": {
            "done": False,
            "decision": "blocked",
            "explanation": "Missing database credentials.",
            "summary": "Waiting on credentials.",
        },
    }
    print("Reviewing the work first.")
    print(json.dumps(payloads[value]))
else:
    delay = float(os.environ.get("FAKE_EXECUTE_SLEEP", "0") or 0)
    if delay:
        time.sleep(delay)
    print("PLAN:")
    print("- add the route")
    print("[learn: fixtures live in tests/]")
    print("[progress: 50%]")
    print("[checkpoint: route added]")
    sys.exit(int(os.environ.get("FAKE_EXECUTE_EXIT", "0") or 0))
"""


class FakeAgent(AgentBackend):
    name = "fake"
    default_binary = sys.executable

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        return [self.binary, "-c", FAKE_AGENT_SCRIPT, prompt]


class BrokenAgent(AgentBackend):
    name = "broken"
    default_binary = sys.executable

    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        return [self.binary, "-c", "import sys; sys.stderr.write('rate limited'); sys.exit(1)"]


@dataclass
class FakeAgentEnv:
    tmp_path: Path
    monkeypatch: pytest.MonkeyPatch

    @property
    def repo(self) -> Path:
        return self.tmp_path / "repo"

    def decisions(self, *values: str) -> None:
        self.monkeypatch.setenv("FAKE_DECISIONS", ",".join(values))

    def execute_exit(self, code: int) -> None:
        self.monkeypatch.setenv("FAKE_EXECUTE_EXIT", str(code))

    def execute_sleep(self, seconds: float) -> None:
        self.monkeypatch.setenv("FAKE_EXECUTE_SLEEP", str(seconds))

    def verify_calls(self) -> int:
        counter = self.tmp_path / "verify-count.txt"
        return int(counter.read_text()) if counter.exists() else 0

    def config(self, **loop_overrides: object) -> TaskrunConfig:
        config = TaskrunConfig.default()
        config.storage.home = str(self.tmp_path / "home")
        config.engine.provider = "fake"
        config.engine.max_retries = 0
        config.engine.retry_backoff_seconds = 0.0
        config.engine.timeout_seconds = 30.0
        config.engine.verify_timeout_seconds = 30.0
        config.engine.kill_grace_seconds = 0.2
        config.loop.max_iterations = 3
        config.loop.swarm_providers = ["fake", "broken"]
        config.daemon.cancel_poll_seconds = 0.2
        for key, value in loop_overrides.items():
            setattr(config.loop, key, value)
        return config


@pytest.fixture
def fake_agent(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeAgentEnv:
    monkeypatch.setitem(BACKENDS, "fake", FakeAgent)
    monkeypatch.setitem(BACKENDS, "broken", BrokenAgent)
    monkeypatch.setenv("FAKE_COUNTER", str(tmp_path / "verify-count.txt"))
    monkeypatch.setenv("FAKE_DECISIONS", "done")
    monkeypatch.delenv("FAKE_EXECUTE_EXIT", raising=False)
    monkeypatch.delenv("FAKE_EXECUTE_SLEEP", raising=False)
    (tmp_path / "repo").mkdir()
    return FakeAgentEnv(tmp_path=tmp_path, monkeypatch=monkeypatch)
