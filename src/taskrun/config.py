from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ProviderName = Literal["claude", "codex", "gemini", "ollama"]
PROVIDER_NAMES: tuple[str, ...] = ("claude", "codex", "gemini", "ollama")

DEFAULT_CONFIG_FILE = "taskrun.toml"


def _default_home() -> str:
    return str(Path.home() / ".taskrun")


@dataclass(slots=True)
class StorageConfig:
    home: str = field(default_factory=_default_home)
    keep_runs: int = 25
    lock_stale_seconds: float = 300.0
    preserve_blocked_failed: bool = True

    @property
    def home_path(self) -> Path:
        return Path(self.home).expanduser()

    @property
    def projects_root(self) -> Path:
        return self.home_path / "projects"


@dataclass(slots=True)
class EngineConfig:
    provider: ProviderName = "claude"
    model: str = ""
    timeout_seconds: float = 600.0
    verify_timeout_seconds: float = 300.0
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    kill_grace_seconds: float = 0.5
    binaries: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 6
    swarm_max_iterations: int = 2
    swarm_providers: list[str] = field(
        default_factory=lambda: ["claude", "gemini", "ollama", "codex"]
    )
    verifier: str = ""
    aggregator: str = ""
    verify_max_commands: int = 3
    verify_command_timeout_seconds: float = 300.0
    verify_max_output_chars: int = 20000
    verify_prompt_max_chars: int = 6000


@dataclass(slots=True)
class DaemonConfig:
    max_workers: int = 1
    poll_seconds: float = 1.5
    cancel_poll_seconds: float = 3.0
    drain_timeout_seconds: float = 0.0


@dataclass(slots=True)
class RemoteConfig:
    base_url: str = "http://localhost:41741"
    api_key: str = ""
    user_id: str = ""
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class TaskrunConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    @classmethod
    def default(cls) -> TaskrunConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> TaskrunConfig:
        return cls(
            storage=StorageConfig(**data.get("storage", {})),
            engine=EngineConfig(**data.get("engine", {})),
            loop=LoopConfig(**data.get("loop", {})),
            daemon=DaemonConfig(**data.get("daemon", {})),
            remote=RemoteConfig(**data.get("remote", {})),
        )

    def to_dict(self) -> dict:
        return {
            "storage": {
                "home": self.storage.home,
                "keep_runs": self.storage.keep_runs,
                "lock_stale_seconds": self.storage.lock_stale_seconds,
                "preserve_blocked_failed": self.storage.preserve_blocked_failed,
            },
            "engine": {
                "provider": self.engine.provider,
                "model": self.engine.model,
                "timeout_seconds": self.engine.timeout_seconds,
                "verify_timeout_seconds": self.engine.verify_timeout_seconds,
                "max_retries": self.engine.max_retries,
                "retry_backoff_seconds": self.engine.retry_backoff_seconds,
                "kill_grace_seconds": self.engine.kill_grace_seconds,
                "binaries": dict(self.engine.binaries),
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "swarm_max_iterations": self.loop.swarm_max_iterations,
                "swarm_providers": list(self.loop.swarm_providers),
                "verifier": self.loop.verifier,
                "aggregator": self.loop.aggregator,
                "verify_max_commands": self.loop.verify_max_commands,
                "verify_command_timeout_seconds": self.loop.verify_command_timeout_seconds,
                "verify_max_output_chars": self.loop.verify_max_output_chars,
                "verify_prompt_max_chars": self.loop.verify_prompt_max_chars,
            },
            "daemon": {
                "max_workers": self.daemon.max_workers,
                "poll_seconds": self.daemon.poll_seconds,
                "cancel_poll_seconds": self.daemon.cancel_poll_seconds,
                "drain_timeout_seconds": self.daemon.drain_timeout_seconds,
            },
            "remote": {
                "base_url": self.remote.base_url,
                "api_key": self.remote.api_key,
                "user_id": self.remote.user_id,
                "timeout_seconds": self.remote.timeout_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(
            f"{json.dumps(str(key))} = {_toml_value(item)}" for key, item in value.items()
        )
        return "{" + (f" {items} " if items else "") + "}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: TaskrunConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["storage", "engine", "loop", "daemon", "remote"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _env_float(environ: Mapping[str, str], key: str) -> float | None:
    raw = environ.get(key)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def apply_env_overrides(
    config: TaskrunConfig, environ: Mapping[str, str] | None = None
) -> TaskrunConfig:
    env = os.environ if environ is None else environ

    home = env.get("TASKRUN_HOME", "").strip()
    if home:
        config.storage.home = home

    stale_ms = _env_float(env, "TASKRUN_LOCK_STALE_MS")
    if stale_ms is not None:
        config.storage.lock_stale_seconds = stale_ms / 1000.0

    workers = _env_float(env, "TASKRUN_DAEMON_MAX_CONCURRENT")
    if workers is not None:
        config.daemon.max_workers = max(1, int(workers))

    poll_ms = _env_float(env, "TASKRUN_DAEMON_POLL_MS")
    if poll_ms is not None and poll_ms >= 200:
        config.daemon.poll_seconds = poll_ms / 1000.0

    for key, attr in (
        ("TASKRUN_API_URL", "base_url"),
        ("TASKRUN_API_KEY", "api_key"),
        ("TASKRUN_USER_ID", "user_id"),
    ):
        value = env.get(key, "").strip()
        if value:
            setattr(config.remote, attr, value)
    return config


def load_config(path: Path) -> TaskrunConfig:
    if not path.exists():
        return TaskrunConfig.default()
    return TaskrunConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: TaskrunConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
