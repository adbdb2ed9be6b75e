import tomllib
from pathlib import Path

from taskrun import __version__
from taskrun.config import TaskrunConfig, apply_env_overrides, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "taskrun.toml"
    config = TaskrunConfig.default()
    config.storage.home = str(tmp_path / "home")
    config.storage.keep_runs = 7
    config.engine.provider = "codex"
    config.engine.model = "gpt-5-codex"
    config.engine.max_retries = 3
    config.engine.binaries = {"claude": "/opt/bin/claude"}
    config.loop.max_iterations = 4
    config.loop.swarm_providers = ["claude", "gemini"]
    config.loop.aggregator = "gemini"
    config.daemon.max_workers = 2
    config.daemon.poll_seconds = 0.5
    config.remote.base_url = "https://board.example.com"
    config.remote.user_id = "user-1"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.storage.home == str(tmp_path / "home")
    assert loaded.storage.keep_runs == 7
    assert loaded.storage.preserve_blocked_failed is True
    assert loaded.engine.provider == "codex"
    assert loaded.engine.model == "gpt-5-codex"
    assert loaded.engine.max_retries == 3
    assert loaded.engine.binaries == {"claude": "/opt/bin/claude"}
    assert loaded.loop.max_iterations == 4
    assert loaded.loop.swarm_providers == ["claude", "gemini"]
    assert loaded.loop.aggregator == "gemini"
    assert loaded.daemon.max_workers == 2
    assert loaded.daemon.poll_seconds == 0.5
    assert loaded.remote.base_url == "https://board.example.com"
    assert loaded.remote.user_id == "user-1"


def test_missing_config_file_means_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.engine.provider == "claude"
    assert config.loop.max_iterations == 6
    assert config.loop.swarm_max_iterations == 2
    assert config.daemon.max_workers == 1
    assert config.storage.keep_runs == 25


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(TaskrunConfig.default())

    for section in ("[storage]", "[engine]", "[loop]", "[daemon]", "[remote]"):
        assert section in rendered
    assert "verify_prompt_max_chars" in rendered
    assert "kill_grace_seconds" in rendered
    assert "binaries = {}" in rendered
    assert tomllib.loads(rendered)["loop"]["swarm_providers"] == [
        "claude",
        "gemini",
        "ollama",
        "codex",
    ]


def test_env_overrides_apply_and_ignore_invalid_values(tmp_path: Path) -> None:
    config = apply_env_overrides(
        TaskrunConfig.default(),
        {
            "TASKRUN_HOME": str(tmp_path),
            "TASKRUN_LOCK_STALE_MS": "60000",
            "TASKRUN_DAEMON_MAX_CONCURRENT": "3",
            "TASKRUN_DAEMON_POLL_MS": "50",
            "TASKRUN_API_URL": "http://queue.local",
            "TASKRUN_API_KEY": "secret",
        },
    )

    assert config.storage.home_path == tmp_path
    assert config.storage.lock_stale_seconds == 60.0
    assert config.daemon.max_workers == 3
    assert config.daemon.poll_seconds == 1.5
    assert config.remote.base_url == "http://queue.local"
    assert config.remote.api_key == "secret"

    untouched = apply_env_overrides(
        TaskrunConfig.default(), {"TASKRUN_DAEMON_MAX_CONCURRENT": "many"}
    )
    assert untouched.daemon.max_workers == 1


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
