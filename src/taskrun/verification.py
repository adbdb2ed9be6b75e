"""Local verification signals collected between the execute and verify phases.

Commands come from a short allowlist keyed on repo signals; outputs are
truncated for prompts while the full text is persisted as run artifacts.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import signal
import sys
import time
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from taskrun.backends.process import (
    DEFAULT_KILL_GRACE_SECONDS,
    DRAIN_AFTER_KILL_SECONDS,
    signal_process_group,
    terminate_process_group,
)
from taskrun.cancellation import CancellationRequested, CancellationWatcher, abort_if_cancelled

logger = logging.getLogger(__name__)

DEFAULT_MAX_COMMANDS = 3
DEFAULT_COMMAND_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_OUTPUT_CHARS = 20000
GIT_TIMEOUT_SECONDS = 30.0

_MAKE_TEST_TARGET = re.compile(r"^test\s*:", re.MULTILINE)


@dataclass(slots=True)
class VerifyCommand:
    id: str
    label: str
    cmd: str
    args: list[str] = field(default_factory=list)
    cwd: str = ""
    timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class VerifyResult:
    id: str
    label: str
    cmd: str
    args: list[str]
    cwd: str
    exit_code: int
    duration_ms: int
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @property
    def passed(self) -> bool:
        return self.exit_code == 0 and self.error is None

    def summary_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "cmd": self.cmd,
            "args": self.args,
            "cwd": self.cwd,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


@dataclass(slots=True)
class GitSummary:
    is_git: bool = False
    status_porcelain: str = ""
    diff_stat: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def truncate_output(text: str | None, max_chars: int) -> str:
    value = text or ""
    if len(value) <= max_chars:
        return value
    kept = value[: max(0, max_chars - 20)]
    return f"{kept}\n[truncated {len(value) - len(kept)} chars]"


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def _uses_pytest(root: Path) -> bool:
    pyproject = root / "pyproject.toml"
    if pyproject.exists():
        try:
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            data = {}
        if "pytest" in data.get("tool", {}):
            return True
    return (root / "pytest.ini").exists() or (root / "tests").is_dir() and (
        any((root / "tests").glob("test_*.py"))
    )


def detect_verify_commands(
    cwd: Path | str | None = None,
    *,
    max_commands: int = DEFAULT_MAX_COMMANDS,
    timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
) -> list[VerifyCommand]:
    root = Path(cwd) if cwd else Path.cwd()
    commands: list[VerifyCommand] = []

    def _add(command_id: str, label: str, cmd: str, args: list[str]) -> None:
        commands.append(
            VerifyCommand(
                id=command_id,
                label=label,
                cmd=cmd,
                args=args,
                cwd=str(root),
                timeout_seconds=timeout_seconds,
            )
        )

    package = _read_json(root / "package.json")
    scripts = package.get("scripts") if package else None
    if isinstance(scripts, dict):
        if scripts.get("test"):
            _add("npm_test", "npm test", "npm", ["test"])
        if scripts.get("lint"):
            _add("npm_lint", "npm run lint", "npm", ["run", "lint"])
        if scripts.get("typecheck"):
            _add("npm_typecheck", "npm run typecheck", "npm", ["run", "typecheck"])

    if _uses_pytest(root):
        _add("pytest", "python -m pytest -q", sys.executable, ["-m", "pytest", "-q"])

    makefile = root / "Makefile"
    if not commands and makefile.exists():
        try:
            if _MAKE_TEST_TARGET.search(makefile.read_text(encoding="utf-8")):
                _add("make_test", "make test", "make", ["test"])
        except OSError:
            pass

    return commands[: max(0, max_commands)]


async def _drain(communicate: asyncio.Future[tuple[bytes, bytes]]) -> tuple[bytes, bytes]:
    try:
        return await asyncio.wait_for(asyncio.shield(communicate), timeout=DRAIN_AFTER_KILL_SECONDS)
    except TimeoutError:
        communicate.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await communicate
        return b"", b""


async def run_local_command(
    command: VerifyCommand,
    *,
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    cancellation: CancellationWatcher | None = None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> VerifyResult:
    """Run one verification command in its own process group.

    A timeout is reported on the result. A cancel terminates the group and
    raises ``CancellationRequested``.
    """

    abort_if_cancelled(cancellation)
    started = time.monotonic()
    cwd = command.cwd or str(Path.cwd())

    def _result(exit_code: int, stdout: bytes, stderr: bytes, error: str | None) -> VerifyResult:
        return VerifyResult(
            id=command.id,
            label=command.label,
            cmd=command.cmd,
            args=list(command.args),
            cwd=cwd,
            exit_code=exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            stdout=truncate_output(stdout.decode("utf-8", errors="replace"), max_output_chars),
            stderr=truncate_output(stderr.decode("utf-8", errors="replace"), max_output_chars),
            error=error,
        )

    try:
        process = await asyncio.create_subprocess_exec(
            command.cmd,
            *command.args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return _result(-1, b"", b"", str(exc))

    communicate = asyncio.ensure_future(process.communicate())
    waiters: set[asyncio.Future[Any]] = {communicate}
    cancel_wait: asyncio.Future[Any] | None = None
    if cancellation is not None:
        cancel_wait = asyncio.ensure_future(cancellation.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=command.timeout_seconds or None,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if communicate not in done:
            if cancel_wait is not None and cancel_wait in done:
                assert cancellation is not None
                logger.info("Cancelling verify command %s: %s", command.label, cancellation.reason)
                await terminate_process_group(process, kill_grace_seconds)
                await _drain(communicate)
                raise CancellationRequested(cancellation.reason)

            signal_process_group(process, signal.SIGKILL)
            await process.wait()
            stdout, stderr = await _drain(communicate)
            return _result(-1, stdout, stderr, f"timeout after {command.timeout_seconds:g}s")
    except asyncio.CancelledError:
        signal_process_group(process, signal.SIGKILL)
        communicate.cancel()
        raise
    finally:
        if cancel_wait is not None and not cancel_wait.done():
            cancel_wait.cancel()

    stdout, stderr = communicate.result()
    return _result(process.returncode if process.returncode is not None else -1, stdout, stderr, None)


async def run_verify_commands(
    commands: list[VerifyCommand],
    *,
    max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    cancellation: CancellationWatcher | None = None,
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
) -> list[VerifyResult]:
    results: list[VerifyResult] = []
    for command in commands:
        abort_if_cancelled(cancellation)
        result = await run_local_command(
            command,
            max_output_chars=max_output_chars,
            cancellation=cancellation,
            kill_grace_seconds=kill_grace_seconds,
        )
        logger.info("Verify command %s exited %s in %dms", command.label, result.exit_code, result.duration_ms)
        results.append(result)
    return results


async def _git(root: Path, *args: str) -> tuple[int, str] | None:
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(root),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError:
        return None
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=GIT_TIMEOUT_SECONDS)
    except TimeoutError:
        process.kill()
        await process.communicate()
        return None
    return process.returncode or 0, stdout.decode("utf-8", errors="replace")


async def get_git_summary(cwd: Path | str | None = None) -> GitSummary:
    root = Path(cwd) if cwd else Path.cwd()
    inside = await _git(root, "rev-parse", "--is-inside-work-tree")
    if inside is None or inside[0] != 0:
        return GitSummary()
    status = await _git(root, "status", "--porcelain=v1")
    diff = await _git(root, "diff", "--stat")
    return GitSummary(
        is_git=True,
        status_porcelain=status[1] if status and status[0] == 0 else "",
        diff_stat=diff[1] if diff and diff[0] == 0 else "",
    )
