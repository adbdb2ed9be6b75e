from __future__ import annotations

import json
import logging
import re
import socket
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskrun.backends.process import ProcessEvent, ProcessObserver
from taskrun.decision import Decision
from taskrun.storage import Run, StorageError, TaskStore
from taskrun.storage.atomic import ensure_dir, write_text_atomic
from taskrun.storage.events import engine_call_completed_event, engine_call_started_event
from taskrun.verification import GitSummary, VerifyCommand, VerifyResult

logger = logging.getLogger(__name__)

TRACE_TAIL_CHARS = 2000
TRACE_ARG_MAX_CHARS = 200
ARTIFACT_ERRORS_LOG = "daemon/artifact_errors.log"
DAEMON_ERROR_LOG = "daemon/daemon_error.log"

DEFAULT_PLAN_MD = "# Plan\n\n- (not provided)\n"
DEFAULT_IMPLEMENTATION_MD = "# Implementation Summary\n\n- (not provided)\n"
DEFAULT_VERIFICATION_MD = "# Validation\n\nDONE: no\n\n- (not provided)\n"

_UNSAFE_ID = re.compile(r"[^a-z0-9_-]", re.IGNORECASE)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _with_newline(text: str) -> str:
    return text if text.endswith("\n") else f"{text}\n"


def local_artifact_key(path: Path | str | None) -> str:
    host = socket.gethostname()
    value = str(path or "")
    if not value:
        return f"local://{host}/"
    return f"local://{host}{'' if value.startswith('/') else '/'}{value}"


def append_container_log(container: Path | None, relative_path: str, text: str) -> None:
    """Append a line to a diagnostic log inside the run container; never raises."""

    if container is None or not text:
        return
    target = container / relative_path
    try:
        ensure_dir(target.parent)
        with open(target, "a", encoding="utf-8") as handle:
            handle.write(_with_newline(text))
    except OSError as exc:
        logger.warning("Unable to write %s: %s", target, exc)


def _log_artifact_error(container: Path | None, message: str, exc: Exception) -> None:
    logger.warning("%s: %s", message, exc)
    append_container_log(container, ARTIFACT_ERRORS_LOG, f"[{_utcnow_iso()}] {message}: {exc}")


class RunArtifacts:
    """Collects prompt/output sections for one run and records its engine traces."""

    def __init__(self, store: TaskStore, run: Run, *, task_id: str | None = None) -> None:
        self.store = store
        self.run = run
        self.task_id = task_id
        self._prompt_sections: list[tuple[str, str]] = []
        self._output_sections: list[tuple[str, str]] = []

    @property
    def run_path(self) -> Path:
        return self.run.paths.root

    def record_prompt(self, title: str, text: str) -> None:
        if text:
            self._prompt_sections.append((title, text))

    def record_output(self, title: str, text: str) -> None:
        if text:
            self._output_sections.append((title, text))

    @staticmethod
    def _render(sections: list[tuple[str, str]]) -> str:
        parts: list[str] = []
        for title, text in sections:
            parts.extend([f"# {title}".strip(), "", text.strip(), "", "---", ""])
        return "\n".join(parts).strip() + "\n"

    def flush(self) -> None:
        """Write prompt.md and output.md; failures go to the artifact error log."""

        try:
            if self._prompt_sections:
                self.store.write_prompt(
                    self.run,
                    self._render(self._prompt_sections),
                    sections=[title for title, _ in self._prompt_sections],
                )
            if self._output_sections:
                self.store.write_output(self.run, self._render(self._output_sections))
        except StorageError as exc:
            _log_artifact_error(
                self.run.container, f"{self.run.stage} artifact flush failed", exc
            )

    def _tee(self, name: str, text: str) -> None:
        target = self.run.paths.artifacts / name
        try:
            with open(target, "a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as exc:
            logger.warning("Unable to tee output into %s: %s", target, exc)

    def _append_trace(self, event: dict[str, Any]) -> None:
        try:
            self.store.append_run_event(self.run, event)
        except StorageError as exc:
            logger.warning("Unable to record engine trace for %s: %s", self.run.run_id, exc)

    def observer(self, *, prefix: str | None = None) -> ProcessObserver:
        """Observer that tees output to ``spawned.*.log`` and records ENGINE_CALL_* events."""

        def _observe(event: ProcessEvent) -> None:
            call = event.call
            if event.kind in ("stdout", "stderr"):
                text = f"[{prefix}] {event.data}" if prefix else event.data
                self._tee(f"spawned.{event.kind}.log", text)
                return
            if event.kind == "started":
                args = [arg[:TRACE_ARG_MAX_CHARS] for arg in call.command()[1:]]
                self._append_trace(
                    engine_call_started_event(
                        trace_id=call.trace_id,
                        label=call.display_label,
                        provider=call.provider,
                        model=call.model or None,
                        role=call.role,
                        pid=event.pid,
                        args=args,
                        timeout_ms=int(call.timeout_seconds * 1000) if call.timeout_seconds else None,
                        started_at=_utcnow_iso(),
                    )
                )
                return
            self._append_trace(
                engine_call_completed_event(
                    trace_id=call.trace_id,
                    label=call.display_label,
                    provider=call.provider,
                    model=call.model or None,
                    role=call.role,
                    pid=event.pid,
                    phase=event.kind,
                    exit_code=event.exit_code,
                    duration_ms=event.duration_ms,
                    finished_at=_utcnow_iso(),
                    stdout_tail=event.stdout_tail[-TRACE_TAIL_CHARS:],
                    stderr_tail=event.stderr_tail[-TRACE_TAIL_CHARS:],
                    error=event.error,
                )
            )

        return _observe


def _write_artifact(
    store: TaskStore, run: Run, relative_path: str, data: str, container: Path
) -> None:
    try:
        store.write_artifact(run, relative_path, data)
    except StorageError as exc:
        _log_artifact_error(container, f"{run.stage} artifact write failed ({relative_path})", exc)


def persist_iteration_artifacts(
    store: TaskStore,
    *,
    execute_run: Run,
    verify_run: Run,
    decision: Decision | None,
    commands: list[VerifyCommand],
    results: list[VerifyResult],
    git: GitSummary | None,
) -> None:
    """Write the per-iteration markdown, command logs and git snapshots."""

    container = execute_run.container
    plan_md = (decision.plan_md if decision else "") or DEFAULT_PLAN_MD
    implementation_md = (decision.implementation_summary_md if decision else "") or (
        DEFAULT_IMPLEMENTATION_MD
    )
    verification_md = (decision.verification_md if decision else "") or DEFAULT_VERIFICATION_MD

    try:
        write_text_atomic(container / "plan" / "plan.md", _with_newline(plan_md))
    except StorageError as exc:
        _log_artifact_error(container, "plan artifact write failed", exc)

    _write_artifact(
        store, execute_run, "implementation_summary.md", _with_newline(implementation_md), container
    )
    _write_artifact(store, verify_run, "verification.md", _with_newline(verification_md), container)

    payload = {
        "commands": [command.to_dict() for command in commands],
        "results": [result.summary_dict() for result in results],
        "git": git.to_dict() if git else None,
    }
    _write_artifact(
        store,
        verify_run,
        "verify_commands.json",
        json.dumps(payload, ensure_ascii=False, indent=2) + "\n",
        container,
    )

    for index, result in enumerate(results, start=1):
        safe_id = _UNSAFE_ID.sub("_", result.id or f"cmd_{index}")
        base = f"verify_results/{index:02d}-{safe_id}"
        _write_artifact(store, verify_run, f"{base}.stdout.txt", result.stdout, container)
        _write_artifact(store, verify_run, f"{base}.stderr.txt", result.stderr, container)

    if git and git.status_porcelain:
        _write_artifact(store, verify_run, "git_status.txt", git.status_porcelain, container)
    if git and git.diff_stat:
        _write_artifact(store, verify_run, "git_diffstat.txt", git.diff_stat, container)

    if decision is not None:
        _write_artifact(
            store,
            verify_run,
            "decision.json",
            json.dumps(decision.to_dict(), ensure_ascii=False, indent=2) + "\n",
            container,
        )
