from __future__ import annotations

import json
import os
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskrun.storage.errors import StorageIOError

RUN_STARTED = "RUN_STARTED"
PROMPT_BUILT = "PROMPT_BUILT"
RUN_FINISHED = "RUN_FINISHED"
RUN_FAILED = "RUN_FAILED"
RECOVERY_DETECTED = "RECOVERY_DETECTED"
ENGINE_CALL_STARTED = "ENGINE_CALL_STARTED"
ENGINE_CALL_COMPLETED = "ENGINE_CALL_COMPLETED"
MARKER = "MARKER"


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def make_event(event_type: str, **fields: Any) -> dict[str, Any]:
    return {"t": event_type, "at": _utcnow_iso(), **fields}


def append_event(events_path: Path, event: dict[str, Any]) -> None:
    """Append one NDJSON record and fsync before returning."""

    if not isinstance(event, dict) or not event.get("t"):
        raise ValueError("Event must be a dict with a 't' type field.")
    payload = dict(event)
    payload.setdefault("at", _utcnow_iso())
    line = json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"
    try:
        events_path.parent.mkdir(parents=True, exist_ok=True)
        with open(events_path, "a", encoding="utf-8") as handle:
            handle.write(line)
            handle.flush()
            os.fsync(handle.fileno())
    except OSError as exc:
        raise StorageIOError(
            f"Unable to append event to {events_path}: {exc}", path=events_path
        ) from exc


def iter_events(events_path: Path) -> Iterator[dict[str, Any]]:
    try:
        handle = open(events_path, encoding="utf-8")
    except FileNotFoundError:
        return
    with handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(event, dict):
                yield event


def read_events(events_path: Path, event_type: str | None = None) -> list[dict[str, Any]]:
    events = list(iter_events(events_path))
    if event_type is None:
        return events
    return [event for event in events if event.get("t") == event_type]


def run_started_event(run_id: str, stage: str) -> dict[str, Any]:
    return make_event(RUN_STARTED, run_id=run_id, stage=stage)


def prompt_built_event(sections: list[str], total_bytes: int) -> dict[str, Any]:
    return make_event(PROMPT_BUILT, sections=list(sections), total_bytes=total_bytes)


def run_finished_event(status: str, reason: str) -> dict[str, Any]:
    return make_event(RUN_FINISHED, status=status, reason=reason)


def run_failed_event(error: str, code: str) -> dict[str, Any]:
    return make_event(RUN_FAILED, error=error, code=code)


def recovery_detected_event(incomplete_run_id: str, stage: str) -> dict[str, Any]:
    return make_event(RECOVERY_DETECTED, incomplete_run_id=incomplete_run_id, stage=stage)


def marker_event(kind: str, text: str) -> dict[str, Any]:
    return make_event(MARKER, kind=kind, text=text)


def engine_call_started_event(**fields: Any) -> dict[str, Any]:
    return make_event(ENGINE_CALL_STARTED, **fields)


def engine_call_completed_event(**fields: Any) -> dict[str, Any]:
    return make_event(ENGINE_CALL_COMPLETED, **fields)
