import asyncio
from typing import Any

import pytest

from taskrun.cancellation import (
    DEFAULT_CANCELLATION_REASON,
    CancellationRequested,
    CancellationWatcher,
    abort_if_cancelled,
    extract_cancellation_reason,
    is_cancellation_payload,
)


def test_cancellation_payload_shapes() -> None:
    assert is_cancellation_payload({"status": "Cancelled"})
    assert is_cancellation_payload({"workflow": {"workflowStatus": "terminated"}})
    assert is_cancellation_payload({"cancelled": True})
    assert is_cancellation_payload({"cancelledAt": "2026-01-01T00:00:00Z"})
    assert is_cancellation_payload({"lastSignal": "STOP"})
    assert not is_cancellation_payload({"status": "running", "cancelled": False})
    assert not is_cancellation_payload("cancelled")


def test_cancellation_reason_lookup() -> None:
    assert extract_cancellation_reason({"cancelReason": " user request "}) == "user request"
    assert extract_cancellation_reason({"details": {"reason": "budget"}}) == "budget"
    assert extract_cancellation_reason({"status": "cancelled"}) is None


def test_watcher_polls_until_cancelled() -> None:
    responses: list[dict[str, Any]] = [
        {"status": "running"},
        {"status": "cancelled", "reason": "operator stop"},
    ]
    calls: list[str] = []

    async def query(task_id: str) -> dict[str, Any]:
        calls.append(task_id)
        return responses.pop(0) if responses else {"status": "cancelled"}

    async def scenario() -> tuple[dict[str, Any], list[dict[str, Any]]]:
        watcher = CancellationWatcher(query, "task-1", poll_seconds=0.01)
        notified: list[dict[str, Any]] = []
        watcher.subscribe(notified.append)
        payload = await asyncio.wait_for(watcher.wait(), timeout=5)
        await watcher.close()
        with pytest.raises(CancellationRequested) as excinfo:
            abort_if_cancelled(watcher)
        assert excinfo.value.reason == "operator stop"
        assert watcher.running is False
        return payload, notified

    payload, notified = asyncio.run(scenario())

    assert payload["status"] == "cancelled"
    assert notified == [payload]
    assert calls == ["task-1", "task-1"]


def test_watcher_survives_query_errors() -> None:
    async def query(task_id: str) -> dict[str, Any]:
        raise RuntimeError("board offline")

    async def scenario() -> CancellationWatcher:
        watcher = CancellationWatcher(query, "task-2", poll_seconds=0.01)
        assert await watcher.check() is None
        return watcher

    watcher = asyncio.run(scenario())

    assert watcher.is_cancelled is False
    assert watcher.reason == DEFAULT_CANCELLATION_REASON
    abort_if_cancelled(watcher)
    abort_if_cancelled(None)


def test_watcher_requires_task_id() -> None:
    async def query(task_id: str) -> dict[str, Any]:
        return {}

    with pytest.raises(ValueError):
        CancellationWatcher(query, "")
