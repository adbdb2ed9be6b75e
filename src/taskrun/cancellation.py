"""Cooperative cancellation driven by polling the remote task state."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

CANCELLED_ERROR_CODE = "CANCELLED"
DEFAULT_CANCELLATION_POLL_SECONDS = 3.0
MIN_CANCELLATION_POLL_SECONDS = 0.2
DEFAULT_CANCELLATION_REASON = "Cancelled by operator"

CANCEL_STATUS_VALUES = frozenset(
    {
        "cancel",
        "cancelled",
        "canceled",
        "stopped",
        "terminated",
        "terminated_by_user",
        "timedout",
        "timed_out",
    }
)
STATUS_KEYS = (
    "status",
    "workflowStatus",
    "workflow_status",
    "state",
    "task_state",
    "result",
    "workflow",
)
CANCEL_FLAG_KEYS = ("cancelled", "canceled", "is_cancelled", "cancel", "stop")
CANCEL_TIMESTAMP_KEYS = ("canceled_at", "cancelled_at", "cancel_at", "canceledAt", "cancelledAt")
CANCEL_SIGNALS = frozenset({"stop", "cancel"})
REASON_KEYS = (
    "reason",
    "message",
    "description",
    "summary",
    "explanation",
    "cancel_reason",
    "cancelReason",
    "cancellation_reason",
    "cancellationMessage",
)

TaskQuery = Callable[[str], Awaitable[Any]]
CancelListener = Callable[[dict[str, Any]], None]


class CancellationRequested(RuntimeError):
    """Raised at a checkpoint once an operator has cancelled the task."""

    code = CANCELLED_ERROR_CODE

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or DEFAULT_CANCELLATION_REASON
        super().__init__(self.reason)


def _status_values(payload: dict[str, Any]) -> list[str]:
    values: list[str] = []
    for key in STATUS_KEYS:
        value = payload.get(key)
        if isinstance(value, str):
            values.append(value)
        elif isinstance(value, dict):
            for nested_key in ("status", "workflowStatus"):
                nested = value.get(nested_key)
                if isinstance(nested, str):
                    values.append(nested)
    return [value.strip().lower() for value in values if value.strip()]


def _has_cancellation_flag(payload: dict[str, Any]) -> bool:
    if any(payload.get(key) is True for key in CANCEL_FLAG_KEYS):
        return True
    if any(payload.get(key) for key in CANCEL_TIMESTAMP_KEYS):
        return True
    if payload.get("signal") in CANCEL_SIGNALS:
        return True
    last_signal = payload.get("lastSignal")
    return isinstance(last_signal, str) and last_signal.lower() in CANCEL_SIGNALS


def is_cancellation_payload(payload: Any) -> bool:
    """True when a remote task/workflow payload says the task was cancelled."""

    if not isinstance(payload, dict):
        return False
    if _has_cancellation_flag(payload):
        return True
    return any(status in CANCEL_STATUS_VALUES for status in _status_values(payload))


def extract_cancellation_reason(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    candidates = [payload.get(key) for key in REASON_KEYS]
    details = payload.get("details")
    if isinstance(details, dict):
        candidates.append(details.get("reason"))
    candidates.append(payload.get("signal_reason"))
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


class CancellationWatcher:
    """Polls ``query(task_id)`` until the task reports cancellation.

    Query failures are logged and the next poll is attempted. Listeners are
    notified once; after that the watcher stops polling.
    """

    def __init__(
        self,
        query: TaskQuery,
        task_id: str,
        *,
        poll_seconds: float = DEFAULT_CANCELLATION_POLL_SECONDS,
    ) -> None:
        if not task_id:
            raise ValueError("Task id is required for the cancellation watcher.")
        self.query = query
        self.task_id = task_id
        if poll_seconds and poll_seconds > 0:
            self.poll_seconds = max(MIN_CANCELLATION_POLL_SECONDS, float(poll_seconds))
        else:
            self.poll_seconds = DEFAULT_CANCELLATION_POLL_SECONDS
        self._payload: dict[str, Any] | None = None
        self._listeners: list[CancelListener] = []
        self._task: asyncio.Task[None] | None = None
        self._cancelled = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._payload is not None

    @property
    def payload(self) -> dict[str, Any] | None:
        return self._payload

    @property
    def reason(self) -> str:
        return extract_cancellation_reason(self._payload) or DEFAULT_CANCELLATION_REASON

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running or self.is_cancelled:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._poll_loop(), name=f"cancel-watch-{self.task_id}"
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        await self.stop()
        self._listeners.clear()

    async def _poll_loop(self) -> None:
        while not self.is_cancelled:
            await self.check()
            if self.is_cancelled:
                return
            await asyncio.sleep(self.poll_seconds)

    async def check(self) -> dict[str, Any] | None:
        if self._payload is not None:
            return self._payload
        try:
            status = await self.query(self.task_id)
        except Exception as exc:
            logger.warning("Cancellation poll for task %s failed: %s", self.task_id, exc)
            return None
        if is_cancellation_payload(status):
            self.mark_cancelled(status)
        return self._payload

    def mark_cancelled(self, payload: dict[str, Any]) -> None:
        self._payload = payload
        self._cancelled.set()
        logger.info("Task %s was cancelled: %s", self.task_id, self.reason)
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("Cancellation listener failed for task %s", self.task_id)

    def subscribe(self, listener: CancelListener) -> Callable[[], None]:
        """Register a listener and start polling. Returns an unsubscribe callable."""

        if self._payload is not None:
            listener(self._payload)
        else:
            self._listeners.append(listener)
            self.start()

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def wait(self) -> dict[str, Any]:
        await self._cancelled.wait()
        assert self._payload is not None
        return self._payload

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancellationRequested(self.reason)


def abort_if_cancelled(watcher: CancellationWatcher | None) -> None:
    """Checkpoint: raise CancellationRequested when the watcher has seen a cancel."""

    if watcher is not None:
        watcher.raise_if_cancelled()
