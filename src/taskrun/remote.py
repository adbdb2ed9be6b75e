"""Client for the remote task queue API."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from taskrun.config import RemoteConfig

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
LOG_TYPES = frozenset({"output", "error", "system", "checkpoint"})


class RemoteAPIError(RuntimeError):
    """Raised when the queue API rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        method: str = "",
        path: str = "",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.path = path


def build_terminal_patch(
    decision: str | None, new_stage: str | None = None, *, now: str | None = None
) -> dict[str, Any] | None:
    """Status patch that makes a finished task terminal on the board, if any applies."""

    stage = (new_stage or "").strip().lower()
    value = (decision or "").strip().lower()
    timestamp = now or datetime.now(UTC).replace(microsecond=0).isoformat()
    if stage == "done" or value == "done":
        return {"status": "completed", "completed_at": timestamp}
    if value == "failed":
        return {"status": "failed", "completed_at": timestamp}
    if value == "blocked":
        return {"status": "blocked"}
    return None


class QueueClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        user_id: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json", "x-user-id": user_id or ""}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    @classmethod
    def from_config(
        cls, config: RemoteConfig, *, transport: httpx.AsyncBaseTransport | None = None
    ) -> QueueClient:
        return cls(
            config.base_url,
            api_key=config.api_key,
            user_id=config.user_id,
            timeout_seconds=config.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> QueueClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def _request(
        self, method: str, path: str, payload: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            raise RemoteAPIError(f"{method} {path} timed out", method=method, path=path) from exc
        except httpx.HTTPError as exc:
            raise RemoteAPIError(f"{method} {path} failed: {exc}", method=method, path=path) from exc

        try:
            data = response.json()
        except ValueError:
            data = None
        if not response.is_success:
            detail = data.get("error") if isinstance(data, dict) else None
            raise RemoteAPIError(
                str(detail or f"HTTP {response.status_code}"),
                status_code=response.status_code,
                method=method,
                path=path,
            )
        return data if isinstance(data, dict) else {}

    # Queue

    async def get_next_task(self) -> dict[str, Any] | None:
        data = await self._request("GET", "/api/queue")
        task = data.get("task")
        return task if isinstance(task, dict) and task.get("id") else None

    async def complete_task(self, task_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/api/queue/complete", {"taskId": task_id, **payload})

    # Tasks

    async def get_task(self, task_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"/api/tasks/{task_id}")
        task = data.get("task")
        return task if isinstance(task, dict) else data

    async def patch_task(self, task_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/api/tasks/{task_id}", patch)

    async def post_comment(self, task_id: str, content: str) -> dict[str, Any] | None:
        if not content or not content.strip():
            return None
        return await self._request("POST", f"/api/tasks/{task_id}/comments", {"content": content})

    async def post_log(
        self, task_id: str, content: str, log_type: str = "output"
    ) -> dict[str, Any] | None:
        if not content or not content.strip():
            return None
        normalized = log_type if log_type in LOG_TYPES else "output"
        return await self._request(
            "POST", f"/api/tasks/{task_id}/logs", {"content": content, "log_type": normalized}
        )

    # Best-effort variants used for telemetry; failures are logged only.

    async def patch_task_safe(self, task_id: str, patch: dict[str, Any]) -> bool:
        try:
            await self.patch_task(task_id, patch)
        except RemoteAPIError as exc:
            logger.warning("Failed to patch task %s: %s", task_id, exc)
            return False
        return True

    async def post_comment_safe(self, task_id: str, content: str) -> bool:
        try:
            await self.post_comment(task_id, content)
        except RemoteAPIError as exc:
            logger.warning("Failed to post comment on task %s: %s", task_id, exc)
            return False
        return True

    async def post_log_safe(self, task_id: str, content: str, log_type: str = "output") -> bool:
        try:
            await self.post_log(task_id, content, log_type)
        except RemoteAPIError as exc:
            logger.warning("Failed to post log for task %s: %s", task_id, exc)
            return False
        return True
