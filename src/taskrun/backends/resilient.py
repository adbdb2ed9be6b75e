from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from taskrun.backends.base import BackendExecutionError
from taskrun.backends.process import (
    EngineCall,
    EngineResult,
    ProcessObserver,
    ProcessSupervisor,
    new_trace_id,
)
from taskrun.cancellation import CancellationWatcher

logger = logging.getLogger(__name__)

RunnerEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientRunner:
    """Runs engine calls through the supervisor with retry and exponential backoff.

    Timeouts, non-retriable failures and cancellation are never retried.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        retry_policy: RetryPolicy | None = None,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def run(
        self,
        call: EngineCall,
        *,
        cancellation: CancellationWatcher | None = None,
        observers: Iterable[ProcessObserver] = (),
    ) -> EngineResult:
        observer_list = list(observers)
        errors: list[str] = []
        last_error: BackendExecutionError | None = None

        for attempt in range(self.retry_policy.max_retries + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                self._emit(
                    {
                        "event": "engine_retry",
                        "provider": call.provider,
                        "role": call.role,
                        "attempt": attempt,
                        "delay_seconds": delay,
                    }
                )
                logger.info(
                    "Retrying %s in %.2fs (attempt %d)", call.display_label, delay, attempt
                )
                await asyncio.sleep(delay)
                if cancellation is not None:
                    cancellation.raise_if_cancelled()

            attempt_call = replace(call, attempt=attempt, trace_id=new_trace_id())
            try:
                return await self.supervisor.run(
                    attempt_call, cancellation=cancellation, observers=observer_list
                )
            except BackendExecutionError as exc:
                last_error = exc
                errors.append(f"{call.provider}[{attempt}]: {exc}")
                self._emit(
                    {
                        "event": "engine_attempt_failed",
                        "provider": call.provider,
                        "role": call.role,
                        "attempt": attempt,
                        "error": str(exc),
                        "retriable": exc.retriable,
                    }
                )
                logger.warning("%s attempt %d failed: %s", call.display_label, attempt, exc)
                if not exc.retriable:
                    raise

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All attempts failed for {call.display_label}. {summary}",
            backend=call.provider,
            exit_code=last_error.exit_code if last_error else None,
            retriable=False,
        ) from last_error
