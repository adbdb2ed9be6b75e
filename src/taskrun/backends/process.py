"""Supervised agent subprocesses.

``ProcessSupervisor.run`` spawns one agent call, streams its output to the
subscribed observers, keeps bounded tails of both streams and enforces the
hard timeout and cooperative cancellation.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from taskrun.backends.base import AgentBackend, SubprocessFailed, SubprocessTimeout
from taskrun.cancellation import CancellationRequested, CancellationWatcher

logger = logging.getLogger(__name__)

TAIL_LIMIT = 4000
READ_CHUNK_BYTES = 4096
DEFAULT_KILL_GRACE_SECONDS = 0.5
# Upper bound on draining pipes after a kill; grandchildren may hold them open.
DRAIN_AFTER_KILL_SECONDS = 5.0

ProcessEventKind = Literal["started", "stdout", "stderr", "exit", "error", "timeout", "cancel"]


class TailBuffer:
    """Keeps the last ``limit`` characters written to it."""

    def __init__(self, limit: int = TAIL_LIMIT) -> None:
        self.limit = limit
        self._text = ""

    def append(self, chunk: str) -> None:
        if not chunk:
            return
        self._text = (self._text + chunk)[-self.limit :]

    @property
    def text(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)


def new_trace_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(slots=True)
class EngineCall:
    backend: AgentBackend
    prompt: str
    model: str = ""
    role: str = "execute"
    label: str = ""
    timeout_seconds: float | None = None
    cwd: Path | None = None
    attempt: int = 0
    trace_id: str = field(default_factory=new_trace_id)

    @property
    def provider(self) -> str:
        return self.backend.name

    @property
    def display_label(self) -> str:
        return self.label or f"{self.provider}:{self.role}"

    def command(self) -> list[str]:
        return self.backend.build_command(self.prompt, self.model or None)


@dataclass(slots=True)
class ProcessEvent:
    kind: ProcessEventKind
    call: EngineCall
    pid: int | None = None
    data: str = ""
    exit_code: int | None = None
    duration_ms: int | None = None
    error: str | None = None
    stdout_tail: str = ""
    stderr_tail: str = ""


ProcessObserver = Callable[[ProcessEvent], None]


@dataclass(slots=True)
class EngineResult:
    call: EngineCall
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    pid: int | None = None

    @property
    def provider(self) -> str:
        return self.call.provider

    @property
    def output(self) -> str:
        return self.stdout.strip()


def signal_process_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(sig)


async def terminate_process_group(
    process: asyncio.subprocess.Process, grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
) -> None:
    """SIGTERM the process group, then SIGKILL once the grace window passes."""

    if process.returncode is not None:
        return
    signal_process_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        signal_process_group(process, signal.SIGKILL)
        await process.wait()


class ProcessSupervisor:
    def __init__(
        self,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        observers: Iterable[ProcessObserver] = (),
    ) -> None:
        self.kill_grace_seconds = kill_grace_seconds
        self._observers: list[ProcessObserver] = list(observers)

    def subscribe(self, observer: ProcessObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def _publish(self, event: ProcessEvent, extra: Iterable[ProcessObserver]) -> None:
        for observer in [*self._observers, *extra]:
            try:
                observer(event)
            except Exception:
                logger.exception("Process observer failed on %s event", event.kind)

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        await terminate_process_group(process, self.kill_grace_seconds)

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        signal_process_group(process, signal.SIGKILL)
        await process.wait()

    async def run(
        self,
        call: EngineCall,
        *,
        cancellation: CancellationWatcher | None = None,
        observers: Iterable[ProcessObserver] = (),
    ) -> EngineResult:
        extra = list(observers)
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        command = call.command()
        started = time.monotonic()

        def _elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(call.cwd) if call.cwd else None,
                env=call.backend.build_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            message = f"{call.provider} binary not found: {command[0]}"
            self._publish(
                ProcessEvent("error", call, error=message, duration_ms=_elapsed_ms()), extra
            )
            raise SubprocessFailed(message, backend=call.provider, retriable=False) from exc

        pid = process.pid
        logger.debug("Spawned %s (pid %s)", call.display_label, pid)
        self._publish(ProcessEvent("started", call, pid=pid), extra)

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        stdout_tail = TailBuffer()
        stderr_tail = TailBuffer()

        async def _pump(
            stream: asyncio.StreamReader | None,
            kind: ProcessEventKind,
            chunks: list[str],
            tail: TailBuffer,
        ) -> None:
            if stream is None:
                return
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                data = await stream.read(READ_CHUNK_BYTES)
                text = decoder.decode(data, final=not data)
                if text:
                    chunks.append(text)
                    tail.append(text)
                    self._publish(ProcessEvent(kind, call, pid=pid, data=text), extra)
                if not data:
                    return

        async def _complete() -> int:
            await asyncio.gather(
                _pump(process.stdout, "stdout", stdout_chunks, stdout_tail),
                _pump(process.stderr, "stderr", stderr_chunks, stderr_tail),
            )
            return await process.wait()

        def _event(kind: ProcessEventKind, **fields: object) -> ProcessEvent:
            return ProcessEvent(
                kind,
                call,
                pid=pid,
                duration_ms=_elapsed_ms(),
                stdout_tail=stdout_tail.text,
                stderr_tail=stderr_tail.text,
                **fields,  # type: ignore[arg-type]
            )

        async def _drain() -> None:
            try:
                await asyncio.wait_for(asyncio.shield(completion), timeout=DRAIN_AFTER_KILL_SECONDS)
            except TimeoutError:
                completion.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await completion

        completion = asyncio.ensure_future(_complete())
        waiters: set[asyncio.Future[Any]] = {completion}
        cancel_wait: asyncio.Future[Any] | None = None
        if cancellation is not None:
            cancel_wait = asyncio.ensure_future(cancellation.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=call.timeout_seconds or None, return_when=asyncio.FIRST_COMPLETED
            )
            if completion not in done:
                if cancel_wait is not None and cancel_wait in done:
                    assert cancellation is not None
                    logger.info("Cancelling %s (pid %s): %s", call.display_label, pid, cancellation.reason)
                    await self.terminate(process)
                    await _drain()
                    self._publish(_event("cancel", error=cancellation.reason), extra)
                    raise CancellationRequested(cancellation.reason)

                logger.warning(
                    "%s timed out after %.1fs (pid %s)", call.display_label, call.timeout_seconds, pid
                )
                await self._kill(process)
                await _drain()
                message = f"{call.provider} timed out after {call.timeout_seconds:.1f}s"
                self._publish(_event("timeout", error=message), extra)
                raise SubprocessTimeout(message, backend=call.provider, retriable=False)
        except asyncio.CancelledError:
            await self.terminate(process)
            completion.cancel()
            raise
        finally:
            if cancel_wait is not None and not cancel_wait.done():
                cancel_wait.cancel()

        exit_code = completion.result()
        duration_ms = _elapsed_ms()
        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        self._publish(_event("exit", exit_code=exit_code), extra)
        # Exit checkpoint: a cancel that lands as the process exits still wins.
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        if exit_code != 0:
            detail = stderr_tail.text.strip()[-400:]
            raise SubprocessFailed(
                f"{call.provider} exited with code {exit_code}: {detail}",
                backend=call.provider,
                exit_code=exit_code,
                retriable=True,
            )
        return EngineResult(
            call=call,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
            pid=pid,
        )
