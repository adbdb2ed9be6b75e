from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskrun.storage.atomic import ensure_dir, read_json_safe, write_json_atomic
from taskrun.storage.errors import LockHeld, StorageIOError
from taskrun.storage.layout import LOCK_FILE

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300.0
# A lock file that exists but is still empty is being written by its creator.
UNWRITTEN_LOCK_GRACE_SECONDS = 2.0
TAKEOVER_GUARD_STALE_SECONDS = 10.0

PROCESS_STARTED_AT = time.time()


@dataclass(slots=True)
class LockHandle:
    path: Path
    pid: int
    host: str
    token: str
    at: str
    started_at: float
    lease_seconds: float | None
    released: bool = False

    @property
    def task_root(self) -> Path:
        return self.path.parent


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def is_process_alive(pid: Any) -> bool:
    """Signal-0 check: True when a process with this pid exists."""

    try:
        pid_value = int(pid)
    except (TypeError, ValueError):
        return False
    if pid_value <= 0:
        return False
    try:
        os.kill(pid_value, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def lock_status(lock: Any, *, now: float | None = None) -> tuple[bool, str]:
    if not isinstance(lock, dict):
        return False, "no lock"
    pid = lock.get("pid")
    if not is_process_alive(pid):
        return False, "process dead"
    current = time.time() if now is None else now
    expires_epoch = lock.get("expires_epoch")
    if isinstance(expires_epoch, (int, float)) and expires_epoch < current:
        return False, "lease expired"
    started_at = lock.get("started_at")
    if pid == os.getpid() and started_at != PROCESS_STARTED_AT:
        return False, "own stale lock"
    return True, "valid"


def _lock_path(task_root: Path) -> Path:
    return Path(task_root) / LOCK_FILE


def _build_payload(lease_seconds: float | None) -> dict[str, Any]:
    now = time.time()
    return {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "at": _utcnow_iso(),
        "started_at": PROCESS_STARTED_AT,
        "token": uuid.uuid4().hex,
        "expires_epoch": (now + lease_seconds) if lease_seconds else None,
    }


def _create_exclusive(path: Path, payload: dict[str, Any]) -> bool:
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    except OSError as exc:
        raise StorageIOError(f"Unable to create lock {path}: {exc}", path=path) from exc
    try:
        os.write(fd, json.dumps(payload, ensure_ascii=False).encode("utf-8"))
        os.fsync(fd)
    finally:
        os.close(fd)
    return True


def _file_age_seconds(path: Path) -> float | None:
    try:
        return time.time() - path.stat().st_mtime
    except FileNotFoundError:
        return None


@contextmanager
def _takeover_guard(lock_path: Path) -> Iterator[bool]:
    guard = lock_path.with_name(f"{lock_path.name}.takeover")
    age = _file_age_seconds(guard)
    if age is not None and age > TAKEOVER_GUARD_STALE_SECONDS:
        try:
            guard.unlink()
        except FileNotFoundError:
            pass
    acquired = _create_exclusive(guard, {"pid": os.getpid(), "at": _utcnow_iso()})
    try:
        yield acquired
    finally:
        if acquired:
            try:
                guard.unlink()
            except FileNotFoundError:
                pass


def acquire_task_lock(
    task_root: Path, *, lease_seconds: float | None = DEFAULT_LEASE_SECONDS
) -> LockHandle:
    """Take the exclusive lock for a task root or raise LockHeld."""

    ensure_dir(Path(task_root))
    lock_path = _lock_path(task_root)
    payload = _build_payload(lease_seconds)

    if not _create_exclusive(lock_path, payload):
        existing = read_json_safe(lock_path)
        if existing is None:
            age = _file_age_seconds(lock_path)
            if age is not None and age < UNWRITTEN_LOCK_GRACE_SECONDS:
                raise LockHeld(f"Task lock at {lock_path} is being acquired by another process.")
        valid, reason = lock_status(existing)
        if valid:
            raise LockHeld(
                f"Task is locked by process {existing.get('pid')} on "
                f"{existing.get('host', 'unknown')} since {existing.get('at')}.",
                holder=existing,
            )
        with _takeover_guard(lock_path) as guarded:
            if not guarded:
                raise LockHeld(f"Task lock at {lock_path} is being taken over by another process.")
            current = read_json_safe(lock_path)
            if current is not None and current != existing:
                raise LockHeld(
                    f"Task lock at {lock_path} changed hands during takeover.", holder=current
                )
            logger.warning("Taking over task lock %s (%s)", lock_path, reason)
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass
            if not _create_exclusive(lock_path, payload):
                raise LockHeld(f"Task lock at {lock_path} was taken by another process.")

    verification = read_json_safe(lock_path)
    if not isinstance(verification, dict) or verification.get("token") != payload["token"]:
        raise LockHeld(
            f"Failed to acquire task lock at {lock_path}; another process may have taken it.",
            holder=verification if isinstance(verification, dict) else None,
        )

    return LockHandle(
        path=lock_path,
        pid=payload["pid"],
        host=payload["host"],
        token=payload["token"],
        at=payload["at"],
        started_at=payload["started_at"],
        lease_seconds=lease_seconds,
    )


def release_task_lock(handle: LockHandle) -> bool:
    """Remove the lock if this handle still owns it. Safe to call repeatedly."""

    if handle.released:
        return False
    deleted = False
    try:
        current = read_json_safe(handle.path)
        if isinstance(current, dict) and current.get("token") == handle.token:
            handle.path.unlink()
            deleted = True
        elif current is not None:
            logger.warning("Lock %s is owned by another holder; leaving it in place.", handle.path)
    except FileNotFoundError:
        pass
    except (OSError, StorageIOError) as exc:
        logger.warning("Failed to release lock %s: %s", handle.path, exc)
    handle.released = True
    return deleted


def renew_task_lock(handle: LockHandle) -> None:
    if handle.released:
        raise LockHeld(f"Lock {handle.path} was already released.")
    current = read_json_safe(handle.path)
    if not isinstance(current, dict) or current.get("token") != handle.token:
        raise LockHeld(
            f"Lock {handle.path} is no longer owned by this process.",
            holder=current if isinstance(current, dict) else None,
        )
    if not handle.lease_seconds:
        return
    current["expires_epoch"] = time.time() + handle.lease_seconds
    current["renewed_at"] = _utcnow_iso()
    write_json_atomic(handle.path, current)


def read_task_lock(task_root: Path) -> dict[str, Any] | None:
    lock = read_json_safe(_lock_path(task_root))
    return lock if isinstance(lock, dict) else None


def check_task_lock(task_root: Path) -> dict[str, Any] | None:
    """Return the lock payload when a valid holder exists."""

    lock = read_task_lock(task_root)
    valid, _ = lock_status(lock)
    return lock if valid else None


def clean_stale_lock(task_root: Path) -> bool:
    lock_path = _lock_path(task_root)
    lock = read_json_safe(lock_path)
    if lock is None:
        return False
    valid, reason = lock_status(lock)
    if valid:
        return False
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass
    logger.info("Removed stale lock %s (%s)", lock_path, reason)
    return True


@contextmanager
def task_lock(
    task_root: Path, *, lease_seconds: float | None = DEFAULT_LEASE_SECONDS
) -> Iterator[LockHandle]:
    handle = acquire_task_lock(task_root, lease_seconds=lease_seconds)
    try:
        yield handle
    finally:
        release_task_lock(handle)
