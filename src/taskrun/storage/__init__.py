from taskrun.storage.errors import (
    InvalidSlugError,
    LockHeld,
    RunFinalizedError,
    StorageError,
    StorageIOError,
    TaskExistsError,
    TaskNotFoundError,
)
from taskrun.storage.events import append_event, read_events
from taskrun.storage.layout import generate_run_id, slugify, validate_run_id, validate_slug
from taskrun.storage.locks import (
    LockHandle,
    acquire_task_lock,
    check_task_lock,
    release_task_lock,
    renew_task_lock,
    task_lock,
)
from taskrun.storage.store import GcResult, Run, RunRecord, TaskStore

__all__ = [
    "GcResult",
    "InvalidSlugError",
    "LockHandle",
    "LockHeld",
    "Run",
    "RunFinalizedError",
    "RunRecord",
    "StorageError",
    "StorageIOError",
    "TaskExistsError",
    "TaskNotFoundError",
    "TaskStore",
    "acquire_task_lock",
    "append_event",
    "check_task_lock",
    "generate_run_id",
    "read_events",
    "release_task_lock",
    "renew_task_lock",
    "slugify",
    "task_lock",
    "validate_run_id",
    "validate_slug",
]
