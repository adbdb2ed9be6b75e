from __future__ import annotations

from pathlib import Path


class StorageError(RuntimeError):
    """Raised when local task/run storage operations fail."""


class StorageIOError(StorageError):
    """Raised when the filesystem rejects a storage mutation."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidSlugError(StorageError, ValueError):
    """Raised for slugs, stages or run ids that do not match the layout rules."""


class TaskNotFoundError(StorageError):
    pass


class TaskExistsError(StorageError):
    pass


class RunFinalizedError(StorageError):
    """Raised when a finalized run is written to or finalized again."""


class LockHeld(StorageError):
    """Raised when another live holder owns the task lock."""

    def __init__(self, message: str, *, holder: dict | None = None) -> None:
        super().__init__(message)
        self.holder = holder or {}
