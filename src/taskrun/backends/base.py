from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Mapping


class BackendExecutionError(RuntimeError):
    """Raised when an agent process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class SubprocessTimeout(BackendExecutionError):
    """Raised when an agent process exceeds its hard timeout."""


class SubprocessFailed(BackendExecutionError):
    """Raised when an agent process exits nonzero or cannot be spawned."""


class AgentBackend(ABC):
    """Knows how to turn a prompt into an agent command line."""

    name: str = ""
    default_binary: str = ""
    default_model: str = ""

    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or self.default_binary

    @abstractmethod
    def build_command(self, prompt: str, model: str | None = None) -> list[str]:
        """Return the argv that runs this agent on the prompt."""

    def build_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        env["TERM"] = "dumb"
        return env

    def resolve_model(self, model: str | None) -> str:
        return (model or "").strip() or self.default_model
