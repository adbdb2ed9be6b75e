from __future__ import annotations

from collections.abc import Mapping

from taskrun.backends.base import (
    AgentBackend,
    BackendExecutionError,
    SubprocessFailed,
    SubprocessTimeout,
)
from taskrun.backends.claude import ClaudeCodeBackend
from taskrun.backends.codex import CodexBackend
from taskrun.backends.gemini import GeminiBackend
from taskrun.backends.ollama import OllamaBackend
from taskrun.backends.process import (
    EngineCall,
    EngineResult,
    ProcessEvent,
    ProcessObserver,
    ProcessSupervisor,
    TailBuffer,
)
from taskrun.backends.resilient import ResilientRunner, RetryPolicy

BACKENDS: dict[str, type[AgentBackend]] = {
    "claude": ClaudeCodeBackend,
    "codex": CodexBackend,
    "gemini": GeminiBackend,
    "ollama": OllamaBackend,
}


def build_backend(name: str, binaries: Mapping[str, str] | None = None) -> AgentBackend:
    key = (name or "").strip().lower()
    backend_cls = BACKENDS.get(key)
    if backend_cls is None:
        raise ValueError(f"Unknown provider '{name}'. Expected one of: {', '.join(BACKENDS)}")
    return backend_cls(binary=(binaries or {}).get(key))


__all__ = [
    "BACKENDS",
    "AgentBackend",
    "BackendExecutionError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "EngineCall",
    "EngineResult",
    "GeminiBackend",
    "OllamaBackend",
    "ProcessEvent",
    "ProcessObserver",
    "ProcessSupervisor",
    "ResilientRunner",
    "RetryPolicy",
    "SubprocessFailed",
    "SubprocessTimeout",
    "TailBuffer",
    "build_backend",
]
