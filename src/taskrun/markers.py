"""Inline progress markers emitted by agents, e.g. ``[checkpoint: tests green]``."""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

MARKER_PATTERN = re.compile(r"\[(?P<kind>[a-z]+)(?::\s*(?P<body>[^\]\n]*))?\]", re.IGNORECASE)
PROGRESS_PATTERN = re.compile(r"^(\d{1,3})\s*%?$")


@dataclass(slots=True, frozen=True)
class Marker:
    kind: ClassVar[str] = ""

    @property
    def text(self) -> str:
        return ""

    @property
    def log_line(self) -> str:
        return f"[{self.kind}] {self.text}".rstrip()


@dataclass(slots=True, frozen=True)
class Checkpoint(Marker):
    kind: ClassVar[str] = "checkpoint"
    message: str

    @property
    def text(self) -> str:
        return self.message


@dataclass(slots=True, frozen=True)
class Learn(Marker):
    kind: ClassVar[str] = "learn"
    insight: str

    @property
    def text(self) -> str:
        return self.insight

    @property
    def log_line(self) -> str:
        return f"[learning] {self.insight}"


@dataclass(slots=True, frozen=True)
class Progress(Marker):
    kind: ClassVar[str] = "progress"
    percent: int

    @property
    def text(self) -> str:
        return f"{self.percent}%"


@dataclass(slots=True, frozen=True)
class Blocked(Marker):
    kind: ClassVar[str] = "blocked"
    reason: str

    @property
    def text(self) -> str:
        return self.reason


@dataclass(slots=True, frozen=True)
class Done(Marker):
    kind: ClassVar[str] = "done"

    @property
    def text(self) -> str:
        return "Stage marked complete"


@dataclass(slots=True, frozen=True)
class Complete(Marker):
    kind: ClassVar[str] = "complete"
    message: str

    @property
    def text(self) -> str:
        return self.message


@dataclass(slots=True, frozen=True)
class Log(Marker):
    kind: ClassVar[str] = "log"
    message: str

    @property
    def text(self) -> str:
        return self.message


@dataclass(slots=True, frozen=True)
class Plan(Marker):
    kind: ClassVar[str] = "plan"
    plan: str

    @property
    def text(self) -> str:
        return self.plan


@dataclass(slots=True, frozen=True)
class Todo(Marker):
    kind: ClassVar[str] = "todo"
    item: str

    @property
    def text(self) -> str:
        return self.item


_TEXT_MARKERS: dict[str, Callable[[str], Marker]] = {
    "checkpoint": Checkpoint,
    "learn": Learn,
    "blocked": Blocked,
    "complete": Complete,
    "log": Log,
    "plan": Plan,
    "todo": Todo,
}


def _build_marker(kind: str, body: str | None) -> Marker | None:
    kind = kind.lower()
    if kind == "done":
        return Done() if body is None else None
    if kind == "progress":
        match = PROGRESS_PATTERN.match((body or "").strip())
        if not match:
            return None
        return Progress(percent=min(100, int(match.group(1))))
    factory = _TEXT_MARKERS.get(kind)
    if factory is None:
        return None
    text = (body or "").strip()
    return factory(text) if text else None


def parse_markers(text: str | None) -> list[Marker]:
    """All recognised markers in order of appearance. Unknown tags are ignored."""

    if not text:
        return []
    markers: list[Marker] = []
    for match in MARKER_PATTERN.finditer(text):
        marker = _build_marker(match.group("kind"), match.group("body"))
        if marker is not None:
            markers.append(marker)
    return markers


MarkerHandler = Callable[[Any], Awaitable[None] | None]


class MarkerDispatcher:
    """Routes parsed markers to per-type handlers.

    A handler registered for ``Marker`` receives every marker. Handler failures
    are logged and never interrupt the iteration.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[Marker], list[MarkerHandler]] = {}

    def register(self, marker_type: type[Marker], handler: MarkerHandler) -> None:
        self._handlers.setdefault(marker_type, []).append(handler)

    def handlers_for(self, marker: Marker) -> list[MarkerHandler]:
        return [*self._handlers.get(type(marker), []), *self._handlers.get(Marker, [])]

    async def dispatch(self, markers: Iterable[Marker]) -> int:
        handled = 0
        for marker in markers:
            for handler in self.handlers_for(marker):
                try:
                    result = handler(marker)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.warning("Marker handler failed for %s", marker.log_line, exc_info=True)
                    continue
                handled += 1
        return handled
