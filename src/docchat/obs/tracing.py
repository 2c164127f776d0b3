"""Timing helpers shared by the context assembler, tools and engine."""

from __future__ import annotations

import time
from collections.abc import Callable

from docchat.types import ChatEvent

EventObserver = Callable[[ChatEvent], None]


class Timer:
    """Simple context timer used around provider, vectorstore and tool calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0

    @property
    def seconds(self) -> float:
        return self.elapsed_ms / 1000.0


def timer_event(name: str, duration: float) -> ChatEvent:
    """A `timer` event; duration is in seconds."""
    return ChatEvent(type="timer", value={"name": name, "duration": duration})


def since(start: float) -> float:
    """Seconds elapsed since a `time.perf_counter()` reading."""
    return time.perf_counter() - start


def emit(observer: EventObserver | None, event: ChatEvent) -> None:
    if observer is not None:
        observer(event)
