from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, TypeAlias

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScrollRequestedEvent:
    session_id: str


@dataclass(frozen=True, slots=True)
class MessageUpdatedEvent:
    session_id: str
    delta: str


@dataclass(frozen=True, slots=True)
class GenerationStateEvent:
    session_id: str
    is_generating: bool


@dataclass(frozen=True, slots=True)
class GenerationFinishedEvent:
    session_id: str
    state: str
    latency_ms: int | None = None


@dataclass(frozen=True, slots=True)
class SessionListChangedEvent:
    category: str | None = None


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    source: str | None = None


Event: TypeAlias = (
    ScrollRequestedEvent
    | MessageUpdatedEvent
    | GenerationStateEvent
    | GenerationFinishedEvent
    | SessionListChangedEvent
    | ErrorEvent
)
EventCallback: TypeAlias = Callable[[Event], None]


class EventEmitter:
    """Fan-out of core notifications.

    Events are emitted from whichever worker thread produced them; subscribers
    are responsible for marshalling onto their own thread.
    """

    def __init__(self, callback: EventCallback | None = None):
        self._lock = threading.Lock()
        self._callbacks: list[EventCallback] = []
        if callback is not None:
            self._callbacks.append(callback)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: Event) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Event subscriber failed on {type(event).__name__}")
