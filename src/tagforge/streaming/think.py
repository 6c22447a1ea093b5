from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"


@dataclass(frozen=True, slots=True)
class VisibleText:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingChanged:
    thinking: bool


Segment: TypeAlias = VisibleText | ThinkingChanged


def _partial_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if marker.startswith(text[-size:]):
            return size
    return 0


class ThinkTagFilter:
    """Strips ``<think>...</think>`` spans from a token stream.

    Markers may share a token with ordinary text, appear several times in one
    token, or be split across tokens; a trailing fragment that could still
    become a marker is held back until the next ``feed`` or ``flush``.
    """

    def __init__(self) -> None:
        self.thinking = False
        self._pending = ""

    def feed(self, token: str) -> list[Segment]:
        buffer = self._pending + token
        self._pending = ""
        segments: list[Segment] = []

        while buffer:
            marker = CLOSE_TAG if self.thinking else OPEN_TAG
            idx = buffer.find(marker)
            if idx >= 0:
                before = buffer[:idx]
                if before and not self.thinking:
                    segments.append(VisibleText(before))
                self.thinking = not self.thinking
                segments.append(ThinkingChanged(self.thinking))
                buffer = buffer[idx + len(marker):]
                continue

            hold = _partial_suffix(buffer, marker)
            emit = buffer[: len(buffer) - hold]
            if emit and not self.thinking:
                segments.append(VisibleText(emit))
            self._pending = buffer[len(buffer) - hold:]
            break

        return segments

    def flush(self) -> list[Segment]:
        pending, self._pending = self._pending, ""
        if pending and not self.thinking:
            return [VisibleText(pending)]
        return []
