from datetime import datetime
from typing import Iterable

from tagforge.sessions.schema import Message, MessageRole

TITLE_MAX_CHARS = 50
PREVIEW_MAX_CHARS = 100
ELLIPSIS = "..."


def _flatten(text: str) -> str:
    return " ".join(part.strip() for part in text.strip().splitlines() if part.strip())


def fallback_title(now: datetime | None = None) -> str:
    return f"Chat - {(now or datetime.now()).strftime('%Y-%m-%d %H:%M')}"


def title_from_text(text: str) -> str:
    flat = _flatten(text)
    if len(flat) <= TITLE_MAX_CHARS:
        return flat
    cut = flat[:TITLE_MAX_CHARS]
    space = cut.rfind(" ")
    if space > 0:
        cut = cut[:space]
    return cut.rstrip() + ELLIPSIS


def derive_title(messages: Iterable[Message], fallback: str | None = None) -> str:
    for message in messages:
        if message.role == MessageRole.USER and message.content.strip():
            return title_from_text(message.content)
    return fallback or fallback_title()


def derive_preview(messages: Iterable[Message]) -> str:
    for message in messages:
        if message.role == MessageRole.ASSISTANT and message.content.strip():
            flat = _flatten(message.content)
            if len(flat) <= PREVIEW_MAX_CHARS:
                return flat
            return flat[: PREVIEW_MAX_CHARS - len(ELLIPSIS)].rstrip() + ELLIPSIS
    return ""
