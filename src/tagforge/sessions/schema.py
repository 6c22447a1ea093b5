import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal

Category = Literal["chat", "generator"]
CATEGORIES: tuple[str, ...] = ("chat", "generator")

_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


class MessageRole(str, Enum):
    USER = "User"
    ASSISTANT = "Assistant"
    SYSTEM = "System"
    ERROR = "Error"


class Message(BaseModel):
    # Legacy transcripts were written with PascalCase keys.
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)

    role: MessageRole
    content: str = ""
    is_thinking: bool = False
    is_loading_model: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)
    details: str | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _trim_fraction(cls, value: Any) -> Any:
        # .NET writes seven fractional digits.
        if isinstance(value, str):
            return _LONG_FRACTION.sub(r"\1", value, count=1)
        return value

    def dump(self) -> dict:
        return self.model_dump(mode="json")


class Session(BaseModel):
    id: str
    category: Category
    title: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    last_modified: datetime = Field(default_factory=datetime.now)
    message_count: int = 0
    preview_text: str = ""
    custom_title: bool = False
    is_active: bool = Field(default=False, exclude=True)

    @field_validator("created_at", "last_modified", mode="after")
    @classmethod
    def _naive_local(cls, value: datetime) -> datetime:
        # Index ordering compares these, so keep them all naive local time.
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value


class SessionIndex(BaseModel):
    sessions: list[Session] = Field(default_factory=list)

    def deduplicated(self) -> "SessionIndex":
        """One entry per id; the latest ``last_modified`` wins."""
        latest: dict[str, Session] = {}
        for session in self.sessions:
            current = latest.get(session.id)
            if current is None or session.last_modified >= current.last_modified:
                latest[session.id] = session
        ordered = sorted(latest.values(), key=lambda s: s.last_modified, reverse=True)
        return SessionIndex(sessions=ordered)

    def get(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None
