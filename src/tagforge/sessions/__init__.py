from tagforge.sessions.schema import CATEGORIES, Category, Message, MessageRole, Session, SessionIndex
from tagforge.sessions.store import LEGACY_FILES, SessionStore

__all__ = [
    "CATEGORIES",
    "Category",
    "Message",
    "MessageRole",
    "Session",
    "SessionIndex",
    "LEGACY_FILES",
    "SessionStore",
]
