import logging
import threading
from enum import Enum

from common.events import Event, EventEmitter, SessionListChangedEvent
from tagforge.sessions.schema import CATEGORIES, Session
from tagforge.sessions.store import SessionStore

logger = logging.getLogger(__name__)


class CategoryFilter(str, Enum):
    ALL = "all"
    CHAT = "chat"
    GENERATOR = "generator"


class SessionCatalog:
    """Filtered, searchable view over every category's index."""

    def __init__(self, store: SessionStore, emitter: EventEmitter | None = None):
        self.store = store
        self.search_text = ""
        self.category_filter = CategoryFilter.ALL
        self._lock = threading.Lock()
        self._all: list[Session] = []
        self._visible: list[Session] = []
        if emitter is not None:
            emitter.subscribe(self._on_event)

    @property
    def sessions(self) -> list[Session]:
        with self._lock:
            return list(self._visible)

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._visible

    def refresh(self) -> list[Session]:
        combined: list[Session] = []
        for category in CATEGORIES:
            combined.extend(self.store.load_index(category))
        combined.sort(key=lambda s: s.last_modified, reverse=True)
        with self._lock:
            self._all = combined
            self._apply()
            return list(self._visible)

    def set_search(self, text: str) -> list[Session]:
        with self._lock:
            self.search_text = text or ""
            self._apply()
            return list(self._visible)

    def set_filter(self, category_filter: CategoryFilter | str) -> list[Session]:
        with self._lock:
            self.category_filter = CategoryFilter(category_filter)
            self._apply()
            return list(self._visible)

    def _apply(self) -> None:
        query = self.search_text.strip().lower()
        wanted = self.category_filter
        self._visible = [
            s
            for s in self._all
            if (wanted is CategoryFilter.ALL or s.category == wanted.value)
            and (not query or query in s.title.lower() or query in s.preview_text.lower())
        ]

    def _on_event(self, event: Event) -> None:
        if isinstance(event, SessionListChangedEvent):
            logger.debug(f"Session list changed ({event.category or 'all'}); refreshing")
            self.refresh()
