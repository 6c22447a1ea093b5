import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable

from common.ids import category_from_id, unique_session_id
from common.jsonio import atomic_write_json, load_json, remove_file
from tagforge.sessions.schema import CATEGORIES, Message, Session, SessionIndex
from tagforge.sessions.titles import derive_preview, derive_title, fallback_title

logger = logging.getLogger(__name__)

# Single flat transcripts written by older releases, keyed by file name.
LEGACY_FILES = {
    "history.json": "chat",
    "generation_history.json": "generator",
}

PERSISTENCE_ERRORS = (OSError, ValueError, TypeError)


def parse_messages(data: Any, *, source: str = "transcript") -> list[Message]:
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        logger.warning(f"Ignoring {source}: expected a list of messages")
        return []
    try:
        return [Message.model_validate(item) for item in data]
    except ValueError as e:
        logger.warning(f"Ignoring unparsable {source}: {e}")
        return []


class SessionStore:
    """Per-category transcripts plus a denormalized index over them.

    Layout under ``data_dir``::

        sessions_index_chat.json
        sessions_index_generator.json
        chat/<session id>.json
        generator/<session id>.json

    The index is a cache; it is rebuilt from the transcript files whenever it
    is missing, corrupt, or lists a different set of ids than the directory.
    None of the public methods raise on I/O problems.

    When both are needed, a session lock is always taken before its
    category's index lock.
    """

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)
        self._locks_guard = threading.Lock()
        self._session_locks: dict[str, threading.RLock] = {}
        self._index_locks = {category: threading.RLock() for category in CATEGORIES}

    # -- paths and locks -------------------------------------------------

    def index_path(self, category: str) -> Path:
        return self.data_dir / f"sessions_index_{category}.json"

    def category_dir(self, category: str) -> Path:
        return self.data_dir / category

    def transcript_path(self, session_id: str, category: str) -> Path:
        return self.category_dir(category) / f"{session_id}.json"

    def session_lock(self, session_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = threading.RLock()
                self._session_locks[session_id] = lock
            return lock

    def _index_lock(self, category: str) -> threading.RLock:
        try:
            return self._index_locks[category]
        except KeyError:
            raise ValueError(f"Unknown session category: {category!r}") from None

    def _resolve_category(self, session_id: str, category: str | None) -> str:
        resolved = category or category_from_id(session_id)
        if resolved not in CATEGORIES:
            raise ValueError(f"Cannot determine category for session {session_id!r}")
        return resolved

    # -- index -----------------------------------------------------------

    def _read_index(self, category: str) -> SessionIndex | None:
        data = load_json(self.index_path(category))
        if not isinstance(data, dict):
            return None
        try:
            return SessionIndex.model_validate(data)
        except ValueError as e:
            logger.warning(f"Corrupt {category} index: {e}")
            return None

    def _write_index(self, category: str, sessions: Iterable[Session]) -> list[Session]:
        index = SessionIndex(sessions=list(sessions)).deduplicated()
        atomic_write_json(self.index_path(category), index.model_dump(mode="json"))
        return index.sessions

    def _transcript_files(self, category: str) -> list[Path]:
        directory = self.category_dir(category)
        if not directory.exists():
            return []
        return sorted(p for p in directory.glob("*.json") if not p.name.startswith("."))

    def load_index(self, category: str) -> list[Session]:
        try:
            with self._index_lock(category):
                index = self._read_index(category)
                if index is None:
                    logger.info(f"Index for {category} missing or unreadable; rebuilding")
                    return self._rebuild_index(category, previous=None)
                index = index.deduplicated()
                on_disk = {p.stem for p in self._transcript_files(category)}
                if {s.id for s in index.sessions} != on_disk:
                    logger.info(f"Index for {category} out of sync with transcripts; rebuilding")
                    return self._rebuild_index(category, previous=index)
                return index.sessions
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to load {category} index")
            return []

    def rebuild_index(self, category: str) -> list[Session]:
        try:
            with self._index_lock(category):
                return self._rebuild_index(category, previous=self._read_index(category))
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to rebuild {category} index")
            return []

    def _rebuild_index(self, category: str, previous: SessionIndex | None) -> list[Session]:
        sessions: list[Session] = []
        for path in self._transcript_files(category):
            old = previous.get(path.stem) if previous else None
            messages = parse_messages(load_json(path), source=str(path))
            stat = path.stat()
            modified = datetime.fromtimestamp(stat.st_mtime)
            created = datetime.fromtimestamp(min(stat.st_ctime, stat.st_mtime))
            if old is not None and old.custom_title:
                title = old.title
            else:
                title = derive_title(messages, fallback=fallback_title(modified))
            sessions.append(
                Session(
                    id=path.stem,
                    category=category,
                    title=title,
                    created_at=old.created_at if old else created,
                    last_modified=modified,
                    message_count=len(messages),
                    preview_text=derive_preview(messages),
                    custom_title=bool(old and old.custom_title),
                )
            )
        logger.info(f"Rebuilt {category} index with {len(sessions)} sessions")
        return self._write_index(category, sessions)

    # -- transcripts -----------------------------------------------------

    def load_transcript(self, session_id: str, category: str | None = None) -> list[Message]:
        try:
            category = self._resolve_category(session_id, category)
            with self.session_lock(session_id):
                return self._read_transcript(session_id, category)
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to load transcript {session_id}")
            return []

    def _read_transcript(self, session_id: str, category: str) -> list[Message]:
        path = self.transcript_path(session_id, category)
        return parse_messages(load_json(path), source=str(path))

    def save_transcript(
        self, session_id: str, messages: Iterable[Message], category: str | None = None
    ) -> Session | None:
        messages = list(messages)
        try:
            category = self._resolve_category(session_id, category)
            payload = [message.dump() for message in messages]
            with self.session_lock(session_id):
                atomic_write_json(self.transcript_path(session_id, category), payload)
                return self._upsert_entry(session_id, category, messages)
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to save session {session_id}")
            return None

    def update_transcript(
        self,
        session_id: str,
        mutate: Callable[[list[Message]], bool],
        category: str | None = None,
    ) -> Session | None:
        """Load, mutate and save under the session lock.

        ``mutate`` returns False to skip the write.
        """
        try:
            category = self._resolve_category(session_id, category)
            with self.session_lock(session_id):
                messages = self.load_transcript(session_id, category)
                if not mutate(messages):
                    return None
                return self.save_transcript(session_id, messages, category)
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to update session {session_id}")
            return None

    def _upsert_entry(self, session_id: str, category: str, messages: list[Message]) -> Session:
        now = datetime.now()
        with self._index_lock(category):
            index = self._read_index(category) or SessionIndex()
            existing = index.get(session_id)
            if existing is not None and existing.custom_title:
                title = existing.title
            else:
                title = derive_title(messages, fallback=existing.title if existing else None)
            if existing is not None:
                created_at = existing.created_at
            else:
                created_at = messages[0].timestamp if messages else now
            session = Session(
                id=session_id,
                category=category,
                title=title,
                created_at=created_at,
                last_modified=now,
                message_count=len(messages),
                preview_text=derive_preview(messages),
                custom_title=existing.custom_title if existing else False,
            )
            others = [s for s in index.sessions if s.id != session_id]
            self._write_index(category, others + [session])
        logger.debug(f"Saved session {session_id} ({len(messages)} messages)")
        return session

    # -- lifecycle -------------------------------------------------------

    def create_session(self, category: str) -> Session:
        """Reuse an empty session in ``category`` or allocate a new one."""
        if category not in CATEGORIES:
            raise ValueError(f"Unknown session category: {category!r}")
        now = datetime.now()
        try:
            for candidate in self.load_index(category):
                if candidate.message_count:
                    continue
                with self.session_lock(candidate.id):
                    if self._read_transcript(candidate.id, category):
                        continue
                    with self._index_lock(category):
                        sessions = self.load_index(category)
                        session = next((s for s in sessions if s.id == candidate.id), None)
                        if session is None:
                            continue
                        session.last_modified = now
                        session.is_active = True
                        self._write_index(category, sessions)
                logger.debug(f"Reusing empty session {session.id}")
                return session

            with self._index_lock(category):
                sessions = self.load_index(category)
                session_id = unique_session_id(
                    category,
                    self.category_dir(category),
                    taken={s.id for s in sessions},
                )
                session = Session(
                    id=session_id,
                    category=category,
                    title=fallback_title(now),
                    created_at=now,
                    last_modified=now,
                    is_active=True,
                )
                # Fresh id, so no other thread can hold its session lock yet.
                atomic_write_json(self.transcript_path(session_id, category), [])
                self._write_index(category, sessions + [session])
            logger.info(f"Created session {session_id}")
            return session
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to create {category} session")
            fallback_id = unique_session_id(category, self.category_dir(category))
            return Session(id=fallback_id, category=category, title=fallback_title(now), is_active=True)

    def rename_session(self, session_id: str, title: str, category: str | None = None) -> Session | None:
        title = " ".join(title.split())
        if not title:
            return None
        try:
            category = self._resolve_category(session_id, category)
            with self._index_lock(category):
                sessions = self.load_index(category)
                for session in sessions:
                    if session.id == session_id:
                        session.title = title
                        session.custom_title = True
                        self._write_index(category, sessions)
                        return session
            logger.warning(f"Cannot rename unknown session {session_id}")
            return None
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to rename session {session_id}")
            return None

    def delete_session(self, session_id: str, category: str | None = None) -> bool:
        try:
            category = self._resolve_category(session_id, category)
            with self.session_lock(session_id):
                removed_file = self._remove_quietly(self.transcript_path(session_id, category))
                removed_entries = self._drop_entries(category, {session_id})
            logger.info(f"Deleted session {session_id}")
            return removed_file or removed_entries > 0
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to delete session {session_id}")
            return False

    def delete_all_sessions(self, category: str) -> int:
        try:
            with self._index_lock(category):
                index = self._read_index(category) or SessionIndex()
                ids = {s.id for s in index.sessions}
                ids.update(p.stem for p in self._transcript_files(category))
            for session_id in ids:
                with self.session_lock(session_id):
                    self._remove_quietly(self.transcript_path(session_id, category))
                    self._drop_entries(category, {session_id})
            logger.info(f"Deleted all {len(ids)} {category} sessions")
            return len(ids)
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to delete {category} sessions")
            return 0

    def delete_empty_sessions(self, category: str) -> int:
        try:
            removed = 0
            for candidate in self.load_index(category):
                if candidate.message_count:
                    continue
                with self.session_lock(candidate.id):
                    if self._read_transcript(candidate.id, category):
                        continue
                    self._remove_quietly(self.transcript_path(candidate.id, category))
                    self._drop_entries(category, {candidate.id})
                removed += 1
            if removed:
                logger.info(f"Removed {removed} empty {category} sessions")
            return removed
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to prune {category} sessions")
            return 0

    def _drop_entries(self, category: str, ids: set[str]) -> int:
        with self._index_lock(category):
            index = self._read_index(category) or SessionIndex()
            remaining = [s for s in index.sessions if s.id not in ids]
            self._write_index(category, remaining)
            return len(index.sessions) - len(remaining)

    def _remove_quietly(self, path: Path) -> bool:
        try:
            return remove_file(path)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
            return False

    # -- legacy migration ------------------------------------------------

    def needs_migration(self, file_name: str) -> bool:
        return (self.data_dir / file_name).exists()

    def migrate_legacy_file(self, old_path: str | Path, category: str) -> Session | None:
        path = Path(old_path)
        if not path.exists():
            return None
        try:
            messages = parse_messages(load_json(path), source=str(path))
            session = None
            if messages:
                session_id = unique_session_id(
                    category, self.category_dir(category), migrated=True
                )
                session = self.save_transcript(session_id, messages, category)
                if session is None:
                    logger.error(f"Migration of {path} failed; keeping legacy file")
                    return None
            remove_file(path)
            logger.info(f"Migrated legacy file {path.name} ({len(messages)} messages)")
            return session
        except PERSISTENCE_ERRORS:
            logger.exception(f"Failed to migrate legacy file {path}")
            return None

    def migrate_legacy_files(self) -> list[Session]:
        migrated: list[Session] = []
        for file_name, category in LEGACY_FILES.items():
            if not self.needs_migration(file_name):
                continue
            session = self.migrate_legacy_file(self.data_dir / file_name, category)
            if session is not None:
                migrated.append(session)
        return migrated
