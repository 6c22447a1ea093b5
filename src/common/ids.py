from datetime import datetime
from pathlib import Path


def _stamp(now: datetime) -> str:
    return now.strftime("%Y%m%d%H%M%S%f")


def generate_session_id(category: str, *, migrated: bool = False, now: datetime | None = None) -> str:
    prefix = f"{category}_migrated_" if migrated else f"{category}_"
    return prefix + _stamp(now or datetime.now())


def unique_session_id(
    category: str,
    directory: Path,
    *,
    migrated: bool = False,
    taken: set[str] | None = None,
) -> str:
    """Allocate an id with no transcript file in ``directory`` and not in ``taken``."""
    taken = taken or set()
    session_id = generate_session_id(category, migrated=migrated)
    suffix = 1
    base = session_id
    while session_id in taken or (directory / f"{session_id}.json").exists():
        session_id = f"{base}{suffix}"
        suffix += 1
    return session_id


def category_from_id(session_id: str) -> str:
    head, sep, _ = session_id.partition("_")
    return head if sep else ""
