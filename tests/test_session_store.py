import json
import threading
from pathlib import Path

import pytest

from tagforge.sessions import store as store_module
from tagforge.sessions.schema import Message, MessageRole
from tagforge.sessions.store import SessionStore


def _conversation(prompt: str = "hello", reply: str = "world") -> list[Message]:
    return [
        Message(role=MessageRole.USER, content=prompt),
        Message(role=MessageRole.ASSISTANT, content=reply),
    ]


def test_create_session_reuses_empty_session(store: SessionStore):
    first = store.create_session("chat")
    second = store.create_session("chat")

    assert first.id == second.id
    assert first.id.startswith("chat_")
    assert len(store.load_index("chat")) == 1


def test_create_session_allocates_new_when_existing_has_messages(store: SessionStore):
    first = store.create_session("chat")
    store.save_transcript(first.id, _conversation(), "chat")

    second = store.create_session("chat")

    assert second.id != first.id
    assert {s.id for s in store.load_index("chat")} == {first.id, second.id}


def test_create_session_rejects_unknown_category(store: SessionStore):
    with pytest.raises(ValueError):
        store.create_session("notes")


def test_save_and_load_transcript_round_trip(store: SessionStore):
    session = store.create_session("chat")
    messages = _conversation("What is Python?", "A programming language.")
    messages.append(Message(role=MessageRole.SYSTEM, content="Generation Stopped", details=""))

    saved = store.save_transcript(session.id, messages, "chat")
    loaded = store.load_transcript(session.id, "chat")

    assert saved is not None
    assert [(m.role, m.content) for m in loaded] == [(m.role, m.content) for m in messages]
    assert saved.title == "What is Python?"
    assert saved.preview_text == "A programming language."
    assert saved.message_count == 3


def test_load_transcript_missing_or_corrupt_is_empty(store: SessionStore, tmp_path: Path):
    assert store.load_transcript("chat_missing") == []

    path = tmp_path / "chat" / "chat_broken.json"
    path.parent.mkdir(parents=True)
    path.write_text("{not json")
    assert store.load_transcript("chat_broken") == []


def test_load_index_rebuilds_after_index_deleted(store: SessionStore, tmp_path: Path):
    a = store.create_session("chat")
    store.save_transcript(a.id, _conversation("first question"), "chat")
    b = store.create_session("chat")
    store.save_transcript(b.id, _conversation("second question"), "chat")

    store.index_path("chat").unlink()
    sessions = store.load_index("chat")

    on_disk = {p.stem for p in (tmp_path / "chat").glob("*.json")}
    assert {s.id for s in sessions} == on_disk == {a.id, b.id}
    titles = {s.id: s.title for s in sessions}
    assert titles[a.id] == "first question"
    assert store.index_path("chat").exists()


def test_load_index_rebuilds_when_corrupt(store: SessionStore):
    session = store.create_session("generator")
    store.save_transcript(session.id, _conversation("tags for a sunset"), "generator")
    store.index_path("generator").write_text("garbage")

    sessions = store.load_index("generator")

    assert [s.id for s in sessions] == [session.id]
    assert sessions[0].title == "tags for a sunset"


def test_load_index_picks_up_transcript_missing_from_index(store: SessionStore, tmp_path: Path):
    session = store.create_session("chat")
    store.save_transcript(session.id, _conversation(), "chat")
    stray = tmp_path / "chat" / "chat_20200101000000000000.json"
    stray.write_text(json.dumps([m.dump() for m in _conversation("stray one")]))

    ids = {s.id for s in store.load_index("chat")}

    assert ids == {session.id, "chat_20200101000000000000"}


def test_index_is_deduplicated_latest_wins(store: SessionStore, tmp_path: Path):
    session = store.create_session("chat")
    store.save_transcript(session.id, _conversation(), "chat")
    entry = json.loads(store.index_path("chat").read_text())["sessions"][0]
    older = dict(entry, title="old", last_modified="2000-01-01T00:00:00")
    store.index_path("chat").write_text(json.dumps({"sessions": [older, entry]}))

    sessions = store.load_index("chat")

    assert len(sessions) == 1
    assert sessions[0].title == entry["title"]


def test_long_first_prompt_is_truncated_for_title(store: SessionStore):
    session = store.create_session("chat")
    prompt = "please write a detailed essay about the history of the printing press in europe"

    saved = store.save_transcript(session.id, _conversation(prompt), "chat")

    assert saved.title.endswith("...")
    assert len(saved.title) <= 53
    assert prompt.startswith(saved.title[:-3])


def test_rename_survives_later_saves(store: SessionStore):
    session = store.create_session("chat")
    store.save_transcript(session.id, _conversation("original"), "chat")

    renamed = store.rename_session(session.id, "  My   Title ")
    store.save_transcript(session.id, _conversation("original", "more"), "chat")

    assert renamed.title == "My Title"
    assert store.load_index("chat")[0].title == "My Title"
    assert store.rename_session("chat_unknown", "x") is None


def test_delete_session_removes_file_and_entry(store: SessionStore, tmp_path: Path):
    session = store.create_session("chat")
    store.save_transcript(session.id, _conversation(), "chat")

    assert store.delete_session(session.id)
    assert not (tmp_path / "chat" / f"{session.id}.json").exists()
    assert store.load_index("chat") == []
    assert not store.delete_session(session.id)


def test_delete_all_and_delete_empty(store: SessionStore):
    full = store.create_session("chat")
    store.save_transcript(full.id, _conversation(), "chat")
    empty = store.create_session("chat")

    assert store.delete_empty_sessions("chat") == 1
    assert [s.id for s in store.load_index("chat")] == [full.id]
    assert empty.id != full.id

    assert store.delete_all_sessions("chat") == 1
    assert store.load_index("chat") == []


def test_save_failure_is_swallowed(store: SessionStore, monkeypatch):
    session = store.create_session("chat")

    def boom(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(store_module, "atomic_write_json", boom)

    assert store.save_transcript(session.id, _conversation(), "chat") is None


def test_migrate_legacy_pascal_case_history(store: SessionStore, tmp_path: Path):
    legacy = tmp_path / "history.json"
    legacy.write_text(
        json.dumps(
            [
                {"Role": "User", "Content": "draw a cat", "Timestamp": "2024-03-01T10:11:12.1234567"},
                {"Role": "Assistant", "Content": "Here is a cat.", "IsThinking": False},
                {"Role": "User", "Content": "thanks", "Details": None},
            ]
        )
    )

    assert store.needs_migration("history.json")
    migrated = store.migrate_legacy_files()

    assert len(migrated) == 1
    session = migrated[0]
    assert session.title == "draw a cat"
    assert session.id.startswith("chat_migrated_")
    assert not legacy.exists()
    assert len(store.load_transcript(session.id, "chat")) == 3


def test_migrate_empty_legacy_file_removes_it(store: SessionStore, tmp_path: Path):
    legacy = tmp_path / "generation_history.json"
    legacy.write_text("[]")

    assert store.migrate_legacy_file(legacy, "generator") is None
    assert not legacy.exists()
    assert store.load_index("generator") == []


def test_rebuild_keeps_custom_title_and_created_at(store: SessionStore):
    session = store.create_session("chat")
    store.save_transcript(session.id, _conversation("original prompt"), "chat")
    store.rename_session(session.id, "Pinned")
    before = store.load_index("chat")[0]

    rebuilt = store.rebuild_index("chat")

    assert rebuilt[0].title == "Pinned"
    assert rebuilt[0].custom_title
    assert rebuilt[0].created_at == before.created_at


def _paused_update(store: SessionStore, session_id: str):
    """Start an update that holds the session lock until ``release`` is set."""
    entered = threading.Event()
    release = threading.Event()

    def mutate(messages):
        entered.set()
        release.wait(timeout=5)
        messages.append(Message(role=MessageRole.ASSISTANT, content="late reply"))
        return True

    worker = threading.Thread(
        target=store.update_transcript, args=(session_id, mutate, "chat"), daemon=True
    )
    worker.start()
    assert entered.wait(timeout=5)
    return worker, release


def test_update_alongside_delete_all_does_not_hang(store: SessionStore):
    session = store.create_session("chat")
    store.save_transcript(session.id, _conversation(), "chat")
    updater, release = _paused_update(store, session.id)

    clearer = threading.Thread(target=store.delete_all_sessions, args=("chat",), daemon=True)
    clearer.start()
    release.set()
    updater.join(timeout=5)
    clearer.join(timeout=5)

    assert not updater.is_alive() and not clearer.is_alive()
    on_disk = {p.stem for p in store._transcript_files("chat")}
    indexed = json.loads(store.index_path("chat").read_text())["sessions"]
    assert {entry["id"] for entry in indexed} == on_disk


def test_update_alongside_create_session_does_not_hang(store: SessionStore):
    session = store.create_session("chat")
    updater, release = _paused_update(store, session.id)
    created = []

    creator = threading.Thread(target=lambda: created.append(store.create_session("chat")), daemon=True)
    creator.start()
    release.set()
    updater.join(timeout=5)
    creator.join(timeout=5)

    assert not updater.is_alive() and not creator.is_alive()
    assert len(created) == 1
    assert store.load_transcript(session.id, "chat")[-1].content == "late reply"


def test_update_alongside_delete_empty_does_not_hang(store: SessionStore):
    session = store.create_session("chat")
    updater, release = _paused_update(store, session.id)

    pruner = threading.Thread(target=store.delete_empty_sessions, args=("chat",), daemon=True)
    pruner.start()
    release.set()
    updater.join(timeout=5)
    pruner.join(timeout=5)

    assert not updater.is_alive() and not pruner.is_alive()
    assert [s.id for s in store.load_index("chat")] == [session.id]


def test_concurrent_saves_leave_index_matching_transcript(store: SessionStore):
    session = store.create_session("chat")
    barrier = threading.Barrier(8)

    def save(n):
        barrier.wait(timeout=5)
        store.save_transcript(session.id, _conversation(f"prompt {n}", "reply") * (n + 1), "chat")

    workers = [threading.Thread(target=save, args=(n,)) for n in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5)

    entry = store.load_index("chat")[0]
    transcript = store.load_transcript(session.id, "chat")
    assert entry.message_count == len(transcript)
    assert entry.title == transcript[0].content
