import sys
import threading
import time

import pytest

from common.events import EventEmitter, MessageUpdatedEvent, ScrollRequestedEvent
from tagforge.config import StreamingConfig, TrackerConfig
from tagforge.sessions.schema import Message, MessageRole
from tagforge.streaming.coordinator import GenerationHandle, GenerationResult, GenerationState
from tagforge.streaming.errors import GenerationInProgressError
from tagforge.tracker import BackgroundGenerationTracker, KeyedSaver


def _start(store, tracker, prompt: str = "hello") -> GenerationHandle:
    session = store.create_session("chat")
    live = Message(role=MessageRole.ASSISTANT)
    store.save_transcript(session.id, [Message(role=MessageRole.USER, content=prompt), live.model_copy()], "chat")
    handle = GenerationHandle(session_id=session.id, message=live)
    tracker.begin(handle)
    return handle


def test_keyed_saver_runs_one_job_per_key_and_keeps_latest():
    saver = KeyedSaver()
    release = threading.Event()
    ran = []

    def first():
        release.wait(timeout=5)
        ran.append("first")

    saver.submit("chat_1", first)
    saver.submit("chat_1", lambda: ran.append("second"))
    saver.submit("chat_1", lambda: ran.append("third"))
    release.set()
    saver.wait("chat_1", timeout=5)
    saver.shutdown()

    assert ran == ["first", "third"]


def _run_in_thread(target, timeout: float = 5.0) -> bool:
    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    worker.join(timeout=timeout)
    return not worker.is_alive()


def test_keyed_saver_accepts_jobs_that_finish_immediately():
    previous = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    saver = KeyedSaver()
    ran = []

    def submit_many():
        for i in range(200):
            saver.submit("chat_1", lambda i=i: ran.append(i))
            saver.wait("chat_1", timeout=5)

    try:
        finished = _run_in_thread(submit_many)
    finally:
        sys.setswitchinterval(previous)
    assert finished, "submit of an instant job did not return"
    saver.shutdown()

    assert ran == list(range(200))


def test_keyed_saver_queued_follow_up_of_instant_jobs_completes():
    saver = KeyedSaver(max_workers=1)
    ran = []

    def burst():
        for i in range(50):
            saver.submit("chat_1", lambda i=i: ran.append(i))
            saver.submit("chat_2", lambda i=i: ran.append(-i))
        saver.wait("chat_1", timeout=5)
        saver.wait("chat_2", timeout=5)

    assert _run_in_thread(burst), "queued follow-up jobs never drained"
    saver.shutdown()

    assert ran
    assert 49 in ran and -49 in ran


def test_begin_rejects_second_generation(store):
    tracker = BackgroundGenerationTracker(store)
    _start(store, tracker)

    with pytest.raises(GenerationInProgressError):
        tracker.begin(GenerationHandle(session_id="chat_other", message=Message(role=MessageRole.ASSISTANT)))
    tracker.shutdown()


def test_foreground_batches_emit_updates_and_throttled_scrolls(store):
    events = []
    tracker = BackgroundGenerationTracker(
        store, emitter=EventEmitter(events.append), streaming=StreamingConfig(scroll_every_ticks=5)
    )
    handle = _start(store, tracker)
    tracker.set_displayed(handle.session_id)

    for tick in range(11):
        tracker.apply_batch("x", tick)

    assert sum(isinstance(e, MessageUpdatedEvent) for e in events) == 11
    assert sum(isinstance(e, ScrollRequestedEvent) for e in events) == 3
    tracker.shutdown()


def test_background_saves_are_debounced_and_trailing(store, wait_until, monkeypatch):
    tracker = BackgroundGenerationTracker(store, TrackerConfig(background_save_interval_s=0.3))
    handle = _start(store, tracker)
    tracker.set_displayed("chat_elsewhere")
    assert tracker.is_background()
    writes = []
    original = store.update_transcript

    def counting(session_id, mutate, category=None):
        writes.append(session_id)
        return original(session_id, mutate, category)

    monkeypatch.setattr(store, "update_transcript", counting)

    for i, text in enumerate(["abc", "abcdef", "abcdefghi"]):
        handle.message.content = text
        tracker.apply_batch(text, i)

    assert wait_until(lambda: len(writes) == 2)
    tracker.saver.wait(handle.session_id, timeout=5)
    time.sleep(0.4)

    assert len(writes) == 2
    assert store.load_transcript(handle.session_id)[-1].content == "abcdefghi"
    tracker.shutdown()


def test_complete_in_background_patches_stored_transcript(store):
    tracker = BackgroundGenerationTracker(store)
    handle = _start(store, tracker)
    tracker.set_displayed("chat_elsewhere")
    handle.message.content = "partial answer"
    notice = Message(role=MessageRole.SYSTEM, content="Generation Stopped", details="")

    tracker.complete(handle, GenerationResult(state=GenerationState.CANCELLED, notice=notice), None)

    messages = store.load_transcript(handle.session_id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.SYSTEM]
    assert messages[1].content == "partial answer"
    assert messages[2].content == "Generation Stopped"
    assert tracker.active is None
    tracker.shutdown()
