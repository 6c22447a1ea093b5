from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable

from common.events import (
    EventEmitter,
    GenerationFinishedEvent,
    GenerationStateEvent,
    MessageUpdatedEvent,
    ScrollRequestedEvent,
    SessionListChangedEvent,
)
from tagforge.config import StreamingConfig, TrackerConfig
from tagforge.sessions.schema import Message, MessageRole, Session
from tagforge.sessions.store import SessionStore
from tagforge.streaming.coordinator import GenerationHandle, GenerationResult
from tagforge.streaming.errors import GenerationInProgressError

logger = logging.getLogger(__name__)


class KeyedSaver:
    """Background writes, at most one in flight per key.

    A submit that arrives while the key is busy is folded into a single
    follow-up run of the newest job once the current one finishes.
    """

    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tagforge-save")
        self._lock = threading.Lock()
        self._inflight: dict[str, Future] = {}
        self._queued: dict[str, Callable[[], object]] = {}

    def submit(self, key: str, job: Callable[[], object]) -> None:
        with self._lock:
            current = self._inflight.get(key)
            if current is not None and not current.done():
                self._queued[key] = job
                return
            future = self._start(key, job)
        self._watch(key, future)

    def _start(self, key: str, job: Callable[[], object]) -> Future:
        future = self._executor.submit(job)
        self._inflight[key] = future
        return future

    def _watch(self, key: str, future: Future) -> None:
        # A finished future runs the callback inline, so never call this under _lock.
        future.add_done_callback(lambda f, key=key: self._on_done(key, f))

    def _on_done(self, key: str, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Background save for {key} failed: {error}")
        follow_up = None
        with self._lock:
            if self._inflight.get(key) is future:
                del self._inflight[key]
            job = self._queued.pop(key, None)
            if job is not None:
                follow_up = self._start(key, job)
        if follow_up is not None:
            self._watch(key, follow_up)

    def wait(self, key: str, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                future = self._inflight.get(key)
            if future is None:
                return
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                logger.warning(f"Timed out waiting for background save of {key}")
                return
            if future.done():
                # Done callbacks run after waiters wake; it may start a queued job.
                time.sleep(0.005)
                continue
            try:
                future.result(timeout=remaining)
            except FutureTimeoutError:
                continue
            except Exception:
                pass  # reported by _on_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


@dataclass
class _Tracked:
    handle: GenerationHandle
    last_save: float = 0.0
    timer: threading.Timer | None = None
    finishing: bool = False


class BackgroundGenerationTracker:
    """Keeps one generation alive and persisted while another session is displayed."""

    def __init__(
        self,
        store: SessionStore,
        config: TrackerConfig | None = None,
        emitter: EventEmitter | None = None,
        streaming: StreamingConfig | None = None,
        saver: KeyedSaver | None = None,
    ):
        self.store = store
        self.config = config or TrackerConfig()
        self.streaming = streaming or StreamingConfig()
        self.emitter = emitter or EventEmitter()
        self.saver = saver or KeyedSaver()
        self._lock = threading.RLock()
        self._tracked: _Tracked | None = None
        self._displayed_session_id: str | None = None

    # -- state -----------------------------------------------------------

    def set_displayed(self, session_id: str | None) -> None:
        with self._lock:
            self._displayed_session_id = session_id

    @property
    def active(self) -> GenerationHandle | None:
        with self._lock:
            return self._tracked.handle if self._tracked else None

    def is_generating(self, session_id: str | None = None) -> bool:
        handle = self.active
        if handle is None:
            return False
        return session_id is None or handle.session_id == session_id

    def is_background(self) -> bool:
        with self._lock:
            if self._tracked is None:
                return False
            return self._tracked.handle.session_id != self._displayed_session_id

    def begin(self, handle: GenerationHandle) -> None:
        with self._lock:
            if self._tracked is not None:
                raise GenerationInProgressError(
                    f"Session {self._tracked.handle.session_id} is still generating"
                )
            self._tracked = _Tracked(handle=handle)
        logger.debug(f"Tracking generation for {handle.session_id}")
        self.emitter.emit(GenerationStateEvent(session_id=handle.session_id, is_generating=True))

    # -- per batch -------------------------------------------------------

    def apply_batch(self, text: str, tick: int) -> None:
        """Called by the consumer after ``text`` was appended to the live message."""
        with self._lock:
            tracked = self._tracked
            if tracked is None or tracked.finishing:
                return
            session_id = tracked.handle.session_id
            background = session_id != self._displayed_session_id
            if background:
                self._schedule_background_save(tracked)
                return

        self.emitter.emit(MessageUpdatedEvent(session_id=session_id, delta=text))
        if tick % max(self.streaming.scroll_every_ticks, 1) == 0:
            self.emitter.emit(ScrollRequestedEvent(session_id=session_id))

    def _schedule_background_save(self, tracked: _Tracked) -> None:
        if tracked.timer is not None:
            return
        elapsed = time.monotonic() - tracked.last_save
        delay = self.config.background_save_interval_s - elapsed
        if delay <= 0:
            self._submit_background_save(tracked)
            return
        timer = threading.Timer(delay, self._on_timer, args=(tracked,))
        timer.daemon = True
        tracked.timer = timer
        timer.start()

    def _on_timer(self, tracked: _Tracked) -> None:
        with self._lock:
            tracked.timer = None
            if self._tracked is not tracked or tracked.finishing:
                return
            self._submit_background_save(tracked)

    def _submit_background_save(self, tracked: _Tracked) -> None:
        tracked.last_save = time.monotonic()
        handle = tracked.handle
        self.saver.submit(handle.session_id, lambda: self.write_detached(handle))

    def write_detached(self, handle: GenerationHandle, notice: Message | None = None) -> Session | None:
        """Copy the live message into the stored transcript of its session."""
        live = handle.message

        def mutate(messages: list[Message]) -> bool:
            target = next((m for m in reversed(messages) if m.role == MessageRole.ASSISTANT), None)
            if target is None:
                messages.append(live.model_copy())
            else:
                target.content = live.content
                target.details = live.details
                target.is_thinking = live.is_thinking
                target.is_loading_model = live.is_loading_model
            if notice is not None:
                messages.append(notice)
            return True

        session = self.store.update_transcript(handle.session_id, mutate, handle.category)
        if session is not None:
            logger.debug(f"Background save of {handle.session_id} ({len(live.content)} chars)")
        return session

    # -- completion ------------------------------------------------------

    def complete(
        self,
        handle: GenerationHandle,
        result: GenerationResult,
        transcript: list[Message] | None,
    ) -> None:
        """Persist the final state and stop tracking ``handle``.

        ``transcript`` is the displayed message list when the generating
        session is on screen, otherwise None and the stored copy is patched.
        """
        with self._lock:
            tracked = self._tracked
            if tracked is not None and tracked.handle is handle:
                tracked.finishing = True
                if tracked.timer is not None:
                    tracked.timer.cancel()
                    tracked.timer = None

        self.saver.wait(handle.session_id)
        if transcript is not None:
            if result.notice is not None:
                transcript.append(result.notice)
            self.store.save_transcript(handle.session_id, transcript, handle.category)
        else:
            self.write_detached(handle, notice=result.notice)

        with self._lock:
            if self._tracked is not None and self._tracked.handle is handle:
                self._tracked = None

        self.emitter.emit(
            GenerationFinishedEvent(
                session_id=handle.session_id,
                state=result.state.value,
                latency_ms=result.latency_ms,
            )
        )
        self.emitter.emit(GenerationStateEvent(session_id=handle.session_id, is_generating=False))
        self.emitter.emit(SessionListChangedEvent(category=handle.category))

    def shutdown(self) -> None:
        with self._lock:
            if self._tracked is not None and self._tracked.timer is not None:
                self._tracked.timer.cancel()
        self.saver.shutdown(wait=True)
