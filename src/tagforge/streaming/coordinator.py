from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from tagforge.config import StreamingConfig
from tagforge.diagnostics import DiagnosticLog
from tagforge.providers.base import Provider, ProviderCredentials
from tagforge.sessions.schema import Message, MessageRole
from tagforge.streaming.batching import TokenBatcher
from tagforge.streaming.errors import GENERATION_FAILED, GENERATION_STOPPED, classify_error
from tagforge.streaming.think import ThinkingChanged, ThinkTagFilter, VisibleText

logger = logging.getLogger(__name__)

# (text, tick) for every batch applied to the target message.
BatchCallback = Callable[[str, int], None]


class GenerationState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class GenerationHandle:
    session_id: str
    message: Message
    category: str = "chat"
    cancel_event: threading.Event = field(default_factory=threading.Event)
    state: GenerationState = GenerationState.IDLE

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(frozen=True, slots=True)
class GenerationResult:
    state: GenerationState
    latency_ms: int | None = None
    error: str | None = None
    notice: Message | None = None


class _FirstToken:
    pass


class _Done:
    pass


_FIRST_TOKEN = _FirstToken()
_DONE = _Done()


@dataclass
class _Outcome:
    error: Exception | None = None


class StreamCoordinator:
    """Runs one provider stream into one target message.

    A producer thread reads the provider and pushes filtered text into a
    bounded queue; the calling thread consumes it in paced batches. All
    mutations of the target message happen on the consuming thread.
    """

    def __init__(
        self,
        config: StreamingConfig | None = None,
        diagnostics: DiagnosticLog | None = None,
    ):
        self.config = config or StreamingConfig()
        self.diagnostics = diagnostics or DiagnosticLog()
        self.batcher = TokenBatcher(self.config)

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        provider: Provider,
        model: str,
        credentials: ProviderCredentials,
        handle: GenerationHandle,
        on_batch: BatchCallback | None = None,
    ) -> GenerationResult:
        channel: queue.Queue = queue.Queue(maxsize=self.config.queue_maxsize)
        outcome = _Outcome()
        consumer_gone = threading.Event()
        started = time.monotonic()
        handle.state = GenerationState.REQUESTING

        producer = threading.Thread(
            target=self._produce,
            args=(provider, system_prompt, user_prompt, model, credentials, handle, channel, outcome, consumer_gone),
            name=f"tagforge-producer-{handle.session_id}",
            daemon=True,
        )
        producer.start()
        try:
            self._consume(handle, channel, on_batch)
        finally:
            consumer_gone.set()
            producer.join()
            handle.message.is_thinking = False
            handle.message.is_loading_model = False

        return self._finish(handle, outcome, started)

    # -- producer --------------------------------------------------------

    def _produce(
        self,
        provider: Provider,
        system_prompt: str,
        user_prompt: str,
        model: str,
        credentials: ProviderCredentials,
        handle: GenerationHandle,
        channel: queue.Queue,
        outcome: _Outcome,
        consumer_gone: threading.Event,
    ) -> None:
        think = ThinkTagFilter()
        stream = None
        try:
            stream = provider.generate_streaming(
                system_prompt, user_prompt, model, credentials, cancel_event=handle.cancel_event
            )
            first = True
            for token in stream:
                if handle.cancelled:
                    logger.debug(f"Producer for {handle.session_id} observed cancellation")
                    break
                if first:
                    first = False
                    if not self._put(channel, _FIRST_TOKEN, handle, consumer_gone):
                        break
                if not self._put_segments(channel, think.feed(token), handle, consumer_gone):
                    break
            else:
                self._put_segments(channel, think.flush(), handle, consumer_gone)
        except Exception as e:
            outcome.error = e
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.debug(f"Ignoring error while closing provider stream: {e}")
            self._put_done(channel, consumer_gone)

    def _put_segments(self, channel, segments, handle, consumer_gone) -> bool:
        for segment in segments:
            item = segment.text if isinstance(segment, VisibleText) else segment
            if not self._put(channel, item, handle, consumer_gone):
                return False
        return True

    def _put(self, channel: queue.Queue, item, handle: GenerationHandle, consumer_gone: threading.Event) -> bool:
        while True:
            try:
                channel.put(item, timeout=self.config.put_timeout_s)
                return True
            except queue.Full:
                if handle.cancelled or consumer_gone.is_set():
                    return False

    def _put_done(self, channel: queue.Queue, consumer_gone: threading.Event) -> None:
        while not consumer_gone.is_set():
            try:
                channel.put(_DONE, timeout=self.config.put_timeout_s)
                return
            except queue.Full:
                continue

    # -- consumer --------------------------------------------------------

    def _consume(self, handle: GenerationHandle, channel: queue.Queue, on_batch: BatchCallback | None) -> None:
        message = handle.message
        tick = 0
        carry = None
        while True:
            if carry is not None:
                item, carry = carry, None
            else:
                try:
                    item = channel.get(timeout=self.config.empty_poll_s)
                except queue.Empty:
                    continue

            if item is _DONE:
                return
            if item is _FIRST_TOKEN:
                message.is_loading_model = False
                message.is_thinking = False
                handle.state = GenerationState.STREAMING
                continue
            if isinstance(item, ThinkingChanged):
                message.is_thinking = item.thinking
                continue

            batch = self.batcher.take(channel, item)
            carry = batch.trailing
            message.content += batch.text
            if on_batch is not None:
                on_batch(batch.text, tick)
            tick += 1
            if self.config.tick_interval_s > 0 and not handle.cancelled:
                time.sleep(self.config.tick_interval_s)

    # -- completion ------------------------------------------------------

    def _finish(self, handle: GenerationHandle, outcome: _Outcome, started: float) -> GenerationResult:
        message = handle.message
        if outcome.error is not None and not handle.cancelled:
            short = classify_error(outcome.error)
            self.diagnostics.record_error(f"Generation for {handle.session_id}", outcome.error)
            message.content = f"{GENERATION_FAILED}\n\n{short}"
            message.details = short
            handle.state = GenerationState.FAILED
            return GenerationResult(state=GenerationState.FAILED, error=short)

        if handle.cancelled:
            if outcome.error is not None:
                logger.debug(f"Error after cancellation ignored: {outcome.error}")
            handle.state = GenerationState.CANCELLED
            logger.info(f"Generation for {handle.session_id} stopped by user")
            notice = Message(role=MessageRole.SYSTEM, content=GENERATION_STOPPED, details="")
            return GenerationResult(state=GenerationState.CANCELLED, notice=notice)

        latency_ms = int((time.monotonic() - started) * 1000)
        handle.state = GenerationState.COMPLETED
        logger.info(f"Generation for {handle.session_id} completed in {latency_ms}ms")
        return GenerationResult(state=GenerationState.COMPLETED, latency_ms=latency_ms)
