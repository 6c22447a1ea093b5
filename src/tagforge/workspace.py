from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable

from common.ids import category_from_id
from common.events import ErrorEvent, EventEmitter, SessionListChangedEvent
from tagforge.config import CHAT_SYSTEM_PROMPT, AgentProfile, Persona, TagForgeConfig
from tagforge.diagnostics import DiagnosticLog
from tagforge.providers.base import Provider, ProviderCredentials
from tagforge.providers.registry import create_provider
from tagforge.sessions.schema import Message, MessageRole, Session
from tagforge.sessions.store import SessionStore
from tagforge.streaming.coordinator import (
    GenerationHandle,
    GenerationResult,
    GenerationState,
    StreamCoordinator,
)
from tagforge.streaming.errors import (
    GENERATION_FAILED,
    GenerationInProgressError,
    ProviderError,
    classify_error,
)
from tagforge.tracker import BackgroundGenerationTracker

logger = logging.getLogger(__name__)

NO_AGENT_MESSAGE = "No Active Agent selected."
NO_AGENT_DETAILS = "Please select an agent in the Agent Manager."
NO_PERSONA_MESSAGE = "No Persona selected."
NO_PERSONA_DETAILS = "Please select a persona before generating."


class ChatWorkspace:
    """The displayed session plus at most one running generation.

    Generations run on a worker thread. Switching sessions while one runs
    leaves it streaming into its own transcript through the tracker.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        config: TagForgeConfig | None = None,
        emitter: EventEmitter | None = None,
        diagnostics: DiagnosticLog | None = None,
        coordinator: StreamCoordinator | None = None,
        tracker: BackgroundGenerationTracker | None = None,
        provider_factory: Callable[[str], Provider] = create_provider,
    ):
        self.store = store
        self.config = config or TagForgeConfig()
        self.emitter = emitter or EventEmitter()
        self.diagnostics = diagnostics or DiagnosticLog()
        self.coordinator = coordinator or StreamCoordinator(self.config.streaming, self.diagnostics)
        self.tracker = tracker or BackgroundGenerationTracker(
            store, self.config.tracker, self.emitter, self.config.streaming
        )
        self.provider_factory = provider_factory
        self.profile: AgentProfile | None = None
        self.persona: Persona | None = None
        self.session: Session | None = None
        self.messages: list[Message] = []
        self.last_latency_ms: int | None = None
        self._dirty = False
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tagforge-generate")
        self._future: Future | None = None

    # -- displayed session ----------------------------------------------

    @property
    def is_generating(self) -> bool:
        return self.tracker.is_generating()

    @property
    def displayed_is_generating(self) -> bool:
        return self.session is not None and self.tracker.is_generating(self.session.id)

    def _show(self, session: Session | None, messages: list[Message]) -> None:
        self.session = session
        self.messages = messages
        self._dirty = False
        self.tracker.set_displayed(session.id if session else None)

    def save_displayed(self) -> Session | None:
        with self._lock:
            if self.session is None:
                return None
            saved = self.store.save_transcript(self.session.id, self.messages, self.session.category)
            if saved is not None:
                self.session = saved
                self._dirty = False
            return saved

    def _persist_displayed(self) -> None:
        if self.session is not None and (self._dirty or self.displayed_is_generating):
            self.save_displayed()

    def open_new_session(self, category: str = "chat") -> Session:
        with self._lock:
            self._persist_displayed()
            session = self.store.create_session(category)
            self._show(session, self.store.load_transcript(session.id, category))
        self.emitter.emit(SessionListChangedEvent(category=category))
        return session

    def switch_session(self, session_id: str, category: str | None = None) -> bool:
        with self._lock:
            if self.session is not None and self.session.id == session_id:
                return True
            self._persist_displayed()

            entry = next(
                (s for s in self.store.load_index(category or category_from_id(session_id)) if s.id == session_id),
                None,
            )
            if entry is None:
                logger.warning(f"Cannot switch to unknown session {session_id}")
                return False

            messages = self.store.load_transcript(session_id, entry.category)
            active = self.tracker.active
            if active is not None and active.session_id == session_id:
                # Let the last debounced write land, then resume the live message.
                time.sleep(self.config.tracker.switch_reload_delay_s)
                messages = self.store.load_transcript(session_id, entry.category)
                self._reattach(messages, active.message)

            self._show(entry, messages)
            logger.debug(f"Displaying session {session_id}")
            return True

    @staticmethod
    def _reattach(messages: list[Message], live: Message) -> None:
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].role == MessageRole.ASSISTANT:
                messages[i] = live
                return
        messages.append(live)

    def clear_displayed(self) -> None:
        with self._lock:
            if self.session is None:
                return
            if self.displayed_is_generating:
                raise GenerationInProgressError("Stop the running generation before clearing")
            self.messages.clear()
            self.save_displayed()
        self.emitter.emit(SessionListChangedEvent(category=self.session.category))

    def delete_session(self, session_id: str, category: str | None = None) -> bool:
        with self._lock:
            if self.tracker.is_generating(session_id):
                raise GenerationInProgressError(f"Session {session_id} is still generating")
            deleted = self.store.delete_session(session_id, category)
            if self.session is not None and self.session.id == session_id:
                self._show(None, [])
        self.emitter.emit(SessionListChangedEvent(category=category))
        return deleted

    # -- generation ------------------------------------------------------

    def _append_error(self, message: str, details: str) -> None:
        self.messages.append(Message(role=MessageRole.ERROR, content=message, details=details))
        self._dirty = True
        self.save_displayed()
        self.emitter.emit(ErrorEvent(message=message, source="workspace"))

    def _system_prompt(self, category: str, prompt: str, persona: Persona | None) -> str | None:
        if category == "generator":
            if persona is None:
                self._append_error(NO_PERSONA_MESSAGE, NO_PERSONA_DETAILS)
                return None
            return persona.render(prompt)
        return CHAT_SYSTEM_PROMPT

    def start_generation(
        self,
        prompt: str,
        profile: AgentProfile | None = None,
        persona: Persona | None = None,
    ) -> Future | None:
        """Append the prompt and stream a reply into the displayed session.

        Returns a future resolving to the GenerationResult, or None when the
        request was rejected and an Error message was appended instead.
        """
        prompt = prompt.strip()
        if not prompt:
            return None

        with self._lock:
            if self.tracker.is_generating():
                raise GenerationInProgressError("A generation is already running")
            if self.session is None:
                self.open_new_session("chat")
            session = self.session

            profile = profile or self.profile
            if profile is None:
                self._append_error(NO_AGENT_MESSAGE, NO_AGENT_DETAILS)
                return None
            system_prompt = self._system_prompt(session.category, prompt, persona or self.persona)
            if system_prompt is None:
                return None

            self.messages.append(Message(role=MessageRole.USER, content=prompt))
            self._dirty = True
            try:
                provider = self.provider_factory(profile.provider)
            except ProviderError as e:
                self.diagnostics.record_error("Provider lookup", e)
                self.messages.append(
                    Message(
                        role=MessageRole.ASSISTANT,
                        content=f"{GENERATION_FAILED}\n\n{e}",
                        details=str(e),
                    )
                )
                self.save_displayed()
                return None

            placeholder = Message(
                role=MessageRole.ASSISTANT,
                content="",
                is_thinking=True,
                is_loading_model=True,
            )
            self.messages.append(placeholder)
            handle = GenerationHandle(session_id=session.id, message=placeholder, category=session.category)
            self.tracker.begin(handle)
            self.save_displayed()

            credentials = ProviderCredentials(api_key=profile.api_key, base_url=profile.endpoint_url)
            logger.info(f"Starting generation in {session.id} with {profile.name} ({profile.model})")
            self._future = self._executor.submit(
                self._run, handle, provider, profile.model, credentials, system_prompt, prompt
            )
            return self._future

    def _run(
        self,
        handle: GenerationHandle,
        provider: Provider,
        model: str,
        credentials: ProviderCredentials,
        system_prompt: str,
        prompt: str,
    ) -> GenerationResult:
        try:
            result = self.coordinator.generate(
                system_prompt=system_prompt,
                user_prompt=prompt,
                provider=provider,
                model=model,
                credentials=credentials,
                handle=handle,
                on_batch=self.tracker.apply_batch,
            )
        except Exception as e:
            self.diagnostics.record_error(f"Generation for {handle.session_id}", e)
            short = classify_error(e)
            handle.message.content = f"{GENERATION_FAILED}\n\n{short}"
            handle.message.details = short
            handle.message.is_thinking = False
            handle.message.is_loading_model = False
            result = GenerationResult(state=GenerationState.FAILED, error=short)

        with self._lock:
            foreground = self.session is not None and self.session.id == handle.session_id
            if result.latency_ms is not None:
                self.last_latency_ms = result.latency_ms
            self.tracker.complete(handle, result, self.messages if foreground else None)
            if foreground:
                self._dirty = False
        return result

    def stop_generation(self) -> bool:
        handle = self.tracker.active
        if handle is None:
            return False
        handle.cancel()
        logger.info(f"Stop requested for {handle.session_id}")
        return True

    def wait(self, timeout: float | None = None) -> GenerationResult | None:
        future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        self.stop_generation()
        self._executor.shutdown(wait=True)
        with self._lock:
            self._persist_displayed()
        self.tracker.shutdown()
