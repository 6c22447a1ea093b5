import threading
import time

import pytest

from tagforge.config import StreamingConfig, TagForgeConfig, TrackerConfig
from tagforge.sessions.store import SessionStore


class ScriptedProvider:
    """Yields fixed tokens; ``gates`` maps a token index to an Event awaited before it."""

    name = "scripted"

    def __init__(self, tokens=(), *, error: Exception | None = None, gates: dict | None = None):
        self.tokens = list(tokens)
        self.error = error
        self.gates = gates or {}
        self.calls: list[tuple[str, str, str]] = []
        self.closed = False

    def ping(self, credentials) -> bool:
        return True

    def list_models(self, credentials) -> list[str]:
        return ["scripted-model"]

    def preload(self, model, credentials) -> None:
        pass

    def generate_streaming(self, system_prompt, user_prompt, model, credentials, cancel_event=None):
        self.calls.append((system_prompt, user_prompt, model))
        try:
            for i, token in enumerate(self.tokens):
                gate = self.gates.get(i)
                if gate is not None:
                    gate.wait(timeout=5)
                yield token
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path)


@pytest.fixture
def fast_config(tmp_path):
    return TagForgeConfig(
        data_dir=str(tmp_path),
        streaming=StreamingConfig(tick_interval_s=0.0, empty_poll_s=0.005, put_timeout_s=0.01),
        tracker=TrackerConfig(background_save_interval_s=0.2, switch_reload_delay_s=0.05),
    )


@pytest.fixture
def wait_until():
    def _wait(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait


@pytest.fixture
def gate():
    return threading.Event()
