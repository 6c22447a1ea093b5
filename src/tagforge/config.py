import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


MODEL_ALIASES = {
    "sonnet": "claude-sonnet-4-20250514",
    "opus": "claude-opus-4-20250514",
    "haiku": "claude-3-5-haiku-20241022",
    "4o": "gpt-4o",
    "4o-mini": "gpt-4o-mini",
    "flash": "gemini/gemini-2.5-flash",
    "deepseek": "deepseek/deepseek-chat",
    "llama3": "ollama/llama3",
}

CHAT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ConfigError(Exception):
    pass


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.lower(), name)


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


@dataclass
class StreamingConfig:
    queue_maxsize: int = 256
    base_batch: int = 3
    batch_cap: int = 15
    batch_growth_divisor: int = 30
    tick_interval_s: float = 0.035
    scroll_every_ticks: int = 5
    empty_poll_s: float = 0.01
    put_timeout_s: float = 0.05

    def __post_init__(self) -> None:
        if self.queue_maxsize <= 0:
            raise ConfigError("queue_maxsize must be positive")
        if self.base_batch <= 0 or self.batch_cap < self.base_batch:
            raise ConfigError("batch_cap must be >= base_batch > 0")
        if self.batch_growth_divisor <= 0:
            raise ConfigError("batch_growth_divisor must be positive")


@dataclass
class TrackerConfig:
    background_save_interval_s: float = 2.0
    switch_reload_delay_s: float = 0.25


@dataclass
class TagForgeConfig:
    data_dir: str = field(
        default_factory=lambda: get_optional_env("TAGFORGE_DATA_DIR", "~/.tagforge")
    )
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @classmethod
    def from_env(cls, data_dir: str | None = None) -> "TagForgeConfig":
        tick_ms = _env_float("TAGFORGE_TICK_MS", 35.0)
        config = cls(
            streaming=StreamingConfig(tick_interval_s=tick_ms / 1000.0),
            tracker=TrackerConfig(
                background_save_interval_s=_env_float("TAGFORGE_BACKGROUND_SAVE_SECONDS", 2.0)
            ),
        )
        if data_dir:
            config.data_dir = data_dir
        logger.debug(f"Using data directory {config.data_path}")
        return config


@dataclass
class AgentProfile:
    name: str
    provider: str = "litellm"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    endpoint_url: str | None = None


@dataclass
class Persona:
    name: str
    system_prompt: str
    description: str = ""

    def render(self, user_input: str) -> str:
        if "{input}" in self.system_prompt:
            return self.system_prompt.replace("{input}", user_input)
        return self.system_prompt
