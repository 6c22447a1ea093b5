from __future__ import annotations

import logging
from importlib.metadata import entry_points

from tagforge.providers.base import Provider
from tagforge.providers.litellm_provider import LiteLLMProvider
from tagforge.streaming.errors import ProviderError

logger = logging.getLogger(__name__)

BUILTIN_PROVIDERS: dict[str, type] = {"litellm": LiteLLMProvider}


def load_provider_classes() -> dict[str, type]:
    classes: dict[str, type] = dict(BUILTIN_PROVIDERS)
    for ep in entry_points(group="tagforge.providers"):
        try:
            classes[ep.name] = ep.load()
        except Exception as e:
            logger.warning(f"Skipping provider plugin {ep.name}: {e}")
    return classes


def available_providers() -> list[str]:
    return sorted(load_provider_classes())


def create_provider(name: str) -> Provider:
    cls = load_provider_classes().get(name)
    if cls is None:
        raise ProviderError(f"Provider '{name}' implementation not found.")
    return cls()
