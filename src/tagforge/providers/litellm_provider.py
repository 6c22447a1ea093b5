import logging
import threading
from typing import Iterator

import httpx

from common import llm
from tagforge.providers.base import ProviderCredentials
from tagforge.streaming.errors import ProviderError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = httpx.Timeout(10.0, read=30.0)


def _wrap(name: str, exc: Exception) -> ProviderError:
    body = getattr(exc, "message", None)
    return ProviderError(
        f"{name} API Error: {exc}",
        status_code=getattr(exc, "status_code", None),
        body=body if isinstance(body, str) else str(exc),
    )


class LiteLLMProvider:
    """Any model litellm can route to; OpenAI-compatible ``base_url`` endpoints included."""

    name = "litellm"

    def __init__(self, http_client: httpx.Client | None = None):
        self._http = http_client

    def _get(self, url: str, credentials: ProviderCredentials) -> httpx.Response:
        headers = {}
        if credentials.api_key:
            headers["Authorization"] = f"Bearer {credentials.api_key}"
        try:
            if self._http is not None:
                return self._http.get(url, headers=headers, timeout=REQUEST_TIMEOUT)
            with httpx.Client(timeout=REQUEST_TIMEOUT) as client:
                return client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} API Error: {e}") from e

    def _models_url(self, credentials: ProviderCredentials) -> str:
        return f"{(credentials.base_url or '').rstrip('/')}/models"

    def ping(self, credentials: ProviderCredentials) -> bool:
        if credentials.base_url:
            response = self._get(self._models_url(credentials), credentials)
            if response.is_error:
                raise ProviderError(
                    f"HTTP {response.status_code} {response.reason_phrase}: {response.text[:100]}",
                    status_code=response.status_code,
                    body=response.text,
                )
            return True
        try:
            llm.completion(
                model="gpt-4o-mini",
                messages=llm.chat_messages(None, "ping"),
                max_tokens=1,
                api_key=credentials.api_key,
            )
        except Exception as e:
            raise _wrap(self.name, e) from e
        return True

    def list_models(self, credentials: ProviderCredentials) -> list[str]:
        if not credentials.base_url:
            return llm.known_models()
        response = self._get(self._models_url(credentials), credentials)
        if response.is_error:
            logger.warning(f"Model listing failed with HTTP {response.status_code}")
            return []
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Model listing returned non-JSON body")
            return []
        items = []
        if isinstance(payload, dict):
            items = payload.get("data") or payload.get("models") or []
        models: list[str] = []
        for item in items:
            if isinstance(item, dict):
                ident = item.get("id") or item.get("name")
                if isinstance(ident, str):
                    models.append(ident)
        return models

    def generate_streaming(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        credentials: ProviderCredentials,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[str]:
        stream = None
        try:
            stream = llm.completion(
                model=model,
                messages=llm.chat_messages(system_prompt, user_prompt),
                stream=True,
                api_key=credentials.api_key,
                api_base=credentials.base_url,
            )
            for chunk in stream:
                if cancel_event is not None and cancel_event.is_set():
                    logger.debug("Stream cancelled by caller")
                    break
                text = llm.delta_text(chunk)
                if text:
                    yield text
        except ProviderError:
            raise
        except Exception as e:
            raise _wrap(self.name, e) from e
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.debug(f"Ignoring error while closing stream: {e}")

    def preload(self, model: str, credentials: ProviderCredentials) -> None:
        logger.debug(f"Preload not required for {model}")
