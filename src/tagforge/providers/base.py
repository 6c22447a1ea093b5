import threading
from dataclasses import dataclass
from typing import Iterator, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ProviderCredentials:
    api_key: str | None = None
    base_url: str | None = None


@runtime_checkable
class Provider(Protocol):
    name: str

    def ping(self, credentials: ProviderCredentials) -> bool:
        """Validate the credentials and endpoint; raise ProviderError on failure."""
        ...

    def list_models(self, credentials: ProviderCredentials) -> list[str]: ...

    def generate_streaming(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        credentials: ProviderCredentials,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[str]:
        """Yield text fragments until the response ends or ``cancel_event`` is set."""
        ...

    def preload(self, model: str, credentials: ProviderCredentials) -> None: ...
