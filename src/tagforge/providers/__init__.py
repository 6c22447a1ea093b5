from tagforge.providers.base import Provider, ProviderCredentials

__all__ = ["Provider", "ProviderCredentials"]
