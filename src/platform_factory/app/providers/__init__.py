"""REST clients for the provisioned resources and their in-memory fakes."""

from .http import ProviderAPIError, ProviderNotFoundError, ProviderTimeoutError
from .registry import ProviderClients, build_provider_clients

__all__ = [
    "ProviderAPIError",
    "ProviderClients",
    "ProviderNotFoundError",
    "ProviderTimeoutError",
    "build_provider_clients",
]
