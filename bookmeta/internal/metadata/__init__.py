"""
Metadata provider adapters.

Each adapter maps one external catalog onto `NormalizedBook`. `build_providers`
returns the enabled adapters in chain order.
"""

from bookmeta.internal.env_settings import ProviderSettings
from bookmeta.internal.models import ApiSource

from .base import HttpProvider, ProviderClient, ProviderSearchResult
from .google_books import GoogleBooksProvider
from .isbndb import IsbndbProvider
from .open_library import OpenLibraryProvider

CHAIN_ORDER = (ApiSource.primary, ApiSource.secondary, ApiSource.tertiary)


def build_providers(settings: ProviderSettings) -> list[ProviderClient]:
    timeout = settings.provider_timeout_seconds
    available: dict[ApiSource, ProviderClient] = {
        ApiSource.primary: IsbndbProvider(settings.isbndb_api_key, timeout=timeout),
        ApiSource.secondary: OpenLibraryProvider(settings.open_library_user_agent, timeout=timeout),
        ApiSource.tertiary: GoogleBooksProvider(settings.google_books_api_key, timeout=timeout),
    }
    enabled = {ApiSource(source) for source in settings.enabled}
    return [available[source] for source in CHAIN_ORDER if source in enabled]


__all__ = [
    "GoogleBooksProvider",
    "HttpProvider",
    "IsbndbProvider",
    "OpenLibraryProvider",
    "ProviderClient",
    "ProviderSearchResult",
    "build_providers",
]
