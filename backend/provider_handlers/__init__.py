"""
Provider Handlers Package.

Maps a provider ``type`` to the handler class that understands its API.
Jobs create handlers through ``create_handler`` and only use the
ProviderHandler capability set.
"""
from typing import Optional

from cancellation import CancellationToken
from catalog import Provider
from errors import ConfigError
from http_fetcher import HttpFetcher
from provider_handlers.agtv import AGTVHandler
from provider_handlers.base import ProviderHandler
from provider_handlers.xtream import XtreamHandler
from repositories import CategoryRepository, ProviderTitleRepository

HANDLER_TYPES: dict[str, type[ProviderHandler]] = {
    AGTVHandler.provider_type: AGTVHandler,
    XtreamHandler.provider_type: XtreamHandler,
}


def create_handler(
    provider: Provider,
    fetcher: HttpFetcher,
    title_repo: ProviderTitleRepository,
    category_repo: CategoryRepository,
    cancel_token: Optional[CancellationToken] = None,
) -> ProviderHandler:
    """Instantiate the handler for ``provider.type``."""
    handler_class = HANDLER_TYPES.get(provider.type)
    if handler_class is None:
        raise ConfigError(f"Provider {provider.id} has unsupported type '{provider.type}'")
    return handler_class(provider, fetcher, title_repo, category_repo, cancel_token)


__all__ = [
    "AGTVHandler",
    "HANDLER_TYPES",
    "ProviderHandler",
    "XtreamHandler",
    "create_handler",
]
