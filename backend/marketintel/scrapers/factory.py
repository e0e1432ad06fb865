"""Factory for creating and configuring source adapter instances."""

from typing import Dict, Optional, Type

import structlog

from marketintel.config import Settings, settings as default_settings
from marketintel.scrapers.base import BaseAdapter
from marketintel.scrapers.utils import DomainRateLimiter, ProxyManager

logger = structlog.get_logger(__name__)


class AdapterFactory:
    """Registry of adapter classes plus the shared services they are wired with.

    The rate limiter and proxy pool live here so they are shared across
    every invocation of the process, while fetchers and browsers are
    created per invocation.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.rate_limiter = DomainRateLimiter()

        proxy_list = self.settings.get_proxy_list()
        self.proxy_manager: Optional[ProxyManager] = ProxyManager(proxy_list) if proxy_list else None
        if proxy_list:
            logger.info("proxy_manager_initialized", proxy_count=len(proxy_list))

        self._adapter_registry: Dict[str, Type[BaseAdapter]] = {}

    def register_adapter(self, source_site: str, adapter_class: Type[BaseAdapter]) -> None:
        """Register an adapter class for a source slug.

        Raises:
            ValueError: If the class does not inherit from BaseAdapter
        """
        if not isinstance(adapter_class, type) or not issubclass(adapter_class, BaseAdapter):
            raise ValueError(f"Adapter class must inherit from BaseAdapter: {adapter_class}")

        self._adapter_registry[source_site] = adapter_class
        logger.debug("adapter_registered", source_site=source_site, adapter_type=adapter_class.adapter_type)

    def create_adapter(self, source_site: str) -> Optional[BaseAdapter]:
        """Create a configured adapter instance, or None if not registered."""
        adapter_class = self._adapter_registry.get(source_site)
        if not adapter_class:
            logger.warning("adapter_not_found", source_site=source_site)
            return None

        adapter = adapter_class()
        adapter.max_deals = self.settings.MAX_DEALS_PER_SITE
        adapter.detail_timeout = self.settings.DETAIL_FETCH_TIMEOUT_SECONDS
        return adapter

    def get_registered_sources(self) -> list[str]:
        return list(self._adapter_registry.keys())

    def has_adapter(self, source_site: str) -> bool:
        return source_site in self._adapter_registry


# Global factory instance
adapter_factory = AdapterFactory()


def get_adapter_factory() -> AdapterFactory:
    """Get the global adapter factory instance."""
    return adapter_factory
