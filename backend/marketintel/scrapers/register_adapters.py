"""Register all source adapters with an adapter factory.

Call once at startup (CLI, scheduler) before running scans.
"""

from typing import Optional

import structlog

from marketintel.scrapers.adapters import (
    BGeneralAdapter,
    DegustaAdapter,
    Oferta24Adapter,
    RantanOfertasAdapter,
)
from marketintel.scrapers.factory import AdapterFactory, get_adapter_factory

logger = structlog.get_logger(__name__)

ADAPTERS = [
    # Structured-list sources
    ("rantanofertas", RantanOfertasAdapter),
    ("degusta", DegustaAdapter),
    # Rendered sources
    ("oferta24", Oferta24Adapter),
    ("bgeneral", BGeneralAdapter),
]


def register_all_adapters(factory: Optional[AdapterFactory] = None) -> AdapterFactory:
    """Register every known adapter and return the factory."""
    factory = factory or get_adapter_factory()

    for source_site, adapter_class in ADAPTERS:
        try:
            factory.register_adapter(source_site, adapter_class)
        except ValueError as e:
            logger.error("adapter_registration_failed", source_site=source_site, error=str(e))

    logger.info(
        "all_adapters_registered",
        count=len(factory.get_registered_sources()),
        sources=factory.get_registered_sources(),
    )
    return factory
