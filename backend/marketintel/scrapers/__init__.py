"""Scanner system for collecting deals from merchant deal sites.

This package provides:
- Base adapter classes and the candidate data structures they produce
- The resource fetcher, deadline token and bounded batch fetcher
- Factory for creating and configuring adapter instances
- The scan orchestrator and the scheduled chunk sequence driver
"""

from .base import (
    BaseAdapter,
    BaseAPIAdapter,
    BaseScraperAdapter,
    CandidateBatch,
    CandidateDeal,
    Listing,
)
from .factory import AdapterFactory, adapter_factory, get_adapter_factory

__all__ = [
    # Base classes
    "BaseAdapter",
    "BaseScraperAdapter",
    "BaseAPIAdapter",
    # Data structures
    "CandidateDeal",
    "CandidateBatch",
    "Listing",
    # Factory
    "AdapterFactory",
    "adapter_factory",
    "get_adapter_factory",
]
