"""SQLAlchemy models for the deal scanner.

All models are imported here so metadata.create_all and migrations see them.
"""

from marketintel.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from marketintel.models.deal_record import (
    DealRecord,
    DEAL_STATUS_ACTIVE,
    DEAL_STATUS_EXPIRED,
)
from marketintel.models.deal_snapshot import DealSnapshot
from marketintel.models.scan_run import ScanRun

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "DealRecord",
    "DealSnapshot",
    "ScanRun",
    "DEAL_STATUS_ACTIVE",
    "DEAL_STATUS_EXPIRED",
]
