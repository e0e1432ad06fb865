"""Deal record: one competitor offer tracked across its lifetime."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON, String, Text, Boolean, Numeric, DateTime, Integer, Index, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketintel.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from marketintel.models.deal_snapshot import DealSnapshot


DEAL_STATUS_ACTIVE = "active"
DEAL_STATUS_EXPIRED = "expired"


class DealRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A deduplicated, status-bearing competitor deal.

    Identity is (source_site, source_url). Records are created on first
    sighting, updated on every reconciliation and never deleted; they only
    move between 'active' and 'expired'.
    """

    __tablename__ = "deal_records"

    # Identity
    source_site: Mapped[str] = mapped_column(String(50), nullable=False, comment="Source slug, e.g. 'oferta24'")
    source_url: Mapped[str] = mapped_column(String(1000), nullable=False, comment="Stable URL within the source")

    # Content
    merchant_name: Mapped[str] = mapped_column(String(300), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    badge: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="Badge text like '50+ vendidos'")

    # Tracked metrics
    offer_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    discount_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    units_sold: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DEAL_STATUS_ACTIVE,
        comment="'active' or 'expired'",
    )
    is_tracking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_scanned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the deal was detected as gone",
    )

    metadata_: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )

    __table_args__ = (
        UniqueConstraint("source_site", "source_url", name="uq_deal_records_identity"),
        Index("idx_deal_records_site_status", "source_site", "status"),
    )

    snapshots: Mapped[list["DealSnapshot"]] = relationship(
        back_populates="deal",
        order_by="DealSnapshot.scanned_at",
    )

    @property
    def is_active(self) -> bool:
        return self.status == DEAL_STATUS_ACTIVE

    def __repr__(self) -> str:
        return f"<DealRecord(id={self.id}, site='{self.source_site}', url='{self.source_url}', status='{self.status}')>"
