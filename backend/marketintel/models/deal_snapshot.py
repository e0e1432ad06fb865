"""Append-only metric history for deal records."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy import ForeignKey, Numeric, DateTime, Integer, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketintel.models.base import Base, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from marketintel.models.deal_record import DealRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DealSnapshot(UUIDPrimaryKeyMixin, Base):
    """Point-in-time copy of a deal record's mutable metrics.

    Written when a record is created and whenever reconciliation sees a
    metric change. Never updated or deleted.
    """

    __tablename__ = "deal_snapshots"

    deal_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("deal_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    offer_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    discount_percent: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    units_sold: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    scanned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        comment="When these metrics were observed",
    )

    __table_args__ = (
        Index("idx_deal_snapshots_deal_scanned", "deal_id", "scanned_at"),
    )

    deal: Mapped["DealRecord"] = relationship(back_populates="snapshots")

    def __repr__(self) -> str:
        return f"<DealSnapshot(deal_id={self.deal_id}, units_sold={self.units_sold}, offer_price={self.offer_price}, scanned_at={self.scanned_at})>"
