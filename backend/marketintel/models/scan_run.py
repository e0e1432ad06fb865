"""Scan run tracking and monitoring."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, String, Text, Integer, Numeric, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from marketintel.models.base import Base, UUIDPrimaryKeyMixin


class ScanRun(UUIDPrimaryKeyMixin, Base):
    """Tracks one scan sequence across all of its chunks.

    A run is opened by the first chunk of a sequence, accumulates counts and
    errors from every chunk, and is closed by the chunk that completes the
    last source.
    """

    __tablename__ = "scan_runs"

    trigger: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="cron",
        comment="What started the run: 'cron', 'manual', 'cli'",
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="running",
        index=True,
        comment="Status: 'running', 'completed', 'failed'",
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(8, 2),
        nullable=True,
        comment="Wall-clock seconds across all chunks",
    )

    # Metrics
    chunks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deals_expired: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Error tracking
    errors: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Sources covered so far, in order
    sources: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return f"<ScanRun(id={self.id}, status='{self.status}', started_at={self.started_at})>"
