"""Sales statistics derived from deal snapshots.

Units sold is a running counter on most sites, so sales over a period are
the latest snapshot minus the last snapshot taken before the period began.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketintel.models.deal_record import DEAL_STATUS_ACTIVE, DealRecord
from marketintel.models.deal_snapshot import DealSnapshot

logger = structlog.get_logger(__name__)


@dataclass
class SalesWindow:
    today: Optional[int] = None
    this_week: Optional[int] = None
    this_month: Optional[int] = None


@dataclass
class SiteSummary:
    source_site: str
    active_deals: int
    total_units_sold: int


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def sales_since(snapshots: Sequence[DealSnapshot], since: datetime) -> Optional[int]:
    """Units sold between ``since`` and the latest snapshot.

    Returns None when there is no counted snapshot at or before ``since``.
    """
    counted = [s for s in snapshots if s.units_sold is not None]
    if len(counted) < 2:
        return None

    counted.sort(key=lambda s: _aware(s.scanned_at))
    before = [s for s in counted if _aware(s.scanned_at) <= since]
    if not before:
        return None
    return counted[-1].units_sold - before[-1].units_sold


def period_starts(now: datetime) -> tuple[datetime, datetime, datetime]:
    """Start of today, of this week (Monday) and of this month, in UTC."""
    today = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    week = today - timedelta(days=today.weekday())
    month = today.replace(day=1)
    return today, week, month


class DealStatsService:
    """Read-only reporting queries over deal records and snapshots."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def sales_window(self, deal_id: UUID, now: Optional[datetime] = None) -> SalesWindow:
        result = await self.db.execute(
            select(DealSnapshot)
            .where(DealSnapshot.deal_id == deal_id)
            .order_by(DealSnapshot.scanned_at.asc())
        )
        snapshots = list(result.scalars().all())
        today, week, month = period_starts(now or datetime.now(timezone.utc))
        return SalesWindow(
            today=sales_since(snapshots, today),
            this_week=sales_since(snapshots, week),
            this_month=sales_since(snapshots, month),
        )

    async def site_summaries(self) -> List[SiteSummary]:
        """Active deal count and summed units sold per site."""
        result = await self.db.execute(
            select(
                DealRecord.source_site,
                func.count(DealRecord.id),
                func.coalesce(func.sum(DealRecord.units_sold), 0),
            )
            .where(DealRecord.status == DEAL_STATUS_ACTIVE)
            .group_by(DealRecord.source_site)
            .order_by(DealRecord.source_site)
        )
        return [
            SiteSummary(source_site=site, active_deals=count, total_units_sold=int(total))
            for site, count, total in result.all()
        ]
