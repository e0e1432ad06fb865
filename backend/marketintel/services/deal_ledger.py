"""Deal Ledger: reconciles scraped candidates into deal records and snapshots.

Handles creating and refreshing deal records, appending metric snapshots
when something tracked changes, and expiring records that a completed scan
no longer sees.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Set
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketintel.models.deal_record import DEAL_STATUS_ACTIVE, DEAL_STATUS_EXPIRED, DealRecord
from marketintel.models.deal_snapshot import DealSnapshot
from marketintel.scrapers.base import CandidateDeal

logger = structlog.get_logger(__name__)

# Metrics whose change produces a snapshot
TRACKED_METRICS = ("offer_price", "original_price", "discount_percent", "units_sold")

_CENT = Decimal("0.01")


def _normalize_metric(name: str, value):
    if value is None:
        return None
    if name in ("offer_price", "original_price"):
        return Decimal(str(value)).quantize(_CENT)
    return int(value)


@dataclass
class ReconcileStats:
    """Counts from one reconcile call."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    snapshotted: int = 0
    with_units_sold: int = 0
    errors: List[str] = field(default_factory=list)


class DealLedger:
    """Persistence rules for deal records.

    Each candidate is reconciled in its own transaction, so one bad row
    never rolls back the rest of the batch.
    """

    def __init__(self, db: AsyncSession):
        """Initialize the ledger.

        Args:
            db: Async database session
        """
        self.db = db
        self.logger = logger.bind(service="deal_ledger")

    async def reconcile(self, candidates: Sequence[CandidateDeal]) -> ReconcileStats:
        """Create or refresh a record for every candidate.

        New identities get a record plus an initial snapshot. Existing ones
        have descriptive fields refreshed, are (re)activated, and get a
        snapshot only if a tracked metric changed.

        Args:
            candidates: Candidates from one chunk

        Returns:
            ReconcileStats; per-candidate failures are listed in ``errors``
        """
        stats = ReconcileStats()

        for candidate in candidates:
            stats.processed += 1
            if candidate.units_sold is not None:
                stats.with_units_sold += 1
            try:
                created, snapshotted = await self._reconcile_one(candidate)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                stats.errors.append(f"Failed to save {candidate.source_url}: {e}")
                self.logger.error(
                    "reconcile_failed",
                    source_site=candidate.source_site,
                    source_url=candidate.source_url,
                    error=str(e),
                    exc_info=True,
                )
                continue

            if created:
                stats.created += 1
            else:
                stats.updated += 1
            if snapshotted:
                stats.snapshotted += 1

        self.logger.info(
            "reconcile_complete",
            processed=stats.processed,
            created=stats.created,
            updated=stats.updated,
            snapshotted=stats.snapshotted,
            errors=len(stats.errors),
        )
        return stats

    async def _reconcile_one(self, candidate: CandidateDeal) -> tuple[bool, bool]:
        """Returns (created, snapshotted). Does not commit."""
        now = datetime.now(timezone.utc)
        record = await self.get_record(candidate.source_site, candidate.source_url)

        if record is None:
            record = DealRecord(
                source_site=candidate.source_site,
                source_url=candidate.source_url,
                merchant_name=candidate.merchant_name,
                title=candidate.title,
                description=candidate.description,
                image_url=candidate.image_url,
                badge=candidate.badge,
                status=DEAL_STATUS_ACTIVE,
                is_tracking=True,
                first_seen_at=now,
                last_scanned_at=now,
                metadata_=dict(candidate.metadata),
                **{m: _normalize_metric(m, getattr(candidate, m)) for m in TRACKED_METRICS},
            )
            self.db.add(record)
            await self.db.flush()
            self.db.add(self._snapshot_of(record, now))
            self.logger.debug("deal_created", source_site=record.source_site, source_url=record.source_url)
            return True, True

        # None means "not observed this time", not "dropped to nothing"
        changed = []
        for metric in TRACKED_METRICS:
            incoming = _normalize_metric(metric, getattr(candidate, metric))
            if incoming is None:
                continue
            if incoming != _normalize_metric(metric, getattr(record, metric)):
                changed.append(metric)
                setattr(record, metric, incoming)

        record.merchant_name = candidate.merchant_name
        record.title = candidate.title
        record.badge = candidate.badge
        if candidate.image_url:
            record.image_url = candidate.image_url
        if candidate.description:
            record.description = candidate.description
        if candidate.metadata:
            record.metadata_ = {**(record.metadata_ or {}), **candidate.metadata}

        if record.status != DEAL_STATUS_ACTIVE:
            self.logger.info("deal_reactivated", deal_id=str(record.id), source_url=record.source_url)
        record.status = DEAL_STATUS_ACTIVE
        record.expires_at = None
        record.last_scanned_at = now

        if changed:
            self.db.add(self._snapshot_of(record, now))
            self.logger.debug("deal_metrics_changed", deal_id=str(record.id), metrics=changed)
        return False, bool(changed)

    @staticmethod
    def _snapshot_of(record: DealRecord, now: datetime) -> DealSnapshot:
        return DealSnapshot(
            deal_id=record.id,
            offer_price=record.offer_price,
            original_price=record.original_price,
            discount_percent=record.discount_percent,
            units_sold=record.units_sold,
            scanned_at=now,
        )

    async def sweep_expired(self, source_site: str, observed: Iterable[str]) -> int:
        """Expire active records of a site whose identity was not observed.

        Must only be called after a completed, non-empty scan of the site.
        With an empty observed set nothing is queried and nothing expires.

        Returns:
            Number of records moved to expired
        """
        observed_urls = list(dict.fromkeys(observed))
        if not observed_urls:
            self.logger.warning("sweep_skipped_empty", source_site=source_site)
            return 0

        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            select(DealRecord).where(and_(
                DealRecord.source_site == source_site,
                DealRecord.status == DEAL_STATUS_ACTIVE,
                DealRecord.source_url.notin_(observed_urls),
            ))
        )
        gone = list(result.scalars().all())
        for record in gone:
            record.status = DEAL_STATUS_EXPIRED
            record.expires_at = now
        await self.db.commit()

        expired = len(gone)
        self.logger.info("sweep_complete", source_site=source_site, observed=len(observed_urls), expired=expired)
        return expired

    async def get_record(self, source_site: str, source_url: str) -> Optional[DealRecord]:
        result = await self.db.execute(
            select(DealRecord).where(and_(
                DealRecord.source_site == source_site,
                DealRecord.source_url == source_url,
            ))
        )
        return result.scalar_one_or_none()

    async def active_identities(self, source_site: str) -> Set[str]:
        result = await self.db.execute(
            select(DealRecord.source_url).where(and_(
                DealRecord.source_site == source_site,
                DealRecord.status == DEAL_STATUS_ACTIVE,
            ))
        )
        return set(result.scalars().all())

    async def get_snapshots(self, deal_id: UUID) -> List[DealSnapshot]:
        """Snapshots of a record, oldest first."""
        result = await self.db.execute(
            select(DealSnapshot)
            .where(DealSnapshot.deal_id == deal_id)
            .order_by(DealSnapshot.scanned_at.asc(), DealSnapshot.id)
        )
        return list(result.scalars().all())

    async def set_tracking(self, deal_id: UUID, is_tracking: bool) -> Optional[DealRecord]:
        """Toggle whether a record is tracked in reports."""
        record = await self.db.get(DealRecord, deal_id)
        if record is None:
            return None
        record.is_tracking = is_tracking
        await self.db.commit()
        return record
