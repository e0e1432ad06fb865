"""Scan run log: one row per scan sequence across all of its chunks."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

import structlog
from sqlalchemy import and_, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketintel.models.scan_run import ScanRun
from marketintel.schemas.scan import ScanChunkResult

logger = structlog.get_logger(__name__)

RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"

# Errors kept per run; a broken site can otherwise produce hundreds
MAX_STORED_ERRORS = 200


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ScanRunService:
    """Opens, accumulates and closes ScanRun rows."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.logger = logger.bind(service="scan_run_service")

    async def start_run(self, sources: List[str], trigger: str = "manual") -> ScanRun:
        run = ScanRun(
            trigger=trigger,
            status=RUN_STATUS_RUNNING,
            started_at=datetime.now(timezone.utc),
            sources=list(sources),
            errors=[],
        )
        self.db.add(run)
        await self.db.commit()
        await self.db.refresh(run)
        self.logger.info("scan_run_started", run_id=str(run.id), sources=sources, trigger=trigger)
        return run

    async def get_run(self, run_id: UUID) -> Optional[ScanRun]:
        return await self.db.get(ScanRun, run_id)

    async def record_chunk(self, run_id: UUID, result: ScanChunkResult) -> Optional[ScanRun]:
        """Add one chunk's counts and errors to its run."""
        run = await self.get_run(run_id)
        if run is None:
            self.logger.warning("scan_run_not_found", run_id=str(run_id))
            return None

        run.chunks += 1
        run.deals_processed += result.processed
        run.deals_created += result.created
        run.deals_updated += result.updated
        run.deals_expired += result.expired
        if result.errors:
            # Reassign so the JSON column is flagged dirty
            run.errors = [*run.errors, *(f"[{result.site}] {e}" for e in result.errors)][:MAX_STORED_ERRORS]
        if result.site not in run.sources:
            run.sources = [*run.sources, result.site]

        await self.db.commit()
        return run

    async def complete_run(
        self,
        run_id: UUID,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> Optional[ScanRun]:
        run = await self.get_run(run_id)
        if run is None:
            return None

        now = datetime.now(timezone.utc)
        run.status = RUN_STATUS_COMPLETED if success else RUN_STATUS_FAILED
        run.completed_at = now
        run.duration_seconds = Decimal(str(round((now - _aware(run.started_at)).total_seconds(), 2)))
        run.error_message = error_message
        await self.db.commit()

        self.logger.info(
            "scan_run_finished",
            run_id=str(run.id),
            status=run.status,
            chunks=run.chunks,
            processed=run.deals_processed,
            expired=run.deals_expired,
            errors=len(run.errors),
        )
        return run

    async def mark_stale_runs_failed(self, older_than_minutes: int) -> int:
        """Fail runs stuck in 'running', e.g. after the host killed the process."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)
        result = await self.db.execute(
            select(ScanRun).where(and_(
                ScanRun.status == RUN_STATUS_RUNNING,
                ScanRun.started_at < cutoff,
            ))
        )
        stale = list(result.scalars().all())
        now = datetime.now(timezone.utc)
        for run in stale:
            run.status = RUN_STATUS_FAILED
            run.completed_at = now
            run.error_message = f"Marked failed: still running after {older_than_minutes} minutes"
        await self.db.commit()

        if stale:
            self.logger.warning("stale_scan_runs_failed", count=len(stale))
        return len(stale)

    async def cleanup_old_runs(self, retention_days: int) -> int:
        """Delete runs started before the retention window."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        result = await self.db.execute(delete(ScanRun).where(ScanRun.started_at < cutoff))
        await self.db.commit()
        deleted = result.rowcount or 0
        if deleted:
            self.logger.info("old_scan_runs_deleted", count=deleted, retention_days=retention_days)
        return deleted

    async def latest_runs(self, limit: int = 20) -> List[ScanRun]:
        result = await self.db.execute(
            select(ScanRun).order_by(ScanRun.started_at.desc()).limit(limit)
        )
        return list(result.scalars().all())
