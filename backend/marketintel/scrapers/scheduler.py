"""APScheduler-based scan scheduler.

Runs the daily scan sequence: every enabled source is driven chunk by
chunk through the orchestrator, each chunk re-invoked with the same cursor
when it timed out or its listing failed. Every sequence is logged as a
ScanRun.
"""

from typing import List, Optional
from uuid import UUID

import structlog
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_exponential

from marketintel.config import Settings, settings as default_settings
from marketintel.core.exceptions import MarketIntelException
from marketintel.schemas.scan import ScanChunkResult, ScanCursor
from marketintel.scrapers.progress import Subscriber
from marketintel.scrapers.scan_service import ScanOrchestrator
from marketintel.services.scan_run_service import ScanRunService

logger = structlog.get_logger(__name__)

SEQUENCE_JOB_ID = "scan_sequence"


class ScanScheduler:
    """Schedules and runs chunked scan sequences.

    This scheduler:
    - Fires one sequence a day at SCAN_CRON_HOUR (UTC)
    - Retries timed-out or failed chunks with the same cursor
    - Records every sequence to the scan_runs table
    - Fails stale runs and prunes old ones before each sequence
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        orchestrator: ScanOrchestrator,
        settings: Optional[Settings] = None,
    ):
        self.db_session_factory = db_session_factory
        self.orchestrator = orchestrator
        self.settings = settings or default_settings
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.retry_wait = wait_exponential(multiplier=1, min=2, max=30)
        self.logger = logger.bind(service="scan_scheduler")

    def start(self) -> Optional[Job]:
        """Register the daily sequence job and start the scheduler."""
        if self.scheduler.running:
            self.logger.warning("scheduler_already_running")
            return None

        self.scheduler.start()
        job = self.scheduler.add_job(
            func=self._run_sequence_wrapper,
            trigger=CronTrigger(hour=self.settings.SCAN_CRON_HOUR, minute=0, timezone="UTC"),
            id=SEQUENCE_JOB_ID,
            name="Daily deal scan",
            replace_existing=True,
            max_instances=1,
        )
        self.logger.info(
            "scheduler_started",
            cron_hour=self.settings.SCAN_CRON_HOUR,
            next_run=job.next_run_time.isoformat() if job.next_run_time else None,
        )
        return job

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    def get_jobs_status(self) -> dict:
        """Get status of the scheduled sequence job.

        Returns:
            Dict with job information keyed by job id, empty if not scheduled
        """
        job = self.scheduler.get_job(SEQUENCE_JOB_ID)
        if not job:
            return {}
        return {
            SEQUENCE_JOB_ID: {
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "trigger": str(job.trigger),
            }
        }

    def is_running(self) -> bool:
        return self.scheduler.running

    async def _run_sequence_wrapper(self) -> None:
        """Job entry point; a failed sequence must not take the scheduler down."""
        try:
            await self.run_sequence(trigger="cron")
        except Exception as e:
            self.logger.error("scan_sequence_crashed", error=str(e), exc_info=True)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        result = retry_state.outcome.result()
        self.logger.warning(
            "chunk_retry_scheduled",
            site=result.site,
            attempt=retry_state.attempt_number,
            timed_out=result.timed_out,
            errors=result.errors,
        )

    async def run_chunk_with_retry(
        self,
        source: str,
        cursor: ScanCursor,
        on_event: Optional[Subscriber] = None,
    ) -> ScanChunkResult:
        """Run one chunk, re-invoking it with the same cursor while it needs a retry.

        Returns the last result once it succeeds or attempts are exhausted.
        Exceptions (unknown source, source busy) are not retried.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.CHUNK_MAX_ATTEMPTS),
            wait=self.retry_wait,
            retry=retry_if_result(lambda r: r.needs_retry),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=self._log_retry,
        )
        return await retrying(self.orchestrator.run_chunked_scan, source, cursor, on_event)

    async def run_sequence(
        self,
        sources: Optional[List[str]] = None,
        trigger: str = "manual",
        on_event: Optional[Subscriber] = None,
    ) -> UUID:
        """Scan every source to completion, chunk by chunk.

        Returns:
            The ScanRun id of this sequence
        """
        sources = sources or self.settings.get_enabled_sources()

        async with self.db_session_factory() as db:
            runs = ScanRunService(db)
            await runs.mark_stale_runs_failed(self.settings.STALE_RUN_MINUTES)
            await runs.cleanup_old_runs(self.settings.RUN_RETENTION_DAYS)
            run = await runs.start_run(sources, trigger=trigger)
            run_id = run.id

        failures: List[str] = []
        try:
            await self._drive_sources(sources, run_id, failures, on_event)
        except BaseException as e:
            failures.append(f"sequence aborted: {type(e).__name__}: {e}")
            self.logger.error("scan_sequence_aborted", run_id=str(run_id), error=str(e), exc_info=True)
            raise
        finally:
            async with self.db_session_factory() as db:
                await ScanRunService(db).complete_run(
                    run_id,
                    success=not failures,
                    error_message="; ".join(failures) or None,
                )
        return run_id

    async def _drive_sources(
        self,
        sources: List[str],
        run_id: UUID,
        failures: List[str],
        on_event: Optional[Subscriber],
    ) -> None:
        for source in sources:
            cursor = ScanCursor.start(source, run_id=run_id)
            while True:
                try:
                    result = await self.run_chunk_with_retry(source, cursor, on_event)
                except MarketIntelException as e:
                    failures.append(e.message)
                    self.logger.error("sequence_source_failed", site=source, error=e.message)
                    break

                async with self.db_session_factory() as db:
                    await ScanRunService(db).record_chunk(run_id, result)

                if result.is_complete:
                    break
                if result.needs_retry:
                    failures.append(f"{source} gave up after {self.settings.CHUNK_MAX_ATTEMPTS} attempts")
                    break
                cursor = result.next_cursor
