"""Scan orchestration service.

Connects adapters, the fetcher stack and the Deal Ledger. A chunk is one
bounded unit of work for one source: list a window of candidates, reconcile
them, and either hand back a cursor for the next window or, on the last
window, sweep records the source no longer lists.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketintel.config import Settings, settings as default_settings
from marketintel.core.exceptions import (
    AdapterExhaustionError,
    ChunkTimeoutGuardError,
    ScanInProgressError,
    UnknownSourceError,
)
from marketintel.schemas.scan import AggregateResult, ScanChunkResult, ScanCursor, ScanPhase
from marketintel.scrapers.base import BaseAdapter, CandidateBatch
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.factory import AdapterFactory, get_adapter_factory
from marketintel.scrapers.fetcher import ResourceFetcher, build_http_client
from marketintel.scrapers.progress import ProgressChannel, Subscriber
from marketintel.scrapers.utils.browser_manager import BrowserManager
from marketintel.services.deal_ledger import DealLedger, ReconcileStats

logger = structlog.get_logger(__name__)


class ScanOrchestrator:
    """Runs chunks and full scans.

    At most one chunk per source is in flight at any time; the browser is
    scoped to one public call and never outlives it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapter_factory: Optional[AdapterFactory] = None,
        settings: Optional[Settings] = None,
        browser_factory: Optional[Callable[[], BrowserManager]] = None,
        http_client_factory: Optional[Callable] = None,
    ):
        """Initialize the orchestrator.

        Args:
            session_factory: Async session factory; each chunk uses its own session
            adapter_factory: Adapter registry, defaults to the global factory
            settings: Scanner settings, defaults to the global settings
            browser_factory: Builds the per-invocation BrowserManager
            http_client_factory: Builds the per-invocation httpx client
        """
        self.session_factory = session_factory
        self.adapter_factory = adapter_factory or get_adapter_factory()
        self.settings = settings or default_settings
        self._browser_factory = browser_factory or self._default_browser
        self._http_client_factory = http_client_factory or build_http_client
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(service="scan_orchestrator")

    def _default_browser(self) -> BrowserManager:
        return BrowserManager(
            headless=self.settings.BROWSER_HEADLESS,
            executable_path=self.settings.BROWSER_EXECUTABLE_PATH,
            proxy_manager=self.adapter_factory.proxy_manager,
        )

    def _resolve(self, source: str) -> BaseAdapter:
        adapter = self.adapter_factory.create_adapter(source)
        if adapter is None:
            raise UnknownSourceError(source)
        return adapter

    def is_in_flight(self, source: str) -> bool:
        lock = self._locks.get(source)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def _claim(self, source: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(source, asyncio.Lock())
        if lock.locked():
            raise ScanInProgressError(source)
        async with lock:
            yield

    @asynccontextmanager
    async def _invocation_scope(self) -> AsyncIterator[ResourceFetcher]:
        """HTTP client and browser owned by one public call."""
        async with self._http_client_factory() as client, self._browser_factory() as browser:
            yield ResourceFetcher(
                client,
                browser=browser,
                rate_limiter=self.adapter_factory.rate_limiter,
                request_timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
                page_timeout=self.settings.PAGE_TIMEOUT_SECONDS,
            )

    async def run_chunked_scan(
        self,
        source: str,
        cursor: Optional[ScanCursor] = None,
        on_event: Optional[Subscriber] = None,
    ) -> ScanChunkResult:
        """Run exactly one chunk for a source.

        Args:
            source: Source slug
            cursor: Resumption cursor from the previous chunk, None to start
            on_event: Optional progress subscriber

        Returns:
            ScanChunkResult; ``next_cursor`` is None once the source is complete

        Raises:
            UnknownSourceError: No adapter registered for the source
            ScanInProgressError: A chunk for this source is already running
        """
        if cursor is not None and cursor.source != source:
            raise ValueError(f"Cursor belongs to {cursor.source}, not {source}")

        adapter = self._resolve(source)
        async with self._claim(source):
            async with self._invocation_scope() as fetcher:
                return await self._run_chunk(adapter, fetcher, cursor, ProgressChannel(source, on_event))

    async def run_full_scan(
        self,
        sources: Optional[List[str]] = None,
        on_event: Optional[Subscriber] = None,
    ) -> AggregateResult:
        """Drive each source to completion in-process, one source after another.

        A chunk that times out or fails at the listing stage ends that source
        for this run; the remaining sources still run.
        """
        sources = sources or self.settings.get_enabled_sources()
        adapters = [self._resolve(source) for source in sources]

        aggregate = AggregateResult()
        started = time.monotonic()
        self.logger.info("full_scan_started", sources=sources)

        async with self._invocation_scope() as fetcher:
            for adapter in adapters:
                site = adapter.source_site
                progress = ProgressChannel(site, on_event)
                try:
                    async with self._claim(site):
                        cursor = None
                        while True:
                            result = await self._run_chunk(adapter, fetcher, cursor, progress)
                            aggregate.add_chunk(result)
                            if result.is_complete:
                                break
                            if result.needs_retry:
                                aggregate.success = False
                                break
                            cursor = result.next_cursor
                except ScanInProgressError as e:
                    aggregate.errors.append(e.message)
                    aggregate.success = False

        aggregate.duration_seconds = round(time.monotonic() - started, 2)
        self.logger.info(
            "full_scan_complete",
            processed=aggregate.processed,
            created=aggregate.created,
            updated=aggregate.updated,
            expired=aggregate.expired,
            errors=len(aggregate.errors),
            duration_seconds=aggregate.duration_seconds,
        )
        return aggregate

    async def _run_chunk(
        self,
        adapter: BaseAdapter,
        fetcher: ResourceFetcher,
        cursor: Optional[ScanCursor],
        progress: ProgressChannel,
    ) -> ScanChunkResult:
        """One chunk under the wall-clock guard."""
        site = adapter.source_site
        budget = self.settings.CHUNK_TIME_BUDGET_SECONDS
        deadline = ScanDeadline(site, budget)
        adapter.bind(fetcher, progress)
        started = time.monotonic()

        self.logger.info("chunk_started", site=site, offset=cursor.offset if cursor else 0, budget_seconds=budget)
        progress.emit(ScanPhase.CONNECTING, f"Starting {site} at offset {cursor.offset if cursor else 0}")

        try:
            result = await asyncio.wait_for(self._chunk_body(adapter, cursor, deadline, progress), timeout=budget)
        except (asyncio.TimeoutError, ChunkTimeoutGuardError):
            guard = ChunkTimeoutGuardError(site, budget)
            self.logger.warning("chunk_guard_fired", site=site, budget_seconds=budget)
            progress.emit(ScanPhase.ERROR, guard.message)
            result = ScanChunkResult(
                site=site,
                errors=[guard.message],
                is_complete=False,
                next_cursor=cursor or ScanCursor.start(site),
                timed_out=True,
            )

        result.duration_seconds = round(time.monotonic() - started, 2)
        self.logger.info(
            "chunk_finished",
            site=site,
            processed=result.processed,
            created=result.created,
            updated=result.updated,
            expired=result.expired,
            is_complete=result.is_complete,
            timed_out=result.timed_out,
            errors=len(result.errors),
            duration_seconds=result.duration_seconds,
        )
        return result

    async def _chunk_body(
        self,
        adapter: BaseAdapter,
        cursor: Optional[ScanCursor],
        deadline: ScanDeadline,
        progress: ProgressChannel,
    ) -> ScanChunkResult:
        site = adapter.source_site
        try:
            batch = await adapter.list_candidates(self.settings.CHUNK_SIZE, cursor, deadline)
        except ChunkTimeoutGuardError:
            raise
        except Exception as e:
            message = f"{site} listing failed: {e}"
            self.logger.error("adapter_failed", site=site, error=str(e), exc_info=True)
            progress.emit(ScanPhase.ERROR, message)
            return ScanChunkResult(
                site=site,
                errors=[message],
                next_cursor=cursor or ScanCursor.start(site),
                adapter_failed=True,
            )

        errors = list(batch.errors)
        if not batch.candidates:
            warning = AdapterExhaustionError(site)
            errors.append(warning.message)
            progress.emit(ScanPhase.ERROR, warning.message)

        progress.emit(ScanPhase.PERSISTING, f"Saving {len(batch.candidates)} deals", total=len(batch.candidates))
        is_complete = batch.next_cursor is None

        stats = ReconcileStats()
        expired = 0
        try:
            async with self.session_factory() as db:
                ledger = DealLedger(db)
                stats = await ledger.reconcile(batch.candidates)
                if is_complete and self._should_sweep(site, batch):
                    expired = await ledger.sweep_expired(site, batch.observed)
        except Exception as e:
            # Records stay active; the next completed sequence sweeps again
            message = f"{site} ledger write failed: {e}"
            self.logger.error("ledger_failed", site=site, error=str(e), exc_info=True)
            progress.emit(ScanPhase.ERROR, message)
            errors.append(message)
        errors.extend(stats.errors)

        result = ScanChunkResult(
            site=site,
            processed=stats.processed,
            created=stats.created,
            updated=stats.updated,
            snapshotted=stats.snapshotted,
            with_units_sold=stats.with_units_sold,
            expired=expired,
            yielded_candidates=bool(batch.candidates),
            total_available=batch.total_available,
            errors=errors,
            is_complete=is_complete,
            next_cursor=batch.next_cursor,
        )

        if is_complete:
            progress.emit(
                ScanPhase.COMPLETE,
                f"{site} complete: {result.created} new, {result.updated} updated, {expired} expired",
            )
        else:
            progress.emit(
                ScanPhase.COMPLETE,
                f"Chunk done, next offset {batch.next_cursor.offset}/{batch.total_available}",
                current=batch.next_cursor.offset,
                total=batch.total_available,
            )
        return result

    def _should_sweep(self, site: str, batch: CandidateBatch) -> bool:
        """Sweep only a complete, untruncated, non-empty enumeration."""
        if not batch.candidates:
            self.logger.warning("sweep_skipped", site=site, reason="no_candidates")
            return False
        if batch.truncated:
            self.logger.info("sweep_skipped", site=site, reason="listing_truncated")
            return False
        if not batch.observed:
            self.logger.warning("sweep_skipped", site=site, reason="nothing_observed")
            return False
        return True
