"""Tests for the scan orchestrator and the scheduled chunk sequence."""

import asyncio

import httpx
import pytest
from tenacity import wait_none

from marketintel.core.exceptions import NetworkError, ScanInProgressError, UnknownSourceError
from marketintel.models import DEAL_STATUS_ACTIVE, DEAL_STATUS_EXPIRED
from marketintel.schemas.scan import ScanCursor, ScanPhase
from marketintel.scrapers.factory import AdapterFactory
from marketintel.scrapers.scan_service import ScanOrchestrator
from marketintel.scrapers.scheduler import ScanScheduler
from marketintel.services.deal_ledger import DealLedger
from marketintel.services.scan_run_service import RUN_STATUS_COMPLETED, RUN_STATUS_FAILED, ScanRunService

from conftest import make_candidate


class FakeBrowser:
    """Stands in for BrowserManager; counts how often it is opened and closed."""

    instances = []

    def __init__(self):
        self.entered = False
        self.closed = False
        FakeBrowser.instances.append(self)

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.closed = True

    async def render(self, url, **kwargs):
        raise AssertionError("fake adapters never render")


@pytest.fixture
def orchestrator_for(session_factory, test_settings):
    """Build an orchestrator around a registered adapter class."""
    FakeBrowser.instances = []

    def build(adapter_class, settings=None):
        settings = settings or test_settings
        factory = AdapterFactory(settings=settings)
        factory.register_adapter("fakesite", adapter_class)
        return ScanOrchestrator(
            session_factory,
            adapter_factory=factory,
            settings=settings,
            browser_factory=FakeBrowser,
            http_client_factory=httpx.AsyncClient,
        )

    return build


async def _seed(session_factory, *slugs):
    async with session_factory() as db:
        await DealLedger(db).reconcile([make_candidate(slug) for slug in slugs])


async def _record(session_factory, slug):
    async with session_factory() as db:
        return await DealLedger(db).get_record("fakesite", f"https://fakesite.example/deals/{slug}")


class TestRunChunkedScan:
    """One chunk at a time."""

    async def test_chunks_advance_until_complete(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a", "b", "c", "d", "e"]
        orchestrator = orchestrator_for(fake_adapter_class)

        first = await orchestrator.run_chunked_scan("fakesite")
        assert first.processed == 2
        assert first.created == 2
        assert first.is_complete is False
        assert first.next_cursor.offset == 2
        assert first.total_available == 5

        second = await orchestrator.run_chunked_scan("fakesite", first.next_cursor)
        assert second.processed == 2
        assert second.next_cursor.offset == 4
        assert len(second.next_cursor.observed) == 5

        last = await orchestrator.run_chunked_scan("fakesite", second.next_cursor)
        assert last.processed == 1
        assert last.is_complete is True
        assert last.next_cursor is None
        assert last.expired == 0

    async def test_cursor_survives_json_round_trip(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a", "b", "c"]
        orchestrator = orchestrator_for(fake_adapter_class)

        first = await orchestrator.run_chunked_scan("fakesite")
        resumed = ScanCursor.from_json(first.next_cursor.to_json())
        last = await orchestrator.run_chunked_scan("fakesite", resumed)

        assert last.is_complete is True
        assert last.processed == 1

    async def test_final_chunk_expires_unseen_records(self, fake_adapter_class, orchestrator_for, session_factory):
        """A completed scan listing only "a" expires the stored "b"."""
        await _seed(session_factory, "a", "b")
        fake_adapter_class.slugs = ["a"]
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.is_complete is True
        assert result.expired == 1
        kept = await _record(session_factory, "a")
        gone = await _record(session_factory, "b")
        assert kept.status == DEAL_STATUS_ACTIVE
        assert gone.status == DEAL_STATUS_EXPIRED
        assert gone.expires_at is not None

    async def test_sweep_uses_identities_from_every_chunk(self, fake_adapter_class, orchestrator_for, session_factory):
        await _seed(session_factory, "a", "old")
        fake_adapter_class.slugs = ["a", "b", "c"]
        orchestrator = orchestrator_for(fake_adapter_class)

        first = await orchestrator.run_chunked_scan("fakesite")
        last = await orchestrator.run_chunked_scan("fakesite", first.next_cursor)

        assert first.expired == 0
        assert last.expired == 1
        assert (await _record(session_factory, "a")).status == DEAL_STATUS_ACTIVE
        assert (await _record(session_factory, "old")).status == DEAL_STATUS_EXPIRED

    async def test_entry_shifted_into_processed_window_is_not_expired(
        self, fake_adapter_class, orchestrator_for, session_factory
    ):
        """Upstream order changes between chunks of a re-enumerated listing."""
        await _seed(session_factory, "c")

        class ShiftingAdapter(fake_adapter_class):
            listings = [["a", "b", "c", "d"], ["b", "c", "d"]]

            async def enumerate_listing(self, limit, deadline):
                type(self).slugs = self.listings[min(type(self).listing_calls, 1)]
                return await super().enumerate_listing(limit, deadline)

        orchestrator = orchestrator_for(ShiftingAdapter)

        first = await orchestrator.run_chunked_scan("fakesite")
        last = await orchestrator.run_chunked_scan("fakesite", first.next_cursor)

        assert first.processed == 2
        assert last.is_complete is True
        assert last.processed == 1
        assert last.expired == 0
        assert (await _record(session_factory, "c")).status == DEAL_STATUS_ACTIVE

    async def test_sweep_failure_is_reported_not_raised(
        self, fake_adapter_class, orchestrator_for, session_factory, monkeypatch
    ):
        await _seed(session_factory, "old")
        fake_adapter_class.slugs = ["a"]
        orchestrator = orchestrator_for(fake_adapter_class)

        async def broken_sweep(self, source_site, observed):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(DealLedger, "sweep_expired", broken_sweep)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.is_complete is True
        assert result.created == 1
        assert result.expired == 0
        assert any("database is locked" in e for e in result.errors)
        assert (await _record(session_factory, "old")).status == DEAL_STATUS_ACTIVE
        assert (await _record(session_factory, "a")).status == DEAL_STATUS_ACTIVE

    async def test_zero_candidates_skips_sweep(self, fake_adapter_class, orchestrator_for, session_factory):
        await _seed(session_factory, "a")
        fake_adapter_class.slugs = []
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.is_complete is True
        assert result.yielded_candidates is False
        assert result.expired == 0
        assert any("zero candidates" in e for e in result.errors)
        assert (await _record(session_factory, "a")).status == DEAL_STATUS_ACTIVE

    async def test_truncated_listing_skips_sweep(self, fake_adapter_class, orchestrator_for, session_factory):
        await _seed(session_factory, "old")
        fake_adapter_class.slugs = ["a"]
        fake_adapter_class.truncated = True
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.is_complete is True
        assert result.expired == 0
        assert (await _record(session_factory, "old")).status == DEAL_STATUS_ACTIVE

    async def test_failed_detail_does_not_expire(self, fake_adapter_class, orchestrator_for, session_factory):
        """A listed deal whose detail stage failed is still observed."""
        await _seed(session_factory, "b")
        fake_adapter_class.slugs = ["a", "b"]
        fake_adapter_class.skip = ("b",)
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.processed == 1
        assert result.expired == 0
        assert any("skipped" in e for e in result.errors)
        assert (await _record(session_factory, "b")).status == DEAL_STATUS_ACTIVE

    async def test_guard_returns_start_cursor(self, fake_adapter_class, orchestrator_for, test_settings):
        fake_adapter_class.slugs = ["a"]
        fake_adapter_class.listing_delay = 2.0
        settings = test_settings.model_copy(update={"CHUNK_TIME_BUDGET_SECONDS": 0.2})
        orchestrator = orchestrator_for(fake_adapter_class, settings)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.timed_out is True
        assert result.needs_retry is True
        assert result.is_complete is False
        assert result.processed == 0
        assert result.next_cursor.source == "fakesite"
        assert result.next_cursor.offset == 0
        assert any("wall-clock guard" in e for e in result.errors)

    async def test_guard_returns_the_same_cursor(self, fake_adapter_class, orchestrator_for, test_settings):
        fake_adapter_class.slugs = ["a", "b", "c"]
        fake_adapter_class.listing_delay = 2.0
        settings = test_settings.model_copy(update={"CHUNK_TIME_BUDGET_SECONDS": 0.2})
        orchestrator = orchestrator_for(fake_adapter_class, settings)
        cursor = ScanCursor(source="fakesite", offset=2, observed=["https://fakesite.example/deals/a"])

        result = await orchestrator.run_chunked_scan("fakesite", cursor)

        assert result.timed_out is True
        assert result.next_cursor == cursor

    async def test_listing_failure_marks_adapter_failed(self, fake_adapter_class, orchestrator_for, session_factory):
        await _seed(session_factory, "a")
        fake_adapter_class.listing_error = NetworkError("https://fakesite.example", "connection reset")
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_chunked_scan("fakesite")

        assert result.adapter_failed is True
        assert result.needs_retry is True
        assert result.next_cursor.offset == 0
        assert any("listing failed" in e for e in result.errors)
        assert (await _record(session_factory, "a")).status == DEAL_STATUS_ACTIVE

    async def test_unknown_source(self, fake_adapter_class, orchestrator_for):
        orchestrator = orchestrator_for(fake_adapter_class)

        with pytest.raises(UnknownSourceError):
            await orchestrator.run_chunked_scan("nope")

    async def test_cursor_for_another_source_is_rejected(self, fake_adapter_class, orchestrator_for):
        orchestrator = orchestrator_for(fake_adapter_class)

        with pytest.raises(ValueError):
            await orchestrator.run_chunked_scan("fakesite", ScanCursor.start("oferta24"))

    async def test_second_chunk_for_same_source_is_refused(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a"]
        fake_adapter_class.listing_delay = 0.5
        orchestrator = orchestrator_for(fake_adapter_class)

        running = asyncio.create_task(orchestrator.run_chunked_scan("fakesite"))
        await asyncio.sleep(0.1)
        assert orchestrator.is_in_flight("fakesite") is True

        with pytest.raises(ScanInProgressError):
            await orchestrator.run_chunked_scan("fakesite")

        result = await running
        assert result.is_complete is True
        assert orchestrator.is_in_flight("fakesite") is False

    async def test_browser_is_scoped_to_the_call(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a"]
        orchestrator = orchestrator_for(fake_adapter_class)

        await orchestrator.run_chunked_scan("fakesite")
        await orchestrator.run_chunked_scan("fakesite")

        assert len(FakeBrowser.instances) == 2
        assert all(b.entered and b.closed for b in FakeBrowser.instances)

    async def test_progress_events_reach_subscriber(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a", "b"]
        orchestrator = orchestrator_for(fake_adapter_class)
        events = []

        await orchestrator.run_chunked_scan("fakesite", on_event=events.append)

        phases = [e.phase for e in events]
        assert phases[0] == ScanPhase.CONNECTING
        assert ScanPhase.LISTING in phases
        assert ScanPhase.PERSISTING in phases
        assert phases[-1] == ScanPhase.COMPLETE
        assert all(e.site == "fakesite" for e in events)

    async def test_broken_subscriber_does_not_break_scan(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a"]
        orchestrator = orchestrator_for(fake_adapter_class)

        def explode(event):
            raise RuntimeError("subscriber gone")

        result = await orchestrator.run_chunked_scan("fakesite", on_event=explode)

        assert result.is_complete is True
        assert result.created == 1


class TestRunFullScan:
    """In-process scans of whole sources."""

    async def test_full_scan_drives_source_to_completion(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a", "b", "c", "d", "e"]
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_full_scan(["fakesite"])

        assert result.success is True
        assert len(result.chunks["fakesite"]) == 3
        assert result.processed == 5
        assert result.created == 5
        assert result.chunks["fakesite"][-1].is_complete is True
        # One browser for the whole invocation
        assert len(FakeBrowser.instances) == 1
        assert FakeBrowser.instances[0].closed is True

    async def test_full_scan_defaults_to_enabled_sources(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a"]
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_full_scan()

        assert list(result.chunks) == ["fakesite"]

    async def test_full_scan_stops_source_on_failure(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.listing_error = NetworkError("https://fakesite.example", "connection reset")
        orchestrator = orchestrator_for(fake_adapter_class)

        result = await orchestrator.run_full_scan(["fakesite"])

        assert result.success is False
        assert len(result.chunks["fakesite"]) == 1
        assert result.errors[0].startswith("[fakesite]")

    async def test_full_scan_rejects_unknown_source_up_front(self, fake_adapter_class, orchestrator_for):
        fake_adapter_class.slugs = ["a"]
        orchestrator = orchestrator_for(fake_adapter_class)

        with pytest.raises(UnknownSourceError):
            await orchestrator.run_full_scan(["fakesite", "nope"])
        assert fake_adapter_class.listing_calls == 0


@pytest.fixture
def scheduler_for(session_factory, test_settings, orchestrator_for):
    def build(adapter_class):
        scheduler = ScanScheduler(session_factory, orchestrator_for(adapter_class), test_settings)
        scheduler.retry_wait = wait_none()
        return scheduler
    return build


class TestScanScheduler:
    """The chunk sequence with retries and run bookkeeping."""

    async def test_sequence_records_completed_run(self, fake_adapter_class, scheduler_for, session_factory):
        fake_adapter_class.slugs = ["a", "b", "c", "d", "e"]
        scheduler = scheduler_for(fake_adapter_class)

        run_id = await scheduler.run_sequence(trigger="manual")

        async with session_factory() as db:
            run = await ScanRunService(db).get_run(run_id)
        assert run.status == RUN_STATUS_COMPLETED
        assert run.chunks == 3
        assert run.deals_processed == 5
        assert run.deals_created == 5
        assert run.sources == ["fakesite"]
        assert run.completed_at is not None

    async def test_failed_chunk_is_retried_with_same_cursor(self, fake_adapter_class, scheduler_for, session_factory):
        class FlakyAdapter(fake_adapter_class):
            async def enumerate_listing(self, limit, deadline):
                if type(self).listing_calls == 0:
                    type(self).listing_calls += 1
                    raise NetworkError("https://fakesite.example", "connection reset")
                return await super().enumerate_listing(limit, deadline)

        FlakyAdapter.slugs = ["a", "b"]
        scheduler = scheduler_for(FlakyAdapter)

        run_id = await scheduler.run_sequence()

        async with session_factory() as db:
            run = await ScanRunService(db).get_run(run_id)
        assert FlakyAdapter.listing_calls == 2
        assert run.status == RUN_STATUS_COMPLETED
        assert run.chunks == 1
        assert run.deals_created == 2

    async def test_exhausted_retries_fail_the_run(self, fake_adapter_class, scheduler_for, session_factory):
        fake_adapter_class.listing_error = NetworkError("https://fakesite.example", "connection reset")
        scheduler = scheduler_for(fake_adapter_class)

        run_id = await scheduler.run_sequence()

        async with session_factory() as db:
            run = await ScanRunService(db).get_run(run_id)
        assert fake_adapter_class.listing_calls == 3
        assert run.status == RUN_STATUS_FAILED
        assert "gave up after 3 attempts" in run.error_message
        assert any("listing failed" in e for e in run.errors)

    async def test_unknown_source_fails_the_run(self, fake_adapter_class, scheduler_for, session_factory):
        scheduler = scheduler_for(fake_adapter_class)

        run_id = await scheduler.run_sequence(["nope"])

        async with session_factory() as db:
            run = await ScanRunService(db).get_run(run_id)
        assert run.status == RUN_STATUS_FAILED
        assert "Unknown source: nope" in run.error_message

    async def test_crashed_sequence_still_closes_its_run(self, fake_adapter_class, scheduler_for, session_factory):
        fake_adapter_class.slugs = ["a"]
        scheduler = scheduler_for(fake_adapter_class)

        async def crash(source, cursor=None, on_event=None):
            raise RuntimeError("connection pool exhausted")

        scheduler.orchestrator.run_chunked_scan = crash

        with pytest.raises(RuntimeError):
            await scheduler.run_sequence()

        async with session_factory() as db:
            runs = await ScanRunService(db).latest_runs()
        assert len(runs) == 1
        assert runs[0].status == RUN_STATUS_FAILED
        assert runs[0].completed_at is not None
        assert "connection pool exhausted" in runs[0].error_message

    async def test_start_registers_daily_job(self, fake_adapter_class, scheduler_for):
        scheduler = scheduler_for(fake_adapter_class)

        scheduler.start()
        try:
            assert scheduler.is_running() is True
            status = scheduler.get_jobs_status()
            assert "scan_sequence" in status
            assert status["scan_sequence"]["next_run"] is not None
        finally:
            scheduler.stop()
