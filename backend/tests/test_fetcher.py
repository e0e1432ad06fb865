"""Tests for the resource fetcher, the scan deadline and bounded batch fetching."""

import asyncio

import httpx
import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from marketintel.core.exceptions import (
    ChunkTimeoutGuardError,
    FetchTimeoutError,
    HttpStatusError,
    NetworkError,
    ParseError,
)
from marketintel.scrapers.batch import BoundedBatchFetcher
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.fetcher import ResourceFetcher, ResourceRef

URL = "https://shop.example/deals"


class SlowBrowser:
    def __init__(self, delay: float = 0.0, error: Exception = None):
        self.delay = delay
        self.error = error
        self.calls = []

    async def render(self, url, timeout, wait_selectors=(), max_scrolls=0, scroll_wait=1.5):
        self.calls.append({"url": url, "timeout": timeout, "max_scrolls": max_scrolls})
        if self.error:
            raise self.error
        await asyncio.sleep(self.delay)
        return "<html>rendered</html>"


class RecordingLimiter:
    def __init__(self):
        self.domains = []

    async def acquire(self, domain: str) -> None:
        self.domains.append(domain)


class TestScanDeadline:

    def test_unbounded_passes_timeout_through(self):
        assert ScanDeadline.unbounded().bound(15.0) == 15.0

    def test_bound_clamps_to_remaining(self):
        deadline = ScanDeadline("shop", 2.0)
        assert deadline.bound(15.0) <= 2.0
        assert deadline.bound(0.5) == 0.5

    def test_expired_deadline_raises(self):
        deadline = ScanDeadline("shop", 0.0)

        assert deadline.expired is True
        with pytest.raises(ChunkTimeoutGuardError):
            deadline.bound(15.0)


class TestResourceFetcher:
    """Plain and rendered retrievals and their error mapping."""

    async def test_plain_retrieval_returns_text(self, upstream):
        upstream.add(URL, text="<html>ok</html>")
        limiter = RecordingLimiter()

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client, rate_limiter=limiter)
            text = await fetcher.retrieve(ResourceRef(url=URL), ScanDeadline.unbounded())

        assert text == "<html>ok</html>"
        assert upstream.requests[0].headers["User-Agent"]
        assert limiter.domains == ["shop.example"]

    async def test_post_form_data(self, upstream):
        upstream.add(URL, text="done")

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            await fetcher.retrieve(
                ResourceRef(url=URL, method="POST", data={"q": "pizza"}),
                ScanDeadline.unbounded(),
            )

        request = upstream.requests[0]
        assert request.method == "POST"
        assert request.content == b"q=pizza"

    async def test_error_status_raises(self, upstream):
        upstream.add(URL, status=404)

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            with pytest.raises(HttpStatusError) as exc_info:
                await fetcher.retrieve(ResourceRef(url=URL), ScanDeadline.unbounded())

        assert exc_info.value.status_code == 404
        assert exc_info.value.url == URL

    async def test_transport_timeout_raises_fetch_timeout(self, upstream):
        upstream.add(URL, error=httpx.ReadTimeout("slow"))

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            with pytest.raises(FetchTimeoutError):
                await fetcher.retrieve(ResourceRef(url=URL), ScanDeadline.unbounded())

    async def test_connection_error_raises_network_error(self, upstream):
        upstream.add(URL, error=httpx.ConnectError("refused"))

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            with pytest.raises(NetworkError):
                await fetcher.retrieve(ResourceRef(url=URL), ScanDeadline.unbounded())

    async def test_expired_deadline_never_starts_request(self, upstream):
        upstream.add(URL, text="ok")

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            with pytest.raises(ChunkTimeoutGuardError):
                await fetcher.retrieve(ResourceRef(url=URL), ScanDeadline("shop", 0.0))

        assert upstream.requests == []

    async def test_invalid_json_raises_parse_error(self, upstream):
        upstream.add(URL, text="<html>not json</html>")

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            with pytest.raises(ParseError):
                await fetcher.retrieve_json(ResourceRef(url=URL), ScanDeadline.unbounded())

    async def test_json_is_decoded(self, upstream):
        upstream.add(URL, json={"products": []})

        async with upstream.client() as client:
            fetcher = ResourceFetcher(client)
            data = await fetcher.retrieve_json(ResourceRef(url=URL), ScanDeadline.unbounded())

        assert data == {"products": []}

    async def test_rendered_retrieval_uses_browser(self):
        browser = SlowBrowser()
        async with httpx.AsyncClient() as client:
            fetcher = ResourceFetcher(client, browser=browser, page_timeout=60.0)
            html = await fetcher.retrieve(
                ResourceRef(url=URL, mode="rendered", max_scrolls=3),
                ScanDeadline.unbounded(),
            )

        assert html == "<html>rendered</html>"
        assert browser.calls == [{"url": URL, "timeout": 60.0, "max_scrolls": 3}]

    async def test_rendered_retrieval_is_bounded_by_deadline(self):
        browser = SlowBrowser(delay=2.0)
        async with httpx.AsyncClient() as client:
            fetcher = ResourceFetcher(client, browser=browser)
            with pytest.raises(FetchTimeoutError) as exc_info:
                await fetcher.retrieve(ResourceRef(url=URL, mode="rendered"), ScanDeadline("shop", 0.1))

        assert exc_info.value.timeout <= 0.1

    async def test_browser_timeout_maps_to_fetch_timeout(self):
        browser = SlowBrowser(error=PlaywrightTimeoutError("navigation timeout"))
        async with httpx.AsyncClient() as client:
            fetcher = ResourceFetcher(client, browser=browser)
            with pytest.raises(FetchTimeoutError):
                await fetcher.retrieve(ResourceRef(url=URL, mode="rendered"), ScanDeadline.unbounded())

    async def test_rendered_without_browser_raises(self):
        async with httpx.AsyncClient() as client:
            fetcher = ResourceFetcher(client)
            with pytest.raises(NetworkError):
                await fetcher.retrieve(ResourceRef(url=URL, mode="rendered"), ScanDeadline.unbounded())


class FakeFetcher:
    """Resolves refs from a dict of url -> text or exception, tracking concurrency."""

    def __init__(self, responses, delay: float = 0.01):
        self.responses = responses
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.timeouts = []

    async def retrieve(self, ref, deadline):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.timeouts.append(ref.timeout)
        try:
            await asyncio.sleep(self.delay)
            response = self.responses[ref.url]
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1


def _refs(n):
    return [ResourceRef(url=f"https://shop.example/p/{i}") for i in range(n)]


class TestBoundedBatchFetcher:
    """Groups of at most K concurrent retrievals with soft failures."""

    async def test_concurrency_is_capped(self):
        refs = _refs(7)
        fetcher = FakeFetcher({r.url: r.url[-1] for r in refs})
        progress = []

        outcome = await BoundedBatchFetcher(fetcher, concurrency=3, batch_delay=0).fetch_all(
            refs, ScanDeadline.unbounded(), on_batch=lambda done, total: progress.append((done, total))
        )

        assert fetcher.max_in_flight == 3
        assert outcome.results == ["0", "1", "2", "3", "4", "5", "6"]
        assert outcome.succeeded == 7
        assert progress == [(3, 7), (6, 7), (7, 7)]

    async def test_failed_item_is_soft(self):
        refs = _refs(3)
        fetcher = FakeFetcher({
            refs[0].url: "a",
            refs[1].url: HttpStatusError(refs[1].url, 500),
            refs[2].url: "c",
        })

        outcome = await BoundedBatchFetcher(fetcher, concurrency=5).fetch_all(refs, ScanDeadline.unbounded())

        assert outcome.results == ["a", None, "c"]
        assert len(outcome.errors) == 1
        assert "HTTP 500" in outcome.errors[0]

    async def test_parse_failure_is_soft(self):
        refs = _refs(2)
        fetcher = FakeFetcher({refs[0].url: "12", refs[1].url: "twelve"})

        outcome = await BoundedBatchFetcher(fetcher).fetch_all(refs, ScanDeadline.unbounded(), parse=int)

        assert outcome.results == [12, None]
        assert outcome.succeeded == 1
        assert len(outcome.errors) == 1

    async def test_guard_error_propagates(self):
        refs = _refs(2)
        fetcher = FakeFetcher({
            refs[0].url: "a",
            refs[1].url: ChunkTimeoutGuardError("shop", 270),
        })

        with pytest.raises(ChunkTimeoutGuardError):
            await BoundedBatchFetcher(fetcher).fetch_all(refs, ScanDeadline.unbounded())

    async def test_item_timeout_applied_to_refs(self):
        refs = _refs(2) + [ResourceRef(url="https://shop.example/slow", timeout=30.0)]
        fetcher = FakeFetcher({r.url: "x" for r in refs})

        await BoundedBatchFetcher(fetcher, item_timeout=8.0).fetch_all(refs, ScanDeadline.unbounded())

        assert fetcher.timeouts == [8.0, 8.0, 30.0]

    async def test_empty_input(self):
        outcome = await BoundedBatchFetcher(FakeFetcher({})).fetch_all([], ScanDeadline.unbounded())

        assert outcome.results == []
        assert outcome.errors == []

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            BoundedBatchFetcher(FakeFetcher({}), concurrency=0)
