"""Pytest configuration and shared fixtures."""

import asyncio
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketintel.config import Settings
from marketintel.models import Base
from marketintel.scrapers.base import BaseAdapter, CandidateDeal, Listing
from marketintel.scrapers.deadline import ScanDeadline


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory):
    """Create an in-memory SQLite database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    """Small chunks and a short guard so scans finish quickly."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENABLED_SOURCES="fakesite",
        CHUNK_SIZE=2,
        MAX_DEALS_PER_SITE=100,
        CHUNK_TIME_BUDGET_SECONDS=5.0,
        HOST_TIME_LIMIT_SECONDS=10.0,
        CHUNK_MAX_ATTEMPTS=3,
    )


def make_candidate(
    slug: str,
    site: str = "fakesite",
    offer: Optional[str] = "10.00",
    original: Optional[str] = "20.00",
    units_sold: Optional[int] = None,
    **extra,
) -> CandidateDeal:
    """Candidate with a URL derived from ``slug``."""
    return CandidateDeal(
        source_url=f"https://{site}.example/deals/{slug}",
        source_site=site,
        merchant_name=extra.pop("merchant_name", f"Merchant {slug}"),
        title=extra.pop("title", f"Deal {slug}"),
        offer_price=Decimal(offer) if offer is not None else None,
        original_price=Decimal(original) if original is not None else None,
        units_sold=units_sold,
        **extra,
    )


class FakeAdapter(BaseAdapter):
    """In-memory adapter driven by a list of slugs.

    ``listing_error`` makes the listing stage raise, ``listing_delay``
    makes it sleep, and ``skip`` drops slugs at the detail stage.
    """

    source_site = "fakesite"
    source_name = "Fake Site"
    adapter_type = "api"

    slugs: List[str] = []
    truncated = False
    listing_error: Optional[Exception] = None
    listing_delay: float = 0.0
    skip: Tuple[str, ...] = ()
    units: Dict[str, int] = {}
    listing_calls = 0

    async def enumerate_listing(self, limit: int, deadline: ScanDeadline) -> Listing:
        type(self).listing_calls += 1
        if self.listing_delay:
            await asyncio.sleep(self.listing_delay)
        if self.listing_error is not None:
            raise self.listing_error
        entries = [
            {"source_url": f"https://fakesite.example/deals/{slug}", "slug": slug}
            for slug in self.slugs
        ]
        listing = Listing.capped(entries, limit)
        listing.truncated = listing.truncated or self.truncated
        return listing

    async def build_candidates(
        self, entries: List[Dict[str, Any]], deadline: ScanDeadline
    ) -> Tuple[List[CandidateDeal], List[str]]:
        candidates, errors = [], []
        for entry in entries:
            if entry["slug"] in self.skip:
                errors.append(f"{entry['source_url']}: skipped")
                continue
            candidates.append(make_candidate(entry["slug"], units_sold=self.units.get(entry["slug"])))
        return candidates, errors


@pytest.fixture
def fake_adapter_class():
    """Fresh FakeAdapter subclass so class-level knobs never leak between tests."""
    return type("FakeSiteAdapter", (FakeAdapter,), {
        "slugs": [],
        "truncated": False,
        "listing_error": None,
        "listing_delay": 0.0,
        "skip": (),
        "units": {},
        "listing_calls": 0,
    })


class MockUpstream:
    """Answers httpx requests from registered URL prefixes and records them.

    Routes are matched in registration order; anything unmatched gets a 404.
    """

    def __init__(self):
        self.routes = []
        self.requests: List[httpx.Request] = []

    def add(
        self,
        url_prefix: str,
        status: int = 200,
        text: Optional[str] = None,
        json: Any = None,
        error: Optional[Exception] = None,
    ) -> "MockUpstream":
        self.routes.append((url_prefix, status, text, json, error))
        return self

    def calls_to(self, url_prefix: str) -> int:
        return sum(1 for r in self.requests if str(r.url).startswith(url_prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for prefix, status, text, json, error in self.routes:
            if not url.startswith(prefix):
                continue
            if error is not None:
                raise error
            if json is not None:
                return httpx.Response(status, json=json)
            return httpx.Response(status, text=text or "")
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()
