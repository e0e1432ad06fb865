"""Base source adapter interface.

Every deal site is wrapped by a BaseAdapter subclass. A scan asks the
adapter for a bounded window of candidates; the adapter splits that into a
listing stage (enumerate what the site currently offers) and a detail stage
(turn the window's listing entries into CandidateDeals).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog

from marketintel.schemas.scan import ScanCursor, ScanPhase
from marketintel.scrapers.batch import BoundedBatchFetcher
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.fetcher import ResourceFetcher, ResourceRef
from marketintel.scrapers.progress import ProgressChannel
from marketintel.scrapers.utils.normalizer import calculate_discount_percent, normalize_url

logger = structlog.get_logger(__name__)


@dataclass
class CandidateDeal:
    """Freshly scraped, not yet reconciled representation of one offer."""

    source_url: str  # Stable identity within the source
    source_site: str
    merchant_name: Optional[str] = None
    title: Optional[str] = None
    original_price: Optional[Decimal] = None
    offer_price: Optional[Decimal] = None
    discount_percent: Optional[int] = None
    units_sold: Optional[int] = None
    image_url: Optional[str] = None
    badge: Optional[str] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate identity and derive missing descriptive fields."""
        if not self.source_url:
            raise ValueError("source_url is required")
        if not self.source_site:
            raise ValueError("source_site is required")

        self.source_url = normalize_url(self.source_url)
        if not self.title:
            slug = self.source_url.rstrip("/").rsplit("/", 1)[-1]
            self.title = slug.replace("-", " ").strip() or "Unknown Deal"
        if not self.merchant_name:
            self.merchant_name = "Unknown"
        self.title = self.title[:500]
        self.merchant_name = self.merchant_name[:300]

        if self.discount_percent is None:
            self.discount_percent = calculate_discount_percent(self.original_price, self.offer_price)


@dataclass
class Listing:
    """Ordered listing entries (JSON-serializable dicts) for one source."""

    entries: List[Dict[str, Any]]
    truncated: bool = False

    @classmethod
    def capped(cls, entries: List[Dict[str, Any]], limit: int) -> "Listing":
        return cls(entries=entries[:limit], truncated=len(entries) > limit)


@dataclass
class CandidateBatch:
    """One window of candidates plus where the next window starts."""

    candidates: List[CandidateDeal]
    next_cursor: Optional[ScanCursor]
    total_available: int
    errors: List[str] = field(default_factory=list)
    # Identities enumerated so far in this sequence, including this window
    observed: List[str] = field(default_factory=list)
    truncated: bool = False


class BaseAdapter(ABC):
    """Abstract base class for all source adapters."""

    source_site: str = ""  # Must be overridden, e.g. "oferta24"
    source_name: str = ""
    adapter_type: str = ""  # 'api' or 'scraper'

    # Store the ordered listing in the cursor so later chunks skip re-listing
    snapshot_listing: bool = False

    # Detail fetch tuning (fixed per adapter)
    detail_concurrency: int = 5
    detail_batch_delay: float = 0.2

    def __init__(self):
        """Initialize the adapter. Fetcher and progress channel are injected per invocation."""
        self.fetcher: Optional[ResourceFetcher] = None
        self.progress = ProgressChannel(self.source_site)
        self.max_deals = 100
        self.detail_timeout = 8.0
        self.logger = logger.bind(adapter=self.source_site)

    def bind(self, fetcher: ResourceFetcher, progress: Optional[ProgressChannel] = None) -> "BaseAdapter":
        self.fetcher = fetcher
        if progress is not None:
            self.progress = progress
        return self

    @abstractmethod
    async def enumerate_listing(self, limit: int, deadline: ScanDeadline) -> Listing:
        """Enumerate up to ``limit`` listing entries in upstream order.

        Each entry must carry a ``source_url`` key. Raises FetchError/ParseError
        when the listing itself can't be retrieved.
        """

    @abstractmethod
    async def build_candidates(
        self, entries: List[Dict[str, Any]], deadline: ScanDeadline
    ) -> Tuple[List[CandidateDeal], List[str]]:
        """Turn listing entries into candidates.

        Returns:
            (candidates, soft errors). A malformed entry is skipped with an
            error, never raised.
        """

    def entry_identity(self, entry: Dict[str, Any]) -> str:
        return normalize_url(entry["source_url"])

    async def list_candidates(
        self,
        limit: int,
        cursor: Optional[ScanCursor],
        deadline: ScanDeadline,
    ) -> CandidateBatch:
        """Produce up to ``limit`` candidates starting at the cursor's offset.

        Args:
            limit: Maximum candidates for this window
            cursor: Resumption point, None for the start of the source
            deadline: Chunk deadline propagated to every retrieval

        Returns:
            CandidateBatch whose next_cursor is None once the listing is exhausted
        """
        cursor = cursor or ScanCursor.start(self.source_site)

        fresh = cursor.listing is None
        if fresh:
            self.progress.emit(ScanPhase.LISTING, f"Loading listing for {self.source_site}")
            listing = await self.enumerate_listing(self.max_deals, deadline)
            entries, truncated = listing.entries, listing.truncated
            self.logger.info("listing_enumerated", entries=len(entries), truncated=truncated)
        else:
            entries, truncated = cursor.listing, cursor.truncated
            self.logger.info("listing_from_cursor", entries=len(entries), offset=cursor.offset)

        total = len(entries)
        window = entries[cursor.offset:cursor.offset + limit]
        self.progress.emit(
            ScanPhase.LISTING,
            f"Found {total} entries, processing {len(window)} from offset {cursor.offset}",
            current=cursor.offset,
            total=total,
        )

        candidates: List[CandidateDeal] = []
        errors: List[str] = []
        if window:
            candidates, errors = await self.build_candidates(window, deadline)

        # Every entry of a fresh enumeration counts as observed
        seen = [self.entry_identity(e) for e in (entries if fresh else window)]
        moved = cursor.advance(len(window), seen).model_copy(update={"truncated": truncated})

        next_cursor = None
        if moved.offset < total:
            next_cursor = moved.model_copy(
                update={"listing": entries if self.snapshot_listing else None}
            )

        return CandidateBatch(
            candidates=candidates,
            next_cursor=next_cursor,
            total_available=total,
            errors=errors,
            observed=moved.observed,
            truncated=truncated,
        )

    def _detail_fetcher(self) -> BoundedBatchFetcher:
        return BoundedBatchFetcher(
            self.fetcher,
            concurrency=self.detail_concurrency,
            batch_delay=self.detail_batch_delay,
            item_timeout=self.detail_timeout,
        )

    def _report_detail_progress(self, done: int, total: int) -> None:
        self.progress.emit(ScanPhase.FETCHING_DETAIL, f"Fetched {done}/{total} detail pages", done, total)

    def _build_candidate(self, **fields) -> Optional[CandidateDeal]:
        """CandidateDeal for this source, or None if the fields are unusable."""
        try:
            return CandidateDeal(source_site=self.source_site, **fields)
        except ValueError as e:
            self.logger.warning("candidate_rejected", error=str(e), source_url=fields.get("source_url"))
            return None


class BaseScraperAdapter(BaseAdapter):
    """Base class for adapters that need a rendered (browser) listing."""

    adapter_type = "scraper"

    async def _render(
        self,
        url: str,
        deadline: ScanDeadline,
        wait_selectors=(),
        max_scrolls: int = 0,
        scroll_wait: float = 1.5,
    ) -> str:
        ref = ResourceRef(
            url=url,
            mode="rendered",
            wait_selectors=tuple(wait_selectors),
            max_scrolls=max_scrolls,
            scroll_wait=scroll_wait,
        )
        self.logger.info("rendering_url", url=url)
        return await self.fetcher.retrieve(ref, deadline)


class BaseAPIAdapter(BaseAdapter):
    """Base class for adapters that read structured endpoints over plain HTTP."""

    adapter_type = "api"

    async def _get_json(self, url: str, deadline: ScanDeadline, headers: Optional[Dict[str, str]] = None) -> Any:
        ref = ResourceRef(url=url, headers=headers or {"Accept": "application/json"})
        return await self.fetcher.retrieve_json(ref, deadline)
