"""Oferta24 adapter.

Oferta24's deal list is a client-rendered page; everything needed (merchant,
title, prices, badge, image) is on the card, so there is no detail stage.
Cards are located by their ``/coupons/`` link and each field is read through
a selector fallback chain.
"""

import re
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bs4 import BeautifulSoup, Tag

from marketintel.scrapers.base import BaseScraperAdapter, CandidateDeal, Listing
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.utils import selectors as sel
from marketintel.scrapers.utils.normalizer import PriceNormalizer, absolute_url, parse_int

BASE_URL = "https://www.oferta24.com"
DEALS_URL = f"{BASE_URL}/es"
MAX_SCROLLS = 10
SCROLL_WAIT_SECONDS = 1.5

logger = structlog.get_logger(__name__)


def _image_container(card: Tag) -> Optional[Tag]:
    """The sibling column holding the image and badge in list view."""
    flex_parent = card.find_parent(
        lambda t: isinstance(t, Tag)
        and "flex" in " ".join(t.get("class", []))
        and "relative" in " ".join(t.get("class", []))
    ) or card.parent
    if flex_parent is None:
        return None
    return flex_parent.select_one('[class*="w-1/3"]') or flex_parent.select_one('[class*="relative"]:not(a)')


def _fallback_offer_price(text: str) -> Optional[Decimal]:
    """Lowest plausible "$NN" amount in the card text."""
    prices = []
    for raw in re.findall(r"\$\s*(\d+(?:[.,]\d{1,2})?)", text):
        value = PriceNormalizer.clean_price_string(raw.replace(",", "."))
        if value and 0 < value < 10000:
            prices.append(value)
    return min(prices) if prices else None


def _image_url(*scopes: Optional[Tag]) -> Optional[str]:
    for scope in scopes:
        if scope is None:
            continue
        img = scope.find("img")
        if img is not None:
            src = img.get("src") or img.get("data-src")
            if src:
                return absolute_url(BASE_URL, src)
    return None


def parse_coupon_card(card: Tag) -> Optional[Dict[str, Any]]:
    """Listing entry for one coupon card. Missing fields stay None."""
    href = card.get("href") or ""
    if "/coupons/" not in href:
        return None
    url = absolute_url(BASE_URL, href)

    container = (
        sel.closest(card, sel.OFERTA24_CONTAINER_HINTS)
        or (card.parent.parent if card.parent is not None else None)
        or card
    )
    scopes = (card, container)

    title = sel.OFERTA24_TITLE.extract(*scopes) or sel.OFERTA24_TITLE_LOOSE.extract(*scopes)

    original_price = PriceNormalizer.extract_price_from_text(sel.OFERTA24_STRIKE_PRICE.extract(*scopes))
    offer_price = PriceNormalizer.split_cents_price(sel.OFERTA24_OFFER_PRICE.extract(*scopes))
    if offer_price is None:
        offer_price = _fallback_offer_price(card.get_text(" "))

    image_container = _image_container(card)
    badge = sel.OFERTA24_BADGE.extract(card, container, image_container)

    return {
        "source_url": url,
        "merchant_name": sel.OFERTA24_MERCHANT.extract(*scopes),
        "title": title[:200] if title else None,
        "original_price": str(original_price) if original_price is not None else None,
        "offer_price": str(offer_price) if offer_price is not None else None,
        "badge": badge,
        "units_sold": parse_int(badge),
        "image_url": _image_url(card, container),
    }


def parse_deals_page(html: str) -> Tuple[List[Dict[str, Any]], int]:
    """Entries in page order plus the number of cards that failed to parse."""
    soup = BeautifulSoup(html, "html.parser")
    entries: List[Dict[str, Any]] = []
    seen = set()
    failures = 0

    for card in soup.select(sel.OFERTA24_CARD):
        try:
            entry = parse_coupon_card(card)
        except Exception as e:
            logger.warning("card_parse_failed", href=card.get("href"), error=str(e))
            failures += 1
            continue
        if entry and entry["source_url"] not in seen:
            seen.add(entry["source_url"])
            entries.append(entry)

    return entries, failures


class Oferta24Adapter(BaseScraperAdapter):
    """Rendered listing page, one candidate per coupon card."""

    source_site = "oferta24"
    source_name = "Oferta24"
    # Rendering plus scrolling is the slow part; keep it out of later chunks
    snapshot_listing = True

    async def enumerate_listing(self, limit: int, deadline: ScanDeadline) -> Listing:
        html = await self._render(
            DEALS_URL,
            deadline,
            wait_selectors=sel.OFERTA24_WAIT_SELECTORS,
            max_scrolls=MAX_SCROLLS,
            scroll_wait=SCROLL_WAIT_SECONDS,
        )
        entries, failures = parse_deals_page(html)
        if failures:
            self.logger.warning("cards_skipped", count=failures)
        self.logger.info("cards_extracted", count=len(entries))
        return Listing.capped(entries, limit)

    async def build_candidates(
        self, entries: List[Dict[str, Any]], deadline: ScanDeadline
    ) -> Tuple[List[CandidateDeal], List[str]]:
        candidates = []
        for entry in entries:
            candidate = self._build_candidate(
                source_url=entry["source_url"],
                merchant_name=entry.get("merchant_name"),
                title=entry.get("title"),
                original_price=PriceNormalizer.from_api_value(entry.get("original_price")),
                offer_price=PriceNormalizer.from_api_value(entry.get("offer_price")),
                units_sold=entry.get("units_sold"),
                badge=entry.get("badge"),
                image_url=entry.get("image_url"),
            )
            if candidate:
                candidates.append(candidate)
        return candidates, []
