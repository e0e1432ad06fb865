"""RantanOfertas adapter.

RantanOfertas runs on Shopify, so the listing comes from the public
``/products.json`` endpoint (250 products per page). The units-sold counter
is not in the API; it is embedded in each product page as JSON inside
``<script id="elscup-product">`` and is fetched as a detail stage.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from marketintel.core.exceptions import ParseError
from marketintel.scrapers.base import BaseAPIAdapter, CandidateDeal, Listing
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.fetcher import ResourceRef
from marketintel.scrapers.utils.normalizer import PriceNormalizer

BASE_URL = "https://www.rantanofertas.com"
PRODUCTS_URL = f"{BASE_URL}/products.json"
PAGE_SIZE = 250
ACTIVE_TAG_MARKERS = ("activa", "active")


def is_active_product(product: Dict[str, Any]) -> bool:
    """Only products tagged e.g. "Oferta Activa" are live offers."""
    return any(
        marker in str(tag).lower()
        for tag in product.get("tags") or []
        for marker in ACTIVE_TAG_MARKERS
    )


def product_entry(product: Dict[str, Any]) -> Dict[str, Any]:
    variants = product.get("variants") or [{}]
    images = product.get("images") or [{}]
    return {
        "source_url": f"{BASE_URL}/products/{product['handle']}",
        "handle": product["handle"],
        "product_id": product.get("id"),
        "title": product.get("title"),
        "vendor": product.get("vendor"),
        "price": variants[0].get("price"),
        "compare_at_price": variants[0].get("compare_at_price"),
        "image_url": images[0].get("src"),
    }


def parse_units_sold(html: str) -> Optional[int]:
    """Read the first sales counter from the embedded elscup-product JSON."""
    soup = BeautifulSoup(html, "html.parser")
    script = soup.find("script", id="elscup-product")
    if script is None or not script.string:
        return None

    try:
        data = json.loads(script.string)
    except ValueError:
        return None

    sales = data.get("product_sales") or {}
    if not isinstance(sales, dict) or not sales:
        return None
    first_counter = next(iter(sales.values()))
    value = first_counter.get("is") if isinstance(first_counter, dict) else None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class RantanOfertasAdapter(BaseAPIAdapter):
    """Shopify products.json listing plus per-product sales counter."""

    source_site = "rantanofertas"
    source_name = "RantanOfertas"
    snapshot_listing = True
    detail_concurrency = 5

    async def enumerate_listing(self, limit: int, deadline: ScanDeadline) -> Listing:
        seen_handles = set()
        entries: List[Dict[str, Any]] = []
        page = 1

        while len(entries) <= limit:
            url = f"{PRODUCTS_URL}?limit={PAGE_SIZE}&page={page}"
            data = await self._get_json(url, deadline)
            products = data.get("products") if isinstance(data, dict) else None
            if products is None:
                raise ParseError(url, "response has no 'products' array")
            if not products:
                break

            active = 0
            for product in products:
                handle = product.get("handle")
                if not handle or handle in seen_handles or not is_active_product(product):
                    continue
                seen_handles.add(handle)
                entries.append(product_entry(product))
                active += 1

            self.logger.info("products_page_fetched", page=page, products=len(products), active=active)
            if len(products) < PAGE_SIZE:
                break
            page += 1

        return Listing.capped(entries, limit)

    async def build_candidates(
        self, entries: List[Dict[str, Any]], deadline: ScanDeadline
    ) -> Tuple[List[CandidateDeal], List[str]]:
        refs = [ResourceRef(url=e["source_url"], headers={"Accept": "text/html"}) for e in entries]
        outcome = await self._detail_fetcher().fetch_all(
            refs, deadline, parse=parse_units_sold, on_batch=self._report_detail_progress
        )

        candidates = []
        for entry, units_sold in zip(entries, outcome.results):
            offer = PriceNormalizer.from_api_value(entry.get("price"))
            original = PriceNormalizer.from_api_value(entry.get("compare_at_price")) or offer
            candidate = self._build_candidate(
                source_url=entry["source_url"],
                merchant_name=entry.get("vendor"),
                title=entry.get("title"),
                offer_price=offer,
                original_price=original,
                units_sold=units_sold,
                image_url=entry.get("image_url"),
                metadata={"handle": entry["handle"], "product_id": entry.get("product_id")},
            )
            if candidate:
                candidates.append(candidate)

        return candidates, outcome.errors
