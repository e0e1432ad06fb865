"""Degusta Panamá adapter.

Restaurants with active discounts come from Degusta's internal search
endpoint, paginated by offset. Each page is JSON wrapping an HTML fragment
of result cards plus a map payload used as a name fallback.
"""

import asyncio
import base64
import json
import re
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from marketintel.core.exceptions import ParseError
from marketintel.scrapers.base import BaseAPIAdapter, CandidateDeal, Listing
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.utils import selectors as sel
from marketintel.scrapers.utils.normalizer import absolute_url, parse_int

BASE_URL = "https://www.degustapanama.com"
SEARCH_URL = f"{BASE_URL}/panama/services/search"
PAGE_SIZE = 10
PAGE_DELAY_SECONDS = 0.8

FILTERS_B64 = base64.b64encode(
    json.dumps(
        {"filters": {"discounts": True}, "score_range": {}, "sort": "food"},
        separators=(",", ":"),
    ).encode()
).decode()

RATING_KEYS = {"comida": "food_rating", "servicio": "service_rating", "ambiente": "ambient_rating"}


def _slug_name(href: str) -> Optional[str]:
    match = re.search(r"restaurante/([^_/]+)", href)
    if not match:
        return None
    return match.group(1).replace("-", " ").title()


def parse_restaurant_card(card: Tag, map_names: Dict[int, str]) -> Optional[Dict[str, Any]]:
    """Listing entry for one result card, or None when the card has no link or name."""
    link = card.select_one(sel.DEGUSTA_LINK)
    href = link.get("href") if link else None
    if not href:
        return None

    id_match = re.search(r"_(\d+)\.html", href)
    degusta_id = int(id_match.group(1)) if id_match else None

    name = sel.DEGUSTA_NAME.extract(card) or map_names.get(degusta_id) or _slug_name(href)
    if not name:
        return None

    address = sel.DEGUSTA_ADDRESS.extract(card)
    neighborhood = None
    if address:
        parts = address.split(" - ")
        if len(parts) >= 2:
            neighborhood = parts[-2].strip()

    price_text = sel.DEGUSTA_PRICE.extract(card)
    price_match = re.search(r"\$(\d+)", price_text or "")

    ratings: Dict[str, float] = {}
    for qualification in card.select(".dg-result-restaurant-qualification"):
        label_el = qualification.select_one(".qualification-description")
        score_el = qualification.select_one(".score-number")
        if not label_el or not score_el:
            continue
        try:
            score = float(score_el.get_text(strip=True))
        except ValueError:
            continue
        label = label_el.get_text(strip=True).lower()
        for keyword, key in RATING_KEYS.items():
            if keyword in label:
                ratings[key] = score
                break

    image = card.select_one(sel.DEGUSTA_IMAGE)

    return {
        "source_url": absolute_url(BASE_URL, href),
        "degusta_id": degusta_id,
        "name": name,
        "discount": sel.DEGUSTA_DISCOUNT.extract(card),
        "cuisine": sel.DEGUSTA_CUISINE.extract(card),
        "address": address,
        "neighborhood": neighborhood,
        "price_per_person": int(price_match.group(1)) if price_match else None,
        "votes": parse_int(sel.DEGUSTA_VOTES.extract(card)),
        "image_url": image.get("src") if image else None,
        **ratings,
    }


def parse_search_page(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Entries from one search response, in page order."""
    html = payload.get("html") or ""
    if not html.strip():
        return []

    map_names = {}
    for item in payload.get("gmap") or []:
        if isinstance(item, dict) and item.get("id") is not None:
            map_names[item["id"]] = item.get("infoText")

    soup = BeautifulSoup(html, "html.parser")
    entries = []
    for card in soup.select(sel.DEGUSTA_CARD):
        entry = parse_restaurant_card(card, map_names)
        if entry:
            entries.append(entry)
    return entries


class DegustaAdapter(BaseAPIAdapter):
    """Offset-paginated search API; every field is available in the listing."""

    source_site = "degusta"
    source_name = "Degusta Panamá"

    async def enumerate_listing(self, limit: int, deadline: ScanDeadline) -> Listing:
        seen_urls = set()
        entries: List[Dict[str, Any]] = []
        offset = 0
        total_count = None
        max_pages = limit // PAGE_SIZE + 2

        for page in range(max_pages):
            url = f"{SEARCH_URL}?q=&filters={FILTERS_B64}&offset={offset}"
            payload = await self._get_json(
                url,
                deadline,
                headers={"Accept": "application/json, text/plain, */*", "X-Requested-With": "XMLHttpRequest"},
            )
            if not isinstance(payload, dict):
                raise ParseError(url, "search response is not an object")
            if total_count is None:
                total_count = int(payload.get("count") or 0)

            page_entries = parse_search_page(payload)
            new_entries = [e for e in page_entries if e["source_url"] not in seen_urls]
            self.logger.info("search_page_fetched", page=page + 1, offset=offset, parsed=len(page_entries), new=len(new_entries))
            # Empty page or only duplicates means the upstream stopped advancing
            if not new_entries:
                break

            for entry in new_entries:
                seen_urls.add(entry["source_url"])
                entries.append(entry)
            if len(entries) > limit:
                break

            offset += PAGE_SIZE
            if offset >= total_count:
                break
            await asyncio.sleep(PAGE_DELAY_SECONDS)

        listing = Listing.capped(entries, limit)
        if total_count and total_count > limit:
            listing.truncated = True
        return listing

    async def build_candidates(
        self, entries: List[Dict[str, Any]], deadline: ScanDeadline
    ) -> Tuple[List[CandidateDeal], List[str]]:
        candidates = []
        for entry in entries:
            discount = entry.get("discount")
            pct = parse_int(discount) if discount and "%" in discount else None
            metadata = {
                k: entry.get(k)
                for k in (
                    "degusta_id", "cuisine", "address", "neighborhood", "price_per_person",
                    "votes", "food_rating", "service_rating", "ambient_rating",
                )
                if entry.get(k) is not None
            }
            candidate = self._build_candidate(
                source_url=entry["source_url"],
                merchant_name=entry["name"],
                title=discount or f"Descuento en {entry['name']}",
                discount_percent=pct,
                image_url=entry.get("image_url"),
                badge=discount,
                metadata=metadata,
            )
            if candidate:
                candidates.append(candidate)
        return candidates, []
