"""Banco General promotions adapter.

The promo list comes from the site's WordPress ajax endpoint
(``action=obtener_promos_hoy``): one JSON object per promo with its post id,
a free-text title ("75% de descuento en ..."), start/end dates and the
weekdays it applies on. The endpoint carries no URLs, so the client-side
promotions grid is rendered once for the post id to detail URL map.
Conditions and the full-size image only exist on each promo's detail page,
fetched in bounded batches.
"""

from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from marketintel.core.exceptions import ParseError
from marketintel.scrapers.base import BaseScraperAdapter, CandidateDeal, Listing
from marketintel.scrapers.deadline import ScanDeadline
from marketintel.scrapers.fetcher import ResourceRef
from marketintel.scrapers.utils import selectors as sel
from marketintel.scrapers.utils.normalizer import absolute_url, clean_text, decode_html_entities
from marketintel.scrapers.utils.title_rules import parse_promo_title

BASE_URL = "https://www.bgeneral.com"
PROMOS_URL = f"{BASE_URL}/personas/promociones/"
AJAX_URL = f"{BASE_URL}/wp-admin/admin-ajax.php"
PROMO_LIST_ACTION = "obtener_promos_hoy"
MAX_SCROLLS = 5
CONDITIONS_MARKER = "condiciones"
CONDITIONS_FALLBACK_CHARS = 3000


def _link_title(link: Tag) -> Optional[str]:
    title = sel.BGENERAL_TITLE.extract(link) or clean_text(link.get_text(" "))
    if not title:
        img = link.find("img")
        title = clean_text(img.get("alt")) if img is not None else None
    return title or clean_text(link.get("title"))


def parse_promotions_grid(html: str) -> List[Dict[str, Any]]:
    """One entry per grid link, deduplicated by promo id."""
    soup = BeautifulSoup(html, "html.parser")
    entries = []
    seen_ids = set()

    for link in soup.select(sel.BGENERAL_GRID_LINK):
        promo_id = link.get("data-id")
        href = link.get("href")
        if not promo_id or not href or promo_id in seen_ids:
            continue
        seen_ids.add(promo_id)

        img = link.find("img")
        entries.append({
            "source_url": absolute_url(BASE_URL, href),
            "promo_id": str(promo_id),
            "raw_title": _link_title(link),
            "thumbnail_url": (img.get("src") or img.get("data-src")) if img is not None else None,
        })

    return entries


def format_promo_date(raw: Optional[str]) -> Optional[str]:
    """YYYYMMDD to ISO YYYY-MM-DD; other shapes pass through unchanged."""
    raw = (raw or "").strip()
    if not raw:
        return None
    if len(raw) == 8 and raw.isdigit():
        return f"{raw[:4]}-{raw[4:6]}-{raw[6:]}"
    return raw


def parse_promo_list(payload: Any, grid_by_id: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Listing entries from the ajax payload, in upstream order.

    Promos missing from the grid keep the ``?p=<id>`` permalink as their
    identity and have no detail page to fetch.
    """
    if not isinstance(payload, list):
        raise ParseError(AJAX_URL, f"expected a list of promos, got {type(payload).__name__}")

    entries = []
    seen_ids = set()
    for item in payload:
        if not isinstance(item, dict) or item.get("id") in (None, ""):
            continue
        promo_id = str(item["id"])
        if promo_id in seen_ids:
            continue
        seen_ids.add(promo_id)

        grid = grid_by_id.get(promo_id)
        titulo = item.get("titulo")
        weekdays = item.get("dias_semana") or []
        entries.append({
            "source_url": grid["source_url"] if grid else f"{PROMOS_URL}?p={promo_id}",
            "promo_id": promo_id,
            "raw_title": decode_html_entities(titulo) if titulo else (grid or {}).get("raw_title"),
            "thumbnail_url": grid.get("thumbnail_url") if grid else None,
            "has_detail": grid is not None,
            "start_date": format_promo_date(item.get("fecha_inicio")),
            "end_date": format_promo_date(item.get("fecha_final")),
            "weekdays": [str(day) for day in weekdays] if isinstance(weekdays, list) else [],
        })

    return entries


def parse_promo_detail(html: str) -> Dict[str, Optional[str]]:
    """Conditions text and og:image from a promo detail page."""
    soup = BeautifulSoup(html, "html.parser")
    conditions: List[str] = []

    for strong in soup.find_all("strong"):
        if CONDITIONS_MARKER not in strong.get_text().lower():
            continue
        paragraph = strong.find_parent("p") or strong
        items = paragraph.find_next_sibling("ul")
        if items is not None:
            conditions = [t for t in (clean_text(li.get_text(" ")) for li in items.find_all("li")) if t]
        break

    description = "\n".join(conditions) if conditions else None
    if description is None:
        body = soup.body.get_text("\n") if soup.body else soup.get_text("\n")
        idx = body.find("Condiciones:")
        if idx != -1:
            tail = body[idx + len("Condiciones:"):idx + CONDITIONS_FALLBACK_CHARS]
            description = clean_text(tail.split("\n\n\n")[0])

    og_image = soup.select_one(sel.BGENERAL_OG_IMAGE)
    return {
        "description": description,
        "image_url": og_image.get("content") if og_image is not None else None,
    }


class BGeneralAdapter(BaseScraperAdapter):
    """Ajax promo list, grid URL map and batched detail pages."""

    source_site = "bgeneral"
    source_name = "Banco General"
    snapshot_listing = True
    detail_concurrency = 5
    detail_batch_delay = 0.2

    async def enumerate_listing(self, limit: int, deadline: ScanDeadline) -> Listing:
        payload = await self.fetcher.retrieve_json(
            ResourceRef(
                url=AJAX_URL,
                method="POST",
                data={"action": PROMO_LIST_ACTION},
                headers={"Referer": PROMOS_URL, "Accept": "application/json"},
            ),
            deadline,
        )
        grid_html = await self._render(
            PROMOS_URL,
            deadline,
            wait_selectors=sel.BGENERAL_WAIT_SELECTORS,
            max_scrolls=MAX_SCROLLS,
        )
        grid_by_id = {e["promo_id"]: e for e in parse_promotions_grid(grid_html)}

        entries = parse_promo_list(payload, grid_by_id)
        self.logger.info(
            "promotions_extracted",
            count=len(entries),
            with_detail=sum(1 for e in entries if e["has_detail"]),
        )
        return Listing.capped(entries, limit)

    async def build_candidates(
        self, entries: List[Dict[str, Any]], deadline: ScanDeadline
    ) -> Tuple[List[CandidateDeal], List[str]]:
        with_detail = [e for e in entries if e.get("has_detail", True)]
        refs = [ResourceRef(url=e["source_url"], headers={"Referer": PROMOS_URL}) for e in with_detail]
        outcome = await self._detail_fetcher().fetch_all(
            refs, deadline, parse=parse_promo_detail, on_batch=self._report_detail_progress
        )
        details = {e["promo_id"]: d for e, d in zip(with_detail, outcome.results) if d}

        candidates = []
        for entry in entries:
            detail = details.get(entry["promo_id"], {})
            parsed = parse_promo_title(entry["raw_title"]) if entry.get("raw_title") else None
            candidate = self._build_candidate(
                source_url=entry["source_url"],
                merchant_name=parsed.merchant_name if parsed else None,
                title=parsed.title if parsed else None,
                discount_percent=parsed.discount_percent if parsed else None,
                description=detail.get("description"),
                image_url=detail.get("image_url") or entry.get("thumbnail_url"),
                metadata={
                    "promo_id": entry["promo_id"],
                    "raw_title": entry.get("raw_title"),
                    "start_date": entry.get("start_date"),
                    "end_date": entry.get("end_date"),
                    "weekdays": entry.get("weekdays", []),
                },
            )
            if candidate:
                candidates.append(candidate)

        return candidates, outcome.errors
