"""Price, URL and text normalization shared by the adapters."""

import html
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional
from urllib.parse import parse_qs, urlencode, urljoin, urlparse, urlunparse


class PriceNormalizer:
    """Parsing helpers for USD / Balboa price strings."""

    @staticmethod
    def clean_price_string(raw: Optional[str]) -> Optional[Decimal]:
        """Parse a price string and extract numeric value.

        Handles:
        - "$1,234.50" -> 1234.50
        - "B/. 39.00" -> 39.00
        - "39" -> 39

        Returns:
            Decimal price value, or None if parsing fails
        """
        if not raw:
            return None

        cleaned = raw.replace("B/.", "").replace("$", "").replace("USD", "")
        cleaned = cleaned.strip().replace(",", "")
        cleaned = re.sub(r"[^\d.]", "", cleaned)
        if not cleaned:
            return None

        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return None

    @staticmethod
    def extract_price_from_text(text: Optional[str]) -> Optional[Decimal]:
        """First positive price-like number in a text node."""
        if not text:
            return None

        for match in re.findall(r"\d[\d,]*\.?\d*", text):
            price = PriceNormalizer.clean_price_string(match)
            if price and price > 0:
                return price
        return None

    @staticmethod
    def split_cents_price(text: Optional[str]) -> Optional[Decimal]:
        """Parse prices rendered as dollars with superscript cents.

        ``<p>$39<span class="align-super">00</span></p>`` collapses to
        "$3900" once whitespace is stripped; without a decimal point the
        last two digits are the cents.
        """
        if not text:
            return None

        compact = re.sub(r"\s+", "", text)
        match = re.search(r"\$?(\d+(?:,\d{3})*(?:\.\d{1,2})?)", compact)
        if not match:
            return None

        digits = match.group(1).replace(",", "")
        if "." not in digits and len(digits) > 2:
            digits = f"{digits[:-2]}.{digits[-2:]}"
        try:
            return Decimal(digits)
        except InvalidOperation:
            return None

    @staticmethod
    def from_api_value(value) -> Optional[Decimal]:
        """Decimal from a JSON number or numeric string; None when absent or zero."""
        if value in (None, ""):
            return None
        try:
            price = Decimal(str(value))
        except InvalidOperation:
            return None
        return price if price > 0 else None


def calculate_discount_percent(
    original: Optional[Decimal], offer: Optional[Decimal]
) -> Optional[int]:
    """Whole-number discount, or None when it can't be derived."""
    if not original or not offer or original <= 0 or offer <= 0 or offer >= original:
        return None
    pct = (original - offer) / original * 100
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_int(text: Optional[str]) -> Optional[int]:
    """First integer in a text, e.g. "50+ vendidos" -> 50."""
    if not text:
        return None
    match = re.search(r"\d[\d,]*", text)
    if not match:
        return None
    return int(match.group(0).replace(",", ""))


def decode_html_entities(text: str) -> str:
    """Unescape entities like &#215; and collapse non-breaking spaces."""
    return html.unescape(text).replace("\xa0", " ").strip()


def clean_text(text: Optional[str]) -> Optional[str]:
    """Collapse whitespace; None for empty strings."""
    if text is None:
        return None
    collapsed = re.sub(r"\s+", " ", text).strip()
    return collapsed or None


def absolute_url(base_url: str, href: str) -> str:
    return href if href.startswith("http") else urljoin(base_url, href)


def normalize_url(url: str) -> str:
    """Strip tracking parameters and fragments so identities stay stable.

    Args:
        url: URL to normalize

    Returns:
        Normalized URL
    """
    if not url:
        return url

    tracking_params = {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_content",
        "utm_term",
        "fbclid",
        "gclid",
        "mc_cid",
        "mc_eid",
    }

    parsed = urlparse(url)
    query_params = parse_qs(parsed.query)
    filtered_params = {k: v for k, v in query_params.items() if k not in tracking_params}
    new_query = urlencode(filtered_params, doseq=True)

    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, new_query, ""))
