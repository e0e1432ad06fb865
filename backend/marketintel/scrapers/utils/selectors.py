"""Layered selector fallback chains for HTML extraction.

Each field is described by an ordered chain of CSS selectors, most specific
first. Markup drift on a site then degrades a field to a more generic
selector (or to None) instead of yielding zero candidates.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from bs4 import Tag

from marketintel.scrapers.utils.normalizer import clean_text


def _non_empty(text: str) -> bool:
    return bool(text)


@dataclass(frozen=True)
class FieldRule:
    """Ordered selector chain plus an acceptance test for the matched text.

    With ``scan_all`` every element a selector matches is tested, otherwise
    only the first one.
    """

    name: str
    selectors: Tuple[str, ...]
    accept: Callable[[str], bool] = _non_empty
    separator: str = " "
    scan_all: bool = False

    def extract(self, *scopes: Optional[Tag]) -> Optional[str]:
        """First accepted text across scopes, trying the whole chain per scope."""
        for scope in scopes:
            if scope is None:
                continue
            for selector in self.selectors:
                elements = scope.select(selector) if self.scan_all else [scope.select_one(selector)]
                for element in elements:
                    if element is None:
                        continue
                    text = clean_text(element.get_text(self.separator))
                    if text and self.accept(text):
                        return text
        return None


def closest(tag: Tag, class_hints: Sequence[str]) -> Optional[Tag]:
    """Nearest ancestor whose class attribute contains any hint, tried in hint order."""
    for hint in class_hints:
        parent = tag.find_parent(
            lambda t, h=hint: isinstance(t, Tag) and h in " ".join(t.get("class", []))
        )
        if parent is not None:
            return parent
    return None


# ---------------------------------------------------------------------------
# oferta24 coupon cards
# ---------------------------------------------------------------------------

def _is_merchant(text: str) -> bool:
    return 2 < len(text) < 80 and not text.isdigit() and "$" not in text and "vendido" not in text.lower()


def _is_title(text: str) -> bool:
    return len(text) > 5 and not text.startswith("$") and not text.isdigit()


def _is_loose_title(text: str) -> bool:
    return _is_title(text) and len(text) < 200


def _has_digits(text: str) -> bool:
    return bool(re.search(r"\d", text))


BADGE_KEYWORDS = ("trending", "vendido", "nuevo", "new", "hot")


def _is_badge(text: str) -> bool:
    if len(text) >= 50 or "$" in text or "Comprar" in text:
        return False
    lowered = text.lower()
    return any(k in lowered for k in BADGE_KEYWORDS) or bool(re.match(r"^\d+\+?\s", text))


OFERTA24_CARD = 'a[href*="/coupons/"]'

OFERTA24_WAIT_SELECTORS = ('a[href*="/coupons/"]', 'a[href*="/coupon/"]', '[class*="card"]')

# Enclosing card container when the link itself is only part of the card
OFERTA24_CONTAINER_HINTS = ("col-span", "group", "flex-col", "card")

OFERTA24_MERCHANT = FieldRule(
    "merchant",
    (
        "h3.text-left",
        'h3[class*="text-neutral"]',
        'h3[class*="text-xxxs"]',
        'h3[class*="text-xxs"]',
        "h3",
    ),
    accept=_is_merchant,
)

OFERTA24_TITLE = FieldRule(
    "title",
    (
        "h4.text-left",
        'h4[class*="font-medium"]',
        "h4",
        'p[class*="font-lexend"]',
        'p[class*="font-semibold"]',
    ),
    accept=_is_title,
)

OFERTA24_TITLE_LOOSE = FieldRule("title_loose", ("h4", "p"), accept=_is_loose_title, scan_all=True)

OFERTA24_STRIKE_PRICE = FieldRule(
    "original_price",
    (
        '[class*="diagonal-strikethrough"]',
        '[class*="strikethrough"]',
        '[class*="line-through"]',
        "s",
        "del",
    ),
    accept=_has_digits,
)

# Cents may live in a nested superscript span, so text is joined without spaces
OFERTA24_OFFER_PRICE = FieldRule(
    "offer_price",
    ("p.font-bold", 'p[class*="font-bold"]', '[class*="font-bold"][class*="text-"]'),
    accept=_has_digits,
    separator="",
)

OFERTA24_BADGE = FieldRule(
    "badge",
    (
        '[class*="bg-amber"]',
        '[class*="bg-green"]',
        '[class*="bg-red"]',
        '[class*="bg-orange"]',
        '[class*="absolute"][class*="top-"][class*="left-"]',
        'div[class*="absolute"]',
    ),
    accept=_is_badge,
    scan_all=True,
)


# ---------------------------------------------------------------------------
# bgeneral promotions grid
# ---------------------------------------------------------------------------

BGENERAL_GRID_LINK = "a.wpupg-item-link[data-id][href]"

BGENERAL_WAIT_SELECTORS = (BGENERAL_GRID_LINK, ".wpupg-grid")

BGENERAL_TITLE = FieldRule(
    "title",
    ('[class*="wpupg-item-title"]', '[class*="title"]', "h2", "h3", "h4"),
)

BGENERAL_OG_IMAGE = 'meta[property="og:image"]'


# ---------------------------------------------------------------------------
# degusta search results
# ---------------------------------------------------------------------------

DEGUSTA_CARD = ".dg-result-restaurant"

DEGUSTA_LINK = 'a[href*="/restaurante/"]'

DEGUSTA_NAME = FieldRule("name", ('h5 a[href*="restaurante"]',))

DEGUSTA_DISCOUNT = FieldRule(
    "discount",
    (".degusta_estandar", ".degusta_premium", ".desc-block-v2-single", ".desc-block-v2-rsv-button-2"),
    accept=lambda text: "%" in text or "off" in text.lower(),
)

DEGUSTA_CUISINE = FieldRule("cuisine", (".dg-result-restaurant-cuisine",))

DEGUSTA_ADDRESS = FieldRule("address", (".dg-result-restaurant-address",))

DEGUSTA_PRICE = FieldRule("price", (".dg-result-restaurant-price",), accept=_has_digits)

DEGUSTA_VOTES = FieldRule("votes", (".dg-result-restaurant-number-qualifications",), accept=_has_digits)

DEGUSTA_IMAGE = "img.img-cropped-search, img[src*='degusta-pictures']"
