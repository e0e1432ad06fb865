"""Ordered rules that split a free-text promo title into offer and merchant.

Promotion grids often publish a single string such as
"75% de descuento en MyOffice Panamá" or "2×1 en Habibis". Rules are tried
in order and the first match wins; when nothing matches the whole string
is used as both the title and the merchant name.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern

from marketintel.scrapers.utils.normalizer import decode_html_entities


@dataclass(frozen=True)
class ParsedTitle:
    title: str
    merchant_name: str
    discount_percent: Optional[int] = None


@dataclass(frozen=True)
class TitleRule:
    name: str
    pattern: Pattern[str]
    build: Callable[[re.Match], ParsedTitle]

    def apply(self, text: str) -> Optional[ParsedTitle]:
        match = self.pattern.match(text)
        if not match:
            return None
        parsed = self.build(match)
        # A rule that leaves no merchant behind hasn't really matched
        return parsed if parsed.merchant_name else None


def _percent(m: re.Match) -> ParsedTitle:
    pct = int(m.group("pct"))
    return ParsedTitle(f"{pct}% de descuento", m.group("name").strip(), pct)


def _n_for_one(m: re.Match) -> ParsedTitle:
    return ParsedTitle(f"{m.group('n')}×1", m.group("name").strip())


def _prefix(m: re.Match) -> ParsedTitle:
    return ParsedTitle(m.group("offer").strip(), m.group("name").strip())


TITLE_RULES: List[TitleRule] = [
    TitleRule(
        "percent_off",
        re.compile(
            r"^(?P<pct>\d{1,3})\s*%\s*(?:de\s+descuento|off)\s+(?:en|on|at)\s+(?P<name>.+)$",
            re.IGNORECASE,
        ),
        _percent,
    ),
    TitleRule(
        "n_for_one",
        re.compile(r"^(?P<n>\d+)\s*[×xX]\s*1\s+(?:en|on)\s+(?P<name>.+)$", re.IGNORECASE),
        _n_for_one,
    ),
    TitleRule(
        "special_offer",
        re.compile(
            r"^(?P<offer>(?:Promoci[oó]n|Precio)\s+especial)\s+(?:en|de)\s+(?P<name>.+)$",
            re.IGNORECASE,
        ),
        _prefix,
    ),
    TitleRule(
        "generic_en_on_at",
        re.compile(r"^(?P<offer>.+?)\s+(?:en|on|at)\s+(?P<name>.+)$", re.IGNORECASE),
        _prefix,
    ),
    TitleRule(
        "generic_de",
        re.compile(r"^(?P<offer>.+?)\s+de\s+(?P<name>.+)$", re.IGNORECASE),
        _prefix,
    ),
]


def parse_promo_title(raw: str, rules: List[TitleRule] = TITLE_RULES) -> ParsedTitle:
    """Split a promo string into title, merchant and (when numeric) discount."""
    text = re.sub(r"\s+", " ", decode_html_entities(raw))
    for rule in rules:
        parsed = rule.apply(text)
        if parsed:
            return parsed
    return ParsedTitle(text, text)
