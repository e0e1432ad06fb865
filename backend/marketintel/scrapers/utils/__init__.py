"""Scraper utilities: rendering, rate limiting and extraction helpers."""

from marketintel.scrapers.utils.browser_manager import BrowserManager
from marketintel.scrapers.utils.normalizer import PriceNormalizer, normalize_url
from marketintel.scrapers.utils.proxy_manager import ProxyManager
from marketintel.scrapers.utils.rate_limiter import DomainRateLimiter, TokenBucket
from marketintel.scrapers.utils.title_rules import parse_promo_title
from marketintel.scrapers.utils.user_agents import get_random_user_agent

__all__ = [
    "BrowserManager",
    "DomainRateLimiter",
    "PriceNormalizer",
    "ProxyManager",
    "TokenBucket",
    "get_random_user_agent",
    "normalize_url",
    "parse_promo_title",
]
