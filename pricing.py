"""
pricing.py — price-coverage backfill.

After the model returns a valid bundle, every product without a positive,
sourced lowest price gets one synthesised from search results:

  1. scan the serp trace (google_shopping / google / ebay entries) for items
     whose price parses and that match the product's keywords
  2. if nothing matches, run one fallback google_shopping search and append
     it to the trace with fallback=True
  3. take the cheapest candidate as lowest_price

Nothing here raises: a failed lookup just leaves the product as it was.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import config

logger = logging.getLogger(__name__)

SearchFn = Callable[[str, dict, int], Awaitable[list[dict]]]

PRICE_TRACE_ENGINES = {"google_shopping", "google", "ebay"}

FALLBACK_RESULT_COUNT = 12
MAX_PRICE_SOURCES = 5

_CURRENCY_MAP = {
    "€":   "EUR",
    "eur": "EUR",
    "$":   "USD",
    "usd": "USD",
    "£":   "GBP",
    "gbp": "GBP",
}
_CURRENCY_RE = re.compile(r"(€|eur|\$|usd|£|gbp)", re.IGNORECASE)
_NON_NUMERIC_RE = re.compile(r"[^0-9,.\-]")


@dataclass
class PriceCandidate:
    amount: float
    currency: str
    source: str
    url: str
    engine: str


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_price(raw: Any, default_currency: Optional[str] = None) -> Optional[tuple[float, str]]:
    """
    Parse a price like "12,99 €", "$9.50" or 1299.0 into (amount, currency).

    Returns None when no finite amount can be read.
    """
    default_currency = default_currency or config.DEFAULT_PRICE_CURRENCY
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return (float(raw), default_currency) if math.isfinite(raw) else None
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None

    match = _CURRENCY_RE.search(text)
    currency = _CURRENCY_MAP.get(match.group(1).lower(), default_currency) if match else default_currency

    numeric = _NON_NUMERIC_RE.sub("", text)
    if not numeric:
        return None

    commas, dots = numeric.count(","), numeric.count(".")
    if commas and dots:
        if numeric.rfind(",") > numeric.rfind("."):
            # 1.234,56 → comma is the decimal separator
            normalized = numeric.replace(".", "").replace(",", ".", 1)
        else:
            normalized = numeric.replace(",", "")
    elif commas == 1 and dots == 0:
        normalized = numeric.replace(",", ".")
    else:
        normalized = numeric.replace(",", "")

    try:
        amount = float(normalized)
    except ValueError:
        return None
    if not math.isfinite(amount):
        return None
    return amount, currency


def collect_product_keywords(product: dict) -> list[str]:
    """Lower-cased name / brand / sku / ean / gtin values of at least 3 chars."""
    ident = (product or {}).get("identification") or {}
    identifiers = ((product or {}).get("details") or {}).get("identifiers") or {}
    values = [
        ident.get("name"),
        ident.get("brand"),
        ident.get("sku"),
        identifiers.get("sku"),
        identifiers.get("ean"),
        identifiers.get("gtin"),
    ]
    keywords = [str(v).strip().lower() for v in values if v]
    return [k for k in keywords if len(k) >= 3]


def _query_matches(query: str, keywords: list[str]) -> bool:
    if not query:
        return False
    normalized = query.lower()
    return any(k[:8] in normalized for k in keywords)


def collect_price_candidates(
    product: dict,
    trace: list[dict],
    keywords: Optional[list[str]] = None,
) -> list[PriceCandidate]:
    if not trace:
        return []
    keywords = keywords if keywords is not None else collect_product_keywords(product)
    if not keywords:
        return []

    candidates: list[PriceCandidate] = []
    for entry in trace:
        if not entry or entry.get("engine") not in PRICE_TRACE_ENGINES:
            continue
        query_relevant = _query_matches(entry.get("query") or "", keywords)
        for item in entry.get("summary") or []:
            parsed = parse_price(item.get("price"))
            if not parsed or parsed[0] <= 0 or not item.get("url"):
                continue
            blob = " ".join(str(t) for t in (item.get("title"), item.get("snippet")) if t).lower()
            if not query_relevant and not any(k in blob for k in keywords):
                continue
            candidates.append(PriceCandidate(
                amount=parsed[0],
                currency=parsed[1],
                source=item.get("source") or entry["engine"],
                url=item.get("url") or "",
                engine=entry["engine"],
            ))
    return candidates


async def fetch_price_trace(keywords: list[str], search: SearchFn) -> Optional[dict]:
    """One google_shopping lookup for the first keywords; None if it finds nothing."""
    query = " ".join(keywords[:4]).strip()
    if not query:
        return None
    params = {"q": query, "num": FALLBACK_RESULT_COUNT}
    try:
        summary = await search("google_shopping", dict(params), FALLBACK_RESULT_COUNT)
    except Exception as exc:
        logger.warning("Fallback Google Shopping lookup failed for '%s': %s", query, exc)
        return None
    if not summary:
        return None
    return {
        "engine":   "google_shopping",
        "query":    query,
        "summary":  summary,
        "params":   params,
        "error":    None,
        "fallback": True,
    }


def _has_price(product: dict) -> bool:
    pricing = ((product.get("details") or {}).get("pricing") or {})
    lowest = pricing.get("lowest_price") or {}
    amount = lowest.get("amount")
    return (
        isinstance(amount, (int, float))
        and not isinstance(amount, bool)
        and math.isfinite(amount)
        and amount > 0
        and bool(lowest.get("sources"))
    )


async def ensure_price_coverage(
    products: list[dict],
    trace: list[dict],
    search: Optional[SearchFn] = None,
) -> None:
    """Fill lowest_price for products that lack one (in place)."""
    if not products:
        return
    if search is None:
        from search_tool import search

    for product in products:
        if not isinstance(product, dict) or _has_price(product):
            continue
        keywords = collect_product_keywords(product)
        if not keywords:
            continue

        candidates = collect_price_candidates(product, trace, keywords)
        if not candidates:
            fallback = await fetch_price_trace(keywords, search)
            if fallback:
                trace.append(fallback)
                candidates = collect_price_candidates(product, [fallback], keywords)
        if not candidates:
            logger.info("No price found for '%s'", keywords[0])
            continue

        best = min(candidates, key=lambda c: c.amount)
        timestamp = _utc_now()

        details = product.setdefault("details", {})
        existing = details.get("pricing") or {}
        base_sources = [s for s in ((existing.get("lowest_price") or {}).get("sources") or []) if s]
        confidence = existing.get("price_confidence")
        if not (isinstance(confidence, (int, float)) and confidence > 0):
            confidence = min(0.95, max(0.4, len(candidates) / 5))

        details["pricing"] = {
            **existing,
            "lowest_price": {
                "amount":   best.amount,
                "currency": best.currency or config.DEFAULT_PRICE_CURRENCY,
                "sources": [
                    {
                        "name":       best.source or "SerpAPI",
                        "url":        best.url,
                        "price":      best.amount,
                        "shipping":   None,
                        "checked_at": timestamp,
                    },
                    *base_sources,
                ][:MAX_PRICE_SOURCES],
                "last_checked_iso": timestamp,
            },
            "price_confidence": confidence,
        }
        logger.info("Price backfilled for '%s': %.2f %s (%s)",
                    keywords[0], best.amount, best.currency, best.source)
