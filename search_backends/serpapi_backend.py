"""
SerpAPI search-aggregation backend.

One HTTP endpoint fronts many engines: https://serpapi.com/search.json?engine=…
Docs: https://serpapi.com/search-api

Each engine returns its results under a different key (shopping_results,
images_results, visual_matches, …). summarize_serp_entries() reduces all of
them to the common SearchItem shape and drops images below the configured
minimum resolution.

Outbound calls share the process-wide "serpapi" ConcurrencyGate and are
retried with exponential backoff (see ratelimit.py):
  • HTTP 429            → RateLimitError (retried)
  • HTTP 5xx / timeouts → NetworkError   (retried)
  • other non-200 / {"error": …} body → RuntimeError (not retried)
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp

import config
from errors import NetworkError, RateLimitError
from ratelimit import BackoffPolicy, call_with_retry, get_gate
from search_backends.base import ImageMeta, SearchBackend, SearchItem

logger = logging.getLogger(__name__)

SERPAPI_BASE_URL = "https://serpapi.com/search.json"

# Engines the model may request through the search tool
ALLOWED_ENGINES = [
    "google",
    "google_shopping",
    "google_images",
    "google_lens",
    "google_reverse_image",
    "bing",
    "bing_images",
    "duckduckgo",
    "yahoo",
    "yandex",
    "ebay",
    "walmart",
    "home_depot",
    "naver",
]

# Engines only used internally (marketing image backfill)
INTERNAL_ENGINES = ["amazon"]

# engine → key holding its result list; anything else falls back to organic_results
_RESULT_KEYS = {
    "google_shopping":      "shopping_results",
    "google":               "organic_results",
    "google_images":        "images_results",
    "google_lens":          "visual_matches",
    "google_reverse_image": "image_results",
    "bing_images":          "image_results",
    "duckduckgo":           "organic_results",
    "ebay":                 "shopping_results",
}

# Image engines get a second pass without the resolution filter when the
# first pass kept nothing
_IMAGE_ENGINES = {"google_images", "google_lens", "google_reverse_image", "bing_images"}


def default_params(engine: str) -> dict:
    """Locale parameters applied to every call for this engine family."""
    if engine in ("google", "google_images", "google_reverse_image", "google_shopping", "google_lens"):
        return {
            "gl": config.SERPAPI_GL,
            "hl": config.SERPAPI_HL,
            "google_domain": config.SERPAPI_GOOGLE_DOMAIN,
        }
    if engine in ("bing", "bing_images"):
        return {"cc": config.SERPAPI_CC, "mkt": config.SERPAPI_MARKET}
    if engine == "duckduckgo":
        return {"kl": config.SERPAPI_KL}
    if engine == "ebay":
        return {"ebay_domain": config.SERPAPI_EBAY_DOMAIN}
    return {}


class SerpApiBackend(SearchBackend):

    def __init__(self, api_key: str, policy: Optional[BackoffPolicy] = None) -> None:
        self._api_key = api_key
        self._policy  = policy

    @property
    def name(self) -> str:
        return "SerpAPI"

    async def call(self, engine: str, params: dict) -> dict:
        if engine not in ALLOWED_ENGINES and engine not in INTERNAL_ENGINES:
            raise ValueError(f"Unsupported SerpAPI engine: {engine}")

        final_params = {
            **default_params(engine),
            **params,
            "engine":  engine,
            "api_key": self._api_key,
            "output":  "json",
        }
        query = {k: str(v) for k, v in final_params.items() if v is not None}

        gate = get_gate("serpapi", config.SERPAPI_MAX_CONCURRENCY)
        data = await call_with_retry(
            lambda: self._fetch(query),
            gate=gate,
            policy=self._policy,
            label=f"serpapi:{engine}",
        )
        logger.debug("SerpAPI %s '%s' ok", engine, params.get("q") or params.get("url") or "")
        return data

    def summarize(self, engine: str, data: dict, limit: int = 5) -> list[dict]:
        return summarize_serp_entries(engine, data, limit)

    # ── HTTP helper ───────────────────────────────────────────────────────────

    async def _fetch(self, query: dict) -> dict:
        """Single HTTP call. Transient statuses raise retryable errors."""
        async with aiohttp.ClientSession() as session:
            async with session.get(
                SERPAPI_BASE_URL,
                params=query,
                timeout=aiohttp.ClientTimeout(total=config.SERPAPI_TIMEOUT),
            ) as resp:
                if resp.status == 429:
                    raise RateLimitError("SerpAPI rate limit (429)")
                if resp.status >= 500:
                    raise NetworkError(f"SerpAPI server error ({resp.status})")
                if resp.status != 200:
                    text = await resp.text()
                    raise RuntimeError(f"SerpAPI request failed ({resp.status}): {text[:200]}")
                data = await resp.json()

        if data.get("error"):
            raise RuntimeError(f"SerpAPI error: {data['error']}")
        return data


# ── Result reduction ───────────────────────────────────────────────────────────

def parse_dimension(value: Any) -> Optional[int]:
    """Pixel size from 1200, "1200" or "1200px"; None when unknown."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        return int(digits) if digits else None
    return None


def extract_image_meta(entry: dict) -> Optional[ImageMeta]:
    url = (
        entry.get("original")
        or entry.get("image")
        or entry.get("original_image")
        or entry.get("link")
        or entry.get("thumbnail")
        or entry.get("image_url")
    )
    if not url or not isinstance(url, str):
        return None
    width = (
        parse_dimension(entry.get("original_width"))
        or parse_dimension(entry.get("width"))
        or parse_dimension(entry.get("thumbnail_width"))
    )
    height = (
        parse_dimension(entry.get("original_height"))
        or parse_dimension(entry.get("height"))
        or parse_dimension(entry.get("thumbnail_height"))
    )
    return ImageMeta(url=url, width=width, height=height)


def _to_item(entry: dict, engine: str, skip_quality_check: bool) -> Optional[SearchItem]:
    if not entry or not isinstance(entry, dict):
        return None
    meta = extract_image_meta(entry)
    if not skip_quality_check and meta and meta.is_low_res:
        return None
    return SearchItem(
        title=entry.get("title") or entry.get("product_title") or entry.get("name")
              or entry.get("heading") or "Untitled",
        price=entry.get("price") or entry.get("extracted_price"),
        source=entry.get("source") or entry.get("displayed_link") or entry.get("merchant")
               or entry.get("store") or engine,
        url=(meta.url if meta else None) or entry.get("link") or entry.get("product_link")
            or entry.get("url"),
        thumbnail=entry.get("thumbnail") or entry.get("image") or (meta.url if meta else None),
        snippet=entry.get("snippet") or entry.get("description") or entry.get("excerpt"),
        image_meta=meta,
    )


def _result_entries(engine: str, data: dict) -> list:
    key = _RESULT_KEYS.get(engine)
    entries = data.get(key) if key else None
    if not isinstance(entries, list):
        entries = data.get("organic_results")
    return entries if isinstance(entries, list) else []


def summarize_serp_entries(engine: str, data: Optional[dict], limit: int = 5) -> list[dict]:
    """Reduce a raw SerpAPI body to at most ``limit`` SearchItem dicts."""
    if not data:
        return []

    entries = _result_entries(engine, data)[:limit]
    items = [i for i in (_to_item(e, engine, False) for e in entries) if i]

    if not items and engine in _IMAGE_ENGINES:
        # Nothing met the resolution bar; keep the best we have
        items = [i for i in (_to_item(e, engine, True) for e in entries) if i]

    return [i.to_dict() for i in items]
