"""
marketing_images.py — image-coverage backfill.

Products that come back from the model with fewer than
max(3, MIN_ENRICHED_IMAGE_COUNT) web images get extra "marketing" images:

  1. google_images: "<brand name> marketing photo" / "… lifestyle" / "… hero image"
     (large photos only: tbs=isz:l,itp:photo)
  2. amazon image search for "<brand name> Produktfoto" if still short

Each candidate must meet the resolution minimum, must not duplicate an
existing image (compared by host + path), and, unless MARKETING_IMAGE_VERIFY
is off, must answer a HEAD (or ranged GET) with a 2xx image/* response. The
thumbnail is tried when the full-size URL is unreachable.

Nothing here raises: a failed query or probe just yields fewer images.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlsplit

import aiohttp

import config

logger = logging.getLogger(__name__)

SearchFn = Callable[[str, dict, int], Awaitable[list[dict]]]
ProbeFn = Callable[[str], Awaitable[bool]]

GOOGLE_QUERY_SUFFIXES = ("marketing photo", "lifestyle", "hero image")
AMAZON_QUERY_SUFFIX = "Produktfoto"


@dataclass
class MarketingImage:
    url: str
    width: Optional[int]
    height: Optional[int]
    source: str
    title: str
    preview: Optional[str] = None


@dataclass
class MarketingImageResult:
    images: list[MarketingImage] = field(default_factory=list)
    trace: list[dict] = field(default_factory=list)


def normalize_url_key(url: Any) -> Optional[str]:
    """host + path, lower-cased; used to spot the same image under different query strings."""
    if not url or not isinstance(url, str):
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        parts = None
    if parts and parts.hostname:
        return f"{parts.hostname}{parts.path}".lower()
    return url.strip().lower() or None


def _meets_quality(meta: dict) -> bool:
    if not meta or not meta.get("url"):
        return False
    width, height = meta.get("width"), meta.get("height")
    if width and width < config.MIN_IMAGE_WIDTH:
        return False
    if height and height < config.MIN_IMAGE_HEIGHT:
        return False
    return True


def _to_image(item: dict, engine: str) -> Optional[MarketingImage]:
    meta = item.get("image_meta") or {"url": item.get("url")}
    if not _meets_quality(meta):
        return None
    return MarketingImage(
        url=meta["url"],
        width=meta.get("width"),
        height=meta.get("height"),
        source=item.get("source") or engine,
        title=item.get("title") or item.get("snippet") or "",
        preview=item.get("thumbnail"),
    )


# ── Reachability probe ────────────────────────────────────────────────────────

def _referer(url: str) -> Optional[str]:
    parts = urlsplit(url)
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}/"
    return None


async def _probe(session: aiohttp.ClientSession, url: str, method: str) -> bool:
    headers = {
        "User-Agent": config.MARKETING_IMAGE_USER_AGENT,
        "Accept": "image/*,*/*;q=0.8",
    }
    referer = _referer(url)
    if referer:
        headers["Referer"] = referer
    if method == "GET":
        headers["Range"] = "bytes=0-1023"
    try:
        async with session.request(method, url, headers=headers, allow_redirects=True) as resp:
            if not 200 <= resp.status < 300:
                return False
            return resp.headers.get("Content-Type", "").startswith("image/")
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError):
        return False


async def probe_image_url(url: str) -> bool:
    """True when ``url`` serves an image (HEAD first, then a 1 KiB ranged GET)."""
    if not url:
        return False
    timeout = aiohttp.ClientTimeout(total=config.MARKETING_IMAGE_PROBE_TIMEOUT)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        if await _probe(session, url, "HEAD"):
            return True
        return await _probe(session, url, "GET")


async def _pick_accessible_url(image: MarketingImage, probe: Optional[ProbeFn]) -> Optional[str]:
    if probe is None:
        return image.url
    if await probe(image.url):
        return image.url
    if image.preview and await probe(image.preview):
        return image.preview
    return None


# ── Discovery ─────────────────────────────────────────────────────────────────

async def _query_images(
    search: SearchFn, engine: str, params: dict, limit: int, label: str,
) -> MarketingImageResult:
    result = MarketingImageResult()
    try:
        items = await search(engine, dict(params), limit * 3)
    except Exception as exc:
        logger.warning("Marketing image query %s '%s' failed: %s", engine, label, exc)
        return result

    result.images = [img for img in (_to_image(i, engine) for i in items) if img]
    if result.images:
        result.trace.append({
            "engine":  engine,
            "query":   label,
            "params":  params,
            "summary": [
                {"url": img.url, "source": img.source, "width": img.width, "height": img.height}
                for img in result.images[:limit]
            ],
            "error": None,
        })
    return result


async def fetch_marketing_images(
    brand: Optional[str],
    name: Optional[str],
    limit: Optional[int] = None,
    exclude: Iterable[str] = (),
    search: Optional[SearchFn] = None,
    probe: Optional[ProbeFn] = None,
) -> MarketingImageResult:
    """Find up to ``limit`` reachable, high-resolution images for a product."""
    base_query = " ".join(p for p in (brand, name) if p).strip()
    if not base_query:
        return MarketingImageResult()
    if search is None:
        from search_tool import search
    if probe is None and config.MARKETING_IMAGE_VERIFY:
        probe = probe_image_url

    desired = max(1, limit if limit is not None else config.MARKETING_IMAGE_LIMIT)
    seen = {k for k in (normalize_url_key(u) for u in exclude) if k}
    out = MarketingImageResult()

    async def _collect(found: MarketingImageResult) -> None:
        for img in found.images:
            if len(out.images) >= desired:
                break
            url = await _pick_accessible_url(img, probe)
            key = normalize_url_key(url)
            if not key or key in seen:
                continue
            seen.add(key)
            img.url = url
            out.images.append(img)
        out.trace.extend(found.trace)

    for suffix in GOOGLE_QUERY_SUFFIXES:
        if len(out.images) >= desired:
            break
        query = f"{base_query} {suffix}"
        params = {
            "q":   query,
            "tbs": "isz:l,itp:photo",
            "num": 20,
            "ijn": 1 if out.images else 0,
        }
        await _collect(await _query_images(search, "google_images", params,
                                           desired - len(out.images), query))

    if len(out.images) < desired:
        query = f"{base_query} {AMAZON_QUERY_SUFFIX}"
        params = {"query": query, "search_type": "images", "num": 20}
        await _collect(await _query_images(search, "amazon", params,
                                           desired - len(out.images), query))

    out.images = out.images[:desired]
    return out


# ── Backfill ──────────────────────────────────────────────────────────────────

async def ensure_image_coverage(
    products: list[dict],
    serp_trace: list[dict],
    search: Optional[SearchFn] = None,
    probe: Optional[ProbeFn] = None,
) -> None:
    """Append marketing images to products that have too few (in place)."""
    desired_count = max(3, config.MIN_ENRICHED_IMAGE_COUNT)

    for product in products or []:
        if not isinstance(product, dict):
            continue
        ident = product.get("identification") or {}
        name = (ident.get("name") or "").strip()
        if not name:
            continue
        brand = (ident.get("brand") or "").strip()

        details = product.setdefault("details", {})
        existing = details.get("images") or []
        existing_urls = [
            url for url in (img.get("url_or_base64") or img.get("url") for img in existing if isinstance(img, dict))
            if isinstance(url, str) and url.startswith("http")
        ]
        missing = max(0, desired_count - len(existing_urls))
        if missing == 0:
            continue

        try:
            found = await fetch_marketing_images(
                brand, name, limit=missing, exclude=existing_urls, search=search, probe=probe,
            )
        except Exception as exc:
            logger.warning("Failed to fetch marketing images for '%s': %s", name, exc)
            continue

        for entry in found.trace:
            serp_trace.append({**entry, "summary": entry["summary"][:5]})

        seen = {k for k in (normalize_url_key(u) for u in existing_urls) if k}
        added = []
        for img in found.images:
            key = normalize_url_key(img.url)
            if not key or key in seen:
                continue
            seen.add(key)
            added.append({
                "source":        "web",
                "variant":       "marketing",
                "url_or_base64": img.url,
                "notes":         img.title or "Marketing image",
            })
        if added:
            details["images"] = [*existing, *added]
            logger.info("Added %d marketing image(s) for '%s'", len(added), name)
