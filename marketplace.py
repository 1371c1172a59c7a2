"""
marketplace.py — inventory sync with the BaseLinker connector API.

Every request is a form-encoded POST of ``method`` + JSON ``parameters`` to
https://api.baselinker.com/connector.php with the X-BLToken header.
BaseLinker allows 5 concurrent requests per token, so all calls share the
"baselinker" ConcurrencyGate and the outbound retry policy.

sync_product() pushes one ProductBundle product: it creates the manufacturer
if needed, maps the product onto BaseLinker's inventory format and then
updates the existing product with the same SKU or adds a new one.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

import aiohttp

import config
from cache import TTLCache
from errors import MarketplaceError, NetworkError, RateLimitError
from ratelimit import BackoffPolicy, call_with_retry, get_gate

logger = logging.getLogger(__name__)

BASELINKER_URL = "https://api.baselinker.com/connector.php"
MAX_PRODUCT_IMAGES = 16


class MarketplaceClient:

    def __init__(
        self,
        token: Optional[str] = None,
        inventory_id: Optional[str] = None,
        cache: Optional[TTLCache] = None,
        policy: Optional[BackoffPolicy] = None,
    ) -> None:
        import key_store
        self._token = token or key_store.require("baselinker_token")
        self.inventory_id = inventory_id or key_store.get("baselinker_inventory_id")
        self._cache = cache if cache is not None else TTLCache(ttl=config.BASELINKER_CACHE_TTL)
        self._policy = policy

    # ── Transport ─────────────────────────────────────────────────────────────

    async def call(self, method: str, parameters: Optional[dict] = None) -> dict:
        """Run one connector method. Raises MarketplaceError on status=ERROR."""
        form = {"method": method, "parameters": json.dumps(parameters or {})}
        gate = get_gate("baselinker", config.BASELINKER_MAX_CONCURRENCY)
        data = await call_with_retry(
            lambda: self._post(form),
            gate=gate,
            policy=self._policy,
            label=f"baselinker:{method}",
        )
        if data.get("status") == "ERROR":
            raise MarketplaceError(
                f"{data.get('error_code')}: {data.get('error_message')}",
                meta={"method": method, "error_code": data.get("error_code")},
            )
        return data

    async def _post(self, form: dict) -> dict:
        headers = {"X-BLToken": self._token}
        async with aiohttp.ClientSession() as session:
            async with session.post(
                BASELINKER_URL,
                data=form,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=30),
            ) as resp:
                if resp.status == 429:
                    raise RateLimitError("BaseLinker rate limit (429)")
                if resp.status >= 500:
                    raise NetworkError(f"BaseLinker server error ({resp.status})")
                return await resp.json(content_type=None)

    # ── Lookups (cached) ──────────────────────────────────────────────────────

    async def get_inventory_meta(self) -> dict:
        """Default warehouse and price group of the first inventory."""
        async def _load() -> dict:
            data = await self.call("getInventories")
            inventories = data.get("inventories") or [{}]
            inv = inventories[0]
            return {
                "warehouse": inv.get("default_warehouse"),
                "price_group": inv.get("default_price_group"),
            }
        return await self._cache.get_or_set("inventory_meta", _load)

    async def get_or_create_manufacturer(self, name: Optional[str], inventory_id: Any) -> Optional[int]:
        if not name:
            return None
        key = f"manufacturer:{inventory_id}:{name.lower()}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        res = await self.call("getInventoryManufacturers", {"inventory_id": inventory_id})
        found = next(
            (m for m in res.get("manufacturers") or [] if str(m.get("name", "")).lower() == name.lower()),
            None,
        )
        if found:
            manufacturer_id = found.get("manufacturer_id")
        else:
            created = await self.call("addInventoryManufacturer", {"inventory_id": inventory_id, "name": name})
            manufacturer_id = created.get("manufacturer_id")
            logger.info("Created manufacturer '%s' (id=%s)", name, manufacturer_id)
        self._cache.set(key, manufacturer_id)
        return manufacturer_id

    async def find_product_by_sku(self, sku: str, inventory_id: Any) -> Optional[dict]:
        res = await self.call("getInventoryProductsList", {"inventory_id": inventory_id, "filter_sku": sku})
        products = res.get("products") or []
        if isinstance(products, dict):
            # keyed by product id
            products = [{"product_id": pid, **(p or {})} for pid, p in products.items()]
        return products[0] if products else None

    # ── Mapping / sync ────────────────────────────────────────────────────────

    @staticmethod
    def map_product(product: dict, meta: dict, manufacturer_id: Optional[int] = None) -> dict:
        ident = product.get("identification") or {}
        details = product.get("details") or {}
        identifiers = details.get("identifiers") or {}
        pricing = details.get("pricing") or {}
        storage = product.get("storage") or {}

        name = (
            ident.get("name") or product.get("title") or details.get("short_description")
            or identifiers.get("sku") or identifiers.get("ean") or product.get("id")
            or "Unnamed Product"
        )
        sku = (
            identifiers.get("sku") or identifiers.get("mpn") or identifiers.get("ean")
            or identifiers.get("gtin") or product.get("id")
        )
        barcodes = ident.get("barcodes") or []
        ean = identifiers.get("ean") or identifiers.get("gtin") or (barcodes[0] if barcodes else "")
        price = (pricing.get("lowest_price") or {}).get("amount") or pricing.get("price") or 0
        attributes = details.get("attributes") if isinstance(details.get("attributes"), dict) else {}
        qty = (
            (product.get("inventory") or {}).get("quantity")
            or storage.get("quantity") or attributes.get("stock") or 0
        )

        features: dict[str, str] = {}
        for source in (attributes, details.get("rawSpecs"), details.get("specifications")):
            for k, v in (source or {}).items():
                if v:
                    features[str(k).strip()] = str(v).strip()
        for i, feature in enumerate(details.get("key_features") or [], 1):
            if feature:
                features[f"Feature_{i}"] = str(feature)

        urls = [
            img.get("url_or_base64") for img in details.get("images") or []
            if isinstance(img, dict) and str(img.get("url_or_base64") or "").startswith("http")
        ][:MAX_PRODUCT_IMAGES]
        images = {str(i): f"url:{u}" for i, u in enumerate(urls)}

        warehouse = meta.get("warehouse")
        mapped: dict[str, Any] = {
            "is_bundle": False,
            "sku": sku,
            "ean": ean,
            "asin": "",
            "ean_additional": [],
            "tags": [],
            "tax_rate": config.BASELINKER_TAX_RATE,
            "category_id": 0,
            "text_fields": {
                "name": name,
                "description": details.get("short_description") or name,
            },
            "stock": {warehouse: qty},
            "prices": {meta.get("price_group"): price},
            "links": {},
            "average_cost": 0,
            "average_landed_cost": 0,
            "suppliers": [],
        }
        if manufacturer_id:
            mapped["manufacturer_id"] = manufacturer_id
        if features:
            mapped["text_fields"]["features"] = features
        if images:
            mapped["images"] = images
        if storage.get("binCode"):
            mapped["locations"] = {warehouse: str(storage["binCode"])}
        return mapped

    async def sync_product(self, product: dict) -> dict:
        """Update the product with the same SKU, or add it. Returns the API response."""
        if not self.inventory_id:
            raise MarketplaceError("BASELINKER_INVENTORY_ID is not configured")
        meta = await self.get_inventory_meta()
        manufacturer_id = await self.get_or_create_manufacturer(
            (product.get("identification") or {}).get("brand"), self.inventory_id,
        )
        mapped = self.map_product(product, meta, manufacturer_id)

        existing = await self.find_product_by_sku(mapped["sku"], self.inventory_id) if mapped["sku"] else None
        if existing:
            logger.info("Updating marketplace product %s (sku=%s)", existing.get("product_id"), mapped["sku"])
            return await self.call("updateInventoryProducts", {
                "inventory_id": self.inventory_id,
                "products": [{"product_id": existing.get("product_id"), **mapped}],
            })

        logger.info("Adding marketplace product (sku=%s)", mapped["sku"])
        return await self.call("addInventoryProduct", {"inventory_id": self.inventory_id, **mapped})
