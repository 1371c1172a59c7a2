"""
product_schema.py — the ProductBundle contract.

The pydantic models below are the single definition of the bundle:
  • product_bundle_json_schema() is sent to the model as the strict output format
  • validate_bundle() checks the model's JSON against the same models
  • normalize_bundle() turns attribute entry lists into a key → value mapping
    (done once, after validation — the stored job result uses the mapping form)

The orchestrator keeps working on the plain dict; the models are only used
to validate it.
"""
from __future__ import annotations

import copy
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from errors import SchemaError


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


# ── Leaf objects ──────────────────────────────────────────────────────────────

class AttributeEntry(_Strict):
    key: str = Field(min_length=1)
    value: Union[str, float, bool, None]
    value_type: Literal["string", "number", "boolean"]


class ProductImage(_Strict):
    source: Literal["upload", "generated", "web"]
    # "marketing" is set by the image-coverage backfill
    variant: Optional[Literal["front", "angle", "detail", "pack", "marketing", "other"]]
    url_or_base64: str = Field(min_length=1)
    notes: Optional[str]


class PriceSource(_Strict):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    price: Optional[float]
    shipping: Optional[float]
    checked_at: Optional[str]


class LowestPrice(_Strict):
    amount: float = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    sources: list[PriceSource] = Field(min_length=1)
    last_checked_iso: Optional[str]


class Pricing(_Strict):
    lowest_price: LowestPrice
    price_confidence: float = Field(ge=0, le=1)


class Identifiers(_Strict):
    ean: Optional[str]
    gtin: Optional[str]
    upc: Optional[str]
    mpn: Optional[str]
    sku: Optional[str]


# ── Product sections ──────────────────────────────────────────────────────────

class Identification(_Strict):
    method: Literal["image", "barcode", "hybrid"]
    barcodes: list[Annotated[str, Field(min_length=3)]]
    name: str = Field(min_length=1)
    brand: str = Field(min_length=1)
    category: str = Field(min_length=1)
    confidence: float = Field(ge=0, le=1)


class ProductDetails(_Strict):
    short_description: str = Field(min_length=1)
    key_features: list[Annotated[str, Field(min_length=2)]] = Field(min_length=3)
    attributes: list[AttributeEntry]
    identifiers: Identifiers
    images: list[ProductImage]
    pricing: Pricing


class Ops(_Strict):
    sync_status: Literal["pending", "synced", "failed"]
    last_saved_iso: Optional[str]
    last_synced_iso: Optional[str]
    revision: int = Field(ge=0)


class ProductNotes(_Strict):
    unsure: list[str]
    warnings: list[str]


class Product(_Strict):
    id: str = Field(min_length=1)
    identification: Identification
    details: ProductDetails
    ops: Ops
    notes: ProductNotes


class Rendering(_Strict):
    format: str
    datasheet_page: str
    admin_table_page: str


class ProductBundle(_Strict):
    products: list[Product] = Field(min_length=1)
    rendering: Rendering


# ── JSON schema for the model ─────────────────────────────────────────────────

def _strip_titles(node: Any) -> Any:
    if isinstance(node, dict):
        return {k: _strip_titles(v) for k, v in node.items() if k != "title"}
    if isinstance(node, list):
        return [_strip_titles(v) for v in node]
    return node


_SCHEMA_CACHE: Optional[dict] = None


def product_bundle_json_schema() -> dict:
    """Strict JSON schema for the structured-output request (a fresh copy)."""
    global _SCHEMA_CACHE
    if _SCHEMA_CACHE is None:
        _SCHEMA_CACHE = _strip_titles(ProductBundle.model_json_schema())
    return copy.deepcopy(_SCHEMA_CACHE)


# ── Validation ────────────────────────────────────────────────────────────────

def validate_bundle(data: Any) -> None:
    """Raise SchemaError unless ``data`` matches the ProductBundle contract."""
    try:
        ProductBundle.model_validate(data)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"/{'/'.join(str(p) for p in err['loc'])} {err['msg']}"
            for err in exc.errors()
        )
        raise SchemaError(
            f"Model output failed ProductBundle schema validation: {problems}",
            meta={"error_count": exc.error_count()},
        ) from exc


# ── Normalisation ─────────────────────────────────────────────────────────────

def normalize_attributes(attributes: Any) -> Any:
    """
    Convert [{key, value, value_type}, …] into {key: value}.

    A mapping is returned unchanged, so normalising twice is a no-op.
    Blank keys are dropped, a repeated key keeps the last value, and a
    missing/null value becomes "".
    """
    if not isinstance(attributes, list):
        return attributes
    mapping: dict[str, Any] = {}
    for entry in attributes:
        if not isinstance(entry, dict):
            continue
        key = str(entry.get("key") or "").strip()
        if not key:
            continue
        value = entry.get("value")
        mapping[key] = "" if value is None else value
    return mapping


def normalize_bundle(bundle: dict) -> dict:
    """Normalise every product's attributes in place; returns the bundle."""
    for product in bundle.get("products") or []:
        details = product.get("details") if isinstance(product, dict) else None
        if isinstance(details, dict) and "attributes" in details:
            details["attributes"] = normalize_attributes(details["attributes"])
    return bundle
