"""Sample ProductBundle data shared by the tests."""
from __future__ import annotations


def make_product(**overrides) -> dict:
    """A product that passes ProductBundle validation."""
    product = {
        "id": "4006381333931",
        "identification": {
            "method": "hybrid",
            "barcodes": ["4006381333931"],
            "name": "Stabilo Boss Original",
            "brand": "Stabilo",
            "category": "Office Supplies",
            "confidence": 0.9,
        },
        "details": {
            "short_description": "Highlighter with chisel tip.",
            "key_features": ["Chisel tip", "Anti-dry-out ink", "Water based"],
            "attributes": [
                {"key": "Colour", "value": "Yellow", "value_type": "string"},
                {"key": "Line width", "value": 5.0, "value_type": "number"},
            ],
            "identifiers": {"ean": "4006381333931", "gtin": None, "upc": None, "mpn": None, "sku": None},
            "images": [],
            "pricing": {
                "lowest_price": {
                    "amount": 1.49,
                    "currency": "EUR",
                    "sources": [{
                        "name": "Shop",
                        "url": "https://shop.example/p/1",
                        "price": 1.49,
                        "shipping": None,
                        "checked_at": None,
                    }],
                    "last_checked_iso": None,
                },
                "price_confidence": 0.8,
            },
        },
        "ops": {"sync_status": "pending", "last_saved_iso": None, "last_synced_iso": None, "revision": 0},
        "notes": {"unsure": [], "warnings": []},
    }
    product.update(overrides)
    return product


def make_bundle(*products: dict) -> dict:
    return {
        "products": list(products) or [make_product()],
        "rendering": {"format": "json", "datasheet_page": "", "admin_table_page": ""},
    }
