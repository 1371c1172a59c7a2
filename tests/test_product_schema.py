"""
Tests for product_schema.py.

Covers:
  - validate_bundle accepts the sample bundle, rejects contract violations
  - product_bundle_json_schema is strict and returns a fresh copy
  - normalize_attributes / normalize_bundle
"""
from __future__ import annotations

import pytest

from errors import SchemaError
from product_schema import normalize_attributes, normalize_bundle, product_bundle_json_schema, validate_bundle
from samples import make_bundle, make_product


class TestValidateBundle:

    def test_sample_is_valid(self):
        validate_bundle(make_bundle())

    def test_empty_products_rejected(self):
        bundle = make_bundle()
        bundle["products"] = []
        with pytest.raises(SchemaError, match="products"):
            validate_bundle(bundle)

    def test_extra_field_rejected(self):
        product = make_product(colour="yellow")
        with pytest.raises(SchemaError, match="colour"):
            validate_bundle(make_bundle(product))

    def test_confidence_out_of_range(self):
        product = make_product()
        product["identification"]["confidence"] = 1.5
        with pytest.raises(SchemaError, match="confidence"):
            validate_bundle(make_bundle(product))

    def test_unknown_image_variant(self):
        product = make_product()
        product["details"]["images"] = [
            {"source": "web", "variant": "banner", "url_or_base64": "https://x", "notes": None},
        ]
        with pytest.raises(SchemaError):
            validate_bundle(make_bundle(product))

    def test_marketing_variant_allowed(self):
        product = make_product()
        product["details"]["images"] = [
            {"source": "web", "variant": "marketing", "url_or_base64": "https://x", "notes": None},
        ]
        validate_bundle(make_bundle(product))

    def test_short_barcode_rejected(self):
        product = make_product()
        product["identification"]["barcodes"] = ["4006381333931", "12"]
        with pytest.raises(SchemaError, match="barcodes/1"):
            validate_bundle(make_bundle(product))

    def test_one_letter_key_feature_rejected(self):
        product = make_product()
        product["details"]["key_features"] = ["Chisel tip", "x", "Water based"]
        with pytest.raises(SchemaError, match="key_features/1"):
            validate_bundle(make_bundle(product))

    def test_numeric_string_not_coerced(self):
        product = make_product()
        product["details"]["pricing"]["lowest_price"]["amount"] = "1.49"
        with pytest.raises(SchemaError):
            validate_bundle(make_bundle(product))

    def test_error_meta_counts_problems(self):
        with pytest.raises(SchemaError) as exc_info:
            validate_bundle({"products": []})
        assert exc_info.value.meta["error_count"] == 2


class TestJsonSchema:

    def test_strict_object(self):
        schema = product_bundle_json_schema()
        assert schema["additionalProperties"] is False
        assert set(schema["required"]) == {"products", "rendering"}

    def test_no_titles(self):
        assert "'title'" not in repr(product_bundle_json_schema())

    def test_fresh_copy(self):
        first = product_bundle_json_schema()
        first["required"].append("oops")
        assert "oops" not in product_bundle_json_schema()["required"]


class TestNormalize:

    def test_entries_to_mapping(self):
        entries = [
            {"key": "Colour", "value": "Yellow", "value_type": "string"},
            {"key": " Width ", "value": None, "value_type": "number"},
            {"key": "", "value": "dropped", "value_type": "string"},
            {"key": "Colour", "value": "Pink", "value_type": "string"},
        ]
        assert normalize_attributes(entries) == {"Colour": "Pink", "Width": ""}

    def test_mapping_unchanged(self):
        mapping = {"Colour": "Yellow"}
        assert normalize_attributes(mapping) is mapping

    def test_bundle_normalised_in_place(self):
        bundle = make_bundle()
        assert normalize_bundle(bundle) is bundle
        assert bundle["products"][0]["details"]["attributes"] == {"Colour": "Yellow", "Line width": 5.0}
        normalize_bundle(bundle)
        assert bundle["products"][0]["details"]["attributes"] == {"Colour": "Yellow", "Line width": 5.0}
