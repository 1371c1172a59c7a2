"""
Tests for marketplace.py.

Covers:
  - call(): form encoding, X-BLToken header, status=ERROR → MarketplaceError, 429 retry
  - cached inventory meta and manufacturer lookups
  - map_product(): sku/ean/price/features/images mapping
  - sync_product(): add vs update by SKU, missing inventory id
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import config
from errors import MarketplaceError
from marketplace import MarketplaceClient
from product_schema import normalize_bundle
from ratelimit import BackoffPolicy
from samples import make_bundle, make_product

NO_WAIT = BackoffPolicy(base_delay=0, max_delay=0, max_retries=2, jitter=False)


class FakeConnector:
    """Answers connector methods from a dict; records (method, parameters)."""

    def __init__(self, answers: dict):
        self.answers = answers
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, form: dict) -> dict:
        method = form["method"]
        params = json.loads(form["parameters"])
        self.calls.append((method, params))
        answer = self.answers.get(method, {"status": "SUCCESS"})
        return answer(params) if callable(answer) else answer

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]


def _client(answers: dict, inventory_id: str | None = "42") -> tuple[MarketplaceClient, FakeConnector]:
    client = MarketplaceClient(token="bl-token", inventory_id=inventory_id, policy=NO_WAIT)
    connector = FakeConnector(answers)
    client._post = connector
    return client, connector


_INVENTORIES = {"status": "SUCCESS", "inventories": [
    {"inventory_id": 42, "default_warehouse": "bl_1", "default_price_group": 7},
]}


def _product() -> dict:
    product = make_product()
    product["details"]["images"] = [
        {"source": "web", "variant": "front", "url_or_base64": "https://img/1.jpg", "notes": None},
        {"source": "upload", "variant": "front", "url_or_base64": "data:image/png;base64,AAA", "notes": None},
    ]
    normalize_bundle(make_bundle(product))
    return product


# ── Transport ─────────────────────────────────────────────────────────────────

def _mock_resp(status: int, payload: dict | None = None):
    mock_resp = AsyncMock()
    mock_resp.status = status
    mock_resp.json   = AsyncMock(return_value=payload or {})
    mock_resp.__aenter__ = AsyncMock(return_value=mock_resp)
    mock_resp.__aexit__  = AsyncMock(return_value=False)
    return mock_resp


def _mock_session(*responses):
    mock_session = MagicMock()
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__  = AsyncMock(return_value=False)
    mock_session.post       = MagicMock(side_effect=list(responses))
    return mock_session


@pytest.mark.asyncio
class TestCall:

    async def test_form_and_token(self):
        client = MarketplaceClient(token="bl-token", inventory_id="42", policy=NO_WAIT)
        session = _mock_session(_mock_resp(200, {"status": "SUCCESS", "inventories": []}))
        with patch("aiohttp.ClientSession", return_value=session):
            data = await client.call("getInventories")

        assert data["status"] == "SUCCESS"
        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"] == {"X-BLToken": "bl-token"}
        assert kwargs["data"] == {"method": "getInventories", "parameters": "{}"}

    async def test_rate_limit_retried(self):
        client = MarketplaceClient(token="bl-token", inventory_id="42", policy=NO_WAIT)
        session = _mock_session(_mock_resp(429), _mock_resp(200, {"status": "SUCCESS"}))
        with patch("aiohttp.ClientSession", return_value=session):
            await client.call("getInventories")
        assert session.post.call_count == 2

    async def test_error_status(self):
        client, _ = _client({"getInventories": {
            "status": "ERROR", "error_code": "ERROR_BAD_TOKEN", "error_message": "Invalid token",
        }})
        with pytest.raises(MarketplaceError, match="ERROR_BAD_TOKEN: Invalid token") as exc_info:
            await client.call("getInventories")
        assert exc_info.value.meta["method"] == "getInventories"

    def test_token_required(self, monkeypatch):
        monkeypatch.setattr(config, "BASELINKER_TOKEN", None)
        monkeypatch.delenv("BASELINKER_TOKEN", raising=False)
        with pytest.raises(RuntimeError, match="BASELINKER_TOKEN"):
            MarketplaceClient()


# ── Lookups ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestLookups:

    async def test_inventory_meta_cached(self):
        client, connector = _client({"getInventories": _INVENTORIES})
        assert await client.get_inventory_meta() == {"warehouse": "bl_1", "price_group": 7}
        await client.get_inventory_meta()
        assert connector.methods() == ["getInventories"]

    async def test_existing_manufacturer_found(self):
        client, connector = _client({"getInventoryManufacturers": {"status": "SUCCESS", "manufacturers": [
            {"manufacturer_id": 5, "name": "STABILO"},
        ]}})
        assert await client.get_or_create_manufacturer("Stabilo", "42") == 5
        assert await client.get_or_create_manufacturer("stabilo", "42") == 5
        assert connector.methods() == ["getInventoryManufacturers"]

    async def test_missing_manufacturer_created(self):
        client, connector = _client({
            "getInventoryManufacturers": {"status": "SUCCESS", "manufacturers": []},
            "addInventoryManufacturer": {"status": "SUCCESS", "manufacturer_id": 9},
        })
        assert await client.get_or_create_manufacturer("Stabilo", "42") == 9
        assert connector.calls[1] == ("addInventoryManufacturer", {"inventory_id": "42", "name": "Stabilo"})

    async def test_blank_manufacturer(self):
        client, connector = _client({})
        assert await client.get_or_create_manufacturer("", "42") is None
        assert connector.calls == []

    async def test_products_keyed_by_id(self):
        client, _ = _client({"getInventoryProductsList": {"status": "SUCCESS", "products": {
            "1001": {"sku": "4006381333931", "name": "Boss"},
        }}})
        found = await client.find_product_by_sku("4006381333931", "42")
        assert found == {"product_id": "1001", "sku": "4006381333931", "name": "Boss"}


# ── Mapping ───────────────────────────────────────────────────────────────────

class TestMapProduct:

    def test_core_fields(self):
        mapped = MarketplaceClient.map_product(_product(), {"warehouse": "bl_1", "price_group": 7}, 5)
        assert mapped["sku"] == "4006381333931"
        assert mapped["ean"] == "4006381333931"
        assert mapped["prices"] == {7: 1.49}
        assert mapped["stock"] == {"bl_1": 0}
        assert mapped["tax_rate"] == config.BASELINKER_TAX_RATE
        assert mapped["manufacturer_id"] == 5
        assert mapped["text_fields"]["name"] == "Stabilo Boss Original"
        assert mapped["text_fields"]["description"] == "Highlighter with chisel tip."

    def test_features_from_attributes_and_key_features(self):
        features = MarketplaceClient.map_product(_product(), {})["text_fields"]["features"]
        assert features["Colour"] == "Yellow"
        assert features["Line width"] == "5.0"
        assert features["Feature_1"] == "Chisel tip"
        assert features["Feature_3"] == "Water based"

    def test_only_http_images(self):
        mapped = MarketplaceClient.map_product(_product(), {})
        assert mapped["images"] == {"0": "url:https://img/1.jpg"}

    def test_image_limit(self):
        product = _product()
        product["details"]["images"] = [
            {"url_or_base64": f"https://img/{i}.jpg"} for i in range(20)
        ]
        assert len(MarketplaceClient.map_product(product, {})["images"]) == 16

    def test_no_manufacturer_key_without_id(self):
        assert "manufacturer_id" not in MarketplaceClient.map_product(_product(), {})


# ── sync_product ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestSyncProduct:

    def _answers(self, existing: list) -> dict:
        return {
            "getInventories": _INVENTORIES,
            "getInventoryManufacturers": {"status": "SUCCESS", "manufacturers": [
                {"manufacturer_id": 5, "name": "Stabilo"},
            ]},
            "getInventoryProductsList": {"status": "SUCCESS", "products": existing},
            "addInventoryProduct": {"status": "SUCCESS", "product_id": 2002},
            "updateInventoryProducts": {"status": "SUCCESS"},
        }

    async def test_adds_new_product(self):
        client, connector = _client(self._answers([]))
        result = await client.sync_product(_product())

        assert result["product_id"] == 2002
        method, params = connector.calls[-1]
        assert method == "addInventoryProduct"
        assert params["inventory_id"] == "42"
        assert params["sku"] == "4006381333931"
        assert params["manufacturer_id"] == 5

    async def test_updates_existing_product(self):
        client, connector = _client(self._answers([{"product_id": 1001, "sku": "4006381333931"}]))
        await client.sync_product(_product())

        method, params = connector.calls[-1]
        assert method == "updateInventoryProducts"
        assert params["products"][0]["product_id"] == 1001
        assert params["products"][0]["sku"] == "4006381333931"

    async def test_inventory_id_required(self, monkeypatch):
        monkeypatch.setattr(config, "BASELINKER_INVENTORY_ID", None)
        monkeypatch.delenv("BASELINKER_INVENTORY_ID", raising=False)
        client, connector = _client({}, inventory_id=None)
        with pytest.raises(MarketplaceError, match="BASELINKER_INVENTORY_ID"):
            await client.sync_product(_product())
        assert connector.calls == []
