"""
Tests for search_tool.py.

Covers:
  - Tool definition shape (strict, engine allow-list)
  - build_params: per-engine query parameters, num clamping
  - execute_tool_call: success, every failure path captured in ToolResult.error
  - Backend built from key_store, missing key
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

import config
import search_tool
from search_backends.serpapi_backend import ALLOWED_ENGINES, SerpApiBackend
from search_tool import SEARCH_TOOL_DEFINITION, ToolResult, build_params, execute_tool_call


@pytest.fixture
def fake_backend(monkeypatch):
    backend = MagicMock()
    backend.name = "fake"
    backend.call = AsyncMock(return_value={"organic_results": []})
    backend.summarize = MagicMock(return_value=[{"title": "Stabilo Boss", "price": "1,29 €"}])
    monkeypatch.setattr(search_tool, "_backend", backend)
    return backend


class TestDefinition:

    def test_strict_function(self):
        assert SEARCH_TOOL_DEFINITION["type"] == "function"
        assert SEARCH_TOOL_DEFINITION["name"] == "serpapi_web_search"
        assert SEARCH_TOOL_DEFINITION["strict"] is True
        params = SEARCH_TOOL_DEFINITION["parameters"]
        assert params["required"] == ["engine", "query", "num"]
        assert params["properties"]["engine"]["enum"] == ALLOWED_ENGINES


class TestBuildParams:

    def test_text_engine(self):
        assert build_params("google_shopping", "  stabilo boss ") == {"q": "stabilo boss"}

    def test_lens(self):
        assert build_params("google_lens", "https://img/1.jpg") == {"url": "https://img/1.jpg", "type": "products"}

    def test_reverse_image(self):
        assert build_params("google_reverse_image", "https://img/1.jpg") == {"image_url": "https://img/1.jpg"}

    @pytest.mark.parametrize("num,expected", [(10, 10), (100, 50), (0.4, 1), (12.9, 12)])
    def test_num_clamped(self, num, expected):
        assert build_params("google", "x", num)["num"] == expected

    def test_null_num_omitted(self):
        assert "num" not in build_params("google", "x", None)

    def test_blank_query(self):
        with pytest.raises(ValueError, match="query is required"):
            build_params("google", "   ")


class TestToolResult:

    def test_trace_and_output(self):
        result = ToolResult(engine="google", query="x", params={"q": "x"}, summary=[{"title": "ü"}])
        assert result.to_trace() == {"engine": "google", "query": "x", "params": {"q": "x"},
                                     "summary": [{"title": "ü"}], "error": None}
        output = result.to_output()
        assert "ü" in output
        assert json.loads(output) == {"engine": "google", "query": "x", "summary": [{"title": "ü"}], "error": None}


@pytest.mark.asyncio
class TestExecuteToolCall:

    async def test_success(self, fake_backend):
        result = await execute_tool_call(json.dumps({"engine": "google", "query": "stabilo", "num": 5}))
        assert result.error is None
        assert result.params == {"q": "stabilo", "num": 5}
        assert result.summary == [{"title": "Stabilo Boss", "price": "1,29 €"}]
        fake_backend.call.assert_awaited_once_with("google", {"q": "stabilo", "num": 5})
        fake_backend.summarize.assert_called_once_with("google", {"organic_results": []}, search_tool.TOOL_SUMMARY_LIMIT)

    async def test_dict_arguments(self, fake_backend):
        result = await execute_tool_call({"engine": "ebay", "query": "stabilo", "num": None})
        assert result.error is None

    async def test_invalid_json(self, fake_backend):
        result = await execute_tool_call("{not json")
        assert result.error.startswith("Invalid tool arguments")
        fake_backend.call.assert_not_awaited()

    async def test_unsupported_engine(self, fake_backend):
        result = await execute_tool_call({"engine": "amazon", "query": "x", "num": None})
        assert result.error == "Engine amazon is not supported by SerpAPI tool"

    async def test_blank_query(self, fake_backend):
        result = await execute_tool_call({"engine": "google", "query": " ", "num": None})
        assert "query is required" in result.error

    async def test_backend_failure_captured(self, fake_backend):
        fake_backend.call.side_effect = RuntimeError("SerpAPI error: quota")
        result = await execute_tool_call({"engine": "google", "query": "x", "num": None})
        assert result.error == "SerpAPI error: quota"
        assert result.params == {"q": "x"}
        assert result.summary == []

    async def test_missing_key_captured(self, monkeypatch):
        monkeypatch.setattr(config, "SERPAPI_KEY", None)
        monkeypatch.delenv("SERPAPI_KEY", raising=False)
        result = await execute_tool_call({"engine": "google", "query": "x", "num": None})
        assert result.error == "SERPAPI_KEY is not configured"


class TestBackend:

    def test_built_from_key(self, monkeypatch):
        monkeypatch.setattr(config, "SERPAPI_KEY", "serp-123")
        backend = search_tool.get_backend()
        assert isinstance(backend, SerpApiBackend)
        assert search_tool.get_backend() is backend
        search_tool.reset_backend()
        assert search_tool.get_backend() is not backend
