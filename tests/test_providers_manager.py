"""
Tests for providers/manager.py.

Covers:
  - resolve_model: aliases, pass-through, blank/default, unknown fallback
  - get_provider: built from the configured key, cached, reset
  - Missing key → RuntimeError
"""
from __future__ import annotations

import pytest

import config
from providers import manager
from providers.manager import MODEL_ALIASES, get_provider, reset_provider, resolve_model, set_provider
from providers.openai_provider import OpenAIProvider


class TestResolveModel:

    @pytest.mark.parametrize("alias,expected", [
        ("mini", "gpt-5-mini"),
        ("nano", "gpt-5-nano"),
        ("standard", "gpt-5.1"),
        ("gpt-5.1-nano", "gpt-5-nano"),
        ("  MINI ", "gpt-5-mini"),
    ])
    def test_aliases(self, alias, expected):
        assert resolve_model(alias) == expected

    @pytest.mark.parametrize("value", [None, "", "   ", "default", "auto", "AUTO"])
    def test_blank_uses_configured_default(self, value, monkeypatch):
        monkeypatch.setattr(config, "IDENTIFY_MODEL", "gpt-5-nano")
        assert resolve_model(value) == "gpt-5-nano"

    def test_explicit_default_wins_over_config(self):
        assert resolve_model(None, default="gpt-5.1") == "gpt-5.1"

    def test_unknown_gpt5_id_passes_through(self):
        assert resolve_model("gpt-5-pro-2026") == "gpt-5-pro-2026"

    def test_unknown_model_falls_back(self, monkeypatch):
        monkeypatch.setattr(config, "IDENTIFY_MODEL", "gpt-5-mini")
        assert resolve_model("claude-opus") == "gpt-5-mini"

    def test_every_alias_targets_a_gpt5_model(self):
        assert all(v.startswith("gpt-5") for v in MODEL_ALIASES.values())


class TestGetProvider:

    def test_builds_openai_provider_from_key(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", "sk-test-1234567890")
        provider = get_provider()
        assert isinstance(provider, OpenAIProvider)
        assert provider.name == "openai"

    def test_cached_until_reset(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", "sk-test-1234567890")
        first = get_provider()
        assert get_provider() is first
        reset_provider()
        assert get_provider() is not first

    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", None)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
            get_provider()

    def test_set_provider_overrides(self):
        sentinel = object()
        set_provider(sentinel)
        assert get_provider() is sentinel
        assert manager._provider is sentinel
