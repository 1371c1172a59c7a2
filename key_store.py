"""
key_store.py — single source of truth for all API keys.

Lookup order for every key:
  1. Cached value (kept for SECRET_CACHE_TTL seconds)
  2. config module attribute (loaded from .env at startup)
  3. Environment variable (uppercase key name) — picks up keys exported
     after the process started

Key names (env vars are the uppercase equivalent):
  openai_api_key          →  OPENAI_API_KEY
  serpapi_key             →  SERPAPI_KEY
  baselinker_token        →  BASELINKER_TOKEN
  baselinker_inventory_id →  BASELINKER_INVENTORY_ID
"""
from __future__ import annotations

import logging
import os
from typing import Optional

import config
from cache import TTLCache

logger = logging.getLogger(__name__)

class KeyStore:
    """Resolves secrets by name; the cache is injected so tests can reset it."""

    def __init__(self, cache: Optional[TTLCache] = None) -> None:
        self._cache = cache if cache is not None else TTLCache(ttl=config.SECRET_CACHE_TTL)

    def get(self, key_name: str) -> Optional[str]:
        """Return the value for key_name, or None if not set anywhere."""
        cached = self._cache.get(key_name)
        if cached:
            return cached

        env_name = key_name.upper()
        value = getattr(config, env_name, None) or os.getenv(env_name) or None
        if value:
            self._cache.set(key_name, value)
        return value

    def require(self, key_name: str) -> str:
        value = self.get(key_name)
        if not value:
            raise RuntimeError(f"{key_name.upper()} is not configured")
        return value

    def clear(self) -> None:
        self._cache.clear()


_default = KeyStore()


def get(key_name: str) -> Optional[str]:
    return _default.get(key_name)


def require(key_name: str) -> str:
    return _default.require(key_name)


def clear() -> None:
    """Forget cached values (after a key rotation, or between tests)."""
    _default.clear()
