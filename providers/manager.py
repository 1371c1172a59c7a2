"""
Provider Manager — resolves model names and hands out the model provider.

The OpenAI key is read from key_store on first use; reset_provider() drops the
cached instance so a rotated key takes effect without a restart.

Model aliases accepted from callers (job payload "model" field):
  mini / gpt-5-mini           → gpt-5-mini
  nano / gpt-5-nano           → gpt-5-nano
  standard / gpt-5.1          → gpt-5.1
  gpt-5.1-mini / gpt-5.1-nano → gpt-5-mini / gpt-5-nano   (legacy UI names)
  default / auto / blank      → IDENTIFY_MODEL
  any other "gpt-5…" id       → passed through
  anything else               → IDENTIFY_MODEL
"""
from __future__ import annotations

import logging
from typing import Optional

import config
from providers.base import ModelProvider

logger = logging.getLogger(__name__)

MODEL_ALIASES = {
    "mini":         "gpt-5-mini",
    "nano":         "gpt-5-nano",
    "gpt-5-mini":   "gpt-5-mini",
    "gpt-5-nano":   "gpt-5-nano",
    "gpt-5.1-mini": "gpt-5-mini",
    "gpt-5.1-nano": "gpt-5-nano",
    "gpt-5.1":      "gpt-5.1",
    "standard":     "gpt-5.1",
}

# Module-level cache, dropped by reset_provider() when the key changes
_provider: Optional[ModelProvider] = None


def resolve_model(preferred: Optional[str], default: Optional[str] = None) -> str:
    """Map a caller-supplied model name onto a concrete model id."""
    fallback = default or config.IDENTIFY_MODEL
    normalized = preferred.strip().lower() if isinstance(preferred, str) else ""
    if normalized in ("", "default", "auto"):
        return fallback
    if normalized in MODEL_ALIASES:
        return MODEL_ALIASES[normalized]
    if normalized.startswith("gpt-5"):
        return preferred.strip()
    logger.info("Unknown model '%s' — using %s", preferred, fallback)
    return fallback


def _build_provider() -> ModelProvider:
    import key_store
    from providers.openai_provider import OpenAIProvider

    openai_key = key_store.get("openai_api_key")
    if not openai_key:
        raise RuntimeError("No model provider available: OPENAI_API_KEY is not configured")
    provider = OpenAIProvider(openai_key)
    logger.info("Loaded provider: %s", provider.name)
    return provider


def get_provider() -> ModelProvider:
    global _provider
    if _provider is None:
        _provider = _build_provider()
    return _provider


def set_provider(provider: Optional[ModelProvider]) -> None:
    """Install a provider explicitly (tests, alternative backends)."""
    global _provider
    _provider = provider


def reset_provider() -> None:
    set_provider(None)
