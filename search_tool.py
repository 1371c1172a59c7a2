"""
search_tool.py — the search tool the model can call.

The orchestrator and backfills import only from here:
  from search_tool import SEARCH_TOOL_DEFINITION, execute_tool_call, search

The backend is built once on first use from the SerpAPI key in key_store.
execute_tool_call() never raises: bad arguments and backend failures are
returned in ToolResult.error so the model can read them and try again.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from search_backends.base import SearchBackend
from search_backends.serpapi_backend import ALLOWED_ENGINES

logger = logging.getLogger(__name__)

__all__ = [
    "SEARCH_TOOL_DEFINITION", "ToolResult", "build_params",
    "execute_tool_call", "get_backend", "search",
]

TOOL_NAME = "serpapi_web_search"

# Items kept per tool call in the conversation and the trace
TOOL_SUMMARY_LIMIT = 8

SEARCH_TOOL_DEFINITION = {
    "type": "function",
    "name": TOOL_NAME,
    "description": "Fetches REAL-TIME product data via SerpAPI using official engines only.",
    "strict": True,
    "parameters": {
        "type": "object",
        "properties": {
            "engine": {"type": "string", "enum": list(ALLOWED_ENGINES)},
            "query":  {"type": "string"},
            "num":    {"type": ["number", "null"], "minimum": 1, "maximum": 100},
        },
        "required": ["engine", "query", "num"],
        "additionalProperties": False,
    },
}


@dataclass
class ToolResult:
    engine: str
    query: str
    params: dict = field(default_factory=dict)
    summary: list[dict] = field(default_factory=list)
    error: Optional[str] = None

    def to_trace(self) -> dict:
        """Serp trace entry persisted on the job."""
        return {
            "engine":  self.engine,
            "query":   self.query,
            "params":  self.params,
            "summary": self.summary,
            "error":   self.error,
        }

    def to_output(self) -> str:
        """Compact JSON handed back to the model as function_call_output."""
        return json.dumps({
            "engine":  self.engine,
            "query":   self.query,
            "summary": self.summary,
            "error":   self.error,
        }, ensure_ascii=False)


_backend: Optional[SearchBackend] = None


def get_backend() -> SearchBackend:
    """Return the active backend, initialising it once on first call."""
    global _backend
    if _backend is not None:
        return _backend
    _backend = _build_backend()
    logger.info("Search backend: %s", _backend.name)
    return _backend


def _build_backend() -> SearchBackend:
    import key_store
    from search_backends.serpapi_backend import SerpApiBackend

    api_key = key_store.get("serpapi_key")
    if not api_key:
        raise RuntimeError("SERPAPI_KEY is not configured")
    return SerpApiBackend(api_key)


def reset_backend() -> None:
    """Drop the cached backend (after a key change, or between tests)."""
    global _backend
    _backend = None


def build_params(engine: str, query: str, num: Optional[Union[int, float]] = None) -> dict:
    """Engine-specific query parameters. Raises ValueError on a blank query."""
    trimmed = (query or "").strip()
    if not trimmed:
        raise ValueError("SerpAPI query is required")

    if engine == "google_lens":
        params: dict[str, Any] = {"url": trimmed, "type": "products"}
    elif engine == "google_reverse_image":
        params = {"image_url": trimmed}
    else:
        params = {"q": trimmed}

    if num:
        params["num"] = min(max(1, int(num)), 50)
    return params


async def search(engine: str, params: dict, limit: int = 5) -> list[dict]:
    """Run one search and return the summarised items. Raises on failure."""
    backend = get_backend()
    raw = await backend.call(engine, params)
    return backend.summarize(engine, raw, limit)


async def execute_tool_call(arguments: Union[str, dict, None]) -> ToolResult:
    """Run one model-issued search call; errors end up in ToolResult.error."""
    if isinstance(arguments, str):
        try:
            args = json.loads(arguments or "{}")
        except json.JSONDecodeError as exc:
            return ToolResult(engine="", query="", error=f"Invalid tool arguments: {exc}")
    else:
        args = arguments or {}

    engine = str(args.get("engine") or "")
    query = str(args.get("query") or "")

    if engine not in ALLOWED_ENGINES:
        return ToolResult(engine=engine, query=query,
                          error=f"Engine {engine} is not supported by SerpAPI tool")

    try:
        params = build_params(engine, query, args.get("num"))
    except (TypeError, ValueError) as exc:
        return ToolResult(engine=engine, query=query, error=str(exc))

    try:
        summary = await search(engine, params, TOOL_SUMMARY_LIMIT)
    except Exception as exc:
        logger.warning("Search tool %s '%s' failed: %s", engine, query, exc)
        return ToolResult(engine=engine, query=query, params=params,
                          error=str(exc) or type(exc).__name__)

    logger.info("Search tool %s '%s' → %d items", engine, query, len(summary))
    return ToolResult(engine=engine, query=query, params=params, summary=summary)
