"""
Shared types and base class for generative model providers.

A provider takes the running conversation, an optional tool list and a strict
JSON output schema, and returns one ModelResponse. The orchestrator never
touches the vendor SDK directly.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


# ── Shared result types ───────────────────────────────────────────────────────

@dataclass
class ToolCall:
    """One function call requested by the model."""
    call_id: str
    name: str
    arguments: str              # raw JSON text, parsed by the tool


@dataclass
class ModelResponse:
    """Result of a single model call."""
    output_items: list[dict]    # appended to the conversation verbatim on tool turns
    output_text: str
    refusal: Optional[str]
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    latency_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


def parse_json_response(raw: str, provider_name: str) -> Any:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = (raw or "").strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, (raw or "")[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


# ── Abstract base ──────────────────────────────────────────────────────────────

class ModelProvider(ABC):
    """Base class all model providers must implement."""

    name: str           # e.g. "openai"

    @abstractmethod
    async def respond(
        self,
        model: str,
        messages: list[dict],
        tools: list[dict],
        output_schema: dict,
    ) -> ModelResponse:
        """
        Run one model turn over ``messages``.

        ``tools`` may be empty, in which case the model must answer directly.
        Transient vendor failures surface as RateLimitError / NetworkError.
        """
        ...

    def full_name(self, model: str) -> str:
        return f"{self.name}/{model}"
