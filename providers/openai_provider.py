"""
OpenAI provider — Responses API with function tools and strict JSON output.

Every call requests:
  • the given tools (or none on the finalisation turn)
  • text.format = json_schema (strict) so the final answer is a ProductBundle
  • reasoning.effort = low

Vendor errors are mapped onto the pipeline's retryable errors so the job
dispatcher can requeue the job.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from errors import NetworkError, RateLimitError
from providers.base import ModelProvider, ModelResponse, ToolCall

logger = logging.getLogger(__name__)


def _item_to_dict(item: Any) -> dict:
    if isinstance(item, dict):
        return item
    return item.model_dump(exclude_none=True)


def _find_refusal(items: list[dict]) -> Optional[str]:
    for item in items:
        if item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "refusal":
                return part.get("refusal") or "refused"
    return None


class OpenAIProvider(ModelProvider):

    def __init__(self, api_key: str, client: Optional[AsyncOpenAI] = None):
        self.name = "openai"
        self._client = client or AsyncOpenAI(api_key=api_key)

    async def respond(
        self,
        model: str,
        messages: list[dict],
        tools: list[dict],
        output_schema: dict,
    ) -> ModelResponse:
        t0 = time.monotonic()
        try:
            response = await self._client.responses.create(
                model=model,
                input=messages,
                tools=tools,
                reasoning={"effort": "low"},
                text={
                    "verbosity": "medium",
                    "format": {
                        "type": "json_schema",
                        "name": "ProductBundle",
                        "description": "Complete product data sheet",
                        "schema": output_schema,
                        "strict": True,
                    },
                },
                metadata={"domain": "product-identification"},
            )
        except openai.RateLimitError as exc:
            raise RateLimitError(f"OpenAI rate limit: {exc}") from exc
        except (openai.APIConnectionError, openai.APITimeoutError, openai.InternalServerError) as exc:
            raise NetworkError(f"OpenAI request failed: {exc}") from exc

        latency_ms = int((time.monotonic() - t0) * 1000)
        items = [_item_to_dict(i) for i in (response.output or [])]
        tool_calls = [
            ToolCall(
                call_id=i.get("call_id", ""),
                name=i.get("name", ""),
                arguments=i.get("arguments") or "{}",
            )
            for i in items
            if i.get("type") == "function_call"
        ]
        usage = getattr(response, "usage", None)

        logger.debug(
            "[%s] %d output items, %d tool calls, %dms",
            self.full_name(model), len(items), len(tool_calls), latency_ms,
        )
        return ModelResponse(
            output_items=items,
            output_text=getattr(response, "output_text", "") or "",
            refusal=_find_refusal(items),
            tool_calls=tool_calls,
            model=model,
            latency_ms=latency_ms,
            input_tokens=getattr(usage, "input_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "output_tokens", 0) if usage else 0,
        )
