"""
enrichment.py — product identification orchestrator.

Drives one model/tool conversation per job:

  AWAITING_MODEL ──tool calls──▶ AWAITING_TOOLS ──▶ AWAITING_MODEL …
        │
        └──no tool calls──▶ FINALIZING ──▶ DONE
                                  └──────▶ ERROR

The conversation has a step budget of MAX_TOOL_ITERATIONS model calls. Two
calls before the budget runs out a system message tells the model to stop
searching, and from then on tools are disabled, so the last two calls can
only produce the final bundle.

FINALIZING parses and validates the model's JSON, normalises attributes,
runs the image and price backfills and checks that at least one search
happened. Any failure there raises; the job runner decides whether to retry.
"""
from __future__ import annotations

import asyncio
import base64
import enum
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import config
from errors import (
    BarcodeLimitError, IdentificationError, NoToolUsageError, PayloadLimitError, SchemaError,
    ToolIterationLimitError, ValidationError,
)
from marketing_images import ensure_image_coverage
from pricing import ensure_price_coverage
from product_schema import normalize_bundle, product_bundle_json_schema, validate_bundle
from providers.base import ModelProvider, ModelResponse, ToolCall, parse_json_response
from search_tool import SEARCH_TOOL_DEFINITION, ToolResult

logger = logging.getLogger(__name__)

_BARCODE_SPLIT_RE = re.compile(r"[\s,;|]+")


# ── Inputs / outputs ──────────────────────────────────────────────────────────

@dataclass
class InputFile:
    buffer: bytes
    mime_type: str
    original_name: str = "upload"
    size: int = field(default=-1)

    def __post_init__(self) -> None:
        if self.size < 0:
            self.size = len(self.buffer)


@dataclass
class HostedImage:
    filename: str
    mime_type: str
    url: str
    width: Optional[int]
    height: Optional[int]
    size: int


@dataclass
class PreparedImages:
    image_parts: list[dict] = field(default_factory=list)
    hosted_images: list[HostedImage] = field(default_factory=list)


@dataclass
class IdentificationResult:
    bundle: dict
    serp_trace: list[dict]
    model_used: str


class ConversationState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    AWAITING_TOOLS = "awaiting_tools"
    FINALIZING     = "finalizing"
    DONE           = "done"
    ERROR          = "error"


# ── Input preparation ─────────────────────────────────────────────────────────

def parse_barcodes(raw: Optional[str]) -> list[str]:
    """Split a free-form barcode string on whitespace , ; and |."""
    if not raw:
        return []
    codes = [c.strip() for c in _BARCODE_SPLIT_RE.split(raw)]
    codes = [c for c in codes if c]
    if len(codes) > config.MAX_BARCODE_COUNT:
        raise BarcodeLimitError(
            f"Too many barcodes ({len(codes)} > {config.MAX_BARCODE_COUNT})",
            meta={"max": config.MAX_BARCODE_COUNT},
        )
    return codes


async def prepare_images(files: list[InputFile], storage=None) -> PreparedImages:
    """
    Build inline image parts for the model and host each image for lens-style
    searches. Hosting failures are logged and skipped.
    """
    prepared = PreparedImages()
    if not files:
        return prepared

    total = 0
    for f in files:
        total += f.size
        if total > config.MAX_IMAGE_PAYLOAD_BYTES:
            raise PayloadLimitError(
                f"Image payload exceeds {config.MAX_IMAGE_PAYLOAD_BYTES} bytes",
                meta={"max": config.MAX_IMAGE_PAYLOAD_BYTES},
            )
        b64 = base64.b64encode(f.buffer).decode()
        prepared.image_parts.append({
            "type": "input_image",
            "image_url": f"data:{f.mime_type};base64,{b64}",
        })

    if storage is None:
        return prepared

    stamp = int(time.time() * 1000)

    async def _host(idx: int, f: InputFile) -> Optional[HostedImage]:
        try:
            uploaded = await storage.upload(f.buffer, f.mime_type, "uploads", f"identify_{stamp}_{idx}")
        except Exception as exc:
            logger.warning("Failed to host image %s for lens search: %s", f.original_name, exc)
            return None
        return HostedImage(
            filename=f.original_name,
            mime_type=f.mime_type,
            url=uploaded.url,
            width=uploaded.width,
            height=uploaded.height,
            size=f.size,
        )

    hosted = await asyncio.gather(*[_host(i, f) for i, f in enumerate(files)])
    prepared.hosted_images = [h for h in hosted if h is not None]
    return prepared


# ── Prompts ───────────────────────────────────────────────────────────────────

def build_system_prompt(locale: str) -> str:
    return "\n".join([
        "You are a product identification engine for a warehouse catalogue.",
        "Rules:",
        "1. Use only the supplied images and barcodes plus results of the serpapi_web_search tool.",
        "2. Run at least one search before returning a result.",
        "3. Never invent brands, prices or images.",
        "4. If information is missing, leave the field empty and add a note to notes.unsure.",
        "5. Return output strictly in the ProductBundle schema, no free text.",
        f"6. Write all texts in {locale}; prices in {config.DEFAULT_PRICE_CURRENCY}.",
        "7. Only include product images whose source is clearly verified.",
        "8. Use search engines exactly as documented, without custom parameters.",
    ])


def build_user_prompt(barcodes: list[str], hosted_images: list[HostedImage], locale: str) -> str:
    parts = [f"Barcodes: {', '.join(barcodes)}" if barcodes else "Barcodes: none provided"]

    if hosted_images:
        listing = "\n".join(
            f"{i}. {img.url} ({img.mime_type}, {img.filename or 'upload'})"
            for i, img in enumerate(hosted_images, 1)
        )
        parts.append(f"Publicly reachable image URLs (for google_lens / google_reverse_image):\n{listing}")
    else:
        parts.append("No hosted image URLs are available.")

    parts.append("\n".join([
        "Task:",
        "1. Analyse the input images to recognise brand and model.",
        "2. Use search tool calls for every fact (name, prices, merchants, images, specifications).",
        "3. Required: run a google_shopping search (num >= 12) first and record merchant prices with URLs.",
        f"4. Required: run at least one image search via google_images or google_lens (num >= 20) "
        f"and keep only images at least {config.MIN_IMAGE_WIDTH}px wide.",
        "5. Use ebay or google as well if shopping returns no prices.",
        "6. Return attributes as a list: "
        '[{"key": "Material", "value": "100% cotton", "value_type": "string"}, ...].',
        "7. If several products are found, return each separately in products with a stable id "
        "(EAN/GTIN preferred).",
        "8. pricing.lowest_price.sources needs real merchant URLs with checked_at.",
        "9. key_features: at least 5, specific to the product.",
        "10. images: at least 3 entries when the search returns suitable sources.",
        "11. Record uncertainties in notes.unsure.",
        f"Language for texts: {locale}.",
    ]))
    return "\n\n".join(parts)


FINALIZATION_PROMPT = (
    "You have reached the maximum number of search tool calls. Use only the information "
    "already available (images, barcodes, previous search results) and return the complete "
    "ProductBundle now. Do not call any more tools."
)


def _text_message(role: str, text: str) -> dict:
    return {"role": role, "content": [{"type": "input_text", "text": text}]}


def parse_model_json(response: ModelResponse) -> Any:
    if response.refusal:
        raise SchemaError(f"Model refusal: {response.refusal}")
    text = (response.output_text or "").strip()
    if not text:
        raise SchemaError("Model response did not contain output_text")
    try:
        return parse_json_response(text, response.model or "model")
    except ValueError as exc:
        raise SchemaError(f"Model output is not valid JSON: {exc}") from exc


# ── Conversation ──────────────────────────────────────────────────────────────

ToolExecutor = Callable[[str], Awaitable[ToolResult]]
SearchFn = Callable[[str, dict, int], Awaitable[list[dict]]]


@dataclass
class Conversation:
    model: str
    messages: list[dict]
    max_calls: int
    state: ConversationState = ConversationState.AWAITING_MODEL
    model_calls: int = 0
    finalization_injected: bool = False
    serp_trace: list[dict] = field(default_factory=list)
    last_response: Optional[ModelResponse] = None

    @property
    def tools_enabled(self) -> bool:
        return not self.finalization_injected

    def transition(self, new_state: ConversationState) -> None:
        logger.debug("Conversation %s → %s (call %d/%d)",
                     self.state.value, new_state.value, self.model_calls, self.max_calls)
        self.state = new_state


class Orchestrator:
    """Runs identifications against a model provider and the search tool."""

    def __init__(
        self,
        provider: Optional[ModelProvider] = None,
        storage=None,
        execute_tool: Optional[ToolExecutor] = None,
        search: Optional[SearchFn] = None,
        probe: Optional[Callable[[str], Awaitable[bool]]] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        self._provider = provider
        self._storage = storage
        self._execute_tool = execute_tool
        self._search = search
        self._probe = probe
        self.max_iterations = max_iterations or config.MAX_TOOL_ITERATIONS

    @property
    def provider(self) -> ModelProvider:
        if self._provider is None:
            from providers.manager import get_provider
            self._provider = get_provider()
        return self._provider

    async def _run_tool(self, call: ToolCall) -> ToolResult:
        if self._execute_tool is not None:
            return await self._execute_tool(call.arguments)
        from search_tool import execute_tool_call
        return await execute_tool_call(call.arguments)

    async def identify(
        self,
        files: Optional[list[InputFile]] = None,
        barcodes: str = "",
        locale: Optional[str] = None,
        model_override: Optional[str] = None,
    ) -> IdentificationResult:
        from providers.manager import resolve_model

        files = files or []
        if not files and not (barcodes or "").strip():
            raise ValidationError("Provide at least one image or barcode")

        locale = locale or config.DEFAULT_LOCALE
        barcode_list = parse_barcodes(barcodes)
        prepared = await prepare_images(files, self._storage)
        model = resolve_model(model_override)

        convo = Conversation(
            model=model,
            max_calls=self.max_iterations,
            messages=[
                _text_message("system", build_system_prompt(locale)),
                {
                    "role": "user",
                    "content": [
                        *prepared.image_parts,
                        {"type": "input_text",
                         "text": build_user_prompt(barcode_list, prepared.hosted_images, locale)},
                    ],
                },
            ],
        )
        logger.info("Identification started: model=%s images=%d barcodes=%d",
                    model, len(files), len(barcode_list))

        try:
            return await self._drive(convo)
        except Exception as exc:
            convo.transition(ConversationState.ERROR)
            if isinstance(exc, IdentificationError) and not exc.serp_trace:
                exc.serp_trace = convo.serp_trace
                exc.model_used = exc.model_used or convo.model
            raise

    async def _drive(self, convo: Conversation) -> IdentificationResult:
        schema = product_bundle_json_schema()
        finalize_at = max(0, convo.max_calls - 2)

        while True:
            if convo.state is ConversationState.AWAITING_MODEL:
                if convo.model_calls >= convo.max_calls:
                    raise ToolIterationLimitError(
                        "Search/model workflow exceeded the maximum number of tool iterations",
                        serp_trace=convo.serp_trace,
                        model_used=convo.model,
                    )
                if not convo.finalization_injected and convo.model_calls >= finalize_at:
                    convo.messages.append(_text_message("system", FINALIZATION_PROMPT))
                    convo.finalization_injected = True

                tools = [SEARCH_TOOL_DEFINITION] if convo.tools_enabled else []
                response = await self.provider.respond(convo.model, convo.messages, tools, schema)
                convo.model_calls += 1
                convo.last_response = response
                logger.info("Model call %d/%d: %d in / %d out tokens, %dms",
                            convo.model_calls, convo.max_calls, response.input_tokens,
                            response.output_tokens, response.latency_ms)
                convo.transition(
                    ConversationState.AWAITING_TOOLS if response.wants_tools
                    else ConversationState.FINALIZING
                )

            elif convo.state is ConversationState.AWAITING_TOOLS:
                response = convo.last_response
                convo.messages.extend(response.output_items)
                results = await asyncio.gather(*[self._run_tool(c) for c in response.tool_calls])
                for call, result in zip(response.tool_calls, results):
                    convo.serp_trace.append(result.to_trace())
                    convo.messages.append({
                        "type": "function_call_output",
                        "call_id": call.call_id,
                        "output": result.to_output(),
                    })
                convo.transition(ConversationState.AWAITING_MODEL)

            elif convo.state is ConversationState.FINALIZING:
                bundle = await self._finalize(convo)
                convo.transition(ConversationState.DONE)
                logger.info("Identification done: %d product(s), %d search call(s), %d model call(s)",
                            len(bundle["products"]), len(convo.serp_trace), convo.model_calls)
                return IdentificationResult(bundle=bundle, serp_trace=convo.serp_trace,
                                            model_used=convo.model)

            else:
                raise RuntimeError(f"Conversation in unexpected state {convo.state}")

    async def _finalize(self, convo: Conversation) -> dict:
        bundle = parse_model_json(convo.last_response)
        validate_bundle(bundle)
        normalize_bundle(bundle)
        # backfill lookups append to the trace too; only model-issued searches count
        if not convo.serp_trace:
            raise NoToolUsageError("Search tool was not used; at least one search call is required")
        await ensure_image_coverage(bundle["products"], convo.serp_trace,
                                    search=self._search, probe=self._probe)
        await ensure_price_coverage(bundle["products"], convo.serp_trace, search=self._search)
        return bundle


_default: Optional[Orchestrator] = None


async def run_product_identification(
    files: Optional[list[InputFile]] = None,
    barcodes: str = "",
    locale: Optional[str] = None,
    model_override: Optional[str] = None,
) -> IdentificationResult:
    """Identify with the default provider, storage and search backend."""
    global _default
    if _default is None:
        from storage import get_storage
        _default = Orchestrator(storage=get_storage())
    return await _default.identify(files, barcodes, locale, model_override)
