"""
errors.py — error taxonomy for the identification pipeline.

Every error carries a stable ``code`` (persisted on failed jobs) and a
``retryable`` flag that the job runner uses to decide between requeue and
terminal failure. Input-shape and limit errors will not succeed on retry.
Errors raised mid-conversation also carry the partial search trace.
"""
from __future__ import annotations

from typing import Any, Optional


class IdentificationError(Exception):
    """Base class for all pipeline errors."""

    code: str = "IDENTIFICATION_ERROR"
    retryable: bool = True

    def __init__(self, message: str = "", *, meta: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message or self.code)
        self.meta: dict[str, Any] = meta or {}
        # filled in by the orchestrator when a conversation was under way
        self.serp_trace: list[dict] = []
        self.model_used: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "message": str(self),
            "code": self.code,
            "type": type(self).__name__,
        }
        if self.meta:
            data["meta"] = self.meta
        return data


# ── Job input / store ─────────────────────────────────────────────────────────

class ValidationError(IdentificationError):
    code = "VALIDATION_ERROR"
    retryable = False


class NotFoundError(IdentificationError):
    code = "JOB_NOT_FOUND"
    retryable = False


class NotPendingError(IdentificationError):
    code = "JOB_NOT_PENDING"
    retryable = False


# ── Orchestrator limits ───────────────────────────────────────────────────────

class BarcodeLimitError(IdentificationError):
    code = "BARCODE_LIMIT_EXCEEDED"
    retryable = False


class PayloadLimitError(IdentificationError):
    code = "IMAGE_PAYLOAD_LIMIT_EXCEEDED"
    retryable = False


# ── Model output / process invariants ─────────────────────────────────────────

class SchemaError(IdentificationError):
    code = "SCHEMA_VALIDATION_FAILED"


class NoToolUsageError(IdentificationError):
    code = "NO_TOOL_USAGE"


class ToolIterationLimitError(IdentificationError):
    code = "TOOL_ITERATION_LIMIT"

    def __init__(
        self,
        message: str = "",
        *,
        serp_trace: Optional[list[dict]] = None,
        model_used: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, meta=meta)
        self.serp_trace: list[dict] = serp_trace or []
        self.model_used = model_used


# ── Outbound calls ────────────────────────────────────────────────────────────

class RateLimitError(IdentificationError):
    code = "RATE_LIMITED"


class NetworkError(IdentificationError):
    code = "NETWORK_ERROR"


class MarketplaceError(IdentificationError):
    """The marketplace API answered with status=ERROR."""
    code = "MARKETPLACE_ERROR"
    retryable = False
