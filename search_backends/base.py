"""
Abstract base for search-aggregation backends.
Every backend normalises its engine-specific results into the same
SearchItem shape — the orchestrator and backfills don't care which backend
(or which engine) produced them.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Optional

import config


@dataclass
class ImageMeta:
    url: str
    width: Optional[int]
    height: Optional[int]

    @property
    def is_low_res(self) -> bool:
        """True when a known dimension is below MIN_IMAGE_WIDTH / MIN_IMAGE_HEIGHT."""
        if self.width and self.width < config.MIN_IMAGE_WIDTH:
            return True
        if self.height and self.height < config.MIN_IMAGE_HEIGHT:
            return True
        return False


@dataclass
class SearchItem:
    title: str
    price: Any                  # raw price text or number, parsed later by pricing.py
    source: str
    url: Optional[str]
    thumbnail: Optional[str]
    snippet: Optional[str]
    image_meta: Optional[ImageMeta] = None

    def to_dict(self) -> dict:
        """Plain dict for the serp trace (persisted as JSON on the job)."""
        return asdict(self)


class SearchBackend(ABC):
    """All backends must implement this interface."""

    @abstractmethod
    async def call(self, engine: str, params: dict) -> dict:
        """
        Run one search against ``engine`` and return the raw JSON body.
        Raises on HTTP / API errors.
        """
        ...

    @abstractmethod
    def summarize(self, engine: str, data: dict, limit: int = 5) -> list[dict]:
        """Reduce a raw response to at most ``limit`` SearchItem dicts, best first."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name for logs."""
        ...
