"""
ratelimit.py — bounded-concurrency gate + exponential backoff with jitter.

Every quota-limited outbound API (SerpAPI, the marketplace connector) goes
through the same two pieces:

  ConcurrencyGate   — at most N calls in flight; waiters are served FIFO.
  call_with_retry() — runs a coroutine inside the gate and retries
                      RateLimitError / NetworkError / aiohttp transport errors
                      with exponential backoff and full jitter, up to
                      policy.max_retries, then re-raises a domain error.

Gates are registered by name in a process-wide dict (get_gate). There is no
teardown: the process is the lifetime boundary. Tests call reset_gates().
"""
from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

import config
from errors import NetworkError, RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConcurrencyGate:
    """Counting semaphore with an explicit FIFO wait list."""

    def __init__(self, max_concurrency: int, name: str = "gate") -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.name = name
        self.max_concurrency = max_concurrency
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> None:
        if self._active < self.max_concurrency and not self._waiters:
            self._active += 1
            return

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # slot was handed over just before cancellation; pass it on
                self.release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            raise

    def release(self) -> None:
        # Hand the slot straight to the next live waiter (count stays the same)
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._active = max(0, self._active - 1)

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        self.release()


@dataclass
class BackoffPolicy:
    base_delay: float = 0.5
    max_delay: float = 8.0
    max_retries: int = 4
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Sleep before retry number ``attempt`` (0-based)."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter:
            return random.uniform(0, ceiling)
        return ceiling

    @classmethod
    def from_config(cls) -> "BackoffPolicy":
        return cls(
            base_delay=config.OUTBOUND_BASE_DELAY,
            max_delay=config.OUTBOUND_MAX_DELAY,
            max_retries=config.OUTBOUND_MAX_RETRIES,
        )


_RETRYABLE = (RateLimitError, NetworkError, aiohttp.ClientConnectionError, asyncio.TimeoutError)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    gate: Optional[ConcurrencyGate] = None,
    policy: Optional[BackoffPolicy] = None,
    label: str = "outbound",
) -> T:
    """
    Await ``fn()`` inside ``gate``, retrying transient failures per ``policy``.

    The gate slot is released while sleeping so a backing-off call never
    blocks other callers. Transport errors that survive every retry surface
    as NetworkError; RateLimitError is re-raised as-is.
    """
    policy = policy or BackoffPolicy.from_config()
    attempt = 0
    while True:
        try:
            if gate is not None:
                async with gate:
                    return await fn()
            return await fn()
        except _RETRYABLE as exc:
            if attempt >= policy.max_retries:
                logger.warning("[%s] giving up after %d retries: %s", label, attempt, exc)
                if isinstance(exc, (RateLimitError, NetworkError)):
                    raise
                raise NetworkError(f"{label}: {exc or type(exc).__name__}") from exc
            delay = policy.delay(attempt)
            logger.info("[%s] %s — retry %d/%d in %.2fs",
                        label, type(exc).__name__, attempt + 1, policy.max_retries, delay)
            attempt += 1
            await asyncio.sleep(delay)


# ── Process-wide gate registry ────────────────────────────────────────────────

_gates: dict[str, ConcurrencyGate] = {}


def get_gate(name: str, max_concurrency: int) -> ConcurrencyGate:
    """Return the shared gate for ``name``, creating it on first use."""
    gate = _gates.get(name)
    if gate is None:
        gate = ConcurrencyGate(max_concurrency, name=name)
        _gates[name] = gate
    return gate


def reset_gates() -> None:
    _gates.clear()
