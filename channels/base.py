"""
Outbound channel infrastructure shared by the dispatcher and the auto-reply path.

Provides:
- ChannelError: delivery error hierarchy (transient / permanent / device-fatal)
- TokenBucketRateLimiter: async token bucket with configurable burst
- DeviceRateLimiters: one bucket per device, created lazily
- OutboundTransport: abstract "send on behalf of device D to recipient R"
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Optional

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all delivery failures."""

    retryable: bool = False

    def __init__(self, message: str, device_id: str = "", code: Optional[str] = None):
        self.device_id = device_id
        self.code = code
        super().__init__(message)


class TransientDeliveryError(ChannelError):
    """Network failure, timeout or temporary upstream error; retried with backoff."""
    retryable = True


class RateLimitedError(TransientDeliveryError):
    def __init__(self, device_id: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded for device {device_id}", device_id, code="rate_limited")


class PermanentDeliveryError(ChannelError):
    """Invalid or blocked recipient; finalized as failed on first attempt."""


class DeviceUnavailableError(ChannelError):
    """The device session is gone (logged out, revoked token); fails the whole job."""


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 1.0, burst: int = 1):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: Optional[float] = None) -> bool:
        """Take one token, waiting for a refill. timeout=None waits indefinitely."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait = (1.0 - self._tokens) / max(self.rate, 0.001)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


class DeviceRateLimiters:
    """Lazily created per-device token buckets; rate <= 0 disables limiting."""

    def __init__(self, rate: float, burst: int):
        self.rate = rate
        self.burst = burst
        self._limiters: dict[str, TokenBucketRateLimiter] = {}

    async def acquire(self, device_id: str) -> None:
        if self.rate <= 0:
            return
        limiter = self._limiters.get(device_id)
        if limiter is None:
            limiter = TokenBucketRateLimiter(rate=self.rate, burst=self.burst)
            self._limiters[device_id] = limiter
        await limiter.acquire()


# ══════════════════════════════════════════════════════════════
#  OUTBOUND TRANSPORT
# ══════════════════════════════════════════════════════════════

class OutboundTransport(abc.ABC):
    """
    Sends one message on behalf of a device.

    Implementations return the transport-assigned message id on success and
    raise a ChannelError subclass on failure. Anything else raised is treated
    as a permanent failure by the dispatcher.
    """

    @abc.abstractmethod
    async def send(self, device_id: str, recipient: str, payload: dict[str, Any]) -> str:
        ...

    async def close(self) -> None:
        pass
