"""
Safety Guard — decides whether an inbound message may reach the bot at all.

Checks, in order:
  1. own_message      never react to our own sends (reply loops)
  2. ignore_pattern   status@broadcast, broadcast lists, groups (when ignored)
  3. known_bot        senders registered as other bots
  4. duplicate        same message id seen within the dedup TTL
  5. rate_limited     sender already got `limit` auto-replies in the window

Only accepted messages are remembered for dedup; the rate limit counts
auto-replies actually sent (record_auto_reply), not inbound messages.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from config.settings import BotConfig
from utils.addressing import is_broadcast, is_group

logger = structlog.get_logger()

MIN_RATE_LIMIT = 1
MIN_WINDOW_SECONDS = 10


@dataclass
class SafetyVerdict:
    allowed: bool
    reason: Optional[str] = None


class SafetyGuard:

    def __init__(
        self,
        rate_limit: int = 5,
        window_seconds: float = 60,
        dedup_ttl_seconds: float = 300,
        known_bots: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate_limit = rate_limit if rate_limit >= MIN_RATE_LIMIT else 5
        self.window_seconds = window_seconds if window_seconds >= MIN_WINDOW_SECONDS else 60
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.known_bots: set[str] = set(known_bots)
        self._clock = clock
        self._seen: dict[str, float] = {}                          # message_id → first seen
        self._replies: dict[tuple[str, str], deque[float]] = {}    # (device, sender) → reply times
        logger.info("safety_guard_configured", rate_limit=self.rate_limit,
                    window_seconds=self.window_seconds)

    @classmethod
    def from_config(cls, config: BotConfig) -> SafetyGuard:
        return cls(
            rate_limit=config.rate_limit_per_window,
            window_seconds=config.rate_limit_window_seconds,
            dedup_ttl_seconds=config.dedup_ttl_seconds,
            known_bots=config.known_bots,
        )

    def check(
        self, device_id: str, sender_id: str, message_id: str = None,
        from_me: bool = False, ignore_groups: bool = True,
    ) -> SafetyVerdict:
        if from_me:
            return SafetyVerdict(False, "own_message")
        if is_broadcast(sender_id) or (ignore_groups and is_group(sender_id)):
            return SafetyVerdict(False, "ignore_pattern")
        if sender_id in self.known_bots:
            return SafetyVerdict(False, "known_bot")

        now = self._clock()
        self._expire(now)
        if message_id and message_id in self._seen:
            return SafetyVerdict(False, "duplicate")
        if self.is_rate_limited(device_id, sender_id, now):
            return SafetyVerdict(False, "rate_limited")

        if message_id:
            self._seen[message_id] = now
        return SafetyVerdict(True)

    def record_auto_reply(self, device_id: str, sender_id: str) -> None:
        self._replies.setdefault((device_id, sender_id), deque()).append(self._clock())

    def is_rate_limited(self, device_id: str, sender_id: str, now: float = None) -> bool:
        now = self._clock() if now is None else now
        replies = self._replies.get((device_id, sender_id))
        if not replies:
            return False
        while replies and now - replies[0] >= self.window_seconds:
            replies.popleft()
        return len(replies) >= self.rate_limit

    def rate_limit_status(self, device_id: str, sender_id: str) -> dict[str, float]:
        now = self._clock()
        limited = self.is_rate_limited(device_id, sender_id, now)
        replies = self._replies.get((device_id, sender_id)) or deque()
        reset_in = max(0.0, self.window_seconds - (now - replies[0])) if replies else 0.0
        return {
            "count": len(replies),
            "remaining": max(0, self.rate_limit - len(replies)),
            "reset_in": reset_in,
            "limited": limited,
        }

    def add_known_bot(self, sender_id: str) -> None:
        self.known_bots.add(sender_id)
        logger.info("known_bot_added", sender_id=sender_id)

    def remove_known_bot(self, sender_id: str) -> None:
        self.known_bots.discard(sender_id)

    def _expire(self, now: float) -> None:
        cutoff = now - self.dedup_ttl_seconds
        for message_id in [m for m, t in self._seen.items() if t <= cutoff]:
            del self._seen[message_id]
        for key in [k for k, v in self._replies.items() if not v or now - v[-1] >= self.window_seconds]:
            del self._replies[key]
