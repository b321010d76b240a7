"""Rolling-window rate limiting over the rate-limit event log."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from otp_service.database.repository import RateLimitRepository, WindowCount
from otp_service.services.outcome import Outcome

RATE_WINDOW = timedelta(minutes=15)
USER_REQUEST_LIMIT = 3
ORIGIN_REQUEST_LIMIT = 8

USER_RATE_LIMIT_EXCEEDED = "user_rate_limit_exceeded"
IP_RATE_LIMIT_EXCEEDED = "ip_rate_limit_exceeded"


def window_start(now: datetime) -> datetime:
    return now - RATE_WINDOW


def cooldown_seconds(earliest: datetime, now: datetime) -> int:
    """Seconds until the oldest event in the window falls out of it, rounded up."""
    remaining = RATE_WINDOW - (now - earliest)
    return max(0, math.ceil(remaining.total_seconds()))


@dataclass(frozen=True)
class RateLimitExceeded:
    """Business outcome for a rejected request; not an exception."""

    reason: str
    cooldown_seconds_remaining: int

    def to_outcome(self) -> Outcome:
        return Outcome(
            status=429,
            payload={
                "reason": self.reason,
                "cooldown_seconds_remaining": self.cooldown_seconds_remaining,
            },
        )


@dataclass(frozen=True)
class RateLimitDecision:
    identity_window: WindowCount
    origin_window: WindowCount
    exceeded: RateLimitExceeded | None = None

    @property
    def remaining_user_requests(self) -> int:
        return (USER_REQUEST_LIMIT - 1) - self.identity_window.count

    @property
    def remaining_ip_requests(self) -> int:
        return (ORIGIN_REQUEST_LIMIT - 1) - self.origin_window.count


class RateLimiter:
    """Evaluates the per-identity and per-origin windows.

    The window rows are locked by the queries, so the decision holds until
    the caller's unit of work ends.
    """

    def __init__(self, repository: RateLimitRepository) -> None:
        self._repo = repository

    async def evaluate(
        self, identity_id: str, origin_address: str | None, now: datetime
    ) -> RateLimitDecision:
        start = window_start(now)
        identity_window = await self._repo.count_recent(identity_id, start)
        if origin_address is None:
            origin_window = WindowCount(count=0)
        else:
            origin_window = await self._repo.count_recent_by_origin(origin_address, start)

        exceeded = None
        if identity_window.count >= USER_REQUEST_LIMIT:
            exceeded = RateLimitExceeded(
                reason=USER_RATE_LIMIT_EXCEEDED,
                cooldown_seconds_remaining=cooldown_seconds(identity_window.earliest, now),
            )
        elif origin_window.count >= ORIGIN_REQUEST_LIMIT:
            exceeded = RateLimitExceeded(
                reason=IP_RATE_LIMIT_EXCEEDED,
                cooldown_seconds_remaining=cooldown_seconds(origin_window.earliest, now),
            )
        return RateLimitDecision(identity_window, origin_window, exceeded)

    async def record(
        self, identity_id: str, origin_address: str | None, now: datetime
    ) -> None:
        await self._repo.record(identity_id, origin_address, now)
