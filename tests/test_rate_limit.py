"""Tests for rolling-window evaluation and cooldown reporting."""

from datetime import timedelta

import pytest

from otp_service.database.repository import RateLimitRepository
from otp_service.services.rate_limit import (
    IP_RATE_LIMIT_EXCEEDED,
    USER_RATE_LIMIT_EXCEEDED,
    RateLimiter,
    cooldown_seconds,
)

from conftest import START


def test_cooldown_measured_from_earliest_event():
    assert cooldown_seconds(START - timedelta(minutes=1), START) == 840


def test_cooldown_rounds_up_partial_seconds():
    assert cooldown_seconds(START - timedelta(seconds=61, milliseconds=500), START) == 839


def test_cooldown_never_negative():
    assert cooldown_seconds(START - timedelta(minutes=16), START) == 0


@pytest.mark.asyncio
async def test_under_limits_reports_remaining(session_factory):
    async with session_factory() as session, session.begin():
        limiter = RateLimiter(RateLimitRepository(session))
        await limiter.record("1", "10.0.0.1", START - timedelta(minutes=3))
        decision = await limiter.evaluate("1", "10.0.0.1", START)

    assert decision.exceeded is None
    assert decision.remaining_user_requests == 1
    assert decision.remaining_ip_requests == 6


@pytest.mark.asyncio
async def test_identity_limit(session_factory):
    async with session_factory() as session, session.begin():
        limiter = RateLimiter(RateLimitRepository(session))
        for minutes in (12, 8, 4):
            await limiter.record("1", f"10.0.0.{minutes}", START - timedelta(minutes=minutes))
        decision = await limiter.evaluate("1", "10.0.0.99", START)

    assert decision.exceeded.reason == USER_RATE_LIMIT_EXCEEDED
    assert decision.exceeded.cooldown_seconds_remaining == 180
    assert decision.exceeded.to_outcome().status == 429


@pytest.mark.asyncio
async def test_origin_limit(session_factory):
    async with session_factory() as session, session.begin():
        limiter = RateLimiter(RateLimitRepository(session))
        for i in range(8):
            await limiter.record(f"user-{i}", "10.0.0.1", START - timedelta(minutes=10 - i))
        decision = await limiter.evaluate("fresh-user", "10.0.0.1", START)

    assert decision.exceeded.reason == IP_RATE_LIMIT_EXCEEDED
    assert decision.exceeded.cooldown_seconds_remaining == 300
    assert decision.exceeded.to_outcome().payload == {
        "reason": IP_RATE_LIMIT_EXCEEDED,
        "cooldown_seconds_remaining": 300,
    }


@pytest.mark.asyncio
async def test_missing_origin_skips_origin_window(session_factory):
    async with session_factory() as session, session.begin():
        limiter = RateLimiter(RateLimitRepository(session))
        for i in range(8):
            await limiter.record(f"user-{i}", None, START - timedelta(minutes=1))
        decision = await limiter.evaluate("fresh-user", None, START)

    assert decision.exceeded is None
    assert decision.remaining_ip_requests == 7
