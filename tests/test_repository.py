"""Tests for the OTP, rate-limit and idempotency repositories."""

from datetime import timedelta

import pytest

from otp_service.database.repository import (
    IdempotencyRepository,
    OtpRepository,
    RateLimitRepository,
)
from otp_service.errors import ConflictError, NotFoundError, StaleStateError
from otp_service.models.otp import OtpState

from conftest import START

EXPIRES = START + timedelta(minutes=5)


# ── OtpRepository ────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_and_find_active(session_factory):
    async with session_factory() as session, session.begin():
        repo = OtpRepository(session)
        created = await repo.create("1", "login", "123456", EXPIRES, START)
        found = await repo.find_active("1", "login")

    assert found is not None
    assert found.id == created.id
    assert found.state is OtpState.ACTIVE
    assert found.attempts == 0
    assert found.expires_at == EXPIRES


@pytest.mark.asyncio
async def test_find_active_no_match(session_factory):
    async with session_factory() as session, session.begin():
        assert await OtpRepository(session).find_active("1", "login") is None


@pytest.mark.asyncio
async def test_second_active_record_conflicts(session_factory, fetch_records):
    async with session_factory() as session, session.begin():
        repo = OtpRepository(session)
        await repo.create("1", "login", "123456", EXPIRES, START)
        with pytest.raises(ConflictError):
            await repo.create("1", "login", "654321", EXPIRES, START)
        # The failed insert only rolled back its savepoint.
        await repo.create("1", "password-reset", "111111", EXPIRES, START)

    assert len(await fetch_records("1", "login")) == 1
    assert len(await fetch_records("1", "password-reset")) == 1


@pytest.mark.asyncio
async def test_find_active_returns_latest_record_in_any_state(session_factory):
    async with session_factory() as session, session.begin():
        repo = OtpRepository(session)
        first = await repo.create("1", "login", "123456", EXPIRES, START)
        await repo.transition(first.id, OtpState.USED)
        later = START + timedelta(minutes=1)
        second = await repo.create("1", "login", "222222", later + timedelta(minutes=5), later)
        await repo.transition(second.id, OtpState.LOCKED, attempts=3)

        found = await repo.find_active("1", "login")

    assert found.id == second.id
    assert found.state is OtpState.LOCKED
    assert found.attempts == 3


@pytest.mark.asyncio
async def test_transition_guards_expected_state(session_factory):
    async with session_factory() as session, session.begin():
        repo = OtpRepository(session)
        record = await repo.create("1", "login", "123456", EXPIRES, START)
        await repo.transition(record.id, OtpState.USED)
        with pytest.raises(StaleStateError):
            await repo.transition(record.id, OtpState.USED)


@pytest.mark.asyncio
async def test_transition_unknown_id(session_factory):
    async with session_factory() as session, session.begin():
        with pytest.raises(NotFoundError):
            await OtpRepository(session).transition(999, OtpState.EXPIRED)


# ── RateLimitRepository ──────────────────────────────────

@pytest.mark.asyncio
async def test_count_recent_only_sees_window(session_factory):
    async with session_factory() as session, session.begin():
        repo = RateLimitRepository(session)
        await repo.record("1", "10.0.0.1", START - timedelta(minutes=20))
        await repo.record("1", "10.0.0.1", START - timedelta(minutes=10))
        await repo.record("1", "10.0.0.2", START - timedelta(minutes=5))
        await repo.record("2", "10.0.0.1", START - timedelta(minutes=1))

        window_start = START - timedelta(minutes=15)
        by_identity = await repo.count_recent("1", window_start)
        by_origin = await repo.count_recent_by_origin("10.0.0.1", window_start)
        empty = await repo.count_recent("3", window_start)

    assert by_identity.count == 2
    assert by_identity.earliest == START - timedelta(minutes=10)
    assert by_origin.count == 2
    assert by_origin.earliest == START - timedelta(minutes=10)
    assert empty.count == 0
    assert empty.earliest is None


@pytest.mark.asyncio
async def test_window_start_is_inclusive(session_factory):
    async with session_factory() as session, session.begin():
        repo = RateLimitRepository(session)
        await repo.record("1", None, START)
        assert (await repo.count_recent("1", START)).count == 1


# ── IdempotencyRepository ────────────────────────────────

@pytest.mark.asyncio
async def test_store_and_get(session_factory):
    async with session_factory() as session, session.begin():
        await IdempotencyRepository(session).store(
            "key-1", 201, '{"otp_id":1}', START, replace_before=START - timedelta(minutes=10)
        )

    async with session_factory() as session:
        entry = await IdempotencyRepository(session).get("key-1")

    assert entry.response_status == 201
    assert entry.response_payload == '{"otp_id":1}'
    assert entry.created_at == START


@pytest.mark.asyncio
async def test_store_refuses_to_overwrite_fresh_entry(session_factory):
    async with session_factory() as session, session.begin():
        repo = IdempotencyRepository(session)
        await repo.store("key-1", 201, "{}", START, replace_before=START - timedelta(minutes=10))
        with pytest.raises(ConflictError):
            await repo.store(
                "key-1", 409, "{}", START + timedelta(minutes=1),
                replace_before=START - timedelta(minutes=9),
            )


@pytest.mark.asyncio
async def test_store_overwrites_stale_entry(session_factory):
    later = START + timedelta(minutes=11)
    async with session_factory() as session, session.begin():
        repo = IdempotencyRepository(session)
        await repo.store("key-1", 429, "{}", START, replace_before=START - timedelta(minutes=10))
        await repo.store(
            "key-1", 201, '{"otp_id":7}', later, replace_before=later - timedelta(minutes=10)
        )

    async with session_factory() as session:
        entry = await IdempotencyRepository(session).get("key-1")

    assert entry.response_status == 201
    assert entry.created_at == later
