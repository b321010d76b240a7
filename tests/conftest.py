"""Shared fixtures: a file-backed SQLite database per test and a controllable clock."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from otp_service.database.engine import build_engine, build_session_factory, init_db
from otp_service.models.otp import OtpRecord
from otp_service.models.rate_limit import RateLimitEvent

START = datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> None:
        self._now += timedelta(**delta)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh database file with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'otp.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def fetch_records(session_factory):
    """Return every OTP record for a pair, oldest first, read in a new session."""

    async def _fetch(identity_id: str, purpose: str) -> list[OtpRecord]:
        async with session_factory() as session:
            stmt = (
                select(OtpRecord)
                .where(OtpRecord.identity_id == identity_id, OtpRecord.purpose == purpose)
                .order_by(OtpRecord.id)
            )
            return list((await session.scalars(stmt)).all())

    return _fetch


@pytest.fixture
def count_rate_events(session_factory):
    async def _count() -> int:
        async with session_factory() as session:
            return await session.scalar(select(func.count(RateLimitEvent.id)))

    return _count
