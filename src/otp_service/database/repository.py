"""Repositories — data access layer for OTP records, rate events and the idempotency cache.

Every repository works on a session owned by the caller's unit of work; none
of them commits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from otp_service.errors import ConflictError, NotFoundError, StaleStateError
from otp_service.models.idempotency import IdempotencyEntry
from otp_service.models.otp import OtpRecord, OtpState
from otp_service.models.rate_limit import RateLimitEvent


class OtpRepository:
    """Encapsulates all queries and guarded mutations on OTP records."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_active(self, identity_id: str, purpose: str) -> OtpRecord | None:
        """Return and lock the most recent record for the pair, whatever its state.

        Only the newest record can be ``active``: a new one is only created
        when none is.
        """
        stmt = (
            select(OtpRecord)
            .where(OtpRecord.identity_id == identity_id, OtpRecord.purpose == purpose)
            .order_by(OtpRecord.created_at.desc(), OtpRecord.id.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        identity_id: str,
        purpose: str,
        code: str,
        expires_at: datetime,
        created_at: datetime,
    ) -> OtpRecord:
        """Insert a new ``active`` record.

        Raises ``ConflictError`` when another record for the pair is already
        active (a concurrent creator won).  The failed insert is confined to a
        savepoint so the surrounding transaction stays usable.
        """
        record = OtpRecord(
            identity_id=identity_id,
            purpose=purpose,
            code=code,
            state=OtpState.ACTIVE,
            attempts=0,
            created_at=created_at,
            expires_at=expires_at,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(record)
        except IntegrityError as exc:
            raise ConflictError(
                f"active OTP already exists for {identity_id!r}/{purpose!r}"
            ) from exc
        return record

    async def transition(
        self,
        otp_id: int,
        new_state: OtpState,
        attempts: int | None = None,
        expected: OtpState = OtpState.ACTIVE,
    ) -> None:
        """Move a record to *new_state* only if it is still in *expected*."""
        values: dict = {"state": new_state}
        if attempts is not None:
            values["attempts"] = attempts
        stmt = (
            update(OtpRecord)
            .where(OtpRecord.id == otp_id, OtpRecord.state == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 1:
            return

        current = await self._session.scalar(
            select(OtpRecord.state).where(OtpRecord.id == otp_id)
        )
        if current is None:
            raise NotFoundError(f"OTP {otp_id} does not exist")
        raise StaleStateError(
            f"OTP {otp_id} is {current.value}, expected {expected.value}"
        )


@dataclass(frozen=True)
class WindowCount:
    """Number of events inside a rolling window and the oldest of them."""

    count: int
    earliest: datetime | None = None


class RateLimitRepository:
    """Append-only event log queried as rolling windows."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def count_recent(self, identity_id: str, window_start: datetime) -> WindowCount:
        """Count and lock the identity's events created at or after *window_start*."""
        return await self._count(RateLimitEvent.identity_id == identity_id, window_start)

    async def count_recent_by_origin(
        self, origin_address: str, window_start: datetime
    ) -> WindowCount:
        """Count and lock the origin's events created at or after *window_start*."""
        return await self._count(
            RateLimitEvent.origin_address == origin_address, window_start
        )

    async def record(
        self, identity_id: str, origin_address: str | None, created_at: datetime
    ) -> RateLimitEvent:
        event = RateLimitEvent(
            identity_id=identity_id,
            origin_address=origin_address,
            created_at=created_at,
        )
        self._session.add(event)
        await self._session.flush()
        return event

    async def _count(self, criterion, window_start: datetime) -> WindowCount:
        stmt = (
            select(RateLimitEvent.created_at)
            .where(criterion, RateLimitEvent.created_at >= window_start)
            .order_by(RateLimitEvent.created_at.asc())
            .with_for_update()
        )
        timestamps = (await self._session.scalars(stmt)).all()
        if not timestamps:
            return WindowCount(count=0)
        return WindowCount(count=len(timestamps), earliest=timestamps[0])


class IdempotencyRepository:
    """Durable key → outcome cache."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, key: str) -> IdempotencyEntry | None:
        stmt = select(IdempotencyEntry).where(IdempotencyEntry.key == key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def store(
        self,
        key: str,
        status: int,
        payload: str,
        created_at: datetime,
        *,
        replace_before: datetime,
    ) -> IdempotencyEntry:
        """Save an outcome under *key*.

        An existing entry created at or before *replace_before* is stale and is
        overwritten in place.  Raises ``ConflictError`` if a fresh entry for
        the key exists or a concurrent request inserted it first.
        """
        stmt = (
            select(IdempotencyEntry)
            .where(IdempotencyEntry.key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        entry = (await self._session.execute(stmt)).scalar_one_or_none()
        if entry is not None:
            if entry.created_at > replace_before:
                raise ConflictError(f"idempotency key {key!r} already stored")
            entry.response_status = status
            entry.response_payload = payload
            entry.created_at = created_at
            await self._session.flush()
            return entry

        entry = IdempotencyEntry(
            key=key,
            response_status=status,
            response_payload=payload,
            created_at=created_at,
        )
        try:
            async with self._session.begin_nested():
                self._session.add(entry)
        except IntegrityError as exc:
            raise ConflictError(f"idempotency key {key!r} already stored") from exc
        return entry
