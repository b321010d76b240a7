"""Issuance coordinator — idempotency, rate limiting and single-active-OTP issuance."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_service.database.engine import unit_of_work
from otp_service.database.repository import (
    IdempotencyRepository,
    OtpRepository,
    RateLimitRepository,
)
from otp_service.errors import (
    ConflictError,
    NotFoundError,
    StaleStateError,
    TransientError,
    require_fields,
)
from otp_service.models.otp import OtpState
from otp_service.services.clock import Clock, SystemClock
from otp_service.services.outcome import Outcome
from otp_service.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

OTP_TTL = timedelta(minutes=5)
IDEMPOTENCY_FRESHNESS = timedelta(minutes=10)
ACTIVE_OTP_EXISTS = "An active OTP already exists."


def generate_code() -> str:
    """Return a 6-digit code drawn uniformly from 100000–999999."""
    return str(100000 + secrets.randbelow(900000))


class IssuanceCoordinator:
    """Processes OTP issuance requests.

    Decision order
    --------------
    1. Replay a fresh cached outcome for the idempotency key, if any.
    2. Inside one unit of work, lock the identity's and origin's rate rows and
       the pair's current OTP.
    3. Reject if either rolling window is full (429).
    4. Reject if a live active OTP exists (409); an expired one is swept.
    5. Create the OTP, log the rate event and cache the 201 outcome.

    Every outcome except 500 is cached under the idempotency key in the same
    unit of work that produced it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._code_factory = code_factory

    async def request_otp(
        self,
        identity_id: str | None,
        purpose: str | None,
        origin_address: str | None = None,
        idempotency_key: str | None = None,
    ) -> Outcome:
        """Issue an OTP for *identity_id* / *purpose*.

        Raises ``ValidationError`` when the identity, purpose or idempotency
        key is missing.  Infrastructure failures and unexpected errors are
        reported as a 500 outcome and never cached.
        """
        require_fields(
            identity_id=identity_id, purpose=purpose, idempotency_key=idempotency_key
        )
        try:
            return await self._process(identity_id, purpose, origin_address, idempotency_key)
        except Exception:
            logger.exception("OTP issuance failed for %s/%s", identity_id, purpose)
            return Outcome.internal_error()

    # ── Private helpers ──────────────────────────────────

    async def _process(
        self, identity_id: str, purpose: str, origin_address: str | None, key: str
    ) -> Outcome:
        cached = await self._replay(key)
        if cached is not None:
            logger.info("Replaying cached %s for idempotency key %s", cached.status, key)
            return cached

        try:
            async with unit_of_work(self._session_factory) as session:
                return await self._issue(session, identity_id, purpose, origin_address, key)
        except ConflictError:
            # A concurrent request with the same key committed first; our
            # writes were rolled back, so hand back its outcome.
            cached = await self._replay(key)
            if cached is None:
                raise TransientError(f"idempotency key {key!r} raced but left no entry")
            logger.info("Idempotency key %s raced; replaying committed outcome", key)
            return cached

    async def _replay(self, key: str) -> Outcome | None:
        async with unit_of_work(self._session_factory) as session:
            entry = await IdempotencyRepository(session).get(key)
        if entry is None:
            return None
        if self._clock.now() - entry.created_at >= IDEMPOTENCY_FRESHNESS:
            return None
        return Outcome.from_cache(entry.response_status, entry.response_payload)

    async def _issue(
        self,
        session: AsyncSession,
        identity_id: str,
        purpose: str,
        origin_address: str | None,
        key: str,
    ) -> Outcome:
        now = self._clock.now()
        otps = OtpRepository(session)
        limiter = RateLimiter(RateLimitRepository(session))
        cache = IdempotencyRepository(session)

        decision = await limiter.evaluate(identity_id, origin_address, now)
        current = await otps.find_active(identity_id, purpose)

        if decision.exceeded is not None:
            logger.info(
                "Issuance rejected for %s (origin %s): %s",
                identity_id,
                origin_address,
                decision.exceeded.reason,
            )
            return await self._remember(cache, key, decision.exceeded.to_outcome(), now)

        if current is not None and current.state is OtpState.ACTIVE:
            if now < current.expires_at:
                logger.info("Active OTP %s already exists for %s/%s", current.id, identity_id, purpose)
                return await self._remember(cache, key, _active_exists(), now)
            await self._sweep(otps, current.id)

        try:
            record = await otps.create(
                identity_id, purpose, self._code_factory(), now + OTP_TTL, now
            )
        except ConflictError:
            logger.info("Lost creation race for %s/%s", identity_id, purpose)
            return await self._remember(cache, key, _active_exists(), now)

        await limiter.record(identity_id, origin_address, now)
        logger.info("Issued OTP %s for %s/%s", record.id, identity_id, purpose)

        outcome = Outcome(
            status=201,
            payload={
                "otp_id": record.id,
                "ttl": int(OTP_TTL.total_seconds()),
                "remaining_user_requests": decision.remaining_user_requests,
                "remaining_ip_requests": decision.remaining_ip_requests,
            },
        )
        return await self._remember(cache, key, outcome, now)

    @staticmethod
    async def _sweep(otps: OtpRepository, otp_id: int) -> None:
        try:
            await otps.transition(otp_id, OtpState.EXPIRED)
        except (NotFoundError, StaleStateError) as exc:
            # Already out of the active state; creation decides the outcome.
            logger.info("Expiry sweep skipped for OTP %s: %s", otp_id, exc)
            return
        logger.info("Swept expired OTP %s", otp_id)

    @staticmethod
    async def _remember(
        cache: IdempotencyRepository, key: str, outcome: Outcome, now: datetime
    ) -> Outcome:
        await cache.store(
            key,
            outcome.status,
            outcome.serialize_payload(),
            now,
            replace_before=now - IDEMPOTENCY_FRESHNESS,
        )
        return outcome


def _active_exists() -> Outcome:
    return Outcome(status=409, payload={"reason": ACTIVE_OTP_EXISTS})
