"""Verification coordinator — checks a submitted code against the pair's current OTP."""

from __future__ import annotations

import hmac
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otp_service.database.engine import unit_of_work
from otp_service.database.repository import OtpRepository
from otp_service.errors import NotFoundError, StaleStateError, require_fields
from otp_service.models.otp import OtpRecord, OtpState
from otp_service.services.clock import Clock, SystemClock
from otp_service.services.outcome import Outcome

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3

CODE_EXPIRED = "code_expired"
CODE_USED = "code_used"
WRONG_CODE = "wrong_code"
ATTEMPTS_EXCEEDED = "attempts_exceeded"
VERIFIED_MESSAGE = "OTP verified successfully."


class VerificationCoordinator:
    """Processes OTP verification requests.

    Checks run in a fixed order (state, then expiry, then code) against the
    locked current record, and exactly one state transition fires per call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    async def verify_otp(
        self, identity_id: str | None, purpose: str | None, submitted_code: str | None
    ) -> Outcome:
        require_fields(identity_id=identity_id, purpose=purpose, otp_code=submitted_code)
        try:
            async with unit_of_work(self._session_factory) as session:
                return await self._verify(
                    OtpRepository(session), identity_id, purpose, submitted_code
                )
        except Exception:
            logger.exception("OTP verification failed for %s/%s", identity_id, purpose)
            return Outcome.internal_error()

    async def _verify(
        self, otps: OtpRepository, identity_id: str, purpose: str, submitted_code: str
    ) -> Outcome:
        now = self._clock.now()
        record = await otps.find_active(identity_id, purpose)

        if record is None:
            return _gone(CODE_EXPIRED)

        if record.state is not OtpState.ACTIVE:
            logger.info("OTP %s is %s; rejecting", record.id, record.state.value)
            return _gone(CODE_USED)

        if now >= record.expires_at:
            logger.info("OTP %s expired", record.id)
            return await self._transition(otps, record, OtpState.EXPIRED, _gone(CODE_EXPIRED))

        if not _codes_match(record.code, submitted_code):
            attempts = record.attempts + 1
            if attempts >= MAX_ATTEMPTS:
                logger.info("OTP %s locked after %s wrong attempts", record.id, attempts)
                outcome = Outcome(status=401, payload={"reason": ATTEMPTS_EXCEEDED})
                return await self._transition(otps, record, OtpState.LOCKED, outcome, attempts)
            outcome = Outcome(
                status=401,
                payload={"reason": WRONG_CODE, "attempts_remaining": MAX_ATTEMPTS - attempts},
            )
            return await self._transition(otps, record, OtpState.ACTIVE, outcome, attempts)

        outcome = Outcome(status=200, payload={"message": VERIFIED_MESSAGE})
        result = await self._transition(otps, record, OtpState.USED, outcome)
        if result.status == 200:
            logger.info("OTP %s verified for %s/%s", record.id, identity_id, purpose)
        return result

    @staticmethod
    async def _transition(
        otps: OtpRepository,
        record: OtpRecord,
        new_state: OtpState,
        outcome: Outcome,
        attempts: int | None = None,
    ) -> Outcome:
        """Apply a guarded transition, mapping guard failures to rejections."""
        try:
            await otps.transition(record.id, new_state, attempts=attempts)
        except NotFoundError:
            return _gone(CODE_EXPIRED)
        except StaleStateError:
            logger.info("OTP %s changed concurrently; treating as used", record.id)
            return _gone(CODE_USED)
        return outcome


def _codes_match(expected: str, submitted: str) -> bool:
    return hmac.compare_digest(expected.encode(), submitted.encode())


def _gone(reason: str) -> Outcome:
    return Outcome(status=410, payload={"reason": reason})
