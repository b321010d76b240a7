"""OTP HTTP router — binds the issuance and verification coordinators to FastAPI.

Endpoints
---------
POST /otp/request   → issue an OTP (requires ``Idempotency-Key`` header)
POST /otp/verify    → verify a submitted code
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from otp_service.database.engine import async_session_factory
from otp_service.services.clock import SystemClock
from otp_service.services.issuance import IssuanceCoordinator
from otp_service.services.outcome import Outcome
from otp_service.services.verification import VerificationCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/otp", tags=["otp"])

# ── Shared instances (created once, reused across requests) ──
_clock = SystemClock()
_issuance = IssuanceCoordinator(async_session_factory, _clock)
_verification = VerificationCoordinator(async_session_factory, _clock)


def get_issuance_coordinator() -> IssuanceCoordinator:
    return _issuance


def get_verification_coordinator() -> VerificationCoordinator:
    return _verification


# ── Request models ───────────────────────────────────────
# Fields are optional so a missing one yields a 400 with a reason rather
# than a schema error.

class OTPRequestBody(BaseModel):
    user_id: int | str | None = None
    purpose: str | None = None


class OTPVerifyBody(BaseModel):
    user_id: int | str | None = None
    purpose: str | None = None
    otp_code: str | None = None


def _identity(user_id: int | str | None) -> str | None:
    return None if user_id is None else str(user_id)


def _respond(outcome: Outcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status, content=outcome.payload)


# ── Endpoints ────────────────────────────────────────────

@router.post("/request")
async def request_otp(
    body: OTPRequestBody,
    request: Request,
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    coordinator: IssuanceCoordinator = Depends(get_issuance_coordinator),
) -> JSONResponse:
    """Issue a new OTP after idempotency and rate-limit checks."""
    origin = request.client.host if request.client else None
    outcome = await coordinator.request_otp(
        identity_id=_identity(body.user_id),
        purpose=body.purpose,
        origin_address=origin,
        idempotency_key=idempotency_key,
    )
    return _respond(outcome)


@router.post("/verify")
async def verify_otp(
    body: OTPVerifyBody,
    coordinator: VerificationCoordinator = Depends(get_verification_coordinator),
) -> JSONResponse:
    """Verify a code, tracking attempts and expiry."""
    outcome = await coordinator.verify_otp(
        identity_id=_identity(body.user_id),
        purpose=body.purpose,
        submitted_code=body.otp_code,
    )
    return _respond(outcome)
