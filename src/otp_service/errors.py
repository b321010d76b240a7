"""Exception taxonomy for the OTP core.

Business rejections (rate limited, conflict, expired, wrong code, ...) are
returned as outcomes, not raised.  Only the errors below cross component
boundaries as exceptions.
"""


class OtpServiceError(Exception):
    """Base class for every error raised by the OTP core."""


class ValidationError(OtpServiceError):
    """A required request field is missing or empty."""


class ConflictError(OtpServiceError):
    """A uniqueness constraint was violated by a concurrent writer."""


class NotFoundError(OtpServiceError):
    """The record targeted by a guarded update no longer exists."""


class StaleStateError(OtpServiceError):
    """A guarded update found the record in an unexpected state."""


class TransientError(OtpServiceError):
    """Infrastructure failure (lock timeout, lost connection); safe to retry."""


def require_fields(**fields: object) -> None:
    """Raise ``ValidationError`` naming every field that is missing or blank."""
    missing = [
        name
        for name, value in fields.items()
        if value is None or (isinstance(value, str) and not value.strip())
    ]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required.")
