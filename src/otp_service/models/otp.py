"""SQLAlchemy OTP record model."""

import enum
from datetime import datetime

from sqlalchemy import Enum, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from otp_service.models.base import Base, UTCDateTime


class OtpState(str, enum.Enum):
    """Lifecycle states of an OTP.  Everything but ``ACTIVE`` is terminal."""

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"
    LOCKED = "locked"


class OtpRecord(Base):
    """One issued passcode for an (identity, purpose) pair.

    Records are never deleted; once they leave ``active`` they remain as an
    audit trail.  At most one record per pair may be ``active`` at a time.
    """

    __tablename__ = "otp_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    purpose: Mapped[str] = mapped_column(String(64), nullable=False)
    code: Mapped[str] = mapped_column(String(6), nullable=False)
    state: Mapped[OtpState] = mapped_column(
        Enum(
            OtpState,
            name="otp_state",
            native_enum=False,
            length=16,
            values_callable=lambda states: [s.value for s in states],
        ),
        nullable=False,
        default=OtpState.ACTIVE,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_otp_records_identity_purpose", "identity_id", "purpose", "created_at"),
        Index(
            "uq_otp_records_one_active",
            "identity_id",
            "purpose",
            unique=True,
            sqlite_where=text("state = 'active'"),
            postgresql_where=text("state = 'active'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OtpRecord id={self.id} identity={self.identity_id!r} "
            f"purpose={self.purpose!r} state={self.state.value} attempts={self.attempts}>"
        )
