"""SQLAlchemy rate-limit event log model."""

from datetime import datetime

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from otp_service.models.base import Base, UTCDateTime


class RateLimitEvent(Base):
    """One accepted issuance request.  Append-only; rows are never updated."""

    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    origin_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_events_identity", "identity_id", "created_at"),
        Index("ix_rate_limit_events_origin", "origin_address", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitEvent id={self.id} identity={self.identity_id!r} "
            f"origin={self.origin_address!r}>"
        )
