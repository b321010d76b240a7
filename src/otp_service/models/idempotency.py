"""SQLAlchemy idempotency cache model."""

from datetime import datetime

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from otp_service.models.base import Base, UTCDateTime


class IdempotencyEntry(Base):
    """Outcome previously produced for a client-supplied idempotency key."""

    __tablename__ = "idempotency_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    response_status: Mapped[int] = mapped_column(Integer, nullable=False)
    response_payload: Mapped[str] = mapped_column(
        Text, nullable=False, doc="JSON-serialized outcome payload"
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<IdempotencyEntry key={self.key!r} status={self.response_status}>"
