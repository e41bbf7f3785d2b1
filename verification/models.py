from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TokenStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Disposition(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Base(DeclarativeBase):
    pass


class KycRequest(Base):
    __tablename__ = "kyc_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    token: Mapped[str] = mapped_column(String(128), unique=True, index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=TokenStatus.PENDING.value, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    record: Mapped[Optional["VerificationRecord"]] = relationship(back_populates="kyc_request", uselist=False)


class VerificationRecord(Base):
    __tablename__ = "verification_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    # One token maps to at most one stored submission
    kyc_request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("kyc_requests.id"), unique=True, index=True, nullable=False
    )
    document_front_url: Mapped[str] = mapped_column(String(500), nullable=False)
    document_back_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    selfie_url: Mapped[str] = mapped_column(String(500), nullable=False)
    # No automated face matching; reviewers compare document and selfie by hand
    face_match_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ocr_data_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    document_type: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    verification_status: Mapped[str] = mapped_column(
        String(20), default=Disposition.PENDING.value, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    kyc_request: Mapped[KycRequest] = relationship(back_populates="record")
