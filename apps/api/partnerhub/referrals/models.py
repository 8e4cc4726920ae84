from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from partnerhub.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProspectStatus(StrEnum):
    PENDING = "pending"
    VALIDATED = "validated"
    IN_ANALYSIS = "in-analysis"
    APPROVED = "approved"
    REJECTED = "rejected"


class BusinessSegment(StrEnum):
    TECHNOLOGY = "technology"
    COMMERCE = "commerce"
    INDUSTRY = "industry"
    SERVICES = "services"
    HEALTH = "health"
    EDUCATION = "education"
    AGRIBUSINESS = "agribusiness"
    CONSTRUCTION = "construction"
    TRANSPORT = "transport"
    OTHER = "other"


class EmployeeBucket(StrEnum):
    UP_TO_10 = "1-10"
    UP_TO_50 = "11-50"
    UP_TO_200 = "51-200"
    UP_TO_500 = "201-500"
    UP_TO_1000 = "501-1000"
    OVER_1000 = "1000+"


class ClientStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class ClientStage(StrEnum):
    PROSPECTING = "prospecting"
    NEGOTIATION = "negotiation"
    CLOSING = "closing"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ClientTemperature(StrEnum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


class Prospect(Base):
    __tablename__ = "referral_prospect"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(14), nullable=False)
    employee_bucket: Mapped[str | None] = mapped_column(String(16), nullable=True)
    segment: Mapped[str] = mapped_column(String(32), nullable=False)
    partner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ProspectStatus.PENDING.value)
    validation_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_approved: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    validated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        Index(
            "uq_referral_prospect_active_email_tax_id",
            "email",
            "tax_id",
            unique=True,
            sqlite_where=text("status != 'rejected'"),
            postgresql_where=text("status != 'rejected'"),
        ),
        Index("ix_referral_prospect_status", "status"),
    )


class Client(Base):
    __tablename__ = "referral_client"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tax_id: Mapped[str | None] = mapped_column(String(14), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ClientStatus.ACTIVE.value)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=ClientStage.PROSPECTING.value)
    temperature: Mapped[str] = mapped_column(String(16), nullable=False, default=ClientTemperature.WARM.value)
    total_lives: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    partner_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    prospect_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("referral_prospect.id", ondelete="RESTRICT"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("email", name="uq_referral_client_email"),
        UniqueConstraint("tax_id", name="uq_referral_client_tax_id"),
        UniqueConstraint("prospect_id", name="uq_referral_client_prospect_id"),
    )
