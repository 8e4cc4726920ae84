from __future__ import annotations

from datetime import datetime
from typing import Final
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from partnerhub.referrals.models import (
    BusinessSegment,
    ClientStage,
    ClientStatus,
    ClientTemperature,
    EmployeeBucket,
    ProspectStatus,
)
from partnerhub.referrals.validation import normalize_cnpj, normalize_email, normalize_phone


class _ProspectFields(BaseModel):
    @field_validator("email", check_fields=False)
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        return normalize_email(value) if value is not None else None

    @field_validator("phone", check_fields=False)
    @classmethod
    def _normalize_phone(cls, value: str | None) -> str | None:
        return normalize_phone(value) if value is not None else None

    @field_validator("tax_id", check_fields=False)
    @classmethod
    def _normalize_tax_id(cls, value: str | None) -> str | None:
        return normalize_cnpj(value) if value is not None else None

    @field_validator("company_name", "contact_name", check_fields=False)
    @classmethod
    def _strip_names(cls, value: str | None) -> str | None:
        return value.strip() if value is not None else None


class ProspectCreate(_ProspectFields):
    company_name: str = Field(min_length=1, max_length=255)
    contact_name: str | None = Field(default=None, max_length=255)
    email: EmailStr
    phone: str = Field(min_length=1, max_length=32)
    tax_id: str = Field(min_length=14, max_length=18)
    employee_bucket: EmployeeBucket | None = None
    segment: BusinessSegment
    partner_id: str | None = Field(default=None, max_length=255)


class ProspectUpdate(_ProspectFields):
    """Fields an operator may correct on any prospect, terminal ones included.

    Status and decision fields are deliberately absent; unknown keys are
    rejected rather than ignored.
    """

    model_config = ConfigDict(extra="forbid")

    company_name: str | None = Field(default=None, min_length=1, max_length=255)
    contact_name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, min_length=1, max_length=32)
    tax_id: str | None = Field(default=None, min_length=14, max_length=18)
    employee_bucket: EmployeeBucket | None = None
    segment: BusinessSegment | None = None
    validation_notes: str | None = None


PROSPECT_MUTABLE_FIELDS: Final[frozenset[str]] = frozenset(ProspectUpdate.model_fields)


class ProspectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    contact_name: str | None
    email: str
    phone: str
    tax_id: str
    employee_bucket: EmployeeBucket | None
    segment: BusinessSegment
    partner_id: str
    status: ProspectStatus
    validation_notes: str | None
    is_approved: bool | None
    validated_by: str | None
    validated_at: datetime | None
    decided_by: str | None
    decided_at: datetime | None
    created_at: datetime
    updated_at: datetime
    row_version: int


class ValidateProspectRequest(BaseModel):
    notes: str | None = None


class DecideProspectRequest(BaseModel):
    is_approved: bool
    notes: str | None = None


class DecisionRead(BaseModel):
    prospect: ProspectRead
    client_id: UUID | None = None
    replayed: bool = False


class ClientCreate(BaseModel):
    """Direct client creation; the prospect back-reference is never accepted here."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=255)
    contact_name: str | None = Field(default=None, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=32)
    tax_id: str | None = Field(default=None, min_length=14, max_length=18)
    status: ClientStatus = ClientStatus.ACTIVE
    stage: ClientStage = ClientStage.PROSPECTING
    temperature: ClientTemperature = ClientTemperature.WARM
    total_lives: int = Field(default=1, ge=0)
    partner_id: str | None = Field(default=None, max_length=255)
    notes: str | None = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        return normalize_email(value) if value is not None else None

    @field_validator("phone")
    @classmethod
    def _normalize_phone(cls, value: str | None) -> str | None:
        return normalize_phone(value) if value else None

    @field_validator("tax_id")
    @classmethod
    def _normalize_tax_id(cls, value: str | None) -> str | None:
        return normalize_cnpj(value) if value is not None else None


class ClientRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    contact_name: str | None
    email: str | None
    phone: str | None
    tax_id: str | None
    status: ClientStatus
    stage: ClientStage
    temperature: ClientTemperature
    total_lives: int
    partner_id: str | None
    notes: str | None
    prospect_id: UUID | None
    created_at: datetime
    updated_at: datetime
