from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from partnerhub.authz.permissions import dedupe_tokens


class RoleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = None
    permissions: list[str] = Field(default_factory=list)

    @field_validator("permissions")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return dedupe_tokens(value)


class RoleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    permissions: list[str] | None = None
    is_active: bool | None = None

    @field_validator("permissions")
    @classmethod
    def _dedupe(cls, value: list[str] | None) -> list[str] | None:
        return dedupe_tokens(value) if value is not None else None


class RoleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    key: str
    description: str | None
    permissions: list[str]
    is_system: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PermissionRead(BaseModel):
    token: str
    label: str
    group: str


class AssignUserRoleRequest(BaseModel):
    role_id: UUID


class UserRoleRead(BaseModel):
    user_id: str
    role_id: UUID
    role_name: str
    created_at: datetime
