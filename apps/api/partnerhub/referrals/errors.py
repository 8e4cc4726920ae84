from __future__ import annotations

import uuid
from typing import Any

from partnerhub.authz.errors import ForbiddenError
from partnerhub.core.errors import DomainError


class ReferralError(DomainError):
    """Base class for prospect lifecycle and client provisioning failures."""


class NotFoundError(ReferralError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: uuid.UUID | str) -> None:
        self.entity = entity
        self.entity_id = str(entity_id)
        super().__init__(f"{entity} not found", details={"entity": entity, "id": self.entity_id})


class InvalidTransitionError(ReferralError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, transition: str, current_status: str, *, reason: str | None = None) -> None:
        self.transition = transition
        self.current_status = current_status
        message = reason or f"cannot {transition} a prospect in status '{current_status}'"
        super().__init__(message, details={"transition": transition, "status": current_status})


class ConflictError(ReferralError):
    """A uniqueness rule rejected the write; ``fields`` names the colliding columns when known."""

    code = "conflict"
    status_code = 409

    def __init__(self, message: str, *, fields: list[str] | None = None, details: Any = None) -> None:
        self.fields = fields or []
        super().__init__(message, details=details if details is not None else {"fields": self.fields})


class ProvisioningFailureError(ReferralError):
    code = "provisioning_failed"
    status_code = 500


class StoreUnavailableError(ReferralError):
    code = "store_unavailable"
    status_code = 503


class TransitionFailedError(ReferralError):
    """The database refused a status write for a reason other than a conflict or an outage."""

    code = "transition_failed"
    status_code = 500


__all__ = [
    "ConflictError",
    "ForbiddenError",
    "InvalidTransitionError",
    "NotFoundError",
    "ProvisioningFailureError",
    "ReferralError",
    "StoreUnavailableError",
    "TransitionFailedError",
]
