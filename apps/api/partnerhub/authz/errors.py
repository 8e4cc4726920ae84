from __future__ import annotations

from partnerhub.core.errors import DomainError


class AuthorizationError(DomainError):
    """Base authorization error for role and permission-token checks."""

    code = "forbidden"
    status_code = 403


class ForbiddenError(AuthorizationError):
    """Raised when a role is unknown, inactive or lacks one of the required tokens."""

    def __init__(self, role: str, tokens: list[str]) -> None:
        self.role = role
        self.tokens = sorted(set(tokens))
        super().__init__(
            f"Role '{role}' lacks required permissions: {', '.join(self.tokens)}",
            details={"role": role, "required": self.tokens},
        )
