from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for errors raised by domain services and mapped to the error envelope."""

    code = "domain_error"
    status_code = 400

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)
