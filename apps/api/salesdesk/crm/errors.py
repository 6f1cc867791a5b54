from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class FieldError:
    field: str
    message: str


class CRMError(Exception):
    """Base class for errors raised by CRM services; carries a stable code and HTTP status."""

    status_code = 500
    code = "crm_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(CRMError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str = "Validation failed", *, field_errors: list[FieldError] | None = None) -> None:
        self.field_errors = list(field_errors or [])
        super().__init__(
            message,
            details=[{"field": item.field, "message": item.message} for item in self.field_errors],
        )

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationError:
        return cls(message, field_errors=[FieldError(field, message)])


class NotFoundError(CRMError):
    status_code = 404
    code = "not_found"


class AuthorizationError(CRMError):
    status_code = 403
    code = "forbidden"


class ConflictError(CRMError):
    status_code = 409
    code = "conflict"


class DependencyError(CRMError):
    """Backend failure; the message shown to callers never includes the underlying cause."""

    status_code = 500
    code = "dependency_error"

    def __init__(self, message: str = "A backing service is unavailable") -> None:
        super().__init__(message)
