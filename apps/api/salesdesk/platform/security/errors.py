from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for tenant and ownership scope failures."""


class OutOfScopeError(AuthorizationError):
    """Raised when a record belongs to another organization or another owner."""

    def __init__(self, resource: str, scope_type: str) -> None:
        self.resource = resource
        self.scope_type = scope_type
        super().__init__(f"Out-of-scope {scope_type} for resource '{resource}'")
