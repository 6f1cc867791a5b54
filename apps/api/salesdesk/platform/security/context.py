from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class AuthContext:
    """Scope used by repositories to restrict reads and writes to the caller's records."""

    user_id: str
    organization_id: str
    role: str = "SALES"
    correlation_id: str | None = None
    is_super_admin: bool = False
