from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from salesdesk import audit
from salesdesk.metrics import observe_rls_denied_read
from salesdesk.platform.security.context import AuthContext
from salesdesk.platform.security.errors import OutOfScopeError


def is_admin_bypass(ctx: AuthContext) -> bool:
    """Admins see every record of their organization, never other organizations."""

    return ctx.is_super_admin or ctx.role.upper() == "ADMIN"


def apply_rls_filter(
    query: Select[Any],
    resource: str,
    ctx: AuthContext,
    *,
    owner_column: str | None = None,
) -> Select[Any]:
    """Restrict a select to the caller's organization and, for non-admins, to owned rows."""

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "organization_id"):
            query = query.where(getattr(model, "organization_id") == ctx.organization_id)
        if owner_column and not is_admin_bypass(ctx) and hasattr(model, owner_column):
            query = query.where(getattr(model, owner_column) == ctx.user_id)

    return query


def validate_rls_read_scope(
    resource: str,
    ctx: AuthContext,
    *,
    organization_id: str | None,
    owner_id: str | None,
    enforce_owner: bool = True,
    action: str = "read",
) -> None:
    if organization_id != ctx.organization_id:
        _emit_rls_denied(resource=resource, action=action, scope_type="organization", ctx=ctx)
        raise OutOfScopeError(resource, "organization")

    if enforce_owner and not is_admin_bypass(ctx) and owner_id != ctx.user_id:
        _emit_rls_denied(resource=resource, action=action, scope_type="owner", ctx=ctx)
        raise OutOfScopeError(resource, "owner")


def _emit_rls_denied(*, resource: str, action: str, scope_type: str, ctx: AuthContext) -> None:
    observe_rls_denied_read(resource=resource, scope_type=scope_type)
    audit.record(
        actor_user_id=ctx.user_id,
        entity_type="security.rls",
        entity_id="scope",
        action="rls.denied",
        before=None,
        after={
            "resource": resource,
            "action": action,
            "scope_type": scope_type,
            "user_id": ctx.user_id,
        },
        correlation_id=ctx.correlation_id,
        organization_id=ctx.organization_id,
    )
