from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from salesdesk.platform.security.context import AuthContext
from salesdesk.platform.security.rls import apply_rls_filter, validate_rls_read_scope


class BaseRepository:
    resource = ""
    owner_column: str | None = None

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_rls_filter(query, self.resource, ctx, owner_column=self.owner_column)

    def validate_read_scope(self, record: Any, ctx: AuthContext, *, action: str = "read") -> None:
        owner_id = getattr(record, self.owner_column) if self.owner_column else None
        validate_rls_read_scope(
            self.resource,
            ctx,
            organization_id=getattr(record, "organization_id", None),
            owner_id=owner_id,
            enforce_owner=self.owner_column is not None,
            action=action,
        )
