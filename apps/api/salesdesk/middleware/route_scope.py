from __future__ import annotations

import uuid
from dataclasses import dataclass


_ENTITY_NAMES = {
    "deals": "deal",
    "clients": "client",
    "notifications": "notification",
    "pricing": "pricing",
}
_COLLECTION_ACTIONS = {"GET": "list", "POST": "create"}
_RECORD_ACTIONS = {"GET": "get", "PUT": "update", "PATCH": "update", "DELETE": "delete"}
_SUBRESOURCE_ACTIONS = {
    ("PATCH", "stage"): "change_stage",
    ("GET", "activities"): "list_activities",
    ("POST", "activities"): "create_activity",
    ("PATCH", "read"): "mark_read",
}


@dataclass(frozen=True)
class RouteScope:
    group: str
    operation: str | None = None
    deal_id: str | None = None


def _as_record_id(value: str) -> str | None:
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def resolve_route_scope(method: str, path: str) -> RouteScope:
    """Describe which pipeline operation a request targets, e.g. ``deal.change_stage``."""

    parts = [part for part in path.split("/") if part]
    if len(parts) < 2 or parts[0] != "api":
        return RouteScope(group="api")

    group = parts[1]
    entity = _ENTITY_NAMES.get(group)
    if entity is None:
        return RouteScope(group=group)

    method = method.upper()
    rest = parts[2:]
    if not rest:
        action = _COLLECTION_ACTIONS.get(method)
        return RouteScope(group=group, operation=f"{entity}.{action}" if action else None)

    record_id = _as_record_id(rest[0])
    if record_id is None:
        return RouteScope(group=group, operation=f"{entity}.{rest[0]}")

    deal_id = record_id if group == "deals" else None
    if len(rest) == 1:
        action = _RECORD_ACTIONS.get(method)
    else:
        action = _SUBRESOURCE_ACTIONS.get((method, rest[1]))
    return RouteScope(group=group, operation=f"{entity}.{action}" if action else None, deal_id=deal_id)
