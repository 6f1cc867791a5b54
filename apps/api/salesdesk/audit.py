from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from salesdesk.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []


def _changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    if before is None or after is None:
        return []
    return sorted(key for key in after.keys() | before.keys() if before.get(key) != after.get(key))


def record(
    actor_user_id: str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    organization_id: str | None = None,
    event: dict[str, Any] | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "organization_id": organization_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": _changed_fields(before, after),
        "event_id": event["event_id"] if event else None,
        "event_type": event["event_type"] if event else None,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    return entry


def record_event(
    envelope: dict[str, Any],
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Audit a change under the event envelope that announces it.

    Actor, organization and correlation id come from the envelope so the audit trail
    and the published event can always be joined on ``event_id``.
    """

    return record(
        actor_user_id=envelope.get("actor_user_id"),
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before=before,
        after=after,
        correlation_id=envelope.get("correlation_id"),
        organization_id=envelope.get("organization_id"),
        event=envelope,
    )
