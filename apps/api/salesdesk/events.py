"""Pipeline event envelopes and the in-process bus that fans them out.

Every deal, client, activity and notification change is announced as a versioned
envelope. Handlers subscribe to a single event type (``crm.deal.stage_changed``) or
to a whole family (``crm.deal.*``).
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from salesdesk.context import get_correlation_id

ENVELOPE_VERSION = 1

EventHandler = Callable[[dict[str, Any]], None]

published_events: list[dict[str, Any]] = []
_subscribers: dict[str, list[EventHandler]] = defaultdict(list)


def build_envelope(
    event_type: str,
    *,
    actor_user_id: str | None,
    organization_id: str | None,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "organization_id": organization_id,
        "version": ENVELOPE_VERSION,
        "correlation_id": correlation_id or get_correlation_id(),
        "payload": payload,
    }


def subscribe(event_type: str, handler: EventHandler) -> None:
    handlers = _subscribers[event_type]
    if handler not in handlers:
        handlers.append(handler)


def _handlers_for(event_type: str) -> list[EventHandler]:
    family = event_type.rsplit(".", 1)[0] + ".*"
    return [*_subscribers.get(event_type, ()), *_subscribers.get(family, ())]


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return
    for handler in _handlers_for(event_type):
        handler(envelope)
