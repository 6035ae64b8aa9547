from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.events import event_bus

NOTIFICATION_EVENT_TYPES = (
    "quote.sent",
    "quote.accepted",
    "quote.rejected",
    "quote.expired",
    "order.created",
    "order.cancelled",
    "agreement.sent_for_signature",
    "agreement.activated",
    "agreement.terminated",
    "agreement.signature_reminder",
)

published_events: list[dict[str, Any]] = []


def build_envelope(event_type: str, *, tenant_id: str, entity_type: str, entity_id: str, **payload: Any) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "tenant_id": tenant_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    """Hand a committed domain event to the in-process bus (best effort)."""
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
