from __future__ import annotations

import logging
from typing import Any

from app import events
from app.core.config import get_settings


logger = logging.getLogger("app.revenue.notifications")


def public_url(kind: str, token: str) -> str:
    base = get_settings().public_base_url.rstrip("/")
    return f"{base}/public/{kind}/{token}"


def notify(event_type: str, entity: Any, entity_type: str, **payload: Any) -> None:
    """Publish a post-commit notification for ``entity``.

    Delivery is best effort: the state change has already committed, so a
    failure here is logged and never surfaces to the caller.
    """
    envelope = events.build_envelope(
        event_type,
        tenant_id=entity.tenant_id,
        entity_type=entity_type,
        entity_id=str(entity.id),
        reference=entity.reference,
        status=str(entity.status),
        **payload,
    )
    try:
        events.publish(envelope)
    except Exception as exc:
        logger.exception(
            "notification.publish_failed",
            extra={"event_type": event_type, "entity_id": str(entity.id), "error": str(exc)},
        )
