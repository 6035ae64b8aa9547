from __future__ import annotations

import logging
from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog


logger = logging.getLogger("app.audit")


def record(
    session: Session,
    *,
    tenant_id: str,
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction; it commits or rolls back with it."""
    entry = AuditLog(
        tenant_id=tenant_id,
        actor_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        event_metadata=to_jsonable_python({"before": before, "after": after}),
        correlation_id=correlation_id or get_correlation_id(),
    )
    session.add(entry)
    return entry


def record_best_effort(session: Session, **fields: Any) -> bool:
    """Write an audit row in its own commit; failures are logged, never raised."""
    try:
        record(session, **fields)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning(
            "audit.write_failed",
            extra={
                "entity_type": fields.get("entity_type"),
                "entity_id": fields.get("entity_id"),
                "action": fields.get("action"),
                "error": str(exc),
            },
        )
        return False
    return True
