from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.metrics import observe_conflict
from app.platform.errors import ConflictError, NotFoundError
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.repository")


class BaseRepository:
    """Tenant-scoped access to one soft-deletable, optimistically versioned model.

    Rows of another tenant, and soft-deleted rows, are reported as missing so
    callers cannot tell that they exist.
    """

    model: Any = None
    resource = ""
    reference_prefix = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext, *, include_deleted: bool = False) -> Select[Any]:
        query = query.where(self.model.tenant_id == ctx.require_tenant())
        if not include_deleted:
            query = query.where(self.model.deleted_at.is_(None))
        return query

    def get(self, session: Session, ctx: AuthContext, entity_id: uuid.UUID, *, include_deleted: bool = False) -> Any:
        stmt = select(self.model).where(self.model.id == entity_id)
        entity = session.scalar(self.apply_scope_query(stmt, ctx, include_deleted=include_deleted))
        if entity is None:
            raise NotFoundError(f"{self.resource} not found")
        return entity

    def next_reference(self, session: Session, tenant_id: str, *, today: date | None = None) -> str:
        session.flush()
        prefix = f"{self.reference_prefix}-{(today or date.today()).year}-"
        counter = session.scalar(
            select(func.count())
            .select_from(self.model)
            .where(self.model.tenant_id == tenant_id, self.model.reference.like(f"{prefix}%"))
        ) or 0
        return f"{prefix}{counter + 1:05d}"

    def list_page(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        filters: Sequence[Any] = (),
        sort_by: str = "created_at",
        direction: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Any], int]:
        base = self.apply_scope_query(select(self.model), ctx).where(*filters)
        total = session.scalar(select(func.count()).select_from(base.subquery())) or 0

        column = getattr(self.model, sort_by)
        ordering = column.asc() if direction == "asc" else column.desc()
        rows = session.scalars(base.order_by(ordering, self.model.id).offset((page - 1) * limit).limit(limit)).all()
        return list(rows), total

    def scoped(self, session: Session, ctx: AuthContext, *filters: Any, order_by: Sequence[Any] = ()) -> list[Any]:
        query = self.apply_scope_query(select(self.model), ctx).where(*filters)
        return list(session.scalars(query.order_by(*order_by, self.model.id)).all())

    def count_by(self, session: Session, ctx: AuthContext, column_name: str) -> dict[str, int]:
        """Count live rows of the caller's tenant grouped by ``column_name``."""
        column = getattr(self.model, column_name)
        query = self.apply_scope_query(select(column, func.count()).select_from(self.model), ctx).group_by(column)
        return {str(value): count for value, count in session.execute(query).all()}

    def try_update(
        self,
        session: Session,
        entity: Any,
        *,
        expected_status: str | Iterable[str],
        values: dict[str, Any],
        expected_row_version: int | None = None,
        status_column: str = "status",
        criteria: Sequence[Any] = (),
    ) -> bool:
        """Write ``values`` only if the row still has the expected status (and row_version).

        Returns False when no row matched, leaving the transaction open.
        """
        session.flush()
        expected = [expected_status] if isinstance(expected_status, str) else list(expected_status)
        stmt = (
            update(self.model)
            .where(
                self.model.id == entity.id,
                self.model.tenant_id == entity.tenant_id,
                self.model.deleted_at.is_(None),
                getattr(self.model, status_column).in_(expected),
                *criteria,
            )
            .values(
                **values,
                row_version=self.model.row_version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if expected_row_version is not None:
            stmt = stmt.where(self.model.row_version == expected_row_version)

        result = session.execute(stmt)
        if result.rowcount == 0:
            return False
        session.refresh(entity)
        return True

    def conditional_update(
        self,
        session: Session,
        entity: Any,
        *,
        expected_status: str | Iterable[str],
        values: dict[str, Any],
        expected_row_version: int | None = None,
        status_column: str = "status",
        criteria: Sequence[Any] = (),
        operation: str = "update",
    ) -> None:
        applied = self.try_update(
            session,
            entity,
            expected_status=expected_status,
            values=values,
            expected_row_version=expected_row_version,
            status_column=status_column,
            criteria=criteria,
        )
        if applied:
            return

        entity_id = str(entity.id)
        session.rollback()
        observe_conflict(self.resource, operation)
        logger.info(
            "conditional_update.conflict",
            extra={"entity_type": self.resource, "entity_id": entity_id, "action": operation},
        )
        raise ConflictError(
            f"{self.resource} was modified concurrently",
            code="concurrent_modification",
            details={"entity_id": entity_id, "operation": operation},
        )

    def flush(self, session: Session, *, operation: str = "create") -> None:
        """Flush pending rows, reporting unique-constraint violations as ConflictError."""
        try:
            session.flush()
        except IntegrityError as exc:
            raise self.integrity_conflict(session, exc, operation) from exc

    def commit(self, session: Session) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            raise self.integrity_conflict(session, exc, "commit") from exc

    def integrity_conflict(self, session: Session, exc: IntegrityError, operation: str) -> ConflictError:
        session.rollback()
        observe_conflict(self.resource, operation)
        logger.info(
            "integrity.conflict",
            extra={"entity_type": self.resource, "action": operation, "error": str(exc.orig)},
        )
        return ConflictError(
            f"{self.resource} conflicts with an existing record",
            code="integrity_conflict",
            details={"operation": operation},
        )
