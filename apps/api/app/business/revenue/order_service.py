from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from app import audit
from app.business.revenue.models import RevenueOrder, utcnow
from app.business.revenue.notifications import notify
from app.business.revenue.repository import RevenueOrderRepository
from app.business.revenue.schemas import (
    FulfillmentStatusUpdate,
    OrderCreate,
    OrderPage,
    OrderRead,
    OrderStatusUpdate,
    OrderUpdate,
    StatusBreakdown,
)
from app.business.revenue.totals import q
from app.business.revenue.transitions import (
    ORDER_DELETABLE_STATUSES,
    ORDER_EDITABLE_STATUSES,
    FulfillmentStatus,
    Lifecycle,
    OrderStatus,
    ensure_transition,
)
from app.metrics import observe_status_transition
from app.platform.errors import BusinessRuleError, ConflictError, ValidationError
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.revenue.orders")

ENTITY = "order"
MAX_PAGE_SIZE = 100

_STATUS_STAMPS = {
    OrderStatus.ACTIVE: "activated_at",
    OrderStatus.FULFILLED: "fulfilled_at",
}


def _check_window(days: int) -> None:
    if days < 0:
        raise ValidationError("days cannot be negative", code="invalid_window")


@dataclass(slots=True)
class OrderService:
    order_repository: RevenueOrderRepository = RevenueOrderRepository()

    def create_order(self, session: Session, ctx: AuthContext, payload: OrderCreate) -> OrderRead:
        tenant_id = ctx.require_tenant()
        order = RevenueOrder(
            tenant_id=tenant_id,
            reference=self.order_repository.next_reference(session, tenant_id),
            status=OrderStatus.PENDING,
            fulfillment_status=FulfillmentStatus.PENDING,
            order_type=payload.order_type,
            currency=payload.currency,
            subtotal=q(payload.subtotal),
            discount_amount=q(payload.discount_amount),
            tax_amount=q(payload.tax_amount),
            total_value=q(payload.subtotal - payload.discount_amount + payload.tax_amount),
            billing_cycle=payload.billing_cycle,
            auto_renew=payload.auto_renew,
            effective_date=payload.effective_date,
            expiry_date=payload.expiry_date,
            notes=payload.notes,
            created_by=ctx.user_id,
        )
        session.add(order)
        self.order_repository.flush(session)
        self._audit(
            session,
            ctx,
            order,
            "create",
            before=None,
            after={"reference": order.reference, "total_value": order.total_value},
        )
        self.order_repository.commit(session)
        session.refresh(order)
        logger.info(
            "order.created",
            extra={"entity_type": ENTITY, "entity_id": str(order.id), "reference": order.reference},
        )
        notify("order.created", order, ENTITY, total_value=str(order.total_value), source_quote_id=None)
        return self.to_order_read(order)

    def get_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID) -> OrderRead:
        return self.to_order_read(self.order_repository.get(session, ctx, order_id))

    def list_orders(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: str | None = None,
        fulfillment_status: str | None = None,
        source_quote_id: uuid.UUID | None = None,
        order_type: str | None = None,
        sort_by: str = "created_at",
        direction: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> OrderPage:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}", code="invalid_page")

        filters: list[Any] = []
        if status is not None:
            filters.append(RevenueOrder.status == status)
        if fulfillment_status is not None:
            filters.append(RevenueOrder.fulfillment_status == fulfillment_status)
        if source_quote_id is not None:
            filters.append(RevenueOrder.source_quote_id == source_quote_id)
        if order_type is not None:
            filters.append(RevenueOrder.order_type == order_type)

        rows, total = self.order_repository.list_page(
            session,
            ctx,
            filters=filters,
            sort_by=sort_by,
            direction=direction,
            page=page,
            limit=limit,
        )
        return OrderPage(items=[self.to_order_read(row) for row in rows], total=total, page=page, limit=limit)

    def list_expiring(
        self, session: Session, ctx: AuthContext, *, days: int = 30, today: date | None = None
    ) -> list[OrderRead]:
        """Active orders whose term ends within ``days``."""
        _check_window(days)
        rows = self.order_repository.expiring_within(session, ctx, today=today or date.today(), days=days)
        return [self.to_order_read(row) for row in rows]

    def list_auto_renewable(
        self, session: Session, ctx: AuthContext, *, days_before_expiry: int = 30, today: date | None = None
    ) -> list[OrderRead]:
        _check_window(days_before_expiry)
        rows = self.order_repository.expiring_within(
            session, ctx, today=today or date.today(), days=days_before_expiry, auto_renew=True
        )
        return [self.to_order_read(row) for row in rows]

    def count_by_status(self, session: Session, ctx: AuthContext) -> StatusBreakdown:
        counts = self.order_repository.count_by(session, ctx, "status")
        return StatusBreakdown(by_status=counts, total=sum(counts.values()))

    def update_order(self, session: Session, ctx: AuthContext, order_id: uuid.UUID, payload: OrderUpdate) -> OrderRead:
        order = self.order_repository.get(session, ctx, order_id)
        current = order.status
        if current not in ORDER_EDITABLE_STATUSES:
            raise BusinessRuleError(
                f"order cannot be edited while {current}",
                code="order_not_editable",
                details={"status": current},
            )
        if order.row_version != payload.row_version:
            raise ConflictError(
                "order has been modified since it was read",
                code="stale_row_version",
                details={"expected": payload.row_version, "actual": order.row_version},
            )

        changes = payload.model_dump(mode="python", exclude_unset=True, exclude={"row_version"})
        if not changes:
            return self.to_order_read(order)
        for field in ("order_type", "auto_renew"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be cleared", code="invalid_field")
        effective = changes.get("effective_date", order.effective_date)
        expiry = changes.get("expiry_date", order.expiry_date)
        if effective is not None and expiry is not None and expiry < effective:
            raise ValidationError("expiry_date cannot be before effective_date", code="invalid_date_range")

        before = {field: getattr(order, field) for field in changes}
        self.order_repository.conditional_update(
            session,
            order,
            expected_status=current,
            expected_row_version=payload.row_version,
            values={**changes, "updated_by": ctx.user_id},
            operation="update",
        )
        self._audit(session, ctx, order, "update", before=before, after=changes)
        self.order_repository.commit(session)
        return self.to_order_read(order)

    def update_status(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        payload: OrderStatusUpdate,
    ) -> OrderRead:
        if payload.status == OrderStatus.CANCELLED:
            return self.cancel_order(session, ctx, order_id, reason=payload.reason)

        order = self.order_repository.get(session, ctx, order_id)
        target = OrderStatus(payload.status)
        ensure_transition(Lifecycle.ORDER, order.status, target)
        values: dict[str, Any] = {}
        stamp = _STATUS_STAMPS.get(target)
        if stamp is not None:
            values[stamp] = utcnow()
        self._transition(session, ctx, order, target, values=values)
        return self.to_order_read(order)

    def cancel_order(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        *,
        reason: str | None,
    ) -> OrderRead:
        """Cancel an order. Cancellation is irreversible and leaves fulfillment untouched."""
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("a cancellation reason is required", code="reason_required")

        order = self.order_repository.get(session, ctx, order_id)
        ensure_transition(Lifecycle.ORDER, order.status, OrderStatus.CANCELLED)
        self._transition(
            session,
            ctx,
            order,
            OrderStatus.CANCELLED,
            values={"cancelled_at": utcnow(), "cancellation_reason": reason},
            audit_after={"reason": reason},
        )
        notify("order.cancelled", order, ENTITY, reason=reason)
        return self.to_order_read(order)

    def update_fulfillment_status(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        payload: FulfillmentStatusUpdate,
    ) -> OrderRead:
        order = self.order_repository.get(session, ctx, order_id)
        current = order.fulfillment_status
        target = FulfillmentStatus(payload.fulfillment_status)
        ensure_transition(Lifecycle.ORDER_FULFILLMENT, current, target)

        self.order_repository.conditional_update(
            session,
            order,
            expected_status=current,
            status_column="fulfillment_status",
            values={"fulfillment_status": target, "updated_by": ctx.user_id},
            operation=f"fulfillment.{target}",
        )
        self._audit(
            session,
            ctx,
            order,
            f"fulfillment.{target}",
            before={"fulfillment_status": current},
            after={"fulfillment_status": target},
        )
        self.order_repository.commit(session)
        observe_status_transition("order_fulfillment", current, target)
        logger.info(
            "order.fulfillment_changed",
            extra={
                "entity_type": ENTITY,
                "entity_id": str(order_id),
                "from_status": current,
                "to_status": str(target),
            },
        )
        return self.to_order_read(order)

    def soft_delete_order(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        *,
        reason: str | None = None,
    ) -> None:
        order = self.order_repository.get(session, ctx, order_id)
        current = order.status
        if current not in ORDER_DELETABLE_STATUSES:
            raise BusinessRuleError(
                f"order cannot be deleted while {current}",
                code="order_not_deletable",
                details={"status": current},
            )
        self.order_repository.conditional_update(
            session,
            order,
            expected_status=current,
            values={"deleted_at": utcnow(), "deleted_by": ctx.user_id, "deletion_reason": reason},
            operation="soft_delete",
        )
        self._audit(session, ctx, order, "soft_delete", before={"status": current}, after={"reason": reason})
        self.order_repository.commit(session)
        logger.info("order.deleted", extra={"entity_type": ENTITY, "entity_id": str(order_id)})

    def to_order_read(self, order: RevenueOrder) -> OrderRead:
        payload = {
            "id": order.id,
            "tenant_id": order.tenant_id,
            "reference": order.reference,
            "source_quote_id": order.source_quote_id,
            "status": order.status,
            "fulfillment_status": order.fulfillment_status,
            "order_type": order.order_type,
            "currency": order.currency,
            "subtotal": order.subtotal,
            "discount_amount": order.discount_amount,
            "tax_amount": order.tax_amount,
            "total_value": order.total_value,
            "billing_cycle": order.billing_cycle,
            "auto_renew": order.auto_renew,
            "effective_date": order.effective_date,
            "expiry_date": order.expiry_date,
            "payment_reference": order.payment_reference,
            "activated_at": order.activated_at,
            "fulfilled_at": order.fulfilled_at,
            "cancelled_at": order.cancelled_at,
            "cancellation_reason": order.cancellation_reason,
            "notes": order.notes,
            "row_version": order.row_version,
            "created_by": order.created_by,
            "created_at": order.created_at,
            "updated_by": order.updated_by,
            "updated_at": order.updated_at,
            "deleted_at": order.deleted_at,
        }
        return OrderRead.model_validate(payload)

    def _transition(
        self,
        session: Session,
        ctx: AuthContext,
        order: RevenueOrder,
        target: OrderStatus,
        *,
        values: dict[str, Any] | None = None,
        audit_after: dict[str, Any] | None = None,
    ) -> None:
        current = order.status
        order_id = str(order.id)
        self.order_repository.conditional_update(
            session,
            order,
            expected_status=current,
            values={"status": target, "updated_by": ctx.user_id, **(values or {})},
            operation=f"transition.{target}",
        )
        self._audit(
            session,
            ctx,
            order,
            f"status.{target}",
            before={"status": current},
            after={"status": target, **(audit_after or {})},
        )
        self.order_repository.commit(session)
        observe_status_transition(ENTITY, current, target)
        logger.info(
            "order.status_changed",
            extra={"entity_type": ENTITY, "entity_id": order_id, "from_status": current, "to_status": str(target)},
        )

    @staticmethod
    def _audit(
        session: Session,
        ctx: AuthContext,
        order: RevenueOrder,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            session,
            tenant_id=order.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=ENTITY,
            entity_id=str(order.id),
            action=action,
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )


order_service = OrderService()
