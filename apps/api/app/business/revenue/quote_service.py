from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_
from sqlalchemy.orm import Session

from app import audit
from app.business.revenue.models import RevenueOrder, RevenueQuote, RevenueQuoteItem, utcnow
from app.business.revenue.notifications import notify, public_url
from app.business.revenue.repository import RevenueQuoteRepository
from app.business.revenue.schemas import (
    OrderRef,
    PublicQuoteAcceptRequest,
    QuoteAcceptRequest,
    QuoteCreate,
    QuoteItemCreate,
    QuoteItemRead,
    QuoteItemUpdate,
    QuotePage,
    QuoteRead,
    QuoteRejectRequest,
    PublicQuoteRead,
    QuoteUpdate,
    StatusBreakdown,
)
from app.business.revenue.tokens import TokenAuthority, issue_token, token_authority
from app.business.revenue.totals import LineInput, PricingRules, compute_totals
from app.business.revenue.transitions import (
    QUOTE_DELETABLE_STATUSES,
    QUOTE_EDITABLE_STATUSES,
    Lifecycle,
    QuoteStatus,
    ensure_transition,
)
from app.metrics import observe_status_transition
from app.platform.errors import BusinessRuleError, ConflictError, ExpiredError, NotFoundError, ValidationError
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.revenue.quotes")

ENTITY = "quote"
MAX_PAGE_SIZE = 100

ITEM_FIELDS = (
    "item_type",
    "catalog_item_id",
    "name",
    "description",
    "sku",
    "recurrence",
    "billing_interval",
    "quantity",
    "unit_price",
    "discount_type",
    "discount_value",
    "sort_order",
)


@dataclass(slots=True)
class QuoteService:
    quote_repository: RevenueQuoteRepository = RevenueQuoteRepository()
    tokens: TokenAuthority = token_authority

    def create_quote(self, session: Session, ctx: AuthContext, payload: QuoteCreate) -> QuoteRead:
        tenant_id = ctx.require_tenant()
        self._ensure_future_validity(payload.valid_until)

        data = payload.model_dump(mode="python", exclude={"items"})
        quote = RevenueQuote(
            **data,
            tenant_id=tenant_id,
            reference=self.quote_repository.next_reference(session, tenant_id),
            status=QuoteStatus.DRAFT,
            version=1,
            public_token=issue_token(),
            created_by=ctx.user_id,
        )
        for position, item_payload in enumerate(payload.items):
            quote.items.append(self.build_item(item_payload, position))
        self.recompute_totals(quote)

        session.add(quote)
        self.quote_repository.flush(session)
        audit.record(
            session,
            tenant_id=tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=ENTITY,
            entity_id=str(quote.id),
            action="create",
            before=None,
            after={"reference": quote.reference, "status": quote.status, "total_value": quote.total_value},
            correlation_id=ctx.correlation_id,
        )
        self.quote_repository.commit(session)
        session.refresh(quote)
        logger.info(
            "quote.created",
            extra={"entity_type": ENTITY, "entity_id": str(quote.id), "reference": quote.reference},
        )
        return self.to_quote_read(quote)

    def get_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        return self.to_quote_read(self.quote_repository.get(session, ctx, quote_id))

    def list_quotes(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: str | None = None,
        opportunity_id: uuid.UUID | None = None,
        order_id: uuid.UUID | None = None,
        converted: bool | None = None,
        currency: str | None = None,
        search: str | None = None,
        sort_by: str = "created_at",
        direction: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> QuotePage:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}", code="invalid_page")

        filters: list[Any] = []
        if status is not None:
            filters.append(RevenueQuote.status == status)
        if opportunity_id is not None:
            filters.append(RevenueQuote.opportunity_id == opportunity_id)
        live_order = RevenueOrder.deleted_at.is_(None)
        if order_id is not None:
            filters.append(RevenueQuote.order.has(and_(RevenueOrder.id == order_id, live_order)))
        if converted is True:
            filters.append(RevenueQuote.order.has(live_order))
        elif converted is False:
            filters.append(~RevenueQuote.order.has(live_order))
        if currency is not None:
            filters.append(RevenueQuote.currency == currency.upper())
        if search:
            filters.append(RevenueQuote.reference.ilike(f"%{search.strip()}%"))

        rows, total = self.quote_repository.list_page(
            session,
            ctx,
            filters=filters,
            sort_by=sort_by,
            direction=direction,
            page=page,
            limit=limit,
        )
        return QuotePage(items=[self.to_quote_read(row) for row in rows], total=total, page=page, limit=limit)

    def list_versions(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> list[QuoteRead]:
        quote = self.quote_repository.get(session, ctx, quote_id)
        return [self.to_quote_read(item) for item in self.quote_repository.lineage(session, quote)]

    def get_quote_by_reference(self, session: Session, ctx: AuthContext, reference: str) -> QuoteRead:
        quote = self.quote_repository.find_by_reference(session, ctx, reference.strip().upper())
        if quote is None:
            raise NotFoundError("quote not found")
        return self.to_quote_read(quote)

    def get_latest_version(self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID) -> QuoteRead:
        """Highest-numbered live quote version raised for an opportunity."""
        quote = self.quote_repository.latest_for_opportunity(session, ctx, opportunity_id)
        if quote is None:
            raise NotFoundError("no quote exists for this opportunity")
        return self.to_quote_read(quote)

    def list_expiring_soon(
        self, session: Session, ctx: AuthContext, *, days: int = 7, today: date | None = None
    ) -> list[QuoteRead]:
        if days < 0:
            raise ValidationError("days cannot be negative", code="invalid_window")
        rows = self.quote_repository.expiring_within(session, ctx, today=today or date.today(), days=days)
        return [self.to_quote_read(row) for row in rows]

    def count_by_status(self, session: Session, ctx: AuthContext) -> StatusBreakdown:
        counts = self.quote_repository.count_by(session, ctx, "status")
        return StatusBreakdown(by_status=counts, total=sum(counts.values()))

    def update_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID, payload: QuoteUpdate) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        self._ensure_editable(quote)
        if quote.row_version != payload.row_version:
            raise ConflictError(
                "quote has been modified since it was read",
                code="stale_row_version",
                details={"expected": payload.row_version, "actual": quote.row_version},
            )

        changes = payload.model_dump(mode="python", exclude_unset=True, exclude={"row_version"})
        if not changes:
            return self.to_quote_read(quote)

        if "valid_until" in changes:
            self._ensure_future_validity(changes["valid_until"])
        if "currency" in changes and changes["currency"] is None:
            raise ValidationError("currency cannot be cleared", code="invalid_currency")
        if "tax_rate" in changes and changes["tax_rate"] is None:
            changes["tax_rate"] = Decimal("0")
        discount_type = changes.get("discount_type", quote.discount_type)
        discount_value = changes.get("discount_value", quote.discount_value)
        if (discount_type is None) != (discount_value is None):
            raise ValidationError(
                "discount_type and discount_value must be provided together",
                code="invalid_discount",
            )
        valid_from = changes.get("valid_from", quote.valid_from)
        valid_until = changes.get("valid_until", quote.valid_until)
        if valid_from is not None and valid_until is not None and valid_until < valid_from:
            raise ValidationError("valid_until cannot be before valid_from", code="invalid_validity_window")

        before = {field: getattr(quote, field) for field in changes}
        for field, value in changes.items():
            setattr(quote, field, value)
        quote.updated_by = ctx.user_id
        self.recompute_totals(quote)

        self.quote_repository.conditional_update(
            session,
            quote,
            expected_status=QuoteStatus.DRAFT,
            expected_row_version=payload.row_version,
            values={},
            operation="update",
        )
        self._audit(session, ctx, quote, "update", before=before, after=changes)
        self.quote_repository.commit(session)
        return self.to_quote_read(quote)

    def soft_delete_quote(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        *,
        reason: str | None = None,
    ) -> None:
        quote = self.quote_repository.get(session, ctx, quote_id)
        current = quote.status
        if current not in QUOTE_DELETABLE_STATUSES:
            raise BusinessRuleError(
                f"quote cannot be deleted while {current}",
                code="quote_not_deletable",
                details={"status": current},
            )

        self.quote_repository.conditional_update(
            session,
            quote,
            expected_status=current,
            values={"deleted_at": utcnow(), "deleted_by": ctx.user_id, "deletion_reason": reason},
            operation="soft_delete",
        )
        self._audit(session, ctx, quote, "soft_delete", before={"status": current}, after={"reason": reason})
        self.quote_repository.commit(session)
        logger.info("quote.deleted", extra={"entity_type": ENTITY, "entity_id": str(quote_id)})

    def add_item(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID, payload: QuoteItemCreate) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        self._ensure_editable(quote)

        position = payload.sort_order if payload.sort_order is not None else len(quote.items)
        item = self.build_item(payload, position)
        quote.items.append(item)
        self.recompute_totals(quote)
        self._guard_draft(session, ctx, quote, "item.add")

        self._audit(session, ctx, quote, "item.add", before=None, after={"item_id": item.id, "name": item.name})
        self.quote_repository.commit(session)
        return self.to_quote_read(quote)

    def update_item(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        item_id: uuid.UUID,
        payload: QuoteItemUpdate,
    ) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        self._ensure_editable(quote)
        item = self._find_item(quote, item_id)

        changes = payload.model_dump(mode="python", exclude_unset=True)
        merged = {field: getattr(item, field) for field in ITEM_FIELDS}
        merged.update(changes)
        if changes.get("recurrence") == "one_time" and "billing_interval" not in changes:
            merged["billing_interval"] = None
        if "discount_type" in changes and changes["discount_type"] is None and "discount_value" not in changes:
            merged["discount_value"] = None
        try:
            validated = QuoteItemCreate.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(
                "invalid quote item",
                code="invalid_item",
                details={"errors": [{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()]},
            ) from exc

        before = {field: getattr(item, field) for field in changes}
        self._apply_item(item, validated, item.sort_order)
        self.recompute_totals(quote)
        self._guard_draft(session, ctx, quote, "item.update")

        self._audit(session, ctx, quote, "item.update", before=before, after={"item_id": item_id, **changes})
        self.quote_repository.commit(session)
        return self.to_quote_read(quote)

    def remove_item(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID, item_id: uuid.UUID) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        self._ensure_editable(quote)
        item = self._find_item(quote, item_id)

        quote.items.remove(item)
        self.recompute_totals(quote)
        self._guard_draft(session, ctx, quote, "item.remove")

        self._audit(session, ctx, quote, "item.remove", before={"item_id": item_id, "name": item.name}, after=None)
        self.quote_repository.commit(session)
        return self.to_quote_read(quote)

    def send_quote(self, session: Session, ctx: AuthContext, quote_id: uuid.UUID) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        ensure_transition(Lifecycle.QUOTE, quote.status, QuoteStatus.SENT)
        if not quote.items:
            raise BusinessRuleError("quote must have at least one item before it is sent", code="quote_has_no_items")
        if quote.valid_until is None or quote.valid_until <= date.today():
            raise ValidationError("quote needs a valid_until date in the future before it is sent", code="invalid_valid_until")

        self._transition(session, ctx, quote, QuoteStatus.SENT, values={"sent_at": utcnow()})
        notify(
            "quote.sent",
            quote,
            ENTITY,
            public_url=public_url("quotes", quote.public_token),
            valid_until=quote.valid_until.isoformat(),
        )
        return self.to_quote_read(quote)

    def accept_quote(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        payload: QuoteAcceptRequest,
    ) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        ensure_transition(Lifecycle.QUOTE, quote.status, QuoteStatus.ACCEPTED)
        self._ensure_within_validity(quote)
        self._accept(session, ctx, quote, payload.accepted_by or ctx.user_id, payload.signature)
        return self.to_quote_read(quote)

    def reject_quote(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        payload: QuoteRejectRequest,
    ) -> QuoteRead:
        quote = self.quote_repository.get(session, ctx, quote_id)
        ensure_transition(Lifecycle.QUOTE, quote.status, QuoteStatus.REJECTED)
        self._ensure_within_validity(quote)
        self._reject(session, ctx, quote, payload.reason)
        return self.to_quote_read(quote)

    def view_by_token(
        self,
        session: Session,
        token: str,
        *,
        client_ip: str | None = None,
        correlation_id: str | None = None,
    ) -> PublicQuoteRead:
        """Return the counterparty view of a quote and record the visit.

        The first view of a sent quote moves it to ``viewed``; later views only
        bump the counters. A view that loses a race with another status change
        is not an error.
        """
        quote = self.tokens.resolve_quote(session, token, "view")
        current = quote.status
        now = utcnow()
        values: dict[str, Any] = {"last_viewed_at": now, "view_count": RevenueQuote.view_count + 1}
        if quote.first_viewed_at is None:
            values["first_viewed_at"] = now
        target = current
        if current == QuoteStatus.SENT:
            ensure_transition(Lifecycle.QUOTE, current, QuoteStatus.VIEWED)
            target = QuoteStatus.VIEWED
            values["status"] = target

        if not self.quote_repository.try_update(session, quote, expected_status=current, values=values):
            session.rollback()
            logger.info("quote.view_race_lost", extra={"entity_type": ENTITY, "entity_id": str(quote.id)})
            return self.to_public_read(self.tokens.resolve_quote(session, token, "view"))

        session.commit()
        if target != current:
            observe_status_transition(ENTITY, current, target)
            logger.info(
                "quote.status_changed",
                extra={
                    "entity_type": ENTITY,
                    "entity_id": str(quote.id),
                    "reference": quote.reference,
                    "from_status": current,
                    "to_status": target,
                },
            )
        audit.record_best_effort(
            session,
            tenant_id=quote.tenant_id,
            actor_user_id="public:viewer",
            entity_type=ENTITY,
            entity_id=str(quote.id),
            action="view",
            before={"status": current},
            after={"status": target, "view_count": quote.view_count, "client_ip": client_ip},
            correlation_id=correlation_id,
        )
        return self.to_public_read(quote)

    def accept_by_token(
        self,
        session: Session,
        token: str,
        payload: PublicQuoteAcceptRequest,
        *,
        client_ip: str | None = None,
        correlation_id: str | None = None,
    ) -> PublicQuoteRead:
        quote = self.tokens.resolve_quote(session, token, "accept")
        ctx = AuthContext.for_public(
            quote.tenant_id,
            actor=payload.accepted_by,
            correlation_id=correlation_id,
            client_ip=client_ip,
        )
        self._accept(session, ctx, quote, payload.accepted_by, payload.signature)
        return self.to_public_read(quote)

    def reject_by_token(
        self,
        session: Session,
        token: str,
        payload: QuoteRejectRequest,
        *,
        client_ip: str | None = None,
        correlation_id: str | None = None,
    ) -> PublicQuoteRead:
        quote = self.tokens.resolve_quote(session, token, "reject")
        ctx = AuthContext.for_public(
            quote.tenant_id,
            actor=payload.rejected_by or "counterparty",
            correlation_id=correlation_id,
            client_ip=client_ip,
        )
        self._reject(session, ctx, quote, payload.reason)
        return self.to_public_read(quote)

    def to_quote_read(self, quote: RevenueQuote) -> QuoteRead:
        order = quote.order
        payload = {
            "id": quote.id,
            "tenant_id": quote.tenant_id,
            "reference": quote.reference,
            "opportunity_id": quote.opportunity_id,
            "status": quote.status,
            "currency": quote.currency,
            "discount_type": quote.discount_type,
            "discount_value": quote.discount_value,
            "tax_rate": quote.tax_rate,
            "subtotal": quote.subtotal,
            "discount_amount": quote.discount_amount,
            "tax_amount": quote.tax_amount,
            "total_value": quote.total_value,
            "monthly_recurring_value": quote.monthly_recurring_value,
            "annual_recurring_value": quote.annual_recurring_value,
            "valid_from": quote.valid_from,
            "valid_until": quote.valid_until,
            "contract_start_date": quote.contract_start_date,
            "contract_duration_months": quote.contract_duration_months,
            "billing_cycle": quote.billing_cycle,
            "version": quote.version,
            "supersedes_id": quote.supersedes_id,
            "public_token": quote.public_token,
            "sent_at": quote.sent_at,
            "first_viewed_at": quote.first_viewed_at,
            "last_viewed_at": quote.last_viewed_at,
            "view_count": quote.view_count,
            "accepted_at": quote.accepted_at,
            "accepted_by": quote.accepted_by,
            "rejected_at": quote.rejected_at,
            "rejection_reason": quote.rejection_reason,
            "expired_at": quote.expired_at,
            "converted_at": quote.converted_at,
            "superseded_at": quote.superseded_at,
            "notes": quote.notes,
            "terms_and_conditions": quote.terms_and_conditions,
            "row_version": quote.row_version,
            "created_by": quote.created_by,
            "created_at": quote.created_at,
            "updated_by": quote.updated_by,
            "updated_at": quote.updated_at,
            "deleted_at": quote.deleted_at,
            "order": OrderRef.model_validate(order) if order is not None and order.deleted_at is None else None,
            "items": [QuoteItemRead.model_validate(item) for item in quote.items],
        }
        return QuoteRead.model_validate(payload)

    def to_public_read(self, quote: RevenueQuote) -> PublicQuoteRead:
        return PublicQuoteRead.model_validate(
            {
                "reference": quote.reference,
                "status": quote.status,
                "currency": quote.currency,
                "subtotal": quote.subtotal,
                "discount_amount": quote.discount_amount,
                "tax_rate": quote.tax_rate,
                "tax_amount": quote.tax_amount,
                "total_value": quote.total_value,
                "monthly_recurring_value": quote.monthly_recurring_value,
                "annual_recurring_value": quote.annual_recurring_value,
                "valid_until": quote.valid_until,
                "version": quote.version,
                "contract_start_date": quote.contract_start_date,
                "contract_duration_months": quote.contract_duration_months,
                "terms_and_conditions": quote.terms_and_conditions,
                "accepted_at": quote.accepted_at,
                "rejected_at": quote.rejected_at,
                "items": [QuoteItemRead.model_validate(item) for item in quote.items],
            }
        )

    def _accept(
        self,
        session: Session,
        ctx: AuthContext,
        quote: RevenueQuote,
        accepted_by: str,
        signature: str | None,
    ) -> None:
        self._transition(
            session,
            ctx,
            quote,
            QuoteStatus.ACCEPTED,
            values={"accepted_at": utcnow(), "accepted_by": accepted_by, "acceptance_signature": signature},
            audit_after={"accepted_by": accepted_by, "client_ip": ctx.client_ip},
        )
        notify("quote.accepted", quote, ENTITY, accepted_by=accepted_by)

    def _reject(self, session: Session, ctx: AuthContext, quote: RevenueQuote, reason: str) -> None:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("a rejection reason is required", code="reason_required")
        self._transition(
            session,
            ctx,
            quote,
            QuoteStatus.REJECTED,
            values={"rejected_at": utcnow(), "rejection_reason": reason},
            audit_after={"reason": reason, "client_ip": ctx.client_ip},
        )
        notify("quote.rejected", quote, ENTITY, reason=reason)

    def _transition(
        self,
        session: Session,
        ctx: AuthContext,
        quote: RevenueQuote,
        target: QuoteStatus,
        *,
        values: dict[str, Any] | None = None,
        audit_after: dict[str, Any] | None = None,
    ) -> None:
        current = quote.status
        ensure_transition(Lifecycle.QUOTE, current, target)
        quote_id = str(quote.id)
        reference = quote.reference

        self.quote_repository.conditional_update(
            session,
            quote,
            expected_status=current,
            values={"status": target, "updated_by": ctx.user_id, **(values or {})},
            operation=f"transition.{target}",
        )
        audit.record(
            session,
            tenant_id=quote.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=ENTITY,
            entity_id=quote_id,
            action=f"status.{target}",
            before={"status": current},
            after={"status": target, **(audit_after or {})},
            correlation_id=ctx.correlation_id,
        )
        self.quote_repository.commit(session)
        observe_status_transition(ENTITY, current, target)
        logger.info(
            "quote.status_changed",
            extra={
                "entity_type": ENTITY,
                "entity_id": quote_id,
                "reference": reference,
                "from_status": current,
                "to_status": str(target),
            },
        )

    def _guard_draft(self, session: Session, ctx: AuthContext, quote: RevenueQuote, operation: str) -> None:
        self.quote_repository.conditional_update(
            session,
            quote,
            expected_status=QuoteStatus.DRAFT,
            values={"updated_by": ctx.user_id},
            operation=operation,
        )

    def _audit(
        self,
        session: Session,
        ctx: AuthContext,
        quote: RevenueQuote,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            session,
            tenant_id=quote.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=ENTITY,
            entity_id=str(quote.id),
            action=action,
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )

    @staticmethod
    def _ensure_editable(quote: RevenueQuote) -> None:
        if quote.status not in QUOTE_EDITABLE_STATUSES:
            raise BusinessRuleError(
                f"quote cannot be edited while {quote.status}",
                code="quote_not_editable",
                details={"status": quote.status},
            )

    @staticmethod
    def _ensure_future_validity(valid_until: date | None) -> None:
        if valid_until is not None and valid_until <= date.today():
            raise ValidationError("valid_until must be in the future", code="invalid_valid_until")

    @staticmethod
    def _ensure_within_validity(quote: RevenueQuote) -> None:
        if quote.valid_until is not None and quote.valid_until < date.today():
            raise ExpiredError(
                "quote is past its valid_until date",
                code="quote_expired",
                details={"valid_until": quote.valid_until.isoformat()},
            )

    @staticmethod
    def _find_item(quote: RevenueQuote, item_id: uuid.UUID) -> RevenueQuoteItem:
        for item in quote.items:
            if item.id == item_id:
                return item
        raise NotFoundError("quote item not found")

    @staticmethod
    def build_item(payload: QuoteItemCreate, position: int) -> RevenueQuoteItem:
        item = RevenueQuoteItem(id=uuid.uuid4())
        QuoteService._apply_item(item, payload, position)
        return item

    @staticmethod
    def _apply_item(item: RevenueQuoteItem, payload: QuoteItemCreate, position: int) -> None:
        item.item_type = payload.item_type
        item.catalog_item_id = payload.catalog_item_id
        item.name = payload.name
        item.description = payload.description
        item.sku = payload.sku
        item.recurrence = payload.recurrence
        item.billing_interval = payload.billing_interval
        item.quantity = payload.quantity
        item.unit_price = payload.unit_price
        item.discount_type = payload.discount_type
        item.discount_value = payload.discount_value
        item.sort_order = payload.sort_order if payload.sort_order is not None else position

    @staticmethod
    def recompute_totals(quote: RevenueQuote) -> None:
        items = list(quote.items)
        totals = compute_totals(
            [
                LineInput(
                    unit_price=item.unit_price,
                    quantity=item.quantity,
                    recurrence=item.recurrence,
                    billing_interval=item.billing_interval,
                    discount_type=item.discount_type,
                    discount_value=item.discount_value,
                )
                for item in items
            ],
            PricingRules(
                discount_type=quote.discount_type,
                discount_value=quote.discount_value,
                tax_rate=quote.tax_rate if quote.tax_rate is not None else Decimal("0"),
            ),
        )
        for item, amounts in zip(items, totals.lines, strict=True):
            item.discount_amount = amounts.discount_amount
            item.line_total = amounts.line_total
        quote.subtotal = totals.subtotal
        quote.discount_amount = totals.discount_amount
        quote.tax_amount = totals.tax_amount
        quote.total_value = totals.total
        quote.monthly_recurring_value = totals.monthly_recurring
        quote.annual_recurring_value = totals.annual_recurring


quote_service = QuoteService()
