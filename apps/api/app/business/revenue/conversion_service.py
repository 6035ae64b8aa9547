from __future__ import annotations

import calendar
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.business.revenue.agreement_service import agreement_service
from app.business.revenue.models import (
    RevenueAgreement,
    RevenueIdempotencyKey,
    RevenueOrder,
    RevenueQuote,
    RevenueQuoteItem,
    utcnow,
)
from app.business.revenue.notifications import notify
from app.business.revenue.order_service import order_service
from app.business.revenue.quote_service import ITEM_FIELDS, quote_service
from app.business.revenue.repository import (
    RevenueAgreementRepository,
    RevenueOrderRepository,
    RevenueQuoteRepository,
)
from app.business.revenue.schemas import (
    AgreementRead,
    AttachAgreementRequest,
    ConvertQuoteRequest,
    NewVersionRequest,
    OrderRead,
    QuoteRead,
)
from app.business.revenue.tokens import issue_token
from app.business.revenue.transitions import (
    AgreementStatus,
    FulfillmentStatus,
    Lifecycle,
    OrderStatus,
    QuoteStatus,
    ensure_transition,
    is_terminal,
)
from app.metrics import observe_conflict, observe_conversion, observe_status_transition
from app.otel import start_span
from app.platform.errors import BusinessRuleError, ConflictError, ValidationError
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.revenue.conversion")

TRACER = "app.revenue.conversion"
CONVERT_OPERATION = "quote.convert"
ATTACH_OPERATION = "order.attach_agreement"


@dataclass(slots=True)
class ConversionService:
    """Cross-entity operations: quote to order, agreement attachment and new versions.

    Each call runs in a single transaction. On any failure the session is
    rolled back before the error propagates, so no partial state survives.
    """

    quote_repository: RevenueQuoteRepository = RevenueQuoteRepository()
    order_repository: RevenueOrderRepository = RevenueOrderRepository()
    agreement_repository: RevenueAgreementRepository = RevenueAgreementRepository()

    def convert_quote_to_order(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        payload: ConvertQuoteRequest | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> OrderRead:
        tenant_id = ctx.require_tenant()
        payload = payload or ConvertQuoteRequest()
        key = idempotency_key or (
            f"checkout:{payload.checkout_session_id}" if payload.checkout_session_id else None
        )
        request_hash = self._request_hash({"quote_id": str(quote_id), **payload.model_dump(mode="json")})

        with start_span(TRACER, "revenue.convert_quote", quote_id=quote_id, idempotency_key=key) as span:
            replayed = self._replay_order(session, ctx, tenant_id, key, request_hash)
            if replayed is not None:
                span.set_attribute("replayed", True)
                return replayed

            try:
                quote, order = self._stage_conversion(session, ctx, quote_id, payload)
                self._store_idempotent(session, tenant_id, CONVERT_OPERATION, key, request_hash, "order", order.id)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                replayed = self._replay_order(session, ctx, tenant_id, key, request_hash)
                if replayed is not None:
                    return replayed
                observe_conversion("quote_to_order", "conflict")
                if self.order_repository.find_by_source_quote(session, quote_id) is None:
                    raise self.order_repository.integrity_conflict(session, exc, "convert") from exc
                raise ConflictError(
                    "quote conversion conflicts with an existing order",
                    code="quote_already_converted",
                    details={"quote_id": str(quote_id)},
                ) from exc
            except Exception:
                session.rollback()
                observe_conversion("quote_to_order", "failed")
                raise

            span.set_attribute("order_id", str(order.id))

        observe_status_transition("quote", QuoteStatus.ACCEPTED, QuoteStatus.CONVERTED)
        observe_conversion("quote_to_order", "converted")
        logger.info(
            "quote.converted",
            extra={
                "entity_type": "order",
                "entity_id": str(order.id),
                "reference": order.reference,
                "idempotency_key": key,
                "from_status": str(QuoteStatus.ACCEPTED),
                "to_status": str(QuoteStatus.CONVERTED),
            },
        )
        notify(
            "order.created",
            order,
            "order",
            source_quote_id=str(quote.id),
            total_value=str(order.total_value),
        )
        return order_service.to_order_read(order)

    def convert_checkout_session(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        checkout_session_id: str,
        payload: ConvertQuoteRequest | None = None,
    ) -> OrderRead:
        """Convert a quote once its payment checkout completed.

        The checkout session id keys the conversion, so a redelivered payment
        callback returns the order created by the first one.
        """
        payload = (payload or ConvertQuoteRequest()).model_copy(update={"checkout_session_id": checkout_session_id})
        return self.convert_quote_to_order(
            session,
            ctx,
            quote_id,
            payload,
            idempotency_key=f"checkout:{checkout_session_id}",
        )

    def attach_agreement(
        self,
        session: Session,
        ctx: AuthContext,
        order_id: uuid.UUID,
        payload: AttachAgreementRequest,
        *,
        idempotency_key: str | None = None,
    ) -> AgreementRead:
        tenant_id = ctx.require_tenant()
        request_hash = self._request_hash({"order_id": str(order_id), **payload.model_dump(mode="json")})

        with start_span(TRACER, "revenue.attach_agreement", order_id=order_id, idempotency_key=idempotency_key):
            record = self._load_idempotent(session, tenant_id, ATTACH_OPERATION, idempotency_key, request_hash)
            if record is not None:
                agreement = self.agreement_repository.get(session, ctx, record.resource_id, include_deleted=True)
                return agreement_service.to_agreement_read(agreement)

            order = self.order_repository.get(session, ctx, order_id)
            agreement_service.ensure_order_accepts_agreements(order)
            try:
                agreement, action = self._stage_attachment(session, ctx, order, payload)
                self._store_idempotent(
                    session,
                    tenant_id,
                    ATTACH_OPERATION,
                    idempotency_key,
                    request_hash,
                    "agreement",
                    agreement.id,
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(
                    "agreement attachment conflicts with an existing record",
                    code="attach_conflict",
                    details={"order_id": str(order_id)},
                ) from exc
            except Exception:
                session.rollback()
                raise

        logger.info(
            "order.agreement_attached",
            extra={
                "entity_type": "agreement",
                "entity_id": str(agreement.id),
                "reference": agreement.reference,
                "action": action,
            },
        )
        return agreement_service.to_agreement_read(agreement)

    def create_quote_version(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        payload: NewVersionRequest | None = None,
    ) -> QuoteRead:
        """Supersede a quote with a draft copy one version higher.

        The parent moves to ``superseded`` only if both its status and its
        row_version are still the ones read here; a concurrent caller that
        loses the race gets a ConflictError and no new row.
        """
        tenant_id = ctx.require_tenant()
        with start_span(TRACER, "revenue.quote_new_version", quote_id=quote_id) as span:
            parent = self.quote_repository.get(session, ctx, quote_id)
            expected_row_version = self._expected_row_version(parent, payload)
            current = parent.status
            ensure_transition(Lifecycle.QUOTE, current, QuoteStatus.SUPERSEDED)

            try:
                reference = self.quote_repository.next_reference(session, tenant_id)
                self.quote_repository.conditional_update(
                    session,
                    parent,
                    expected_status=current,
                    expected_row_version=expected_row_version,
                    values={"status": QuoteStatus.SUPERSEDED, "superseded_at": utcnow(), "updated_by": ctx.user_id},
                    operation="new_version",
                )
                child = RevenueQuote(
                    id=uuid.uuid4(),
                    tenant_id=tenant_id,
                    reference=reference,
                    opportunity_id=parent.opportunity_id,
                    status=QuoteStatus.DRAFT,
                    currency=parent.currency,
                    discount_type=parent.discount_type,
                    discount_value=parent.discount_value,
                    tax_rate=parent.tax_rate,
                    valid_from=parent.valid_from,
                    valid_until=parent.valid_until,
                    contract_start_date=parent.contract_start_date,
                    contract_duration_months=parent.contract_duration_months,
                    billing_cycle=parent.billing_cycle,
                    version=parent.version + 1,
                    supersedes_id=parent.id,
                    public_token=issue_token(),
                    notes=parent.notes,
                    terms_and_conditions=parent.terms_and_conditions,
                    created_by=ctx.user_id,
                )
                for item in parent.items:
                    child.items.append(
                        RevenueQuoteItem(id=uuid.uuid4(), **{field: getattr(item, field) for field in ITEM_FIELDS})
                    )
                quote_service.recompute_totals(child)
                session.add(child)
                session.flush()

                self._audit_versioning(session, ctx, "quote", parent, child, current)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise self._version_collision(session, self.quote_repository, quote_id, exc) from exc
            except Exception:
                session.rollback()
                raise

            span.set_attribute("new_version_id", str(child.id))

        self._log_versioning("quote", parent, child, current)
        return quote_service.to_quote_read(child)

    def create_agreement_version(
        self,
        session: Session,
        ctx: AuthContext,
        agreement_id: uuid.UUID,
        payload: NewVersionRequest | None = None,
    ) -> AgreementRead:
        """Supersede an agreement with a draft copy one version higher.

        The copy keeps the order link and terms but none of the signatures.
        The order itself is left as it is.
        """
        tenant_id = ctx.require_tenant()
        with start_span(TRACER, "revenue.agreement_new_version", agreement_id=agreement_id) as span:
            parent = self.agreement_repository.get(session, ctx, agreement_id)
            expected_row_version = self._expected_row_version(parent, payload)
            current = parent.status
            ensure_transition(Lifecycle.AGREEMENT, current, AgreementStatus.SUPERSEDED)

            try:
                reference = self.agreement_repository.next_reference(session, tenant_id)
                self.agreement_repository.conditional_update(
                    session,
                    parent,
                    expected_status=current,
                    expected_row_version=expected_row_version,
                    values={
                        "status": AgreementStatus.SUPERSEDED,
                        "superseded_at": utcnow(),
                        "updated_by": ctx.user_id,
                    },
                    operation="new_version",
                )
                child = RevenueAgreement(
                    id=uuid.uuid4(),
                    tenant_id=tenant_id,
                    reference=reference,
                    order_id=parent.order_id,
                    agreement_type=parent.agreement_type,
                    status=AgreementStatus.DRAFT,
                    title=parent.title,
                    effective_date=parent.effective_date,
                    expiry_date=parent.expiry_date,
                    version=parent.version + 1,
                    supersedes_id=parent.id,
                    public_token=issue_token(),
                    terms=parent.terms,
                    notes=parent.notes,
                    created_by=ctx.user_id,
                )
                session.add(child)
                session.flush()

                self._audit_versioning(session, ctx, "agreement", parent, child, current)
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise self._version_collision(session, self.agreement_repository, agreement_id, exc) from exc
            except Exception:
                session.rollback()
                raise

            span.set_attribute("new_version_id", str(child.id))

        self._log_versioning("agreement", parent, child, current)
        return agreement_service.to_agreement_read(child)

    def _stage_conversion(
        self,
        session: Session,
        ctx: AuthContext,
        quote_id: uuid.UUID,
        payload: ConvertQuoteRequest,
    ) -> tuple[RevenueQuote, RevenueOrder]:
        quote = self.quote_repository.get(session, ctx, quote_id)
        existing = self.order_repository.find_by_source_quote(session, quote.id)
        if existing is not None:
            raise ConflictError(
                "quote has already been converted",
                code="quote_already_converted",
                details={"quote_id": str(quote.id), "order_id": str(existing.id)},
            )
        ensure_transition(Lifecycle.QUOTE, quote.status, QuoteStatus.CONVERTED)

        effective = payload.effective_date or quote.contract_start_date or date.today()
        expiry = payload.expiry_date
        if expiry is None and quote.contract_duration_months:
            expiry = self._add_months(effective, quote.contract_duration_months) - timedelta(days=1)
        if expiry is not None and expiry < effective:
            raise ValidationError("expiry_date cannot be before effective_date", code="invalid_date_range")

        order = RevenueOrder(
            id=uuid.uuid4(),
            tenant_id=quote.tenant_id,
            reference=self.order_repository.next_reference(session, quote.tenant_id),
            source_quote_id=quote.id,
            status=OrderStatus.PENDING,
            fulfillment_status=FulfillmentStatus.PENDING,
            order_type=payload.order_type,
            currency=quote.currency,
            subtotal=quote.subtotal,
            discount_amount=quote.discount_amount,
            tax_amount=quote.tax_amount,
            total_value=quote.total_value,
            billing_cycle=quote.billing_cycle,
            auto_renew=payload.auto_renew,
            effective_date=effective,
            expiry_date=expiry,
            payment_reference=payload.checkout_session_id,
            notes=payload.notes,
            created_by=ctx.user_id,
        )
        session.add(order)
        self.quote_repository.conditional_update(
            session,
            quote,
            expected_status=QuoteStatus.ACCEPTED,
            values={"status": QuoteStatus.CONVERTED, "converted_at": utcnow(), "updated_by": ctx.user_id},
            operation="convert",
        )

        for entity_type, entity_id, action, before, after in (
            (
                "quote",
                quote.id,
                f"status.{QuoteStatus.CONVERTED}",
                {"status": QuoteStatus.ACCEPTED},
                {"status": QuoteStatus.CONVERTED, "order_id": order.id},
            ),
            (
                "order",
                order.id,
                "create",
                None,
                {"reference": order.reference, "source_quote_id": quote.id, "total_value": order.total_value},
            ),
        ):
            audit.record(
                session,
                tenant_id=quote.tenant_id,
                actor_user_id=ctx.user_id,
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action,
                before=before,
                after=after,
                correlation_id=ctx.correlation_id,
            )
        return quote, order

    def _stage_attachment(
        self,
        session: Session,
        ctx: AuthContext,
        order: RevenueOrder,
        payload: AttachAgreementRequest,
    ) -> tuple[RevenueAgreement, str]:
        if payload.agreement_id is None:
            agreement = agreement_service.new_agreement(
                session,
                ctx,
                order=order,
                agreement_type=payload.agreement_type,
                title=payload.title,
                terms=payload.terms,
                effective_date=order.effective_date,
                expiry_date=order.expiry_date,
            )
            session.flush()
            action = "create"
        else:
            agreement = self.agreement_repository.get(session, ctx, payload.agreement_id)
            if agreement.order_id == order.id:
                return agreement, "already_attached"
            if agreement.order_id is not None:
                raise ConflictError(
                    "agreement is already attached to another order",
                    code="agreement_already_attached",
                    details={"agreement_id": str(agreement.id), "order_id": str(agreement.order_id)},
                )
            if is_terminal(Lifecycle.AGREEMENT, agreement.status):
                raise BusinessRuleError(
                    f"agreement cannot be attached while {agreement.status}",
                    code="agreement_not_attachable",
                    details={"status": agreement.status},
                )
            self.agreement_repository.conditional_update(
                session,
                agreement,
                expected_status=agreement.status,
                criteria=(RevenueAgreement.order_id.is_(None),),
                values={"order_id": order.id, "updated_by": ctx.user_id},
                operation="attach",
            )
            action = "attach"

        audit.record(
            session,
            tenant_id=agreement.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type="agreement",
            entity_id=str(agreement.id),
            action=action,
            before=None,
            after={"order_id": order.id, "reference": agreement.reference},
            correlation_id=ctx.correlation_id,
        )
        return agreement, action

    def _replay_order(
        self,
        session: Session,
        ctx: AuthContext,
        tenant_id: str,
        key: str | None,
        request_hash: str,
    ) -> OrderRead | None:
        record = self._load_idempotent(session, tenant_id, CONVERT_OPERATION, key, request_hash)
        if record is None:
            return None
        order = self.order_repository.get(session, ctx, record.resource_id, include_deleted=True)
        observe_conversion("quote_to_order", "replayed")
        logger.info(
            "quote.convert_replayed",
            extra={"entity_type": "order", "entity_id": str(order.id), "idempotency_key": key, "replayed": True},
        )
        return order_service.to_order_read(order)

    @staticmethod
    def _expected_row_version(entity: Any, payload: NewVersionRequest | None) -> int:
        if payload is None or payload.row_version is None:
            return entity.row_version
        if payload.row_version != entity.row_version:
            raise ConflictError(
                "entity has been modified since it was read",
                code="stale_row_version",
                details={"expected": payload.row_version, "actual": entity.row_version},
            )
        return payload.row_version

    @staticmethod
    def _version_collision(
        session: Session,
        repository: RevenueQuoteRepository | RevenueAgreementRepository,
        parent_id: uuid.UUID,
        exc: IntegrityError,
    ) -> ConflictError:
        if repository.child_of(session, parent_id) is None:
            return repository.integrity_conflict(session, exc, "new_version")
        observe_conflict(repository.resource, "new_version")
        return ConflictError(
            f"{repository.resource} already has a newer version",
            code="version_conflict",
            details={f"{repository.resource}_id": str(parent_id)},
        )

    @staticmethod
    def _audit_versioning(
        session: Session,
        ctx: AuthContext,
        entity_type: str,
        parent: Any,
        child: Any,
        previous_status: str,
    ) -> None:
        audit.record(
            session,
            tenant_id=parent.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=entity_type,
            entity_id=str(parent.id),
            action="status.superseded",
            before={"status": previous_status},
            after={"status": "superseded", "superseded_by": child.id},
            correlation_id=ctx.correlation_id,
        )
        audit.record(
            session,
            tenant_id=child.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=entity_type,
            entity_id=str(child.id),
            action="create_version",
            before=None,
            after={"reference": child.reference, "version": child.version, "supersedes_id": parent.id},
            correlation_id=ctx.correlation_id,
        )

    @staticmethod
    def _log_versioning(entity_type: str, parent: Any, child: Any, previous_status: str) -> None:
        observe_status_transition(entity_type, previous_status, "superseded")
        logger.info(
            f"{entity_type}.versioned",
            extra={
                "entity_type": entity_type,
                "entity_id": str(child.id),
                "reference": child.reference,
                "from_status": previous_status,
                "to_status": "superseded",
            },
        )

    @staticmethod
    def _request_hash(payload: dict[str, Any]) -> str:
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()

    @staticmethod
    def _load_idempotent(
        session: Session,
        tenant_id: str,
        operation: str,
        key: str | None,
        request_hash: str,
    ) -> RevenueIdempotencyKey | None:
        if not key:
            return None
        record = session.scalar(
            select(RevenueIdempotencyKey).where(
                RevenueIdempotencyKey.tenant_id == tenant_id,
                RevenueIdempotencyKey.operation == operation,
                RevenueIdempotencyKey.key == key,
            )
        )
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise ConflictError(
                "idempotency key was already used with a different request",
                code="idempotency_key_mismatch",
                details={"idempotency_key": key},
            )
        return record

    @staticmethod
    def _store_idempotent(
        session: Session,
        tenant_id: str,
        operation: str,
        key: str | None,
        request_hash: str,
        resource_type: str,
        resource_id: uuid.UUID,
    ) -> None:
        if not key:
            return
        session.add(
            RevenueIdempotencyKey(
                tenant_id=tenant_id,
                operation=operation,
                key=key,
                request_hash=request_hash,
                resource_type=resource_type,
                resource_id=resource_id,
            )
        )

    @staticmethod
    def _add_months(base_date: date, months: int) -> date:
        month_index = base_date.month - 1 + months
        year = base_date.year + (month_index // 12)
        month = month_index % 12 + 1
        day = min(base_date.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)


conversion_service = ConversionService()
