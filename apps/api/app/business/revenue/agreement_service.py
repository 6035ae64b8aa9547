from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from app import audit
from app.business.revenue.jobs import SignatureReminder, signature_reminder
from app.business.revenue.models import RevenueAgreement, RevenueOrder, as_utc, utcnow
from app.business.revenue.notifications import notify, public_url
from app.business.revenue.repository import RevenueAgreementRepository, RevenueOrderRepository
from app.business.revenue.schemas import (
    AgreementBatchRequest,
    AgreementCreate,
    AgreementPage,
    AgreementRead,
    AgreementStats,
    AgreementUpdate,
    ClientSignatureRequest,
    ProviderSignatureRequest,
    PublicAgreementRead,
    PublicSignatureRequest,
    SignatureReminderResult,
    TerminateRequest,
)
from app.business.revenue.tokens import TokenAuthority, issue_token, token_authority
from app.business.revenue.transitions import (
    AGREEMENT_DELETABLE_STATUSES,
    AGREEMENT_EDITABLE_STATUSES,
    AgreementStatus,
    Lifecycle,
    OrderStatus,
    ensure_transition,
)
from app.metrics import observe_status_transition
from app.platform.errors import BusinessRuleError, ConflictError, NotFoundError, ValidationError
from app.platform.security.context import AuthContext


logger = logging.getLogger("app.revenue.agreements")

ENTITY = "agreement"
MAX_PAGE_SIZE = 100
SECONDS_PER_DAY = 86_400

DEFAULT_TITLES = {
    "msa": "Master Services Agreement",
    "sla": "Service Level Agreement",
    "dpa": "Data Processing Agreement",
    "nda": "Non-Disclosure Agreement",
    "sow": "Statement of Work",
    "addendum": "Addendum",
    "other": "Agreement",
}


@dataclass(slots=True)
class AgreementService:
    agreement_repository: RevenueAgreementRepository = RevenueAgreementRepository()
    order_repository: RevenueOrderRepository = RevenueOrderRepository()
    tokens: TokenAuthority = token_authority
    reminder: SignatureReminder = signature_reminder

    def create_agreement(self, session: Session, ctx: AuthContext, payload: AgreementCreate) -> AgreementRead:
        ctx.require_tenant()
        order = None
        if payload.order_id is not None:
            order = self.order_repository.get(session, ctx, payload.order_id)
            self.ensure_order_accepts_agreements(order)

        agreement = self.new_agreement(
            session,
            ctx,
            order=order,
            agreement_type=payload.agreement_type,
            title=payload.title,
            terms=payload.terms,
            effective_date=payload.effective_date,
            expiry_date=payload.expiry_date,
        )
        agreement.notes = payload.notes
        self.agreement_repository.flush(session)
        self._audit(
            session,
            ctx,
            agreement,
            "create",
            before=None,
            after={"reference": agreement.reference, "order_id": agreement.order_id},
        )
        self.agreement_repository.commit(session)
        session.refresh(agreement)
        logger.info(
            "agreement.created",
            extra={"entity_type": ENTITY, "entity_id": str(agreement.id), "reference": agreement.reference},
        )
        return self.to_agreement_read(agreement)

    def new_agreement(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        order: RevenueOrder | None,
        agreement_type: str,
        title: str | None,
        terms: str | None,
        effective_date: date | None,
        expiry_date: date | None,
    ) -> RevenueAgreement:
        """Stage a draft agreement in the session without committing it."""
        tenant_id = ctx.require_tenant()
        agreement = RevenueAgreement(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            reference=self.agreement_repository.next_reference(session, tenant_id),
            order_id=order.id if order is not None else None,
            agreement_type=agreement_type,
            status=AgreementStatus.DRAFT,
            title=title or DEFAULT_TITLES.get(agreement_type, "Agreement"),
            effective_date=effective_date,
            expiry_date=expiry_date,
            version=1,
            public_token=issue_token(),
            terms=terms,
            created_by=ctx.user_id,
        )
        session.add(agreement)
        return agreement

    def get_agreement(self, session: Session, ctx: AuthContext, agreement_id: uuid.UUID) -> AgreementRead:
        return self.to_agreement_read(self.agreement_repository.get(session, ctx, agreement_id))

    def list_agreements(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: str | None = None,
        agreement_type: str | None = None,
        order_id: uuid.UUID | None = None,
        sort_by: str = "created_at",
        direction: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> AgreementPage:
        if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}", code="invalid_page")

        filters: list[Any] = []
        if status is not None:
            filters.append(RevenueAgreement.status == status)
        if agreement_type is not None:
            filters.append(RevenueAgreement.agreement_type == agreement_type)
        if order_id is not None:
            filters.append(RevenueAgreement.order_id == order_id)

        rows, total = self.agreement_repository.list_page(
            session,
            ctx,
            filters=filters,
            sort_by=sort_by,
            direction=direction,
            page=page,
            limit=limit,
        )
        return AgreementPage(items=[self.to_agreement_read(row) for row in rows], total=total, page=page, limit=limit)

    def list_versions(self, session: Session, ctx: AuthContext, agreement_id: uuid.UUID) -> list[AgreementRead]:
        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        return [self.to_agreement_read(item) for item in self.agreement_repository.lineage(session, agreement)]

    def create_agreements_for_order(
        self, session: Session, ctx: AuthContext, order_id: uuid.UUID, payload: AgreementBatchRequest
    ) -> list[AgreementRead]:
        """Draft one agreement per requested type, each carrying the order's term dates."""
        order = self.order_repository.get(session, ctx, order_id)
        self.ensure_order_accepts_agreements(order)

        agreements = [
            self.new_agreement(
                session,
                ctx,
                order=order,
                agreement_type=agreement_type,
                title=None,
                terms=None,
                effective_date=order.effective_date,
                expiry_date=order.expiry_date,
            )
            for agreement_type in payload.agreement_types
        ]
        self.agreement_repository.flush(session)
        for agreement in agreements:
            self._audit(
                session,
                ctx,
                agreement,
                "create",
                before=None,
                after={"reference": agreement.reference, "order_id": order.id},
            )
        self.agreement_repository.commit(session)
        for agreement in agreements:
            session.refresh(agreement)
        logger.info(
            "agreement.batch_created",
            extra={
                "entity_type": ENTITY,
                "order_id": str(order.id),
                "agreement_types": list(payload.agreement_types),
            },
        )
        return [self.to_agreement_read(agreement) for agreement in agreements]

    def get_agreement_by_reference(self, session: Session, ctx: AuthContext, reference: str) -> AgreementRead:
        agreement = self.agreement_repository.find_by_reference(session, ctx, reference.strip().upper())
        if agreement is None:
            raise NotFoundError("agreement not found")
        return self.to_agreement_read(agreement)

    def list_expiring_soon(
        self, session: Session, ctx: AuthContext, *, days: int = 30, today: date | None = None
    ) -> list[AgreementRead]:
        if days < 0:
            raise ValidationError("days cannot be negative", code="invalid_window")
        rows = self.agreement_repository.expiring_within(session, ctx, today=today or date.today(), days=days)
        return [self.to_agreement_read(row) for row in rows]

    def count_by_status(self, session: Session, ctx: AuthContext) -> dict[str, int]:
        return self.agreement_repository.count_by(session, ctx, "status")

    def count_by_type(self, session: Session, ctx: AuthContext) -> dict[str, int]:
        return self.agreement_repository.count_by(session, ctx, "agreement_type")

    def average_time_to_signature(self, session: Session, ctx: AuthContext) -> float | None:
        """Mean days between sending for signature and the client signing, or None before any signature."""
        durations = [
            (as_utc(row.client_signed_at) - as_utc(row.sent_for_signature_at)).total_seconds()
            for row in self.agreement_repository.signed_after_sending(session, ctx)
        ]
        if not durations:
            return None
        return round(sum(durations) / len(durations) / SECONDS_PER_DAY, 2)

    def stats(self, session: Session, ctx: AuthContext) -> AgreementStats:
        by_status = self.count_by_status(session, ctx)
        return AgreementStats(
            by_status=by_status,
            by_type=self.count_by_type(session, ctx),
            total=sum(by_status.values()),
            average_days_to_signature=self.average_time_to_signature(session, ctx),
        )

    def send_signature_reminders(
        self, session: Session, ctx: AuthContext, *, days_threshold: int | None = None
    ) -> SignatureReminderResult:
        if days_threshold is not None and days_threshold < 0:
            raise ValidationError("days cannot be negative", code="invalid_window")
        result = self.reminder.send_reminders(session, days_threshold=days_threshold, tenant_id=ctx.require_tenant())
        return SignatureReminderResult(
            days_threshold=result.days_threshold,
            reminded=result.reminded,
            agreement_ids=result.agreement_ids,
        )

    def update_agreement(
        self,
        session: Session,
        ctx: AuthContext,
        agreement_id: uuid.UUID,
        payload: AgreementUpdate,
    ) -> AgreementRead:
        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        if agreement.status not in AGREEMENT_EDITABLE_STATUSES:
            raise BusinessRuleError(
                f"agreement cannot be edited while {agreement.status}",
                code="agreement_not_editable",
                details={"status": agreement.status},
            )
        if agreement.row_version != payload.row_version:
            raise ConflictError(
                "agreement has been modified since it was read",
                code="stale_row_version",
                details={"expected": payload.row_version, "actual": agreement.row_version},
            )

        changes = payload.model_dump(mode="python", exclude_unset=True, exclude={"row_version"})
        if not changes:
            return self.to_agreement_read(agreement)
        for field in ("agreement_type", "title"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be cleared", code="invalid_field")
        self._check_dates(
            changes.get("effective_date", agreement.effective_date),
            changes.get("expiry_date", agreement.expiry_date),
        )

        before = {field: getattr(agreement, field) for field in changes}
        self.agreement_repository.conditional_update(
            session,
            agreement,
            expected_status=AgreementStatus.DRAFT,
            expected_row_version=payload.row_version,
            values={**changes, "updated_by": ctx.user_id},
            operation="update",
        )
        self._audit(session, ctx, agreement, "update", before=before, after=changes)
        self.agreement_repository.commit(session)
        return self.to_agreement_read(agreement)

    def soft_delete_agreement(
        self,
        session: Session,
        ctx: AuthContext,
        agreement_id: uuid.UUID,
        *,
        reason: str | None = None,
    ) -> None:
        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        current = agreement.status
        if current not in AGREEMENT_DELETABLE_STATUSES:
            raise BusinessRuleError(
                f"agreement cannot be deleted while {current}",
                code="agreement_not_deletable",
                details={"status": current},
            )
        self.agreement_repository.conditional_update(
            session,
            agreement,
            expected_status=current,
            values={"deleted_at": utcnow(), "deleted_by": ctx.user_id, "deletion_reason": reason},
            operation="soft_delete",
        )
        self._audit(session, ctx, agreement, "soft_delete", before={"status": current}, after={"reason": reason})
        self.agreement_repository.commit(session)
        logger.info("agreement.deleted", extra={"entity_type": ENTITY, "entity_id": str(agreement_id)})

    def send_for_signature(self, session: Session, ctx: AuthContext, agreement_id: uuid.UUID) -> AgreementRead:
        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        ensure_transition(Lifecycle.AGREEMENT, agreement.status, AgreementStatus.PENDING_SIGNATURE)
        if agreement.effective_date is None:
            raise ValidationError(
                "effective_date must be set before the agreement is sent for signature",
                code="effective_date_required",
            )
        self._check_dates(agreement.effective_date, agreement.expiry_date)

        self._transition(
            session,
            ctx,
            agreement,
            AgreementStatus.PENDING_SIGNATURE,
            values={"sent_for_signature_at": utcnow()},
        )
        notify(
            "agreement.sent_for_signature",
            agreement,
            ENTITY,
            public_url=public_url("agreements", agreement.public_token),
        )
        return self.to_agreement_read(agreement)

    def record_client_signature(
        self,
        session: Session,
        ctx: AuthContext,
        agreement_id: uuid.UUID,
        payload: ClientSignatureRequest,
    ) -> AgreementRead:
        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        block = self._client_block(payload.name, payload.email, payload.title, payload.ip_address)
        self._sign(session, ctx, agreement, "client", block)
        return self.to_agreement_read(agreement)

    def record_provider_signature(
        self,
        session: Session,
        ctx: AuthContext,
        agreement_id: uuid.UUID,
        payload: ProviderSignatureRequest,
    ) -> AgreementRead:
        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        block = {
            "provider_signatory_id": payload.signatory_id or ctx.user_id,
            "provider_signatory_name": payload.name,
            "provider_signatory_title": payload.title,
            "provider_signed_at": utcnow(),
        }
        self._sign(session, ctx, agreement, "provider", block)
        return self.to_agreement_read(agreement)

    def sign_by_token(
        self,
        session: Session,
        token: str,
        payload: PublicSignatureRequest,
        *,
        client_ip: str | None = None,
        correlation_id: str | None = None,
    ) -> PublicAgreementRead:
        agreement = self.tokens.resolve_agreement(session, token, "sign")
        ctx = AuthContext.for_public(
            agreement.tenant_id,
            actor=payload.email,
            correlation_id=correlation_id,
            client_ip=client_ip,
        )
        block = self._client_block(payload.name, payload.email, payload.title, client_ip)
        self._sign(session, ctx, agreement, "client", block)
        return self.to_public_read(agreement)

    def view_by_token(self, session: Session, token: str) -> PublicAgreementRead:
        return self.to_public_read(self.tokens.resolve_agreement(session, token, "view"))

    def terminate_agreement(
        self,
        session: Session,
        ctx: AuthContext,
        agreement_id: uuid.UUID,
        payload: TerminateRequest,
    ) -> AgreementRead:
        reason = payload.reason.strip()
        if not reason:
            raise ValidationError("a termination reason is required", code="reason_required")

        agreement = self.agreement_repository.get(session, ctx, agreement_id)
        ensure_transition(Lifecycle.AGREEMENT, agreement.status, AgreementStatus.TERMINATED)
        self._transition(
            session,
            ctx,
            agreement,
            AgreementStatus.TERMINATED,
            values={"terminated_at": utcnow(), "termination_reason": reason},
            audit_after={"reason": reason},
        )
        notify("agreement.terminated", agreement, ENTITY, reason=reason)
        return self.to_agreement_read(agreement)

    @staticmethod
    def ensure_order_accepts_agreements(order: RevenueOrder) -> None:
        if order.status == OrderStatus.CANCELLED:
            raise BusinessRuleError(
                "agreements cannot be attached to a cancelled order",
                code="order_cancelled",
                details={"order_id": str(order.id)},
            )

    def to_agreement_read(self, agreement: RevenueAgreement) -> AgreementRead:
        payload = {
            "id": agreement.id,
            "tenant_id": agreement.tenant_id,
            "reference": agreement.reference,
            "order_id": agreement.order_id,
            "agreement_type": agreement.agreement_type,
            "status": agreement.status,
            "title": agreement.title,
            "effective_date": agreement.effective_date,
            "expiry_date": agreement.expiry_date,
            "version": agreement.version,
            "supersedes_id": agreement.supersedes_id,
            "public_token": agreement.public_token,
            "terms": agreement.terms,
            "notes": agreement.notes,
            "client_signatory_name": agreement.client_signatory_name,
            "client_signatory_email": agreement.client_signatory_email,
            "client_signatory_title": agreement.client_signatory_title,
            "client_signature_ip": agreement.client_signature_ip,
            "client_signed_at": agreement.client_signed_at,
            "provider_signatory_id": agreement.provider_signatory_id,
            "provider_signatory_name": agreement.provider_signatory_name,
            "provider_signatory_title": agreement.provider_signatory_title,
            "provider_signed_at": agreement.provider_signed_at,
            "sent_for_signature_at": agreement.sent_for_signature_at,
            "activated_at": agreement.activated_at,
            "terminated_at": agreement.terminated_at,
            "termination_reason": agreement.termination_reason,
            "expired_at": agreement.expired_at,
            "superseded_at": agreement.superseded_at,
            "row_version": agreement.row_version,
            "created_by": agreement.created_by,
            "created_at": agreement.created_at,
            "updated_by": agreement.updated_by,
            "updated_at": agreement.updated_at,
            "deleted_at": agreement.deleted_at,
        }
        return AgreementRead.model_validate(payload)

    def to_public_read(self, agreement: RevenueAgreement) -> PublicAgreementRead:
        return PublicAgreementRead.model_validate(
            {
                "reference": agreement.reference,
                "agreement_type": agreement.agreement_type,
                "status": agreement.status,
                "title": agreement.title,
                "effective_date": agreement.effective_date,
                "expiry_date": agreement.expiry_date,
                "version": agreement.version,
                "terms": agreement.terms,
                "client_signed_at": agreement.client_signed_at,
                "provider_signed_at": agreement.provider_signed_at,
                "activated_at": agreement.activated_at,
            }
        )

    def _sign(
        self,
        session: Session,
        ctx: AuthContext,
        agreement: RevenueAgreement,
        party: str,
        block: dict[str, Any],
    ) -> None:
        """Record one party's signature block and activate once both parties have signed.

        A repeated signature by the same party overwrites the earlier block.
        """
        if agreement.status != AgreementStatus.PENDING_SIGNATURE:
            raise BusinessRuleError(
                f"agreement cannot be signed while {agreement.status}",
                code="agreement_not_pending_signature",
                details={"status": agreement.status},
            )
        agreement_id = str(agreement.id)

        self.agreement_repository.conditional_update(
            session,
            agreement,
            expected_status=AgreementStatus.PENDING_SIGNATURE,
            values={**block, "updated_by": ctx.user_id},
            operation=f"signature.{party}",
        )
        self._audit(
            session,
            ctx,
            agreement,
            f"signature.{party}",
            before=None,
            after={key: value for key, value in block.items() if not key.endswith("_at")},
        )

        ensure_transition(Lifecycle.AGREEMENT, AgreementStatus.PENDING_SIGNATURE, AgreementStatus.ACTIVE)
        activated = self.agreement_repository.try_update(
            session,
            agreement,
            expected_status=AgreementStatus.PENDING_SIGNATURE,
            values={"status": AgreementStatus.ACTIVE, "activated_at": utcnow(), "updated_by": ctx.user_id},
            criteria=(
                RevenueAgreement.client_signed_at.is_not(None),
                RevenueAgreement.provider_signed_at.is_not(None),
            ),
        )
        if activated:
            self._audit(
                session,
                ctx,
                agreement,
                f"status.{AgreementStatus.ACTIVE}",
                before={"status": AgreementStatus.PENDING_SIGNATURE},
                after={"status": AgreementStatus.ACTIVE},
            )
        self.agreement_repository.commit(session)
        logger.info("agreement.signed", extra={"entity_type": ENTITY, "entity_id": agreement_id, "action": party})

        if activated:
            observe_status_transition(ENTITY, AgreementStatus.PENDING_SIGNATURE, AgreementStatus.ACTIVE)
            logger.info(
                "agreement.status_changed",
                extra={
                    "entity_type": ENTITY,
                    "entity_id": agreement_id,
                    "from_status": str(AgreementStatus.PENDING_SIGNATURE),
                    "to_status": str(AgreementStatus.ACTIVE),
                },
            )
            notify("agreement.activated", agreement, ENTITY)

    def _transition(
        self,
        session: Session,
        ctx: AuthContext,
        agreement: RevenueAgreement,
        target: AgreementStatus,
        *,
        values: dict[str, Any] | None = None,
        audit_after: dict[str, Any] | None = None,
    ) -> None:
        current = agreement.status
        agreement_id = str(agreement.id)
        self.agreement_repository.conditional_update(
            session,
            agreement,
            expected_status=current,
            values={"status": target, "updated_by": ctx.user_id, **(values or {})},
            operation=f"transition.{target}",
        )
        self._audit(
            session,
            ctx,
            agreement,
            f"status.{target}",
            before={"status": current},
            after={"status": target, **(audit_after or {})},
        )
        self.agreement_repository.commit(session)
        observe_status_transition(ENTITY, current, target)
        logger.info(
            "agreement.status_changed",
            extra={"entity_type": ENTITY, "entity_id": agreement_id, "from_status": current, "to_status": str(target)},
        )

    @staticmethod
    def _client_block(name: str, email: str, title: str | None, ip_address: str | None) -> dict[str, Any]:
        return {
            "client_signatory_name": name,
            "client_signatory_email": email,
            "client_signatory_title": title,
            "client_signature_ip": ip_address,
            "client_signed_at": utcnow(),
        }

    @staticmethod
    def _check_dates(effective: date | None, expiry: date | None) -> None:
        if effective is not None and expiry is not None and expiry < effective:
            raise ValidationError("expiry_date cannot be before effective_date", code="invalid_date_range")

    @staticmethod
    def _audit(
        session: Session,
        ctx: AuthContext,
        agreement: RevenueAgreement,
        action: str,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            session,
            tenant_id=agreement.tenant_id,
            actor_user_id=ctx.user_id,
            entity_type=ENTITY,
            entity_id=str(agreement.id),
            action=action,
            before=before,
            after=after,
            correlation_id=ctx.correlation_id,
        )


agreement_service = AgreementService()
