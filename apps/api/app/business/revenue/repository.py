from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.business.revenue.models import RevenueAgreement, RevenueOrder, RevenueQuote
from app.business.revenue.transitions import QUOTE_ACTIONABLE_STATUSES, AgreementStatus, OrderStatus
from app.platform.security.context import AuthContext
from app.platform.security.repository import BaseRepository


class _LineageRepository(BaseRepository):
    """Repository for entities versioned through a ``supersedes_id`` chain."""

    def lineage(self, session: Session, entity: Any) -> list[Any]:
        """Return every version of ``entity``'s lineage, oldest first, deleted versions excluded."""
        root = entity
        ancestors = {root.id}
        while root.supersedes_id is not None:
            parent = session.get(self.model, root.supersedes_id)
            if parent is None or parent.id in ancestors:
                break
            ancestors.add(parent.id)
            root = parent

        chain = [root]
        visited = {root.id}
        while True:
            child = self.child_of(session, chain[-1].id)
            if child is None or child.id in visited:
                break
            visited.add(child.id)
            chain.append(child)
        return [item for item in chain if item.deleted_at is None]

    def child_of(self, session: Session, parent_id: uuid.UUID) -> Any | None:
        return session.scalar(select(self.model).where(self.model.supersedes_id == parent_id))

    def find_by_reference(self, session: Session, ctx: AuthContext, reference: str) -> Any | None:
        query = self.apply_scope_query(select(self.model), ctx).where(self.model.reference == reference)
        return session.scalar(query)


class RevenueQuoteRepository(_LineageRepository):
    model = RevenueQuote
    resource = "quote"
    reference_prefix = "QOT"

    def expiring_within(self, session: Session, ctx: AuthContext, *, today: date, days: int) -> list[RevenueQuote]:
        """Sent or viewed quotes whose validity ends between ``today`` and ``today + days``."""
        return self.scoped(
            session,
            ctx,
            RevenueQuote.status.in_(QUOTE_ACTIONABLE_STATUSES),
            RevenueQuote.valid_until.is_not(None),
            RevenueQuote.valid_until >= today,
            RevenueQuote.valid_until <= today + timedelta(days=days),
            order_by=(RevenueQuote.valid_until.asc(),),
        )

    def latest_for_opportunity(
        self, session: Session, ctx: AuthContext, opportunity_id: uuid.UUID
    ) -> RevenueQuote | None:
        query = (
            self.apply_scope_query(select(RevenueQuote), ctx)
            .where(RevenueQuote.opportunity_id == opportunity_id)
            .order_by(RevenueQuote.version.desc(), RevenueQuote.created_at.desc())
            .limit(1)
        )
        return session.scalar(query)


class RevenueOrderRepository(BaseRepository):
    model = RevenueOrder
    resource = "order"
    reference_prefix = "ORD"

    def find_by_source_quote(self, session: Session, quote_id: uuid.UUID) -> RevenueOrder | None:
        return session.scalar(select(RevenueOrder).where(RevenueOrder.source_quote_id == quote_id))

    def expiring_within(
        self, session: Session, ctx: AuthContext, *, today: date, days: int, auto_renew: bool | None = None
    ) -> list[RevenueOrder]:
        """Active orders whose term ends between ``today`` and ``today + days``."""
        filters: list[Any] = [
            RevenueOrder.status == OrderStatus.ACTIVE,
            RevenueOrder.expiry_date.is_not(None),
            RevenueOrder.expiry_date >= today,
            RevenueOrder.expiry_date <= today + timedelta(days=days),
        ]
        if auto_renew is not None:
            filters.append(RevenueOrder.auto_renew.is_(auto_renew))
        return self.scoped(session, ctx, *filters, order_by=(RevenueOrder.expiry_date.asc(),))


class RevenueAgreementRepository(_LineageRepository):
    model = RevenueAgreement
    resource = "agreement"
    reference_prefix = "AGR"

    def expiring_within(
        self, session: Session, ctx: AuthContext, *, today: date, days: int
    ) -> list[RevenueAgreement]:
        return self.scoped(
            session,
            ctx,
            RevenueAgreement.status == AgreementStatus.ACTIVE,
            RevenueAgreement.expiry_date.is_not(None),
            RevenueAgreement.expiry_date >= today,
            RevenueAgreement.expiry_date <= today + timedelta(days=days),
            order_by=(RevenueAgreement.expiry_date.asc(),),
        )

    def signed_after_sending(self, session: Session, ctx: AuthContext) -> list[RevenueAgreement]:
        return self.scoped(
            session,
            ctx,
            RevenueAgreement.sent_for_signature_at.is_not(None),
            RevenueAgreement.client_signed_at.is_not(None),
        )

    def awaiting_signature_since(
        self, session: Session, *, sent_before: datetime, tenant_id: str | None = None, limit: int | None = None
    ) -> list[RevenueAgreement]:
        """Pending-signature agreements sent before ``sent_before``, across tenants unless one is given."""
        query = select(RevenueAgreement).where(
            RevenueAgreement.status == AgreementStatus.PENDING_SIGNATURE,
            RevenueAgreement.sent_for_signature_at.is_not(None),
            RevenueAgreement.sent_for_signature_at < sent_before,
            RevenueAgreement.deleted_at.is_(None),
        )
        if tenant_id is not None:
            query = query.where(RevenueAgreement.tenant_id == tenant_id)
        query = query.order_by(RevenueAgreement.sent_for_signature_at, RevenueAgreement.id)
        if limit is not None:
            query = query.limit(limit)
        return list(session.scalars(query).all())
