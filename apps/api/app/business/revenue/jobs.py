from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit
from app.business.revenue.models import RevenueAgreement, RevenueQuote, as_utc, utcnow
from app.business.revenue.notifications import notify, public_url
from app.business.revenue.repository import RevenueAgreementRepository, RevenueQuoteRepository
from app.business.revenue.transitions import (
    AGREEMENT_IN_FORCE_STATUSES,
    QUOTE_ACTIONABLE_STATUSES,
    AgreementStatus,
    QuoteStatus,
)
from app.core.config import get_settings
from app.metrics import observe_expiry_sweep, observe_signature_reminders, observe_status_transition
from app.platform.security.context import SYSTEM_ACTOR


logger = logging.getLogger("app.revenue.jobs")


@dataclass(slots=True)
class SweepResult:
    entity_type: str
    as_of: date
    expired: int = 0
    skipped: int = 0
    expired_ids: list[uuid.UUID] = field(default_factory=list)


class ExpirySweeper:
    """Moves overdue quotes and agreements to ``expired``.

    Each row is expired through a conditional update, so a row that changed
    status after it was selected is skipped rather than overwritten. Running
    the sweep twice, or on two workers at once, expires every row once.
    """

    def __init__(self, *, batch_size: int | None = None, today: Callable[[], date] = date.today) -> None:
        self.batch_size = batch_size or get_settings().expiry_sweep_batch_size
        self._today = today
        self.quote_repository = RevenueQuoteRepository()
        self.agreement_repository = RevenueAgreementRepository()

    def expire_overdue_quotes(self, session: Session, *, as_of: date | None = None) -> SweepResult:
        as_of = as_of or self._today()
        candidates = session.scalars(
            select(RevenueQuote)
            .where(
                RevenueQuote.status.in_(QUOTE_ACTIONABLE_STATUSES),
                RevenueQuote.valid_until.is_not(None),
                RevenueQuote.valid_until < as_of,
                RevenueQuote.deleted_at.is_(None),
            )
            .order_by(RevenueQuote.valid_until, RevenueQuote.id)
            .limit(self.batch_size)
        ).all()

        result = self._sweep(
            session,
            "quote",
            list(candidates),
            self.quote_repository,
            expected=QUOTE_ACTIONABLE_STATUSES,
            target=QuoteStatus.EXPIRED,
            criteria=(RevenueQuote.valid_until < as_of,),
            as_of=as_of,
        )
        for quote in candidates:
            if quote.id in result.expired_ids:
                notify("quote.expired", quote, "quote", valid_until=quote.valid_until.isoformat())
        return result

    def expire_overdue_agreements(self, session: Session, *, as_of: date | None = None) -> SweepResult:
        as_of = as_of or self._today()
        candidates = session.scalars(
            select(RevenueAgreement)
            .where(
                RevenueAgreement.status.in_(AGREEMENT_IN_FORCE_STATUSES),
                RevenueAgreement.expiry_date.is_not(None),
                RevenueAgreement.expiry_date < as_of,
                RevenueAgreement.deleted_at.is_(None),
            )
            .order_by(RevenueAgreement.expiry_date, RevenueAgreement.id)
            .limit(self.batch_size)
        ).all()

        return self._sweep(
            session,
            "agreement",
            list(candidates),
            self.agreement_repository,
            expected=AGREEMENT_IN_FORCE_STATUSES,
            target=AgreementStatus.EXPIRED,
            criteria=(RevenueAgreement.expiry_date < as_of,),
            as_of=as_of,
        )

    def _sweep(
        self,
        session: Session,
        entity_type: str,
        candidates: list[Any],
        repository: Any,
        *,
        expected: frozenset[str],
        target: str,
        criteria: tuple[Any, ...],
        as_of: date,
    ) -> SweepResult:
        started = time.perf_counter()
        result = SweepResult(entity_type=entity_type, as_of=as_of)
        transitions: list[str] = []
        try:
            for entity in candidates:
                previous = entity.status
                applied = repository.try_update(
                    session,
                    entity,
                    expected_status=expected,
                    values={"status": target, "expired_at": utcnow(), "updated_by": SYSTEM_ACTOR},
                    criteria=criteria,
                )
                if not applied:
                    result.skipped += 1
                    continue
                result.expired += 1
                result.expired_ids.append(entity.id)
                transitions.append(previous)
                audit.record(
                    session,
                    tenant_id=entity.tenant_id,
                    actor_user_id=SYSTEM_ACTOR,
                    entity_type=entity_type,
                    entity_id=str(entity.id),
                    action=f"status.{target}",
                    before={"status": previous},
                    after={"status": target, "as_of": as_of},
                )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("expiry_sweep.failed", extra={"entity_type": entity_type})
            raise

        for previous in transitions:
            observe_status_transition(entity_type, previous, target)
        observe_expiry_sweep(entity_type, result.expired, result.skipped, time.perf_counter() - started)
        logger.info(
            "expiry_sweep.completed",
            extra={"entity_type": entity_type, "expired_count": result.expired, "skipped_count": result.skipped},
        )
        return result


expiry_sweeper = ExpirySweeper()


@dataclass(slots=True)
class ReminderResult:
    days_threshold: int
    reminded: int = 0
    agreement_ids: list[uuid.UUID] = field(default_factory=list)


class SignatureReminder:
    """Nudges the client on agreements left in ``pending_signature``.

    Nothing is written: a reminder is a notification, so every run reminds
    again until the agreement leaves that status.
    """

    def __init__(self, *, batch_size: int | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.batch_size = batch_size or get_settings().expiry_sweep_batch_size
        self._clock = clock
        self.agreement_repository = RevenueAgreementRepository()

    def send_reminders(
        self,
        session: Session,
        *,
        days_threshold: int | None = None,
        tenant_id: str | None = None,
    ) -> ReminderResult:
        if days_threshold is None:
            days_threshold = get_settings().signature_reminder_days
        now = self._clock()
        pending = self.agreement_repository.awaiting_signature_since(
            session,
            sent_before=now - timedelta(days=days_threshold),
            tenant_id=tenant_id,
            limit=self.batch_size,
        )

        result = ReminderResult(days_threshold=days_threshold)
        for agreement in pending:
            notify(
                "agreement.signature_reminder",
                agreement,
                "agreement",
                public_url=public_url("agreements", agreement.public_token),
                client_signatory_email=agreement.client_signatory_email,
                days_pending=(now - as_utc(agreement.sent_for_signature_at)).days,
            )
            result.reminded += 1
            result.agreement_ids.append(agreement.id)

        observe_signature_reminders(result.reminded)
        logger.info(
            "signature_reminder.completed",
            extra={"reminded_count": result.reminded, "days_threshold": days_threshold, "tenant_id": tenant_id},
        )
        return result


signature_reminder = SignatureReminder()
