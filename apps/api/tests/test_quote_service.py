from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.revenue.conversion_service import ConversionService
from app.business.revenue.models import RevenueQuote
from app.business.revenue.quote_service import QuoteService
from app.business.revenue.schemas import (
    PublicQuoteAcceptRequest,
    QuoteAcceptRequest,
    QuoteCreate,
    QuoteItemCreate,
    QuoteItemUpdate,
    QuoteRejectRequest,
    QuoteUpdate,
)
from app.core.database import Base
from app.models.audit import AuditLog
from app.platform.errors import BusinessRuleError, ConflictError, ExpiredError, NotFoundError, ValidationError
from app.platform.security.context import AuthContext


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def service() -> QuoteService:
    return QuoteService()


def _ctx(tenant_id: str | None = "tenant-a") -> AuthContext:
    return AuthContext(user_id="rev-user", tenant_id=tenant_id, correlation_id="corr-quote-1")


def _plan(**overrides) -> QuoteItemCreate:  # type: ignore[no-untyped-def]
    data = {"name": "Platform licence", "catalog_item_id": uuid.uuid4(), "unit_price": Decimal("100"), "quantity": 2}
    data.update(overrides)
    return QuoteItemCreate(**data)


def _support() -> QuoteItemCreate:
    return QuoteItemCreate(
        item_type="addon",
        name="Premium support",
        catalog_item_id=uuid.uuid4(),
        unit_price=Decimal("50"),
        recurrence="recurring",
        billing_interval="month",
    )


def _reference_quote(session: Session, service: QuoteService):  # type: ignore[no-untyped-def]
    return service.create_quote(
        session,
        _ctx(),
        QuoteCreate(
            tax_rate=Decimal("20"),
            valid_until=date.today() + timedelta(days=30),
            items=[_plan(), _support()],
        ),
    )


def _audit_actions(session: Session, entity_id: uuid.UUID) -> list[str]:
    rows = session.scalars(
        select(AuditLog).where(AuditLog.entity_id == str(entity_id)).order_by(AuditLog.id)
    ).all()
    return [row.action for row in rows]


def test_create_quote_computes_totals_and_identity(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)

    assert quote.status == "draft"
    assert quote.reference == f"QOT-{date.today().year}-00001"
    assert len(quote.public_token) == 64
    assert quote.version == 1
    assert quote.subtotal == Decimal("250.00")
    assert quote.tax_amount == Decimal("50.00")
    assert quote.total_value == Decimal("300.00")
    assert quote.monthly_recurring_value == Decimal("50.00")
    assert quote.annual_recurring_value == Decimal("600.00")
    assert [item.sort_order for item in quote.items] == [0, 1]
    assert quote.order is None
    assert _audit_actions(db_session, quote.id) == ["create"]

    entry = db_session.scalar(select(AuditLog).where(AuditLog.entity_id == str(quote.id)))
    assert entry is not None
    assert entry.correlation_id == "corr-quote-1"
    assert entry.event_metadata["after"]["total_value"] == "300.00"


def test_references_are_sequential_per_tenant(db_session: Session, service: QuoteService) -> None:
    first = service.create_quote(db_session, _ctx(), QuoteCreate())
    second = service.create_quote(db_session, _ctx(), QuoteCreate())
    other = service.create_quote(db_session, _ctx("tenant-b"), QuoteCreate())

    year = date.today().year
    assert first.reference == f"QOT-{year}-00001"
    assert second.reference == f"QOT-{year}-00002"
    assert other.reference == f"QOT-{year}-00001"


def test_create_requires_tenant_and_future_validity(db_session: Session, service: QuoteService) -> None:
    with pytest.raises(ValidationError) as missing_tenant:
        service.create_quote(db_session, _ctx(None), QuoteCreate())
    assert missing_tenant.value.code == "tenant_required"

    with pytest.raises(ValidationError) as past:
        service.create_quote(db_session, _ctx(), QuoteCreate(valid_until=date.today()))
    assert past.value.code == "invalid_valid_until"


def test_item_mutations_recompute_totals(db_session: Session, service: QuoteService) -> None:
    quote = service.create_quote(db_session, _ctx(), QuoteCreate(tax_rate=Decimal("10")))
    assert quote.total_value == Decimal("0.00")

    quote = service.add_item(db_session, _ctx(), quote.id, _plan())
    assert quote.subtotal == Decimal("200.00")
    assert quote.total_value == Decimal("220.00")
    item_id = quote.items[0].id

    quote = service.update_item(db_session, _ctx(), quote.id, item_id, QuoteItemUpdate(quantity=3))
    assert quote.items[0].line_total == Decimal("300.00")
    assert quote.total_value == Decimal("330.00")

    quote = service.update_item(
        db_session,
        _ctx(),
        quote.id,
        item_id,
        QuoteItemUpdate(discount_type="percentage", discount_value=Decimal("10")),
    )
    assert quote.items[0].discount_amount == Decimal("30.00")
    assert quote.subtotal == Decimal("270.00")

    quote = service.remove_item(db_session, _ctx(), quote.id, item_id)
    assert quote.items == []
    assert quote.total_value == Decimal("0.00")
    assert _audit_actions(db_session, quote.id) == ["create", "item.add", "item.update", "item.update", "item.remove"]


def test_update_item_rejects_invalid_merge(db_session: Session, service: QuoteService) -> None:
    quote = service.create_quote(db_session, _ctx(), QuoteCreate(items=[_plan()]))

    with pytest.raises(ValidationError) as exc_info:
        service.update_item(
            db_session,
            _ctx(),
            quote.id,
            quote.items[0].id,
            QuoteItemUpdate(billing_interval="year"),
        )
    assert exc_info.value.code == "invalid_item"

    with pytest.raises(NotFoundError):
        service.update_item(db_session, _ctx(), quote.id, uuid.uuid4(), QuoteItemUpdate(quantity=2))


def test_switching_item_to_one_time_clears_interval(db_session: Session, service: QuoteService) -> None:
    quote = service.create_quote(db_session, _ctx(), QuoteCreate(items=[_support()]))
    assert quote.monthly_recurring_value == Decimal("50.00")

    quote = service.update_item(
        db_session,
        _ctx(),
        quote.id,
        quote.items[0].id,
        QuoteItemUpdate(recurrence="one_time"),
    )
    assert quote.items[0].billing_interval is None
    assert quote.monthly_recurring_value == Decimal("0.00")


def test_update_quote_is_row_version_guarded(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)

    with pytest.raises(ConflictError) as exc_info:
        service.update_quote(db_session, _ctx(), quote.id, QuoteUpdate(row_version=quote.row_version + 1))
    assert exc_info.value.code == "stale_row_version"

    updated = service.update_quote(
        db_session,
        _ctx(),
        quote.id,
        QuoteUpdate(row_version=quote.row_version, tax_rate=Decimal("0"), notes="no tax"),
    )
    assert updated.row_version == quote.row_version + 1
    assert updated.total_value == Decimal("250.00")
    assert updated.notes == "no tax"


def test_update_quote_rejects_half_a_discount(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)

    with pytest.raises(ValidationError) as exc_info:
        service.update_quote(
            db_session,
            _ctx(),
            quote.id,
            QuoteUpdate(row_version=quote.row_version, discount_type="percentage"),
        )
    assert exc_info.value.code == "invalid_discount"


def test_send_quote_preconditions(db_session: Session, service: QuoteService) -> None:
    empty = service.create_quote(db_session, _ctx(), QuoteCreate(valid_until=date.today() + timedelta(days=5)))
    with pytest.raises(BusinessRuleError) as no_items:
        service.send_quote(db_session, _ctx(), empty.id)
    assert no_items.value.code == "quote_has_no_items"

    undated = service.create_quote(db_session, _ctx(), QuoteCreate(items=[_plan()]))
    with pytest.raises(ValidationError) as no_validity:
        service.send_quote(db_session, _ctx(), undated.id)
    assert no_validity.value.code == "invalid_valid_until"

    assert service.get_quote(db_session, _ctx(), empty.id).status == "draft"


def test_send_quote_stamps_and_notifies(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    sent = service.send_quote(db_session, _ctx(), quote.id)

    assert sent.status == "sent"
    assert sent.sent_at is not None
    notifications = [item for item in events.published_events if item["event_type"] == "quote.sent"]
    assert len(notifications) == 1
    assert notifications[0]["payload"]["public_url"].endswith(f"/public/quotes/{quote.public_token}")
    assert notifications[0]["tenant_id"] == "tenant-a"

    with pytest.raises(BusinessRuleError) as exc_info:
        service.send_quote(db_session, _ctx(), quote.id)
    assert exc_info.value.code == "invalid_status_transition"


def test_sent_quote_is_no_longer_editable(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), quote.id)

    with pytest.raises(BusinessRuleError) as exc_info:
        service.add_item(db_session, _ctx(), quote.id, _plan())
    assert exc_info.value.code == "quote_not_editable"


def test_accept_twice_fails(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), quote.id)

    accepted = service.accept_quote(db_session, _ctx(), quote.id, QuoteAcceptRequest(signature="J. Buyer"))
    assert accepted.status == "accepted"
    assert accepted.accepted_by == "rev-user"

    with pytest.raises(BusinessRuleError):
        service.accept_quote(db_session, _ctx(), quote.id, QuoteAcceptRequest())
    assert service.get_quote(db_session, _ctx(), quote.id).status == "accepted"


def test_reject_requires_reason(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), quote.id)

    with pytest.raises(ValidationError) as exc_info:
        service.reject_quote(db_session, _ctx(), quote.id, QuoteRejectRequest(reason="   "))
    assert exc_info.value.code == "reason_required"

    rejected = service.reject_quote(db_session, _ctx(), quote.id, QuoteRejectRequest(reason="Budget cut"))
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "Budget cut"
    assert [item["event_type"] for item in events.published_events][-1] == "quote.rejected"


def test_accept_past_validity_is_expired(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), quote.id)
    db_session.execute(
        update(RevenueQuote)
        .where(RevenueQuote.id == quote.id)
        .values(valid_until=date.today() - timedelta(days=1))
    )
    db_session.commit()

    with pytest.raises(ExpiredError) as exc_info:
        service.accept_quote(db_session, _ctx(), quote.id, QuoteAcceptRequest())
    assert exc_info.value.code == "quote_expired"


def test_view_by_token_marks_viewed_once(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), quote.id)

    first = service.view_by_token(db_session, quote.public_token, client_ip="203.0.113.9")
    assert first.status == "viewed"
    assert first.reference == quote.reference
    assert first.total_value == Decimal("300.00")

    second = service.view_by_token(db_session, quote.public_token)
    assert second.status == "viewed"

    stored = service.get_quote(db_session, _ctx(), quote.id)
    assert stored.view_count == 2
    assert stored.first_viewed_at is not None
    assert stored.last_viewed_at >= stored.first_viewed_at
    assert _audit_actions(db_session, quote.id).count("view") == 2


def test_accept_by_token_records_counterparty(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), quote.id)

    public = service.accept_by_token(
        db_session,
        quote.public_token,
        PublicQuoteAcceptRequest(accepted_by="Jane Client", signature="JC"),
        client_ip="198.51.100.7",
    )
    assert public.status == "accepted"
    assert public.accepted_at is not None

    entry = db_session.scalar(
        select(AuditLog).where(AuditLog.entity_id == str(quote.id), AuditLog.action == "status.accepted")
    )
    assert entry is not None
    assert entry.actor_id == "public:Jane Client"
    assert entry.event_metadata["after"]["client_ip"] == "198.51.100.7"


def test_list_quotes_filters_and_pages(db_session: Session, service: QuoteService) -> None:
    usd = _reference_quote(db_session, service)
    eur = service.create_quote(db_session, _ctx(), QuoteCreate(currency="EUR", items=[_plan()]))
    service.create_quote(db_session, _ctx("tenant-b"), QuoteCreate())

    page = service.list_quotes(db_session, _ctx())
    assert page.total == 2

    by_currency = service.list_quotes(db_session, _ctx(), currency="eur")
    assert [item.id for item in by_currency.items] == [eur.id]

    by_reference = service.list_quotes(db_session, _ctx(), search=usd.reference)
    assert [item.id for item in by_reference.items] == [usd.id]

    assert service.list_quotes(db_session, _ctx(), converted=True).total == 0
    assert service.list_quotes(db_session, _ctx(), converted=False).total == 2

    ordered = service.list_quotes(db_session, _ctx(), sort_by="total_value", direction="asc")
    assert [item.id for item in ordered.items] == [eur.id, usd.id]

    second_page = service.list_quotes(db_session, _ctx(), limit=1, page=2)
    assert second_page.total == 2
    assert len(second_page.items) == 1

    with pytest.raises(ValidationError):
        service.list_quotes(db_session, _ctx(), limit=101)


def test_soft_delete_rules(db_session: Session, service: QuoteService) -> None:
    draft = service.create_quote(db_session, _ctx(), QuoteCreate())
    service.soft_delete_quote(db_session, _ctx(), draft.id, reason="duplicate")

    with pytest.raises(NotFoundError):
        service.get_quote(db_session, _ctx(), draft.id)
    stored = db_session.get(RevenueQuote, draft.id)
    assert stored is not None
    assert stored.deletion_reason == "duplicate"
    assert stored.deleted_by == "rev-user"

    accepted = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), accepted.id)
    service.accept_quote(db_session, _ctx(), accepted.id, QuoteAcceptRequest())
    with pytest.raises(BusinessRuleError) as exc_info:
        service.soft_delete_quote(db_session, _ctx(), accepted.id)
    assert exc_info.value.code == "quote_not_deletable"


def test_other_tenants_cannot_see_quote(db_session: Session, service: QuoteService) -> None:
    quote = _reference_quote(db_session, service)

    with pytest.raises(NotFoundError):
        service.get_quote(db_session, _ctx("tenant-b"), quote.id)
    with pytest.raises(NotFoundError):
        service.send_quote(db_session, _ctx("tenant-b"), quote.id)


def test_lookup_by_reference_and_latest_version(db_session: Session, service: QuoteService) -> None:
    opportunity_id = uuid.uuid4()
    first = service.create_quote(db_session, _ctx(), QuoteCreate(opportunity_id=opportunity_id, items=[_plan()]))
    service.create_quote(db_session, _ctx(), QuoteCreate(opportunity_id=uuid.uuid4()))

    found = service.get_quote_by_reference(db_session, _ctx(), first.reference.lower())
    assert found.id == first.id
    with pytest.raises(NotFoundError):
        service.get_quote_by_reference(db_session, _ctx("tenant-b"), first.reference)

    assert service.get_latest_version(db_session, _ctx(), opportunity_id).id == first.id
    second = ConversionService().create_quote_version(db_session, _ctx(), first.id)
    latest = service.get_latest_version(db_session, _ctx(), opportunity_id)
    assert latest.id == second.id
    assert latest.version == 2

    with pytest.raises(NotFoundError):
        service.get_latest_version(db_session, _ctx(), uuid.uuid4())


def test_expiring_soon_lists_open_quotes_in_window(db_session: Session, service: QuoteService) -> None:
    def sent_quote(days: int):  # type: ignore[no-untyped-def]
        quote = service.create_quote(
            db_session, _ctx(), QuoteCreate(valid_until=date.today() + timedelta(days=days), items=[_plan()])
        )
        return service.send_quote(db_session, _ctx(), quote.id)

    later = sent_quote(20)
    soon = sent_quote(3)
    service.create_quote(db_session, _ctx(), QuoteCreate(valid_until=date.today() + timedelta(days=2)))

    assert [item.id for item in service.list_expiring_soon(db_session, _ctx(), days=7)] == [soon.id]
    assert [item.id for item in service.list_expiring_soon(db_session, _ctx(), days=30)] == [soon.id, later.id]
    assert service.list_expiring_soon(db_session, _ctx("tenant-b"), days=30) == []

    with pytest.raises(ValidationError):
        service.list_expiring_soon(db_session, _ctx(), days=-1)


def test_count_by_status_skips_deleted_and_foreign_quotes(db_session: Session, service: QuoteService) -> None:
    sent = _reference_quote(db_session, service)
    service.send_quote(db_session, _ctx(), sent.id)
    service.create_quote(db_session, _ctx(), QuoteCreate())
    removed = service.create_quote(db_session, _ctx(), QuoteCreate())
    service.soft_delete_quote(db_session, _ctx(), removed.id)
    service.create_quote(db_session, _ctx("tenant-b"), QuoteCreate())

    breakdown = service.count_by_status(db_session, _ctx())
    assert breakdown.by_status == {"draft": 1, "sent": 1}
    assert breakdown.total == 2
