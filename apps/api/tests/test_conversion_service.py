from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.revenue.agreement_service import AgreementService
from app.business.revenue.conversion_service import ConversionService
from app.business.revenue.models import RevenueAgreement, RevenueOrder
from app.business.revenue.order_service import OrderService
from app.business.revenue.quote_service import QuoteService
from app.business.revenue.schemas import (
    AgreementCreate,
    AttachAgreementRequest,
    ClientSignatureRequest,
    ConvertQuoteRequest,
    NewVersionRequest,
    OrderCreate,
    ProviderSignatureRequest,
    QuoteAcceptRequest,
    QuoteCreate,
    QuoteItemCreate,
)
from app.core.database import Base
from app.platform.errors import BusinessRuleError, ConflictError, NotFoundError
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
def conversion() -> ConversionService:
    return ConversionService()


def _ctx() -> AuthContext:
    return AuthContext(user_id="rev-user", tenant_id="tenant-a", correlation_id="corr-convert-1")


def _quote(session: Session, **overrides):  # type: ignore[no-untyped-def]
    data = {
        "tax_rate": Decimal("20"),
        "valid_until": date.today() + timedelta(days=30),
        "items": [
            QuoteItemCreate(name="Platform licence", unit_price=Decimal("100"), quantity=2),
            QuoteItemCreate(
                item_type="addon",
                name="Premium support",
                unit_price=Decimal("50"),
                recurrence="recurring",
                billing_interval="month",
            ),
        ],
    }
    data.update(overrides)
    return QuoteService().create_quote(session, _ctx(), QuoteCreate(**data))


def _accepted_quote(session: Session, **overrides):  # type: ignore[no-untyped-def]
    quotes = QuoteService()
    quote = _quote(session, **overrides)
    quotes.send_quote(session, _ctx(), quote.id)
    return quotes.accept_quote(session, _ctx(), quote.id, QuoteAcceptRequest(accepted_by="Jane Client"))


def _order_payload() -> OrderCreate:
    return OrderCreate(subtotal=Decimal("500"), effective_date=date.today())


def _order_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(RevenueOrder)) or 0


def test_convert_accepted_quote_copies_totals(db_session: Session, conversion: ConversionService) -> None:
    quote = _accepted_quote(db_session)

    order = conversion.convert_quote_to_order(db_session, _ctx(), quote.id, idempotency_key="convert-1")

    assert order.reference == f"ORD-{date.today().year}-00001"
    assert order.source_quote_id == quote.id
    assert order.status == "pending"
    assert order.fulfillment_status == "pending"
    assert order.subtotal == Decimal("250.00")
    assert order.tax_amount == Decimal("50.00")
    assert order.total_value == Decimal("300.00")
    assert order.effective_date == date.today()

    converted = QuoteService().get_quote(db_session, _ctx(), quote.id)
    assert converted.status == "converted"
    assert converted.converted_at is not None
    assert converted.order is not None
    assert converted.order.id == order.id

    created = [item for item in events.published_events if item["event_type"] == "order.created"]
    assert created[-1]["payload"]["source_quote_id"] == str(quote.id)
    assert created[-1]["correlation_id"] == "corr-convert-1"


def test_convert_replays_with_same_idempotency_key(db_session: Session, conversion: ConversionService) -> None:
    quote = _accepted_quote(db_session)

    first = conversion.convert_quote_to_order(db_session, _ctx(), quote.id, idempotency_key="convert-1")
    second = conversion.convert_quote_to_order(db_session, _ctx(), quote.id, idempotency_key="convert-1")

    assert second.id == first.id
    assert _order_count(db_session) == 1

    with pytest.raises(ConflictError) as mismatch:
        conversion.convert_quote_to_order(
            db_session,
            _ctx(),
            quote.id,
            ConvertQuoteRequest(notes="different"),
            idempotency_key="convert-1",
        )
    assert mismatch.value.code == "idempotency_key_mismatch"

    with pytest.raises(ConflictError) as repeated:
        conversion.convert_quote_to_order(db_session, _ctx(), quote.id)
    assert repeated.value.code == "quote_already_converted"
    assert _order_count(db_session) == 1


def test_convert_requires_accepted_quote(db_session: Session, conversion: ConversionService) -> None:
    quote = _quote(db_session)
    QuoteService().send_quote(db_session, _ctx(), quote.id)

    with pytest.raises(BusinessRuleError) as exc_info:
        conversion.convert_quote_to_order(db_session, _ctx(), quote.id)

    assert exc_info.value.code == "invalid_status_transition"
    assert QuoteService().get_quote(db_session, _ctx(), quote.id).status == "sent"
    assert _order_count(db_session) == 0


def test_convert_derives_expiry_from_contract_duration(db_session: Session, conversion: ConversionService) -> None:
    quote = _accepted_quote(db_session, contract_start_date=date(2027, 1, 31), contract_duration_months=1)

    order = conversion.convert_quote_to_order(db_session, _ctx(), quote.id)

    assert order.effective_date == date(2027, 1, 31)
    assert order.expiry_date == date(2027, 2, 27)


def test_checkout_session_conversion_is_keyed_by_session(db_session: Session, conversion: ConversionService) -> None:
    quote = _accepted_quote(db_session)

    order = conversion.convert_checkout_session(db_session, _ctx(), quote.id, "cs_test_123")
    again = conversion.convert_checkout_session(db_session, _ctx(), quote.id, "cs_test_123")

    assert order.payment_reference == "cs_test_123"
    assert again.id == order.id
    assert _order_count(db_session) == 1


def test_attach_new_agreement_inherits_order_dates(db_session: Session, conversion: ConversionService) -> None:
    quote = _accepted_quote(db_session, contract_start_date=date(2027, 3, 1), contract_duration_months=12)
    order = conversion.convert_quote_to_order(db_session, _ctx(), quote.id)

    payload = AttachAgreementRequest(agreement_type="sla")
    agreement = conversion.attach_agreement(db_session, _ctx(), order.id, payload, idempotency_key="attach-1")
    replayed = conversion.attach_agreement(db_session, _ctx(), order.id, payload, idempotency_key="attach-1")

    assert agreement.order_id == order.id
    assert agreement.status == "draft"
    assert agreement.title == "Service Level Agreement"
    assert agreement.effective_date == date(2027, 3, 1)
    assert agreement.expiry_date == date(2028, 2, 29)
    assert replayed.id == agreement.id
    assert db_session.scalar(select(func.count()).select_from(RevenueAgreement)) == 1


def test_attach_existing_agreement_rules(db_session: Session, conversion: ConversionService) -> None:
    agreements = AgreementService()
    first_order = OrderService().create_order(db_session, _ctx(), _order_payload())
    second_order = OrderService().create_order(db_session, _ctx(), _order_payload())
    draft = agreements.create_agreement(db_session, _ctx(), AgreementCreate(agreement_type="dpa"))

    attached = conversion.attach_agreement(
        db_session, _ctx(), first_order.id, AttachAgreementRequest(agreement_id=draft.id)
    )
    assert attached.order_id == first_order.id

    again = conversion.attach_agreement(db_session, _ctx(), first_order.id, AttachAgreementRequest(agreement_id=draft.id))
    assert again.id == draft.id

    with pytest.raises(ConflictError) as elsewhere:
        conversion.attach_agreement(db_session, _ctx(), second_order.id, AttachAgreementRequest(agreement_id=draft.id))
    assert elsewhere.value.code == "agreement_already_attached"

    loose = agreements.create_agreement(db_session, _ctx(), AgreementCreate())
    conversion.create_agreement_version(db_session, _ctx(), loose.id)
    with pytest.raises(BusinessRuleError) as terminal:
        conversion.attach_agreement(db_session, _ctx(), second_order.id, AttachAgreementRequest(agreement_id=loose.id))
    assert terminal.value.code == "agreement_not_attachable"

    OrderService().cancel_order(db_session, _ctx(), second_order.id, reason="customer withdrew")
    with pytest.raises(BusinessRuleError) as cancelled:
        conversion.attach_agreement(db_session, _ctx(), second_order.id, AttachAgreementRequest())
    assert cancelled.value.code == "order_cancelled"


def test_quote_new_version_copies_items(db_session: Session, conversion: ConversionService) -> None:
    quote = _quote(db_session)
    QuoteService().send_quote(db_session, _ctx(), quote.id)
    sent = QuoteService().get_quote(db_session, _ctx(), quote.id)

    child = conversion.create_quote_version(db_session, _ctx(), quote.id, NewVersionRequest(row_version=sent.row_version))

    assert child.status == "draft"
    assert child.version == 2
    assert child.supersedes_id == quote.id
    assert child.reference != quote.reference
    assert child.public_token != quote.public_token
    assert len(child.items) == 2
    assert child.total_value == Decimal("300.00")

    parent = QuoteService().get_quote(db_session, _ctx(), quote.id)
    assert parent.status == "superseded"
    assert parent.superseded_at is not None
    assert [item.version for item in QuoteService().list_versions(db_session, _ctx(), child.id)] == [1, 2]

    with pytest.raises(BusinessRuleError) as exc_info:
        conversion.create_quote_version(db_session, _ctx(), quote.id)
    assert exc_info.value.code == "invalid_status_transition"


def test_quote_new_version_rejects_stale_row_version(db_session: Session, conversion: ConversionService) -> None:
    quote = _quote(db_session)

    with pytest.raises(ConflictError) as exc_info:
        conversion.create_quote_version(db_session, _ctx(), quote.id, NewVersionRequest(row_version=quote.row_version + 3))

    assert exc_info.value.code == "stale_row_version"
    assert QuoteService().get_quote(db_session, _ctx(), quote.id).status == "draft"


def test_accepted_quote_cannot_be_versioned(db_session: Session, conversion: ConversionService) -> None:
    quote = _accepted_quote(db_session)

    with pytest.raises(BusinessRuleError):
        conversion.create_quote_version(db_session, _ctx(), quote.id)


def test_agreement_new_version_drops_signatures(db_session: Session, conversion: ConversionService) -> None:
    agreements = AgreementService()
    order = OrderService().create_order(db_session, _ctx(), _order_payload())
    draft = agreements.create_agreement(
        db_session,
        _ctx(),
        AgreementCreate(order_id=order.id, effective_date=date.today(), terms="v1 terms"),
    )
    agreements.send_for_signature(db_session, _ctx(), draft.id)
    agreements.record_client_signature(
        db_session,
        _ctx(),
        draft.id,
        ClientSignatureRequest(name="Dana Buyer", email="dana@customer.example"),
    )
    active = agreements.record_provider_signature(
        db_session, _ctx(), draft.id, ProviderSignatureRequest(name="Sam Seller")
    )
    assert active.status == "active"

    child = conversion.create_agreement_version(
        db_session, _ctx(), draft.id, NewVersionRequest(row_version=active.row_version)
    )

    assert child.status == "draft"
    assert child.version == 2
    assert child.supersedes_id == draft.id
    assert child.order_id == order.id
    assert child.terms == "v1 terms"
    assert child.client_signed_at is None
    assert child.provider_signed_at is None
    assert agreements.get_agreement(db_session, _ctx(), draft.id).status == "superseded"
    assert OrderService().get_order(db_session, _ctx(), order.id).status == "pending"


def test_unknown_quote_is_not_found(db_session: Session, conversion: ConversionService) -> None:
    with pytest.raises(NotFoundError):
        conversion.convert_quote_to_order(db_session, _ctx(), uuid.uuid4())


def test_converted_filter_ignores_deleted_orders(db_session: Session, conversion: ConversionService) -> None:
    quotes = QuoteService()
    quote = _accepted_quote(db_session)
    order = conversion.convert_quote_to_order(db_session, _ctx(), quote.id)

    assert quotes.list_quotes(db_session, _ctx(), converted=True).total == 1
    assert quotes.list_quotes(db_session, _ctx(), order_id=order.id).total == 1

    OrderService().soft_delete_order(db_session, _ctx(), order.id, reason="entered twice")

    assert quotes.list_quotes(db_session, _ctx(), converted=True).total == 0
    assert quotes.list_quotes(db_session, _ctx(), order_id=order.id).total == 0
    unconverted = quotes.list_quotes(db_session, _ctx(), converted=False)
    assert [item.id for item in unconverted.items] == [quote.id]
    assert unconverted.items[0].order is None
