from __future__ import annotations

from collections.abc import Generator
from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("TRUSTED_PROXIES", "testclient")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(**extra: str) -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode(
        {"sub": "ops-user", "roles": ["revenue.user"], "tenant_id": "tenant-a"},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}", **extra}


def _create_order(client: TestClient, **overrides: object) -> dict:
    payload = {
        "subtotal": "1000",
        "discount_amount": "100",
        "tax_amount": "90",
        "effective_date": date.today().isoformat(),
        "expiry_date": (date.today() + timedelta(days=365)).isoformat(),
    }
    payload.update(overrides)
    response = client.post("/orders", json=payload, headers=_headers())
    assert response.status_code == 201
    return response.json()


def test_order_lifecycle_endpoints(client: TestClient) -> None:
    order = _create_order(client)
    assert order["reference"].startswith("ORD-")
    assert Decimal(order["total_value"]) == Decimal("990.00")

    skipped = client.put(f"/orders/{order['id']}/status", json={"status": "fulfilled"}, headers=_headers())
    assert skipped.status_code == 409
    assert skipped.json()["code"] == "invalid_status_transition"
    assert skipped.json()["details"]["allowed"] == ["active", "cancelled"]

    active = client.put(f"/orders/{order['id']}/status", json={"status": "active"}, headers=_headers())
    assert active.status_code == 200
    assert active.json()["status"] == "active"

    fulfillment = client.put(
        f"/orders/{order['id']}/fulfillment-status",
        json={"fulfillment_status": "active"},
        headers=_headers(),
    )
    assert fulfillment.status_code == 200
    assert fulfillment.json()["fulfillment_status"] == "active"
    assert fulfillment.json()["status"] == "active"

    empty_reason = client.post(f"/orders/{order['id']}/cancel", json={"reason": ""}, headers=_headers())
    assert empty_reason.status_code == 400

    cancelled = client.post(f"/orders/{order['id']}/cancel", json={"reason": "customer withdrew"}, headers=_headers())
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["cancellation_reason"] == "customer withdrew"
    assert any(item["event_type"] == "order.cancelled" for item in events.published_events)

    attach = client.post(f"/orders/{order['id']}/agreements", json={}, headers=_headers())
    assert attach.status_code == 409
    assert attach.json()["code"] == "order_cancelled"

    deleted = client.delete(f"/orders/{order['id']}", headers=_headers())
    assert deleted.status_code == 204


def test_order_update_and_filters(client: TestClient) -> None:
    first = _create_order(client)
    _create_order(client, order_type="renewal")

    bad_range = client.put(
        f"/orders/{first['id']}",
        json={"row_version": first["row_version"], "expiry_date": (date.today() - timedelta(days=2)).isoformat()},
        headers=_headers(),
    )
    assert bad_range.status_code == 400
    assert bad_range.json()["code"] == "invalid_date_range"

    updated = client.put(
        f"/orders/{first['id']}",
        json={"row_version": first["row_version"], "auto_renew": True, "notes": "renew yearly"},
        headers=_headers(),
    )
    assert updated.status_code == 200
    assert updated.json()["auto_renew"] is True

    renewals = client.get("/orders?order_type=renewal", headers=_headers())
    assert renewals.json()["total"] == 1
    pending = client.get("/orders?status=pending&sort_by=total_value&direction=asc", headers=_headers())
    assert pending.json()["total"] == 2
    invalid_status = client.get("/orders?status=unknown", headers=_headers())
    assert invalid_status.status_code == 400


def test_attach_agreement_and_sign_publicly(client: TestClient) -> None:
    order = _create_order(client)

    attached = client.post(
        f"/orders/{order['id']}/agreements",
        json={"agreement_type": "msa", "terms": "Standard terms"},
        headers=_headers(**{"Idempotency-Key": "attach-http-1"}),
    )
    assert attached.status_code == 201
    agreement = attached.json()
    assert agreement["order_id"] == order["id"]
    assert agreement["effective_date"] == order["effective_date"]
    assert agreement["title"] == "Master Services Agreement"

    replay = client.post(
        f"/orders/{order['id']}/agreements",
        json={"agreement_type": "msa", "terms": "Standard terms"},
        headers=_headers(**{"Idempotency-Key": "attach-http-1"}),
    )
    assert replay.json()["id"] == agreement["id"]

    not_sent = client.get(f"/public/agreements/{agreement['public_token']}")
    assert not_sent.status_code == 400

    sent = client.post(f"/agreements/{agreement['id']}/send-for-signature", headers=_headers())
    assert sent.status_code == 200
    assert sent.json()["status"] == "pending_signature"

    public = client.get(f"/public/agreements/{agreement['public_token']}")
    assert public.status_code == 200
    assert public.json()["terms"] == "Standard terms"

    signed = client.post(
        f"/public/agreements/{agreement['public_token']}/sign",
        json={"name": "Dana Buyer", "email": "dana@customer.example", "title": "CFO"},
        headers={"X-Forwarded-For": "203.0.113.7"},
    )
    assert signed.status_code == 200
    assert signed.json()["status"] == "pending_signature"

    provider = client.post(
        f"/agreements/{agreement['id']}/provider-signature",
        json={"name": "Sam Seller", "title": "VP Sales"},
        headers=_headers(),
    )
    assert provider.status_code == 200
    body = provider.json()
    assert body["status"] == "active"
    assert body["client_signature_ip"] == "203.0.113.7"
    assert body["provider_signatory_id"] == "ops-user"

    resign = client.post(
        f"/public/agreements/{agreement['public_token']}/sign",
        json={"name": "Dana Buyer", "email": "dana@customer.example"},
    )
    assert resign.status_code == 400

    listed = client.get(f"/agreements?order_id={order['id']}&status=active", headers=_headers())
    assert listed.json()["total"] == 1


def test_agreement_management_endpoints(client: TestClient) -> None:
    created = client.post(
        "/agreements",
        json={"agreement_type": "nda", "effective_date": date.today().isoformat()},
        headers=_headers(),
    )
    assert created.status_code == 201
    agreement = created.json()
    assert agreement["title"] == "Non-Disclosure Agreement"

    updated = client.put(
        f"/agreements/{agreement['id']}",
        json={"row_version": agreement["row_version"], "title": "Mutual NDA"},
        headers=_headers(),
    )
    assert updated.status_code == 200
    assert updated.json()["title"] == "Mutual NDA"

    client.post(f"/agreements/{agreement['id']}/send-for-signature", headers=_headers())
    client.post(
        f"/agreements/{agreement['id']}/client-signature",
        json={"name": "Dana Buyer", "email": "dana@customer.example", "ip_address": "192.0.2.44"},
        headers=_headers(),
    )
    active = client.post(
        f"/agreements/{agreement['id']}/provider-signature",
        json={"name": "Sam Seller"},
        headers=_headers(),
    )
    assert active.json()["status"] == "active"

    not_deletable = client.delete(f"/agreements/{agreement['id']}", headers=_headers())
    assert not_deletable.status_code == 409
    assert not_deletable.json()["code"] == "agreement_not_deletable"

    version = client.post(f"/agreements/{agreement['id']}/versions", headers=_headers())
    assert version.status_code == 201
    assert version.json()["version"] == 2
    assert version.json()["client_signed_at"] is None

    lineage = client.get(f"/agreements/{version.json()['id']}/versions", headers=_headers())
    assert [item["status"] for item in lineage.json()] == ["superseded", "draft"]

    terminate_superseded = client.post(
        f"/agreements/{agreement['id']}/terminate",
        json={"reason": "replaced"},
        headers=_headers(),
    )
    assert terminate_superseded.status_code == 409


def test_terminate_active_agreement(client: TestClient) -> None:
    agreement = client.post(
        "/agreements",
        json={"effective_date": date.today().isoformat()},
        headers=_headers(),
    ).json()
    client.post(f"/agreements/{agreement['id']}/send-for-signature", headers=_headers())
    client.post(
        f"/agreements/{agreement['id']}/client-signature",
        json={"name": "Dana Buyer", "email": "dana@customer.example"},
        headers=_headers(),
    )
    client.post(f"/agreements/{agreement['id']}/provider-signature", json={"name": "Sam Seller"}, headers=_headers())

    terminated = client.post(
        f"/agreements/{agreement['id']}/terminate",
        json={"reason": "material breach"},
        headers=_headers(),
    )
    assert terminated.status_code == 200
    assert terminated.json()["status"] == "terminated"

    public = client.get(f"/public/agreements/{agreement['public_token']}")
    assert public.status_code == 200
    assert public.json()["status"] == "terminated"


def test_order_reporting_endpoints(client: TestClient) -> None:
    soon = (date.today() + timedelta(days=20)).isoformat()
    renewing = _create_order(client, expiry_date=soon, auto_renew=True)
    lapsing = _create_order(client, expiry_date=soon)
    _create_order(client, auto_renew=True)
    for order in (renewing, lapsing):
        client.put(f"/orders/{order['id']}/status", json={"status": "active"}, headers=_headers())

    expiring = client.get("/orders/expiring?days=30", headers=_headers())
    assert expiring.status_code == 200
    assert {item["id"] for item in expiring.json()} == {renewing["id"], lapsing["id"]}

    renewable = client.get("/orders/auto-renewable?days=30", headers=_headers())
    assert [item["id"] for item in renewable.json()] == [renewing["id"]]

    assert client.get("/orders/expiring?days=-1", headers=_headers()).status_code == 400
    assert client.get("/orders/stats", headers=_headers()).json() == {
        "by_status": {"active": 2, "pending": 1},
        "total": 3,
    }


def test_batch_agreements_and_agreement_reports(client: TestClient) -> None:
    order = _create_order(client)

    batch = client.post(
        f"/orders/{order['id']}/agreements/batch",
        json={"agreement_types": ["msa", "nda"]},
        headers=_headers(),
    )
    assert batch.status_code == 201
    created = batch.json()
    assert [item["agreement_type"] for item in created] == ["msa", "nda"]
    assert all(item["expiry_date"] == order["expiry_date"] for item in created)

    repeated = client.post(
        f"/orders/{order['id']}/agreements/batch",
        json={"agreement_types": ["sla", "sla"]},
        headers=_headers(),
    )
    assert repeated.status_code == 400

    by_reference = client.get(f"/agreements/by-reference/{created[1]['reference']}", headers=_headers())
    assert by_reference.json()["id"] == created[1]["id"]

    client.post(f"/agreements/{created[0]['id']}/send-for-signature", headers=_headers())
    stats = client.get("/agreements/stats", headers=_headers())
    assert stats.status_code == 200
    assert stats.json() == {
        "by_status": {"draft": 1, "pending_signature": 1},
        "total": 2,
        "by_type": {"msa": 1, "nda": 1},
        "average_days_to_signature": None,
    }

    reminders = client.post("/agreements/signature-reminders?days=0", headers=_headers())
    assert reminders.status_code == 200
    assert reminders.json()["reminded"] == 1
    assert reminders.json()["agreement_ids"] == [created[0]["id"]]
    assert events.published_events[-1]["event_type"] == "agreement.signature_reminder"

    assert client.get("/agreements/expiring", headers=_headers()).json() == []
