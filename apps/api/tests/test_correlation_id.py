from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.models.audit import AuditLog


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


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
    token = jwt.encode({"sub": "user-1", "tenant_id": "tenant-a"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}", **extra}


def _quote_payload() -> dict:
    return {"items": [{"name": "Platform licence", "unit_price": "100"}]}


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/quotes/{uuid.uuid4()}", headers=_headers())
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/quotes/{uuid.uuid4()}", headers=_headers(**{"X-Correlation-Id": "abc-123"}))
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_header_is_used_as_fallback(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-Id": "req-77"})
    assert response.headers.get("x-correlation-id") == "req-77"


def test_unsafe_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "bad value with spaces"})
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "bad value with spaces"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.post("/quotes", json=_quote_payload(), headers=_headers(**{"X-Correlation-Id": "corr-audit-1"}))
    assert response.status_code == 201

    row = db_session.scalar(
        select(AuditLog).where(AuditLog.entity_id == response.json()["id"], AuditLog.action == "create")
    )
    assert row is not None
    assert row.correlation_id == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    created = client.post("/quotes", json={**_quote_payload(), "valid_until": "2099-01-01"}, headers=_headers())
    response = client.post(
        f"/quotes/{created.json()['id']}/send",
        headers=_headers(**{"X-Correlation-Id": "corr-event-1"}),
    )
    assert response.status_code == 200

    sent_events = [item for item in events.published_events if item.get("event_type") == "quote.sent"]
    assert sent_events
    assert sent_events[-1].get("correlation_id") == "corr-event-1"


def test_rate_limited_response_includes_correlation_id(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_PUBLIC_ACTIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    token = uuid.uuid4().hex
    first = client.post(
        f"/public/quotes/{token}/accept",
        json={"accepted_by": "Jane Client"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert first.status_code == 404

    second = client.post(
        f"/public/quotes/{token}/accept",
        json={"accepted_by": "Jane Client"},
        headers={"X-Correlation-Id": "corr-rate-1"},
    )
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
