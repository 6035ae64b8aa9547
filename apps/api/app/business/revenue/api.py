from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from app.business.revenue.agreement_service import agreement_service
from app.business.revenue.conversion_service import conversion_service
from app.business.revenue.order_service import order_service
from app.business.revenue.quote_service import quote_service
from app.business.revenue.schemas import (
    AgreementBatchRequest,
    AgreementCreate,
    AgreementPage,
    AgreementRead,
    AgreementSortField,
    AgreementStats,
    AgreementStatusValue,
    AgreementType,
    AgreementUpdate,
    AttachAgreementRequest,
    ClientSignatureRequest,
    ConvertQuoteRequest,
    FulfillmentStatusUpdate,
    FulfillmentStatusValue,
    NewVersionRequest,
    OrderCancelRequest,
    OrderCreate,
    OrderPage,
    OrderRead,
    OrderSortField,
    OrderStatusUpdate,
    OrderStatusValue,
    OrderType,
    OrderUpdate,
    ProviderSignatureRequest,
    PublicAgreementRead,
    PublicQuoteAcceptRequest,
    PublicQuoteRead,
    PublicSignatureRequest,
    QuoteAcceptRequest,
    QuoteCreate,
    QuoteItemCreate,
    QuoteItemUpdate,
    QuotePage,
    QuoteRead,
    QuoteRejectRequest,
    QuoteSortField,
    QuoteStatusValue,
    QuoteUpdate,
    SignatureReminderResult,
    SoftDeleteRequest,
    SortDirection,
    StatusBreakdown,
    TerminateRequest,
)
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.platform.security.context import AuthContext


quotes_router = APIRouter(prefix="/quotes", tags=["quotes"])
orders_router = APIRouter(prefix="/orders", tags=["orders"])
agreements_router = APIRouter(prefix="/agreements", tags=["agreements"])
public_router = APIRouter(prefix="/public", tags=["public"])


def _client_ip(request: Request) -> str | None:
    context = getattr(request.state, "context", None)
    if context is not None and context.client_ip:
        return context.client_ip
    return request.client.host if request.client else None


def _correlation_id(request: Request) -> str | None:
    return get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)


def get_revenue_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    tenant_id_header: str | None = Header(default=None, alias="x-tenant-id"),
) -> AuthContext:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    if tenant_id_header and auth_user.tenant_id and tenant_id_header != auth_user.tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="tenant does not match token")

    return AuthContext(
        user_id=auth_user.sub,
        tenant_id=tenant_id_header or auth_user.tenant_id,
        correlation_id=_correlation_id(request),
        roles=list(auth_user.roles),
        client_ip=_client_ip(request),
    )


# Quotes


@quotes_router.get("", response_model=QuotePage)
def list_quotes(
    status_filter: QuoteStatusValue | None = Query(default=None, alias="status"),
    opportunity_id: uuid.UUID | None = None,
    order_id: uuid.UUID | None = None,
    converted: bool | None = None,
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    search: str | None = Query(default=None, max_length=64),
    sort_by: QuoteSortField = "created_at",
    direction: SortDirection = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuotePage:
    return quote_service.list_quotes(
        db,
        ctx,
        status=status_filter,
        opportunity_id=opportunity_id,
        order_id=order_id,
        converted=converted,
        currency=currency,
        search=search,
        sort_by=sort_by,
        direction=direction,
        page=page,
        limit=limit,
    )


@quotes_router.post("", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote(
    payload: QuoteCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.create_quote(db, ctx, payload)


@quotes_router.get("/expiring", response_model=list[QuoteRead])
def list_expiring_quotes(
    days: int = Query(default=7, ge=0, le=365),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[QuoteRead]:
    return quote_service.list_expiring_soon(db, ctx, days=days)


@quotes_router.get("/stats", response_model=StatusBreakdown)
def quote_stats(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> StatusBreakdown:
    return quote_service.count_by_status(db, ctx)


@quotes_router.get("/latest", response_model=QuoteRead)
def get_latest_quote_version(
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.get_latest_version(db, ctx, opportunity_id)


@quotes_router.get("/by-reference/{reference}", response_model=QuoteRead)
def get_quote_by_reference(
    reference: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.get_quote_by_reference(db, ctx, reference)


@quotes_router.get("/{quote_id}", response_model=QuoteRead)
def get_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.get_quote(db, ctx, quote_id)


@quotes_router.put("/{quote_id}", response_model=QuoteRead)
def update_quote(
    quote_id: uuid.UUID,
    payload: QuoteUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.update_quote(db, ctx, quote_id, payload)


@quotes_router.delete("/{quote_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_quote(
    quote_id: uuid.UUID,
    payload: SoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> Response:
    quote_service.soft_delete_quote(db, ctx, quote_id, reason=payload.reason if payload else None)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@quotes_router.post("/{quote_id}/items", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def add_quote_item(
    quote_id: uuid.UUID,
    payload: QuoteItemCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.add_item(db, ctx, quote_id, payload)


@quotes_router.put("/{quote_id}/items/{item_id}", response_model=QuoteRead)
def update_quote_item(
    quote_id: uuid.UUID,
    item_id: uuid.UUID,
    payload: QuoteItemUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.update_item(db, ctx, quote_id, item_id, payload)


@quotes_router.delete("/{quote_id}/items/{item_id}", response_model=QuoteRead)
def remove_quote_item(
    quote_id: uuid.UUID,
    item_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.remove_item(db, ctx, quote_id, item_id)


@quotes_router.post("/{quote_id}/send", response_model=QuoteRead)
def send_quote(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.send_quote(db, ctx, quote_id)


@quotes_router.post("/{quote_id}/accept", response_model=QuoteRead)
def accept_quote(
    quote_id: uuid.UUID,
    payload: QuoteAcceptRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.accept_quote(db, ctx, quote_id, payload or QuoteAcceptRequest())


@quotes_router.post("/{quote_id}/reject", response_model=QuoteRead)
def reject_quote(
    quote_id: uuid.UUID,
    payload: QuoteRejectRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return quote_service.reject_quote(db, ctx, quote_id, payload)


@quotes_router.post("/{quote_id}/versions", response_model=QuoteRead, status_code=status.HTTP_201_CREATED)
def create_quote_version(
    quote_id: uuid.UUID,
    payload: NewVersionRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> QuoteRead:
    return conversion_service.create_quote_version(db, ctx, quote_id, payload)


@quotes_router.get("/{quote_id}/versions", response_model=list[QuoteRead])
def list_quote_versions(
    quote_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[QuoteRead]:
    return quote_service.list_versions(db, ctx, quote_id)


@quotes_router.post("/{quote_id}/convert", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def convert_quote(
    quote_id: uuid.UUID,
    payload: ConvertQuoteRequest | None = Body(default=None),
    idempotency_key: str | None = Header(default=None, alias="idempotency-key"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return conversion_service.convert_quote_to_order(db, ctx, quote_id, payload, idempotency_key=idempotency_key)


# Orders


@orders_router.get("", response_model=OrderPage)
def list_orders(
    status_filter: OrderStatusValue | None = Query(default=None, alias="status"),
    fulfillment_status: FulfillmentStatusValue | None = None,
    source_quote_id: uuid.UUID | None = None,
    order_type: OrderType | None = None,
    sort_by: OrderSortField = "created_at",
    direction: SortDirection = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderPage:
    return order_service.list_orders(
        db,
        ctx,
        status=status_filter,
        fulfillment_status=fulfillment_status,
        source_quote_id=source_quote_id,
        order_type=order_type,
        sort_by=sort_by,
        direction=direction,
        page=page,
        limit=limit,
    )


@orders_router.post("", response_model=OrderRead, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return order_service.create_order(db, ctx, payload)


@orders_router.get("/expiring", response_model=list[OrderRead])
def list_expiring_orders(
    days: int = Query(default=30, ge=0, le=365),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[OrderRead]:
    return order_service.list_expiring(db, ctx, days=days)


@orders_router.get("/auto-renewable", response_model=list[OrderRead])
def list_auto_renewable_orders(
    days: int = Query(default=30, ge=0, le=365),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[OrderRead]:
    return order_service.list_auto_renewable(db, ctx, days_before_expiry=days)


@orders_router.get("/stats", response_model=StatusBreakdown)
def order_stats(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> StatusBreakdown:
    return order_service.count_by_status(db, ctx)


@orders_router.get("/{order_id}", response_model=OrderRead)
def get_order(
    order_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return order_service.get_order(db, ctx, order_id)


@orders_router.put("/{order_id}", response_model=OrderRead)
def update_order(
    order_id: uuid.UUID,
    payload: OrderUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return order_service.update_order(db, ctx, order_id, payload)


@orders_router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: uuid.UUID,
    payload: SoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> Response:
    order_service.soft_delete_order(db, ctx, order_id, reason=payload.reason if payload else None)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@orders_router.post("/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: uuid.UUID,
    payload: OrderCancelRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return order_service.cancel_order(db, ctx, order_id, reason=payload.reason)


@orders_router.put("/{order_id}/status", response_model=OrderRead)
def update_order_status(
    order_id: uuid.UUID,
    payload: OrderStatusUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return order_service.update_status(db, ctx, order_id, payload)


@orders_router.put("/{order_id}/fulfillment-status", response_model=OrderRead)
def update_fulfillment_status(
    order_id: uuid.UUID,
    payload: FulfillmentStatusUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> OrderRead:
    return order_service.update_fulfillment_status(db, ctx, order_id, payload)


@orders_router.post("/{order_id}/agreements", response_model=AgreementRead, status_code=status.HTTP_201_CREATED)
def attach_agreement(
    order_id: uuid.UUID,
    payload: AttachAgreementRequest | None = Body(default=None),
    idempotency_key: str | None = Header(default=None, alias="idempotency-key"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return conversion_service.attach_agreement(
        db,
        ctx,
        order_id,
        payload or AttachAgreementRequest(),
        idempotency_key=idempotency_key,
    )


@orders_router.post(
    "/{order_id}/agreements/batch",
    response_model=list[AgreementRead],
    status_code=status.HTTP_201_CREATED,
)
def create_agreements_for_order(
    order_id: uuid.UUID,
    payload: AgreementBatchRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[AgreementRead]:
    return agreement_service.create_agreements_for_order(db, ctx, order_id, payload or AgreementBatchRequest())


# Agreements


@agreements_router.get("", response_model=AgreementPage)
def list_agreements(
    status_filter: AgreementStatusValue | None = Query(default=None, alias="status"),
    agreement_type: AgreementType | None = None,
    order_id: uuid.UUID | None = None,
    sort_by: AgreementSortField = "created_at",
    direction: SortDirection = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementPage:
    return agreement_service.list_agreements(
        db,
        ctx,
        status=status_filter,
        agreement_type=agreement_type,
        order_id=order_id,
        sort_by=sort_by,
        direction=direction,
        page=page,
        limit=limit,
    )


@agreements_router.post("", response_model=AgreementRead, status_code=status.HTTP_201_CREATED)
def create_agreement(
    payload: AgreementCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.create_agreement(db, ctx, payload)


@agreements_router.get("/expiring", response_model=list[AgreementRead])
def list_expiring_agreements(
    days: int = Query(default=30, ge=0, le=365),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[AgreementRead]:
    return agreement_service.list_expiring_soon(db, ctx, days=days)


@agreements_router.get("/stats", response_model=AgreementStats)
def agreement_stats(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementStats:
    return agreement_service.stats(db, ctx)


@agreements_router.get("/by-reference/{reference}", response_model=AgreementRead)
def get_agreement_by_reference(
    reference: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.get_agreement_by_reference(db, ctx, reference)


@agreements_router.post("/signature-reminders", response_model=SignatureReminderResult)
def send_signature_reminders(
    days: int | None = Query(default=None, ge=0, le=365),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> SignatureReminderResult:
    return agreement_service.send_signature_reminders(db, ctx, days_threshold=days)


@agreements_router.get("/{agreement_id}", response_model=AgreementRead)
def get_agreement(
    agreement_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.get_agreement(db, ctx, agreement_id)


@agreements_router.put("/{agreement_id}", response_model=AgreementRead)
def update_agreement(
    agreement_id: uuid.UUID,
    payload: AgreementUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.update_agreement(db, ctx, agreement_id, payload)


@agreements_router.delete("/{agreement_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_agreement(
    agreement_id: uuid.UUID,
    payload: SoftDeleteRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> Response:
    agreement_service.soft_delete_agreement(db, ctx, agreement_id, reason=payload.reason if payload else None)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@agreements_router.post("/{agreement_id}/send-for-signature", response_model=AgreementRead)
def send_for_signature(
    agreement_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.send_for_signature(db, ctx, agreement_id)


@agreements_router.post("/{agreement_id}/client-signature", response_model=AgreementRead)
def record_client_signature(
    agreement_id: uuid.UUID,
    payload: ClientSignatureRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.record_client_signature(db, ctx, agreement_id, payload)


@agreements_router.post("/{agreement_id}/provider-signature", response_model=AgreementRead)
def record_provider_signature(
    agreement_id: uuid.UUID,
    payload: ProviderSignatureRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.record_provider_signature(db, ctx, agreement_id, payload)


@agreements_router.post("/{agreement_id}/terminate", response_model=AgreementRead)
def terminate_agreement(
    agreement_id: uuid.UUID,
    payload: TerminateRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return agreement_service.terminate_agreement(db, ctx, agreement_id, payload)


@agreements_router.post("/{agreement_id}/versions", response_model=AgreementRead, status_code=status.HTTP_201_CREATED)
def create_agreement_version(
    agreement_id: uuid.UUID,
    payload: NewVersionRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> AgreementRead:
    return conversion_service.create_agreement_version(db, ctx, agreement_id, payload)


@agreements_router.get("/{agreement_id}/versions", response_model=list[AgreementRead])
def list_agreement_versions(
    agreement_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_revenue_auth_context),
) -> list[AgreementRead]:
    return agreement_service.list_versions(db, ctx, agreement_id)


# Public token surface


@public_router.get("/quotes/{token}", response_model=PublicQuoteRead)
def view_public_quote(token: str, request: Request, db: Session = Depends(get_db)) -> PublicQuoteRead:
    return quote_service.view_by_token(
        db,
        token,
        client_ip=_client_ip(request),
        correlation_id=_correlation_id(request),
    )


@public_router.post("/quotes/{token}/accept", response_model=PublicQuoteRead)
def accept_public_quote(
    token: str,
    payload: PublicQuoteAcceptRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PublicQuoteRead:
    return quote_service.accept_by_token(
        db,
        token,
        payload,
        client_ip=_client_ip(request),
        correlation_id=_correlation_id(request),
    )


@public_router.post("/quotes/{token}/reject", response_model=PublicQuoteRead)
def reject_public_quote(
    token: str,
    payload: QuoteRejectRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PublicQuoteRead:
    return quote_service.reject_by_token(
        db,
        token,
        payload,
        client_ip=_client_ip(request),
        correlation_id=_correlation_id(request),
    )


@public_router.get("/agreements/{token}", response_model=PublicAgreementRead)
def view_public_agreement(token: str, db: Session = Depends(get_db)) -> PublicAgreementRead:
    return agreement_service.view_by_token(db, token)


@public_router.post("/agreements/{token}/sign", response_model=PublicAgreementRead)
def sign_public_agreement(
    token: str,
    payload: PublicSignatureRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> PublicAgreementRead:
    return agreement_service.sign_by_token(
        db,
        token,
        payload,
        client_ip=_client_ip(request),
        correlation_id=_correlation_id(request),
    )
