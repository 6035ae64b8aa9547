from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.business.revenue.totals import BillingInterval, DiscountType, Recurrence


QuoteStatusValue = Literal["draft", "sent", "viewed", "accepted", "rejected", "expired", "converted", "superseded"]
OrderStatusValue = Literal["pending", "active", "fulfilled", "cancelled"]
FulfillmentStatusValue = Literal["pending", "active", "fulfilled", "cancelled"]
AgreementStatusValue = Literal["draft", "pending_signature", "active", "expired", "terminated", "superseded"]
QuoteItemType = Literal["plan", "addon", "service", "custom"]
OrderType = Literal["new", "renewal", "upgrade", "downgrade", "amendment"]
AgreementType = Literal["msa", "sla", "dpa", "nda", "sow", "addendum", "other"]
SortDirection = Literal["asc", "desc"]
QuoteSortField = Literal["created_at", "updated_at", "valid_until", "total_value", "reference"]
OrderSortField = Literal["created_at", "updated_at", "effective_date", "total_value", "reference"]
AgreementSortField = Literal["created_at", "updated_at", "effective_date", "expiry_date", "reference"]

Money = Decimal
CURRENCY_PATTERN = r"^[A-Z]{3}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _check_discount(discount_type: str | None, discount_value: Decimal | None, scope: str) -> None:
    if (discount_type is None) != (discount_value is None):
        raise ValueError(f"{scope} discount_type and discount_value must be provided together")
    if discount_type == "percentage" and discount_value is not None and discount_value > Decimal("100"):
        raise ValueError(f"{scope} percentage discount cannot exceed 100")


def _check_date_range(start: date | None, end: date | None, start_name: str, end_name: str) -> None:
    if start is not None and end is not None and end < start:
        raise ValueError(f"{end_name} cannot be before {start_name}")


class _WriteModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class QuoteItemCreate(_WriteModel):
    item_type: QuoteItemType = "plan"
    catalog_item_id: UUID | None = None
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    sku: str | None = Field(default=None, max_length=64)
    recurrence: Recurrence = "one_time"
    billing_interval: BillingInterval | None = None
    quantity: int = Field(default=1, ge=1)
    unit_price: Money = Field(ge=Decimal("0"))
    discount_type: DiscountType | None = None
    discount_value: Money | None = Field(default=None, ge=Decimal("0"))
    sort_order: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_item(self) -> QuoteItemCreate:
        if self.recurrence == "one_time" and self.billing_interval is not None:
            raise ValueError("billing_interval only applies to recurring items")
        if self.recurrence == "recurring" and self.billing_interval is None:
            self.billing_interval = "month"
        _check_discount(self.discount_type, self.discount_value, "line")
        return self


class QuoteItemUpdate(_WriteModel):
    item_type: QuoteItemType | None = None
    catalog_item_id: UUID | None = None
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    sku: str | None = Field(default=None, max_length=64)
    recurrence: Recurrence | None = None
    billing_interval: BillingInterval | None = None
    quantity: int | None = Field(default=None, ge=1)
    unit_price: Money | None = Field(default=None, ge=Decimal("0"))
    discount_type: DiscountType | None = None
    discount_value: Money | None = Field(default=None, ge=Decimal("0"))
    sort_order: int | None = Field(default=None, ge=0)


class QuoteCreate(_WriteModel):
    opportunity_id: UUID | None = None
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)
    discount_type: DiscountType | None = None
    discount_value: Money | None = Field(default=None, ge=Decimal("0"))
    tax_rate: Decimal = Field(default=Decimal("0"), ge=Decimal("0"), le=Decimal("100"))
    valid_from: date | None = None
    valid_until: date | None = None
    contract_start_date: date | None = None
    contract_duration_months: int | None = Field(default=None, ge=1, le=120)
    billing_cycle: BillingInterval | None = None
    notes: str | None = None
    terms_and_conditions: str | None = None
    items: list[QuoteItemCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_quote(self) -> QuoteCreate:
        _check_discount(self.discount_type, self.discount_value, "quote")
        _check_date_range(self.valid_from, self.valid_until, "valid_from", "valid_until")
        return self


class QuoteUpdate(_WriteModel):
    row_version: int = Field(ge=1)
    opportunity_id: UUID | None = None
    currency: str | None = Field(default=None, pattern=CURRENCY_PATTERN)
    discount_type: DiscountType | None = None
    discount_value: Money | None = Field(default=None, ge=Decimal("0"))
    tax_rate: Decimal | None = Field(default=None, ge=Decimal("0"), le=Decimal("100"))
    valid_from: date | None = None
    valid_until: date | None = None
    contract_start_date: date | None = None
    contract_duration_months: int | None = Field(default=None, ge=1, le=120)
    billing_cycle: BillingInterval | None = None
    notes: str | None = None
    terms_and_conditions: str | None = None


class QuoteAcceptRequest(_WriteModel):
    accepted_by: str | None = Field(default=None, max_length=255)
    signature: str | None = None


class PublicQuoteAcceptRequest(_WriteModel):
    accepted_by: str = Field(min_length=1, max_length=255)
    signature: str | None = None


class QuoteRejectRequest(_WriteModel):
    reason: str = Field(min_length=1, max_length=2000)
    rejected_by: str | None = Field(default=None, max_length=255)


class NewVersionRequest(_WriteModel):
    row_version: int | None = Field(default=None, ge=1)


class SoftDeleteRequest(_WriteModel):
    reason: str | None = Field(default=None, max_length=2000)


class OrderRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    reference: str
    status: OrderStatusValue | str


class QuoteItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    quote_id: UUID
    item_type: QuoteItemType | str
    catalog_item_id: UUID | None
    name: str
    description: str | None
    sku: str | None
    recurrence: Recurrence | str
    billing_interval: BillingInterval | str | None
    quantity: int
    unit_price: Decimal
    discount_type: DiscountType | str | None
    discount_value: Decimal | None
    discount_amount: Decimal
    line_total: Decimal
    sort_order: int


class QuoteRead(BaseModel):
    id: UUID
    tenant_id: str
    reference: str
    opportunity_id: UUID | None
    status: QuoteStatusValue | str
    currency: str
    discount_type: DiscountType | str | None
    discount_value: Decimal | None
    tax_rate: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_value: Decimal
    monthly_recurring_value: Decimal
    annual_recurring_value: Decimal
    valid_from: date | None
    valid_until: date | None
    contract_start_date: date | None
    contract_duration_months: int | None
    billing_cycle: BillingInterval | str | None
    version: int
    supersedes_id: UUID | None
    public_token: str
    sent_at: datetime | None
    first_viewed_at: datetime | None
    last_viewed_at: datetime | None
    view_count: int
    accepted_at: datetime | None
    accepted_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    expired_at: datetime | None
    converted_at: datetime | None
    superseded_at: datetime | None
    notes: str | None
    terms_and_conditions: str | None
    row_version: int
    created_by: str
    created_at: datetime
    updated_by: str | None
    updated_at: datetime
    deleted_at: datetime | None
    order: OrderRef | None = None
    items: list[QuoteItemRead] = Field(default_factory=list)


class PublicQuoteRead(BaseModel):
    reference: str
    status: QuoteStatusValue | str
    currency: str
    subtotal: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_value: Decimal
    monthly_recurring_value: Decimal
    annual_recurring_value: Decimal
    valid_until: date | None
    version: int
    contract_start_date: date | None
    contract_duration_months: int | None
    terms_and_conditions: str | None
    accepted_at: datetime | None
    rejected_at: datetime | None
    items: list[QuoteItemRead] = Field(default_factory=list)


class QuotePage(BaseModel):
    items: list[QuoteRead]
    total: int
    page: int
    limit: int


class OrderCreate(_WriteModel):
    order_type: OrderType = "new"
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)
    subtotal: Money = Field(ge=Decimal("0"))
    discount_amount: Money = Field(default=Decimal("0"), ge=Decimal("0"))
    tax_amount: Money = Field(default=Decimal("0"), ge=Decimal("0"))
    billing_cycle: BillingInterval | None = None
    auto_renew: bool = False
    effective_date: date | None = None
    expiry_date: date | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_order(self) -> OrderCreate:
        if self.discount_amount > self.subtotal:
            raise ValueError("discount_amount cannot exceed subtotal")
        _check_date_range(self.effective_date, self.expiry_date, "effective_date", "expiry_date")
        return self


class OrderUpdate(_WriteModel):
    row_version: int = Field(ge=1)
    order_type: OrderType | None = None
    billing_cycle: BillingInterval | None = None
    auto_renew: bool | None = None
    effective_date: date | None = None
    expiry_date: date | None = None
    notes: str | None = None


class OrderStatusUpdate(_WriteModel):
    status: OrderStatusValue
    reason: str | None = Field(default=None, max_length=2000)


class OrderCancelRequest(_WriteModel):
    reason: str = Field(min_length=1, max_length=2000)


class FulfillmentStatusUpdate(_WriteModel):
    fulfillment_status: FulfillmentStatusValue


class ConvertQuoteRequest(_WriteModel):
    order_type: OrderType = "new"
    effective_date: date | None = None
    expiry_date: date | None = None
    auto_renew: bool = False
    notes: str | None = None
    checkout_session_id: str | None = Field(default=None, min_length=1, max_length=255)

    @model_validator(mode="after")
    def _check_dates(self) -> ConvertQuoteRequest:
        _check_date_range(self.effective_date, self.expiry_date, "effective_date", "expiry_date")
        return self


class OrderRead(BaseModel):
    id: UUID
    tenant_id: str
    reference: str
    source_quote_id: UUID | None
    status: OrderStatusValue | str
    fulfillment_status: FulfillmentStatusValue | str
    order_type: OrderType | str
    currency: str
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_value: Decimal
    billing_cycle: BillingInterval | str | None
    auto_renew: bool
    effective_date: date | None
    expiry_date: date | None
    payment_reference: str | None
    activated_at: datetime | None
    fulfilled_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    notes: str | None
    row_version: int
    created_by: str
    created_at: datetime
    updated_by: str | None
    updated_at: datetime
    deleted_at: datetime | None


class OrderPage(BaseModel):
    items: list[OrderRead]
    total: int
    page: int
    limit: int


class AgreementCreate(_WriteModel):
    agreement_type: AgreementType = "msa"
    order_id: UUID | None = None
    title: str | None = Field(default=None, min_length=1, max_length=255)
    effective_date: date | None = None
    expiry_date: date | None = None
    terms: str | None = None
    notes: str | None = None

    @model_validator(mode="after")
    def _check_dates(self) -> AgreementCreate:
        _check_date_range(self.effective_date, self.expiry_date, "effective_date", "expiry_date")
        return self


class AgreementUpdate(_WriteModel):
    row_version: int = Field(ge=1)
    agreement_type: AgreementType | None = None
    title: str | None = Field(default=None, min_length=1, max_length=255)
    effective_date: date | None = None
    expiry_date: date | None = None
    terms: str | None = None
    notes: str | None = None


class AttachAgreementRequest(_WriteModel):
    agreement_id: UUID | None = None
    agreement_type: AgreementType = "msa"
    title: str | None = Field(default=None, min_length=1, max_length=255)
    terms: str | None = None


class AgreementBatchRequest(_WriteModel):
    agreement_types: list[AgreementType] = Field(default_factory=lambda: ["msa"], min_length=1, max_length=7)

    @model_validator(mode="after")
    def _check_types(self) -> AgreementBatchRequest:
        if len(set(self.agreement_types)) != len(self.agreement_types):
            raise ValueError("agreement_types must not repeat")
        return self


class ClientSignatureRequest(_WriteModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    ip_address: str | None = Field(default=None, max_length=64)


class PublicSignatureRequest(_WriteModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    title: str | None = Field(default=None, max_length=255)


class ProviderSignatureRequest(_WriteModel):
    name: str = Field(min_length=1, max_length=255)
    title: str | None = Field(default=None, max_length=255)
    signatory_id: str | None = Field(default=None, max_length=255)


class TerminateRequest(_WriteModel):
    reason: str = Field(min_length=1, max_length=2000)


class AgreementRead(BaseModel):
    id: UUID
    tenant_id: str
    reference: str
    order_id: UUID | None
    agreement_type: AgreementType | str
    status: AgreementStatusValue | str
    title: str
    effective_date: date | None
    expiry_date: date | None
    version: int
    supersedes_id: UUID | None
    public_token: str
    terms: str | None
    notes: str | None
    client_signatory_name: str | None
    client_signatory_email: str | None
    client_signatory_title: str | None
    client_signature_ip: str | None
    client_signed_at: datetime | None
    provider_signatory_id: str | None
    provider_signatory_name: str | None
    provider_signatory_title: str | None
    provider_signed_at: datetime | None
    sent_for_signature_at: datetime | None
    activated_at: datetime | None
    terminated_at: datetime | None
    termination_reason: str | None
    expired_at: datetime | None
    superseded_at: datetime | None
    row_version: int
    created_by: str
    created_at: datetime
    updated_by: str | None
    updated_at: datetime
    deleted_at: datetime | None


class PublicAgreementRead(BaseModel):
    reference: str
    agreement_type: AgreementType | str
    status: AgreementStatusValue | str
    title: str
    effective_date: date | None
    expiry_date: date | None
    version: int
    terms: str | None
    client_signed_at: datetime | None
    provider_signed_at: datetime | None
    activated_at: datetime | None


class AgreementPage(BaseModel):
    items: list[AgreementRead]
    total: int
    page: int
    limit: int


class StatusBreakdown(BaseModel):
    by_status: dict[str, int]
    total: int


class AgreementStats(StatusBreakdown):
    by_type: dict[str, int]
    average_days_to_signature: float | None


class SignatureReminderResult(BaseModel):
    days_threshold: int
    reminded: int
    agreement_ids: list[UUID]
