from app.business.revenue.agreement_service import AgreementService, agreement_service
from app.business.revenue.api import agreements_router, orders_router, public_router, quotes_router
from app.business.revenue.conversion_service import ConversionService, conversion_service
from app.business.revenue.jobs import (
    ExpirySweeper,
    ReminderResult,
    SignatureReminder,
    SweepResult,
    expiry_sweeper,
    signature_reminder,
)
from app.business.revenue.models import (
    RevenueAgreement,
    RevenueIdempotencyKey,
    RevenueOrder,
    RevenueQuote,
    RevenueQuoteItem,
)
from app.business.revenue.order_service import OrderService, order_service
from app.business.revenue.quote_service import QuoteService, quote_service
from app.business.revenue.tokens import TokenAuthority, token_authority

__all__ = [
    "quotes_router",
    "orders_router",
    "agreements_router",
    "public_router",
    "RevenueQuote",
    "RevenueQuoteItem",
    "RevenueOrder",
    "RevenueAgreement",
    "RevenueIdempotencyKey",
    "QuoteService",
    "quote_service",
    "OrderService",
    "order_service",
    "AgreementService",
    "agreement_service",
    "ConversionService",
    "conversion_service",
    "ExpirySweeper",
    "SweepResult",
    "expiry_sweeper",
    "SignatureReminder",
    "ReminderResult",
    "signature_reminder",
    "TokenAuthority",
    "token_authority",
]
