from app.models.audit import AuditLog
from app.business.revenue.models import (
	RevenueAgreement,
	RevenueIdempotencyKey,
	RevenueOrder,
	RevenueQuote,
	RevenueQuoteItem,
)

__all__ = [
	"AuditLog",
	"RevenueAgreement",
	"RevenueIdempotencyKey",
	"RevenueOrder",
	"RevenueQuote",
	"RevenueQuoteItem",
]
