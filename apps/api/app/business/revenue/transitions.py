from __future__ import annotations

from enum import StrEnum

from app.platform.errors import BusinessRuleError


class QuoteStatus(StrEnum):
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CONVERTED = "converted"
    SUPERSEDED = "superseded"


class OrderStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class FulfillmentStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class AgreementStatus(StrEnum):
    DRAFT = "draft"
    PENDING_SIGNATURE = "pending_signature"
    ACTIVE = "active"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    SUPERSEDED = "superseded"


class Lifecycle(StrEnum):
    QUOTE = "quote"
    ORDER = "order"
    ORDER_FULFILLMENT = "order_fulfillment"
    AGREEMENT = "agreement"


VALID_QUOTE_TRANSITIONS: dict[str, set[str]] = {
    QuoteStatus.DRAFT: {QuoteStatus.SENT, QuoteStatus.SUPERSEDED},
    QuoteStatus.SENT: {
        QuoteStatus.VIEWED,
        QuoteStatus.ACCEPTED,
        QuoteStatus.REJECTED,
        QuoteStatus.EXPIRED,
        QuoteStatus.SUPERSEDED,
    },
    QuoteStatus.VIEWED: {
        QuoteStatus.ACCEPTED,
        QuoteStatus.REJECTED,
        QuoteStatus.EXPIRED,
        QuoteStatus.SUPERSEDED,
    },
    QuoteStatus.ACCEPTED: {QuoteStatus.CONVERTED},
    QuoteStatus.REJECTED: {QuoteStatus.SUPERSEDED},
    QuoteStatus.EXPIRED: {QuoteStatus.SUPERSEDED},
    QuoteStatus.CONVERTED: set(),
    QuoteStatus.SUPERSEDED: set(),
}

VALID_ORDER_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING: {OrderStatus.ACTIVE, OrderStatus.CANCELLED},
    OrderStatus.ACTIVE: {OrderStatus.FULFILLED, OrderStatus.CANCELLED},
    OrderStatus.FULFILLED: set(),
    OrderStatus.CANCELLED: set(),
}

VALID_FULFILLMENT_TRANSITIONS: dict[str, set[str]] = {
    FulfillmentStatus.PENDING: {FulfillmentStatus.ACTIVE, FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.ACTIVE: {FulfillmentStatus.FULFILLED, FulfillmentStatus.CANCELLED},
    FulfillmentStatus.FULFILLED: set(),
    FulfillmentStatus.CANCELLED: set(),
}

VALID_AGREEMENT_TRANSITIONS: dict[str, set[str]] = {
    AgreementStatus.DRAFT: {AgreementStatus.PENDING_SIGNATURE, AgreementStatus.SUPERSEDED},
    AgreementStatus.PENDING_SIGNATURE: {
        AgreementStatus.ACTIVE,
        AgreementStatus.EXPIRED,
        AgreementStatus.SUPERSEDED,
    },
    AgreementStatus.ACTIVE: {
        AgreementStatus.EXPIRED,
        AgreementStatus.TERMINATED,
        AgreementStatus.SUPERSEDED,
    },
    AgreementStatus.EXPIRED: set(),
    AgreementStatus.TERMINATED: set(),
    AgreementStatus.SUPERSEDED: set(),
}

TRANSITION_TABLES: dict[Lifecycle, dict[str, set[str]]] = {
    Lifecycle.QUOTE: VALID_QUOTE_TRANSITIONS,
    Lifecycle.ORDER: VALID_ORDER_TRANSITIONS,
    Lifecycle.ORDER_FULFILLMENT: VALID_FULFILLMENT_TRANSITIONS,
    Lifecycle.AGREEMENT: VALID_AGREEMENT_TRANSITIONS,
}

# Statuses outside the transition graph that gate non-transition operations.
QUOTE_EDITABLE_STATUSES = frozenset({QuoteStatus.DRAFT})
QUOTE_DELETABLE_STATUSES = frozenset({QuoteStatus.DRAFT, QuoteStatus.SENT, QuoteStatus.VIEWED})
QUOTE_ACTIONABLE_STATUSES = frozenset({QuoteStatus.SENT, QuoteStatus.VIEWED})
ORDER_EDITABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.ACTIVE})
ORDER_DELETABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CANCELLED})
AGREEMENT_EDITABLE_STATUSES = frozenset({AgreementStatus.DRAFT})
AGREEMENT_DELETABLE_STATUSES = frozenset({AgreementStatus.DRAFT})
AGREEMENT_IN_FORCE_STATUSES = frozenset({AgreementStatus.PENDING_SIGNATURE, AgreementStatus.ACTIVE})


def allowed_targets(lifecycle: Lifecycle | str, current: str) -> set[str]:
    table = TRANSITION_TABLES[Lifecycle(lifecycle)]
    return set(table.get(current, set()))


def can_transition(lifecycle: Lifecycle | str, current: str, target: str) -> bool:
    return target in allowed_targets(lifecycle, current)


def ensure_transition(lifecycle: Lifecycle | str, current: str, target: str) -> None:
    if can_transition(lifecycle, current, target):
        return
    name = Lifecycle(lifecycle).value
    raise BusinessRuleError(
        f"invalid {name} transition {current} -> {target}",
        code="invalid_status_transition",
        details={
            "entity": name,
            "from_status": str(current),
            "to_status": str(target),
            "allowed": sorted(str(item) for item in allowed_targets(lifecycle, current)),
        },
    )


def is_terminal(lifecycle: Lifecycle | str, status: str) -> bool:
    return not allowed_targets(lifecycle, status)
