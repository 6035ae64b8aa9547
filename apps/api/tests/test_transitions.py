from __future__ import annotations

import pytest

from app.business.revenue.transitions import (
    TRANSITION_TABLES,
    AgreementStatus,
    FulfillmentStatus,
    Lifecycle,
    OrderStatus,
    QuoteStatus,
    allowed_targets,
    can_transition,
    ensure_transition,
    is_terminal,
)
from app.platform.errors import BusinessRuleError


STATUS_ENUMS = {
    Lifecycle.QUOTE: QuoteStatus,
    Lifecycle.ORDER: OrderStatus,
    Lifecycle.ORDER_FULFILLMENT: FulfillmentStatus,
    Lifecycle.AGREEMENT: AgreementStatus,
}


@pytest.mark.parametrize("lifecycle", list(Lifecycle))
def test_every_status_has_a_row_in_its_table(lifecycle: Lifecycle) -> None:
    table = TRANSITION_TABLES[lifecycle]
    statuses = {str(item) for item in STATUS_ENUMS[lifecycle]}

    assert {str(key) for key in table} == statuses
    for targets in table.values():
        assert {str(target) for target in targets} <= statuses


def test_quote_graph() -> None:
    assert allowed_targets(Lifecycle.QUOTE, "draft") == {"sent", "superseded"}
    assert can_transition(Lifecycle.QUOTE, "sent", "viewed")
    assert can_transition(Lifecycle.QUOTE, "viewed", "expired")
    assert can_transition(Lifecycle.QUOTE, "accepted", "converted")
    assert not can_transition(Lifecycle.QUOTE, "accepted", "superseded")
    assert not can_transition(Lifecycle.QUOTE, "viewed", "sent")
    assert can_transition("quote", "rejected", "superseded")


def test_draft_to_converted_is_rejected_with_details() -> None:
    with pytest.raises(BusinessRuleError) as exc_info:
        ensure_transition(Lifecycle.QUOTE, QuoteStatus.DRAFT, QuoteStatus.CONVERTED)

    error = exc_info.value
    assert error.code == "invalid_status_transition"
    assert error.status_code == 409
    assert error.details == {
        "entity": "quote",
        "from_status": "draft",
        "to_status": "converted",
        "allowed": ["sent", "superseded"],
    }


def test_order_status_and_fulfillment_are_independent_graphs() -> None:
    assert not can_transition(Lifecycle.ORDER, "pending", "fulfilled")
    assert can_transition(Lifecycle.ORDER_FULFILLMENT, "pending", "fulfilled")
    assert can_transition(Lifecycle.ORDER, "active", "cancelled")
    assert not can_transition(Lifecycle.ORDER, "cancelled", "active")


def test_agreement_graph() -> None:
    assert not can_transition(Lifecycle.AGREEMENT, "draft", "active")
    assert can_transition(Lifecycle.AGREEMENT, "pending_signature", "active")
    assert can_transition(Lifecycle.AGREEMENT, "active", "terminated")
    assert not can_transition(Lifecycle.AGREEMENT, "pending_signature", "terminated")


def test_terminal_statuses() -> None:
    assert is_terminal(Lifecycle.QUOTE, "converted")
    assert is_terminal(Lifecycle.QUOTE, "superseded")
    assert not is_terminal(Lifecycle.QUOTE, "expired")
    assert is_terminal(Lifecycle.ORDER, "fulfilled")
    assert is_terminal(Lifecycle.AGREEMENT, "terminated")
    assert not is_terminal(Lifecycle.AGREEMENT, "active")


def test_unknown_status_has_no_targets() -> None:
    assert allowed_targets(Lifecycle.QUOTE, "archived") == set()
    with pytest.raises(BusinessRuleError):
        ensure_transition(Lifecycle.QUOTE, "archived", "sent")
