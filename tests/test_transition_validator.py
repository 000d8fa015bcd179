"""
Transition validator tests.

Covers the check order (transition → role → justification → fields →
precondition), the RBAC lookup behind role checks, ``list_legal_next`` and
a sample of named preconditions evaluated against real rows.
"""

import pytest

from app.models import db
from app.models.commercial import TechnicalQualification
from app.models.fulfillment import StockReservation
from app.services.permission import PermissionDenied, check_access, role_has_access
from app.services.transition_validator import (
    can_actor_perform,
    check_transition,
    is_legal,
    list_legal_next,
)


# ── Pure lookups ─────────────────────────────────────────────────────────


def test_is_legal():
    assert is_legal("rfq_item", "DRAFT", "RFQ_SUBMITTED")
    assert not is_legal("rfq_item", "DRAFT", "QUOTE_SENT")
    assert not is_legal("unknown", "DRAFT", "RFQ_SUBMITTED")


def test_can_actor_perform_requires_role_in_edge_and_matrix():
    assert can_actor_perform("rfq_item", "DRAFT", "RFQ_SUBMITTED", "SALES_EXECUTIVE")
    assert not can_actor_perform("rfq_item", "DRAFT", "RFQ_SUBMITTED", "QC_ENGINEER")
    assert not can_actor_perform("rfq_item", "DRAFT", "RFQ_SUBMITTED", None)
    # automatic edges accept any caller
    assert can_actor_perform("rfq_item", "RFQ_SUBMITTED", "SALES_REVIEW", "SYSTEM")


def test_list_legal_next_filters_by_role():
    assert list_legal_next("rfq_item", "SALES_REVIEW", "SALES_EXECUTIVE") == ["TECH_REVIEW"]
    manager = set(list_legal_next("rfq_item", "SALES_REVIEW", "SALES_MANAGER"))
    assert manager == {"TECH_REVIEW", "DRAFT", "FORCE_CLOSED"}
    assert list_legal_next("order_item", "CLOSED", "DIRECTOR") == []


def test_permission_matrix():
    assert role_has_access("DIRECTOR", "order_item", "transition")
    assert role_has_access("DIRECTOR", "sla", "sweep")
    assert not role_has_access("SALES_EXECUTIVE", "order_item", "transition")
    assert not role_has_access("NOBODY", "rfq_item", "transition")
    with pytest.raises(PermissionDenied) as exc:
        check_access("QC_ENGINEER", "approval", "decide")
    assert exc.value.code == "AUTHORIZATION"


# ── check_transition ─────────────────────────────────────────────────────


def test_unknown_edge_fails_transition_check(make_rfq_item):
    item = make_rfq_item()
    verdict = check_transition(item, "PRICE_FROZEN", "DIRECTOR")
    assert verdict["valid"] is False
    assert verdict["check"] == "transition"


def test_role_is_checked_before_fields(make_rfq_item):
    item = make_rfq_item(quantity=None)
    verdict = check_transition(item, "RFQ_SUBMITTED", "QC_ENGINEER")
    assert verdict["check"] == "role"


def test_justification_required(make_rfq_item):
    item = make_rfq_item(state="SALES_REVIEW")
    verdict = check_transition(item, "DRAFT", "SALES_MANAGER", justification="   ")
    assert verdict["check"] == "justification"
    assert check_transition(item, "DRAFT", "SALES_MANAGER", justification="Wrong product")["valid"]


def test_missing_fields_reported(make_rfq_item):
    item = make_rfq_item(quantity=None, unit_of_measure=None)
    verdict = check_transition(item, "RFQ_SUBMITTED", "SALES_EXECUTIVE")
    assert verdict["check"] == "fields"
    assert verdict["missing_fields"] == ["quantity", "unit_of_measure"]


def test_precondition_failure_lists_every_failed_key(make_rfq_item, make_product):
    product = make_product(sku="INACTIVE", is_active=False, min_order_qty=50.0)
    item = make_rfq_item(product=product, quantity=10.0)
    verdict = check_transition(item, "RFQ_SUBMITTED", "SALES_EXECUTIVE")
    assert verdict["check"] == "precondition"
    keys = [f["key"] for f in verdict["failed_preconditions"]]
    assert keys == ["PRODUCT_ACTIVE", "QUANTITY_VALID"]
    assert verdict["reason"].startswith("PRODUCT_ACTIVE")


def test_valid_transition(make_rfq_item):
    item = make_rfq_item()
    verdict = check_transition(item, "RFQ_SUBMITTED", "SALES_EXECUTIVE")
    assert verdict == {
        "valid": True, "from": "DRAFT", "to": "RFQ_SUBMITTED",
        "check": None, "reason": None, "missing_fields": [],
    }


def test_validator_does_not_write(make_rfq_item):
    item = make_rfq_item()
    check_transition(item, "RFQ_SUBMITTED", "SALES_EXECUTIVE")
    assert not db.session.dirty
    assert not db.session.new


# ── Named preconditions ──────────────────────────────────────────────────


def test_specifications_complete_uses_latest_qualification(make_rfq_item):
    item = make_rfq_item(state="TECH_REVIEW")
    assert check_transition(item, "TECH_APPROVED", "TECH_LEAD")["check"] == "precondition"

    db.session.add(TechnicalQualification(rfq_item_id=item.id, specifications_complete=True))
    db.session.commit()
    assert check_transition(item, "TECH_APPROVED", "TECH_LEAD")["valid"]


def test_margin_floor_comes_from_config(app, make_rfq_item):
    item = make_rfq_item(state="MARGIN_APPROVAL", selling_price=120.0, margin_pct=4.0, cost_breakdown_id=1)
    verdict = check_transition(item, "PRICE_FROZEN", "DIRECTOR")
    assert verdict["check"] == "precondition"
    assert "MARGIN_ACCEPTABLE" in verdict["reason"]

    app.config["MIN_MARGIN_PERCENT"] = 3.0
    try:
        assert check_transition(item, "PRICE_FROZEN", "DIRECTOR")["valid"]
    finally:
        app.config["MIN_MARGIN_PERCENT"] = 5.0


def test_credit_and_stock_preconditions(make_order_item, make_product, customer):
    product = make_product(sku="CREDIT-1", on_hand=10.0)
    item = make_order_item(state="CREDIT_CHECK", product=product, quantity=5.0, unit_price=200.0)

    verdict = check_transition(item, "STOCK_RESERVED", "FINANCE_OFFICER")
    assert [f["key"] for f in verdict["failed_preconditions"]] == ["STOCK_FULLY_RESERVED"]

    db.session.add(StockReservation(order_item_id=item.id, product_id=product.id, quantity=5.0))
    db.session.commit()
    assert check_transition(item, "STOCK_RESERVED", "FINANCE_OFFICER")["valid"]

    customer.credit_limit = 500.0
    customer.is_blocked = True
    db.session.commit()
    keys = [f["key"] for f in check_transition(item, "STOCK_RESERVED", "FINANCE_OFFICER")["failed_preconditions"]]
    assert keys == ["CREDIT_AVAILABLE", "CUSTOMER_NOT_BLOCKED"]
