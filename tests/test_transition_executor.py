"""
Transition executor tests.

Covers:
    - the happy path: state write, owner, SLA start, notification, audit row
    - rejections mapped to the error taxonomy (nothing written on rejection)
    - terminal items rejected before validation, for every terminal state and role
    - optimistic concurrency via expected_version and the version column at flush
    - side-effect isolation: a failing NOTIFY / CREATE never undoes the move
    - SLA flags cleared on every transition
    - CREATE handlers: order creation from an accepted RFQ line, NCR on QC rejection
    - available_transitions annotations
"""

from datetime import timedelta

import pytest

from app.core.exceptions import (
    AuthorizationError,
    ConcurrentModificationError,
    ImmutableItemError,
    NotFoundError,
    PreconditionFailedError,
    TransitionValidationError,
)
from app.models import db
from app.models.audit import AuditLog
from app.models.commercial import Quote
from app.models.fulfillment import Nonconformance, QcInspection
from app.models.notification import Notification
from app.models.trade import TERMINAL_STATES, OrderItem
from app.services import transition_executor
from app.services.notification import NotificationService
from app.services.transition_executor import Actor, available_transitions, execute
from app.utils.helpers import as_utc, utcnow

SALES = Actor("u-sales", "SALES_EXECUTIVE")


def _audit_rows(item):
    return AuditLog.query.filter_by(table_name=item.__tablename__, record_id=str(item.id)).all()


# ═════════════════════════════════════════════════════════════════════════════
# Happy path
# ═════════════════════════════════════════════════════════════════════════════


def test_execute_moves_item_and_records_everything(make_rfq_item):
    item = make_rfq_item()
    before = utcnow()

    result = execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES)

    db.session.refresh(item)
    assert result.from_state == "DRAFT"
    assert result.to_state == "RFQ_SUBMITTED"
    assert item.state == "RFQ_SUBMITTED"
    assert item.owner_id == "u-sales"
    assert as_utc(item.state_entered_at) >= before
    # START_SLA:2h
    assert as_utc(item.sla_due_at) - as_utc(item.state_entered_at) == timedelta(hours=2)
    assert result.version == item.version == 2

    assert [s["side_effect"] for s in result.side_effects] == ["NOTIFY:SALES_MANAGER", "START_SLA:2h"]
    assert all(s["success"] for s in result.side_effects)
    assert Notification.query.filter_by(recipient="SALES_MANAGER", event_code="STATE_CHANGED").count() == 1

    audit = _audit_rows(item)
    assert [a.action for a in audit] == ["STATE_TRANSITION"]
    assert audit[0].old_data["state"] == "DRAFT"
    assert audit[0].new_data["state"] == "RFQ_SUBMITTED"
    assert audit[0].actor_id == "u-sales"
    assert audit[0].reason == "RFQ item submitted for review"


def test_justification_is_stored_as_audit_reason(make_rfq_item):
    item = make_rfq_item(state="SALES_REVIEW")
    execute("rfq_item", item.id, "DRAFT", Actor("u-mgr", "SALES_MANAGER"), justification="Wrong spec")
    assert _audit_rows(item)[-1].reason == "Wrong spec"


# ═════════════════════════════════════════════════════════════════════════════
# Rejections
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.parametrize("to_state, actor, justification, error, check", [
    ("QUOTE_SENT", SALES, None, TransitionValidationError, "transition"),
    ("RFQ_SUBMITTED", Actor("u-qc", "QC_ENGINEER"), None, AuthorizationError, "role"),
    ("RFQ_CLOSED", SALES, None, TransitionValidationError, "justification"),
])
def test_rejections_map_to_taxonomy(make_rfq_item, to_state, actor, justification, error, check):
    item = make_rfq_item(state_entered_at=utcnow() - timedelta(hours=3))
    entered, version, owner = item.state_entered_at, item.version, item.owner_id

    with pytest.raises(error) as exc:
        execute("rfq_item", item.id, to_state, actor, justification=justification)

    assert exc.value.details["check"] == check
    db.session.expire_all()
    item = db.session.get(type(item), item.id)
    assert item.state == "DRAFT"
    assert item.state_entered_at == entered
    assert item.version == version
    assert item.owner_id == owner
    assert _audit_rows(item) == []


def test_missing_fields_is_a_validation_error(make_rfq_item):
    item = make_rfq_item(quantity=None)
    with pytest.raises(TransitionValidationError) as exc:
        execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES)
    assert exc.value.code == "VALIDATION"
    assert exc.value.details["missing_fields"] == ["quantity"]


def test_failed_precondition(make_rfq_item, make_product):
    product = make_product(sku="OFF", is_active=False)
    item = make_rfq_item(product=product)
    with pytest.raises(PreconditionFailedError) as exc:
        execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES)
    assert exc.value.code == "PRECONDITION_FAILED"
    assert exc.value.details["failed_preconditions"][0]["key"] == "PRODUCT_ACTIVE"


def test_unknown_item_and_kind():
    with pytest.raises(NotFoundError):
        execute("rfq_item", 99999, "RFQ_SUBMITTED", SALES)
    with pytest.raises(TransitionValidationError):
        execute("purchase_order", 1, "RELEASED", SALES)


def test_terminal_item_is_immutable_even_for_an_invalid_request(make_order_item):
    item = make_order_item(state="CLOSED")
    with pytest.raises(ImmutableItemError) as exc:
        execute("order_item", item.id, "NOT_A_STATE", Actor("u-ceo", "MD"), justification="x")
    assert exc.value.code == "IMMUTABLE_ITEM"
    assert exc.value.retryable is False


@pytest.mark.parametrize("kind, state", [
    (kind, state) for kind, states in sorted(TERMINAL_STATES.items()) for state in sorted(states)
])
@pytest.mark.parametrize("role", ["DIRECTOR", "MD", "SALES_MANAGER", "SYSTEM"])
def test_no_role_can_move_a_terminal_item(request, kind, state, role):
    item = request.getfixturevalue(f"make_{kind}")(state=state)
    entered, version = item.state_entered_at, item.version

    with pytest.raises(ImmutableItemError) as exc:
        execute(kind, item.id, "FORCE_CLOSED", Actor("u-any", role), justification="Reopen attempt")

    assert exc.value.details["state"] == state
    db.session.expire_all()
    item = db.session.get(type(item), item.id)
    assert item.state == state
    assert item.state_entered_at == entered
    assert item.version == version
    assert _audit_rows(item) == []


def test_soft_deleted_item_cannot_move(make_rfq_item):
    item = make_rfq_item()
    item.soft_delete("u-admin")
    db.session.commit()
    with pytest.raises(TransitionValidationError):
        execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES)


# ═════════════════════════════════════════════════════════════════════════════
# Concurrency
# ═════════════════════════════════════════════════════════════════════════════


def test_expected_version_mismatch(make_rfq_item):
    item = make_rfq_item()
    with pytest.raises(ConcurrentModificationError) as exc:
        execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES, expected_version=item.version + 1)
    assert exc.value.retryable is True
    assert exc.value.details["actual_version"] == item.version


def test_second_writer_with_stale_version_loses(make_rfq_item):
    item = make_rfq_item()
    version = item.version
    execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES, expected_version=version)
    with pytest.raises(ConcurrentModificationError):
        execute("rfq_item", item.id, "SALES_REVIEW", Actor.system(), expected_version=version)


def test_row_changed_after_load_is_caught_at_flush(make_rfq_item):
    item = make_rfq_item()
    assert item.version == 1  # loaded into the session

    # another writer bumps the row behind the session's back
    db.session.execute(db.text(f"UPDATE {item.__tablename__} SET version = version + 1 WHERE id = :id"),
                       {"id": item.id})

    with pytest.raises(ConcurrentModificationError) as exc:
        execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES)

    assert exc.value.retryable is True
    assert "modified concurrently" in exc.value.message
    db.session.expire_all()
    assert db.session.get(type(item), item.id).state == "DRAFT"
    assert _audit_rows(item) == []


# ═════════════════════════════════════════════════════════════════════════════
# Side effects
# ═════════════════════════════════════════════════════════════════════════════


def test_failed_notification_does_not_undo_transition(make_rfq_item, monkeypatch):
    item = make_rfq_item()

    def _boom(*args, **kwargs):
        raise RuntimeError("mail relay down")

    monkeypatch.setattr(NotificationService, "notify", staticmethod(_boom))

    result = execute("rfq_item", item.id, "RFQ_SUBMITTED", SALES)

    db.session.refresh(item)
    assert item.state == "RFQ_SUBMITTED"
    assert item.sla_due_at is not None
    failed = result.failed_side_effects
    assert len(failed) == 1
    assert failed[0]["side_effect"] == "NOTIFY:SALES_MANAGER"
    assert "mail relay down" in failed[0]["detail"]
    assert _audit_rows(item)[-1].new_data["state"] == "RFQ_SUBMITTED"


def test_failed_create_handler_is_isolated(make_rfq_item, customer, monkeypatch):
    item = make_rfq_item(state="QUOTE_SENT")
    quote = Quote(number="Q-T-1", rfq_id=item.rfq_id, customer_id=customer.id, status="accepted")
    db.session.add(quote)
    db.session.flush()
    item.quote_id = quote.id
    db.session.commit()

    def _boom(item, ctx):
        raise RuntimeError("order service unavailable")

    monkeypatch.setitem(transition_executor.ITEM_HANDLERS, "create_order", _boom)
    result = execute("rfq_item", item.id, "CUSTOMER_ACCEPTED", Actor("u-sales", "SALES_MANAGER"))

    db.session.refresh(item)
    assert item.state == "CUSTOMER_ACCEPTED"
    assert item.order_item_id is None
    assert [s["side_effect"] for s in result.failed_side_effects] == ["CREATE:create_order"]


def test_customer_acceptance_creates_order_line(make_rfq_item, customer):
    item = make_rfq_item(state="QUOTE_SENT", selling_price=180.0)
    quote = Quote(number="Q-T-2", rfq_id=item.rfq_id, customer_id=customer.id, status="accepted")
    db.session.add(quote)
    db.session.flush()
    item.quote_id = quote.id
    db.session.commit()

    execute("rfq_item", item.id, "CUSTOMER_ACCEPTED", Actor("u-sales", "SALES_MANAGER"))

    db.session.refresh(item)
    order_item = db.session.get(OrderItem, item.order_item_id)
    assert order_item.state == "PR_CREATED"
    assert order_item.rfq_item_id == item.id
    assert order_item.unit_price == 180.0
    assert order_item.quantity == item.quantity


def test_transition_clears_sla_flags(make_rfq_item):
    item = make_rfq_item(state="RFQ_SUBMITTED")
    item.sla_due_at = utcnow() - timedelta(hours=1)
    item.sla_warning = True
    item.sla_breached = True
    db.session.commit()

    execute("rfq_item", item.id, "SALES_REVIEW", Actor.system())

    db.session.refresh(item)
    assert item.sla_warning is False
    assert item.sla_breached is False
    assert as_utc(item.sla_due_at) > utcnow()


def test_stop_sla_clears_due_date(make_rfq_item):
    from app.models.commercial import TechnicalQualification

    item = make_rfq_item(state="TECH_REVIEW")
    item.sla_due_at = utcnow() + timedelta(hours=3)
    db.session.add(TechnicalQualification(rfq_item_id=item.id, specifications_complete=True))
    db.session.commit()

    execute("rfq_item", item.id, "TECH_APPROVED", Actor("u-tech", "TECH_LEAD"))
    db.session.refresh(item)
    assert item.sla_due_at is None


def test_qc_rejection_raises_nonconformance(make_order_item, make_vendor):
    from app.models.fulfillment import GoodsReceipt, PurchaseOrder, StockLot

    item = make_order_item(state="GOODS_RECEIVED")
    vendor = make_vendor()
    po = PurchaseOrder(number="PO-T-1", order_item_id=item.id, vendor_id=vendor.id,
                       product_id=item.product_id, quantity=5.0, unit_price=10.0)
    db.session.add(po)
    db.session.flush()
    receipt = GoodsReceipt(number="GRN-T-1", purchase_order_id=po.id, order_item_id=item.id,
                           received_quantity=5.0)
    db.session.add(receipt)
    db.session.flush()
    lot = StockLot(lot_number="LOT-T-1", receipt=receipt, product_id=item.product_id,
                   quantity=5.0, qc_status="failed")
    db.session.add(lot)
    db.session.flush()
    db.session.add(QcInspection(lot_id=lot.id, order_item_id=item.id, status="failed",
                                quantity_inspected=5.0, quantity_failed=5.0))
    db.session.commit()

    result = execute("order_item", item.id, "QC_REJECTED", Actor("u-qc", "QC_ENGINEER"),
                     justification="Pitting on valve seats")

    assert result.failed_side_effects == []
    ncr = Nonconformance.query.filter_by(order_item_id=item.id).one()
    assert ncr.status == "open"
    assert ncr.quantity == 5.0
    assert ncr.description == "Pitting on valve seats"


# ═════════════════════════════════════════════════════════════════════════════
# Available transitions
# ═════════════════════════════════════════════════════════════════════════════


def test_available_transitions_annotates_blockers(make_rfq_item, make_product):
    product = make_product(sku="MOQ", min_order_qty=100.0)
    item = make_rfq_item(product=product, quantity=10.0)

    info = available_transitions("rfq_item", item.id, "SALES_EXECUTIVE")

    assert info["state"] == "DRAFT"
    by_target = {t["to_state"]: t for t in info["transitions"]}
    submit = by_target["RFQ_SUBMITTED"]
    assert submit["role_permitted"] is True
    assert submit["ready"] is False
    assert submit["failed_preconditions"][0]["key"] == "QUANTITY_VALID"
    assert by_target["FORCE_CLOSED"]["role_permitted"] is False
