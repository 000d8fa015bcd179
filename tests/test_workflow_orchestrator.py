"""
Workflow orchestrator tests.

End-to-end runs against the in-memory database (local vendor catalogue, no
portal), plus the pure scoring / pricing helpers.

Scenarios:
    - fully stocked line, every gate auto-approved → completed, line CLOSED
    - partial stock → reserve what exists, procure the shortfall
    - pause at a human gate, approve, resume without duplicating records
    - rejected gate → run fails with PRECONDITION_FAILED
    - margin above the management threshold forces the pricing gate
    - QC failure: inspection pause → NCR → dispatch pause → disposition → resume
    - partial payment pauses settlement until the balance arrives
    - no eligible supplier → EXTERNAL_OPERATION_FAILED
    - malformed vendor portal replies or an unexpected error still end the run as failed
    - a run already being driven cannot be resumed a second time
    - QC failure with dispatch blocking off: the run completes with the line left open
    - unusable input is rejected before a run is created
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from app.core.exceptions import AuthorizationError, ConflictError, RunInputError
from app.integrations.trade_gateway import VendorGateway
from app.models import db
from app.models.audit import AuditLog
from app.models.commercial import Quote, SalesPricing, VendorQuote
from app.models.fulfillment import Invoice, Nonconformance, PurchaseOrder, Shipment
from app.models.notification import Notification
from app.models.trade import Order, OrderItem, RfqItem, StockBalance
from app.models.workflow import ActivityLog, ApprovalRequest, WorkflowRun
from app.services.approval_service import decide_approval
from app.services.quality_service import close_nonconformance
from app.services.transition_executor import Actor
from app.services.workflow_orchestrator import (
    PHASES,
    RunOptions,
    WorkflowOrchestrator,
    delivery_score,
    price_line,
    price_score,
    score_vendor_quotes,
)

AUTO = {
    "auto_approve_technical_qualification": True,
    "auto_approve_rate_analysis": True,
    "auto_approve_pricing": True,
    "auto_approve_quote": True,
    "auto_approve_po": True,
}


@pytest.fixture()
def engine():
    return WorkflowOrchestrator()


def _stock(product):
    return StockBalance.query.filter_by(product_id=product.id).one()


# ═════════════════════════════════════════════════════════════════════════════
# Happy paths
# ═════════════════════════════════════════════════════════════════════════════


def test_stocked_line_runs_to_completion(engine, customer, make_product):
    product = make_product(sku="STOCKED", on_hand=50.0, standard_cost=100.0)

    result = engine.run(
        {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 10}]},
        AUTO, initiated_by="u-sales",
    )

    assert result.status == "completed", result.message
    assert result.context.completed_phases == list(PHASES)
    assert result.context.errors == []

    rfq_item = db.session.get(RfqItem, result.context.rfq_item_ids[0])
    assert rfq_item.state == "RFQ_CLOSED"
    assert rfq_item.selling_price == 133.75

    order_item = db.session.get(OrderItem, result.context.order_item_ids[0])
    assert order_item.state == "CLOSED"
    assert order_item.rfq_item_id == rfq_item.id
    assert rfq_item.order_item_id == order_item.id

    invoice = db.session.get(Invoice, result.context.invoice_id)
    assert invoice.status == "paid"
    assert invoice.total_amount == 1337.5
    assert result.context.total_amount == 1337.5

    stock = _stock(product)
    assert stock.on_hand == 40.0
    assert stock.reserved == 0.0
    assert result.context.purchase_order_ids == []

    run = db.session.get(WorkflowRun, result.run_id)
    assert run.status == "completed"
    assert run.finished_at is not None
    procurement_log = [a.message for a in ActivityLog.query.filter_by(run_id=run.id, phase="procurement")]
    assert any(m.startswith("Skipped") for m in procurement_log)
    assert Notification.query.filter_by(
        recipient="u-sales", event_code="WORKFLOW_PHASE_COMPLETED").count() == len(PHASES)


def test_every_item_move_is_audited(engine, customer, make_product):
    product = make_product(sku="AUDITED", on_hand=50.0)
    result = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]}, AUTO)

    order_item_id = str(result.context.order_item_ids[0])
    moves = (AuditLog.query
             .filter_by(table_name="order_items", record_id=order_item_id, action="STATE_TRANSITION")
             .order_by(AuditLog.id).all())
    assert [m.new_data["state"] for m in moves] == [
        "PR_ACKNOWLEDGED", "CREDIT_CHECK", "STOCK_RESERVED", "READY_TO_DISPATCH",
        "DISPATCHED", "DELIVERED", "INVOICED", "PAYMENT_CLOSED", "CLOSED",
    ]


def test_partial_stock_reserves_then_procures_shortfall(engine, customer, make_product, make_vendor):
    product = make_product(sku="PARTIAL", on_hand=4.0, standard_cost=100.0)
    cheap = make_vendor("VEN-A", {product: (90.0, 10)})
    make_vendor("VEN-B", {product: (95.0, 20)})

    result = engine.run(
        {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 10}]},
        {**AUTO, "auto_pass_qc": True},
    )

    assert result.status == "completed", result.message
    codes = [w["code"] for w in result.context.warnings]
    assert "PARTIAL_STOCK" in codes

    rfq_item = db.session.get(RfqItem, result.context.rfq_item_ids[0])
    selected = db.session.get(VendorQuote, rfq_item.selected_vendor_quote_id)
    assert selected.vendor_id == cheap.id
    assert rfq_item.selling_price == price_line(90.0, 25.0)["selling_price"]

    entry = result.context.stock_check_results[0]
    assert entry["reserved"] == 4.0
    assert entry["shortfall"] == 6.0

    po = db.session.get(PurchaseOrder, result.context.purchase_order_ids[0])
    assert po.vendor_id == cheap.id
    assert po.quantity == 6.0
    assert po.confirmed_at is not None

    shipment = db.session.get(Shipment, result.context.shipment_id)
    order_item = db.session.get(OrderItem, result.context.order_item_ids[0])
    assert shipment.dispatched_quantity[str(order_item.id)] == 10.0
    assert order_item.state == "CLOSED"
    assert _stock(product).on_hand == 0.0


def test_few_vendors_is_a_warning_not_a_failure(engine, customer, make_product, make_vendor):
    product = make_product(sku="SOLE", on_hand=0.0)
    make_vendor("VEN-SOLE", {product: (80.0, 5)})

    result = engine.run(
        {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 3}]},
        {**AUTO, "auto_pass_qc": True},
    )

    assert result.status == "completed", result.message
    assert "FEW_VENDORS" in [w["code"] for w in result.context.warnings]


# ═════════════════════════════════════════════════════════════════════════════
# Gates
# ═════════════════════════════════════════════════════════════════════════════


def test_pause_approve_resume_is_idempotent(engine, customer, make_product):
    product = make_product(sku="GATED", on_hand=20.0)
    options = {**AUTO, "auto_approve_quote": False}

    paused = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 2}]},
                        options)

    assert paused.status == "requires_action"
    assert paused.phase == "customer_quote"
    assert paused.last_completed_phase == "pricing_approval"
    approval = db.session.get(ApprovalRequest, paused.approval_request_id)
    assert approval.status == "pending"
    assert set(approval.required_roles) == {"SALES_EXECUTIVE", "SALES_MANAGER"}
    assert db.session.get(RfqItem, paused.context.rfq_item_ids[0]).state == "QUOTE_SENT"

    # still pending: resuming changes nothing
    again = engine.resume(paused.run_id)
    assert again.status == "requires_action"
    assert again.approval_request_id == approval.id

    decide_approval(approval.id, "approved", Actor("u-mgr", "SALES_MANAGER"), "Customer PO received")
    done = engine.resume(paused.run_id)

    assert done.status == "completed", done.message
    assert Quote.query.filter_by(rfq_id=done.context.rfq_id).count() == 1
    assert Order.query.filter_by(rfq_id=done.context.rfq_id).count() == 1
    assert ApprovalRequest.query.filter_by(run_id=paused.run_id).count() == 1
    accepted = (AuditLog.query
                .filter_by(table_name="rfq_items", record_id=str(done.context.rfq_item_ids[0]))
                .filter(AuditLog.reason == "Customer accepted quote").one())
    assert accepted.actor_id == "u-mgr"

    assert engine.resume(paused.run_id).status == "completed"
    assert Invoice.query.filter_by(order_id=done.context.order_id).count() == 1


def test_resume_refuses_a_run_that_is_already_running(engine, customer, make_product):
    product = make_product(sku="OWNER", on_hand=20.0)
    paused = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
                        {**AUTO, "auto_approve_quote": False})
    decide_approval(paused.approval_request_id, "approved", Actor("u-mgr", "SALES_MANAGER"))

    # another worker has claimed the run
    run = db.session.get(WorkflowRun, paused.run_id)
    run.status = "running"
    db.session.commit()

    with pytest.raises(ConflictError) as exc:
        engine.resume(paused.run_id)

    assert exc.value.field == "status"
    assert exc.value.value == "running"
    run = db.session.get(WorkflowRun, paused.run_id)
    assert run.status == "running"
    assert run.attempts == 1
    assert Order.query.count() == 0


def test_approval_roles_are_enforced(engine, customer, make_product):
    product = make_product(sku="ROLES", on_hand=20.0)
    paused = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
                        {**AUTO, "auto_approve_quote": False})

    with pytest.raises(AuthorizationError):
        decide_approval(paused.approval_request_id, "approved", Actor("u-1", "SALES_EXECUTIVE"))
    with pytest.raises(AuthorizationError):
        decide_approval(paused.approval_request_id, "approved", Actor("u-2", "TECH_LEAD"))


def test_rejected_gate_fails_the_run(engine, customer, make_product):
    product = make_product(sku="REJECT", on_hand=20.0)
    paused = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
                        {**AUTO, "auto_approve_po": False, "auto_approve_quote": False})
    decide_approval(paused.approval_request_id, "rejected", Actor("u-mgr", "SALES_MANAGER"), "Too expensive")

    result = engine.resume(paused.run_id)

    assert result.status == "failed"
    assert result.phase == "customer_quote"
    assert result.context.errors[-1]["code"] == "PRECONDITION_FAILED"
    assert "Too expensive" in result.context.errors[-1]["message"]


def test_high_margin_forces_pricing_gate(engine, customer, make_product):
    product = make_product(sku="RICH", on_hand=20.0)
    result = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
                        {**AUTO, "default_margin_percent": 40.0})

    assert result.status == "requires_action"
    assert result.phase == "pricing_approval"
    assert "MARGIN_ABOVE_THRESHOLD" in [w["code"] for w in result.context.warnings]
    approval = db.session.get(ApprovalRequest, result.approval_request_id)
    assert set(approval.required_roles) == {"DIRECTOR", "MD"}

    pricing = SalesPricing.query.filter_by(rfq_item_id=result.context.rfq_item_ids[0]).one()
    assert pricing.margin_percent == 40.0

    decide_approval(approval.id, "approved", Actor("u-md", "MD"))
    assert engine.resume(result.run_id).status == "completed"
    assert SalesPricing.query.filter_by(rfq_item_id=result.context.rfq_item_ids[0]).count() == 1


# ═════════════════════════════════════════════════════════════════════════════
# QC failure and settlement pauses
# ═════════════════════════════════════════════════════════════════════════════


def test_qc_failure_blocks_dispatch_until_disposition(engine, customer, make_product, make_vendor):
    stocked = make_product(sku="QC-STOCK", on_hand=10.0)
    sourced = make_product(sku="QC-BUY", on_hand=0.0)
    make_vendor("VEN-QC", {sourced: (50.0, 7)})

    paused = engine.run(
        {"customer_id": customer.id, "items": [
            {"product_id": stocked.id, "quantity": 2},
            {"product_id": sourced.id, "quantity": 3},
        ]},
        AUTO,
    )
    assert paused.status == "requires_action"
    assert paused.phase == "receipt_inspection"
    stocked_line, sourced_line = [db.session.get(OrderItem, i) for i in paused.context.order_item_ids]
    assert sourced_line.state == "GOODS_RECEIVED"

    blocked = engine.resume(paused.run_id, inspection_outcomes={sourced.id: "failed"})

    assert blocked.status == "requires_action"
    assert blocked.phase == "dispatch"
    db.session.refresh(sourced_line)
    assert sourced_line.state == "QC_REJECTED"
    ncrs = Nonconformance.query.filter_by(order_item_id=sourced_line.id).all()
    assert len(ncrs) == 1
    assert blocked.context.ncr_ids == [ncrs[0].id]
    assert "QC_EXCLUDED" in [w["code"] for w in blocked.context.warnings]

    close_nonconformance(ncrs[0].id, "return_to_vendor", Actor("u-qc", "QC_MANAGER"), "Vendor to replace")
    done = engine.resume(paused.run_id)

    assert done.status == "completed", done.message
    db.session.refresh(stocked_line)
    db.session.refresh(sourced_line)
    assert stocked_line.state == "CLOSED"
    assert sourced_line.state == "QC_REJECTED"
    codes = [w["code"] for w in done.context.warnings]
    assert "LINE_NOT_DISPATCHED" in codes
    assert "LINE_OPEN" in codes
    invoice = db.session.get(Invoice, done.context.invoice_id)
    assert invoice.subtotal == round(2 * stocked_line.unit_price, 2)


def test_qc_failure_without_dispatch_block_completes_with_line_open(engine, customer, make_product,
                                                                   make_vendor):
    sourced = make_product(sku="QC-ONLY", on_hand=0.0)
    make_vendor("VEN-QC1", {sourced: (50.0, 7)})
    options = {**AUTO, "block_dispatch_on_qc_fail": False}

    paused = engine.run({"customer_id": customer.id, "items": [{"product_id": sourced.id, "quantity": 3}]},
                        options)
    assert paused.phase == "receipt_inspection"

    done = engine.resume(paused.run_id, inspection_outcomes={sourced.id: "failed"})

    assert done.status == "completed", done.message
    assert done.context.completed_phases == list(PHASES)
    line = db.session.get(OrderItem, done.context.order_item_ids[0])
    assert line.state == "QC_REJECTED"
    codes = [w["code"] for w in done.context.warnings]
    assert {"LINE_NOT_DISPATCHED", "NOTHING_TO_INVOICE", "LINE_OPEN"} <= set(codes)
    assert done.context.shipment_id is None
    assert done.context.invoice_id is None
    assert Invoice.query.count() == 0
    assert Nonconformance.query.filter_by(order_item_id=line.id, status="open").count() == 1


def test_partial_payment_pauses_settlement(engine, customer, make_product):
    product = make_product(sku="INSTAL", on_hand=10.0)
    paused = engine.run(
        {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 4}],
         "payment_amount": 100.0},
        AUTO,
    )

    assert paused.status == "requires_action"
    assert paused.phase == "settlement"
    order_item = db.session.get(OrderItem, paused.context.order_item_ids[0])
    assert order_item.state == "PAYMENT_PARTIAL"
    invoice = db.session.get(Invoice, paused.context.invoice_id)
    assert invoice.status == "partially_paid"
    assert invoice.amount_paid == 100.0

    done = engine.resume(paused.run_id, payment_amount=invoice.balance)

    assert done.status == "completed", done.message
    db.session.refresh(invoice)
    assert invoice.status == "paid"
    assert len(done.context.payment_ids) == 2
    assert db.session.get(OrderItem, order_item.id).state == "CLOSED"


# ═════════════════════════════════════════════════════════════════════════════
# Failures
# ═════════════════════════════════════════════════════════════════════════════


def test_no_supplier_fails_external_sourcing(engine, customer, make_product, make_vendor):
    product = make_product(sku="ORPHAN", on_hand=0.0)
    make_vendor("VEN-UNAPPROVED", {product: (10.0, 5)}, is_approved=False)

    result = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 5}]},
                        AUTO, initiated_by="u-sales")

    assert result.status == "failed"
    assert result.phase == "external_sourcing"
    assert result.last_completed_phase == "internal_qualification"
    error = result.context.errors[-1]
    assert error["code"] == "EXTERNAL_OPERATION_FAILED"
    assert error["message"] == "No approved suppliers found"
    assert error["retryable"] is True
    # failed phase rolled back; earlier phases kept
    assert db.session.get(RfqItem, result.context.rfq_item_ids[0]).state == "STOCK_CHECK"
    assert Notification.query.filter_by(recipient="u-sales", event_code="WORKFLOW_FAILED").count() == 1


def _portal_reply(payload):
    resp = MagicMock()
    resp.status_code = 200
    resp.ok = True
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    return resp


def test_unusable_portal_quotes_fail_the_run_cleanly(customer, make_product, make_vendor):
    product = make_product(sku="PORTAL", on_hand=0.0)
    make_vendor("VEN-P1", {product: (10.0, 5)})
    make_vendor("VEN-P2", {product: (11.0, 5)})
    session = MagicMock(spec=requests.Session)
    session.post.side_effect = [_portal_reply(None), _portal_reply({"unit_price": "n/a"})]
    engine = WorkflowOrchestrator(vendors=VendorGateway(session=session, portal_url="http://portal",
                                                        sleep=lambda s: None))

    result = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 2}]},
                        AUTO)

    assert result.status == "failed"
    assert result.phase == "external_sourcing"
    assert result.context.errors[-1]["message"] == "No vendor quotes received"
    assert db.session.get(WorkflowRun, result.run_id).status == "failed"
    assert VendorQuote.query.count() == 0


def test_unexpected_error_fails_the_run_instead_of_leaving_it_running(customer, make_product):
    product = make_product(sku="BOOM", on_hand=5.0)

    def broken_executor(*args, **kwargs):
        raise RuntimeError("executor exploded")

    engine = WorkflowOrchestrator(executor=broken_executor)
    result = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
                        AUTO, initiated_by="u-sales")

    assert result.status == "failed"
    assert result.phase == "request_intake"
    error = result.context.errors[-1]
    assert error["code"] == "INTERNAL_ERROR"
    assert error["retryable"] is False
    assert "executor exploded" in error["message"]
    run = db.session.get(WorkflowRun, result.run_id)
    assert run.status == "failed"
    assert run.finished_at is not None
    assert Notification.query.filter_by(recipient="u-sales", event_code="WORKFLOW_FAILED").count() == 1


def test_stock_shortfall_without_procurement_fails(engine, customer, make_product, make_vendor):
    product = make_product(sku="NO-PO", on_hand=0.0)
    make_vendor("VEN-NP", {product: (10.0, 5)})
    result = engine.run({"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 5}]},
                        {**AUTO, "create_po_on_stock_shortfall": False})
    assert result.status == "failed"
    assert result.phase == "stock_resolution"


@pytest.mark.parametrize("initial, options", [
    ({"customer_id": 999, "items": [{"product_id": 1, "quantity": 1}]}, {}),
    ({"customer_id": None, "items": []}, {}),
    (None, {"auto_approve_everything": True}),
])
def test_unusable_input_creates_no_run(engine, customer, make_product, initial, options):
    product = make_product(sku="INPUT")
    initial = initial or {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]}
    with pytest.raises(RunInputError):
        engine.run(initial, options)
    assert WorkflowRun.query.count() == 0


def test_options_defaults_and_merge():
    opts = RunOptions.from_dict({"weightages": {"price": 70, "quality": 10}})
    assert opts.weightages == {"price": 70, "quality": 10, "delivery": 15, "payment": 5}
    assert opts.auto_generate_invoice is True
    assert opts.minimum_vendor_quotes == 2
    with pytest.raises(RunInputError) as exc:
        RunOptions.from_dict({"bogus": 1})
    assert exc.value.details["unknown_options"] == ["bogus"]


# ═════════════════════════════════════════════════════════════════════════════
# Scoring & pricing
# ═════════════════════════════════════════════════════════════════════════════


def test_price_score_is_linear_between_cheapest_and_dearest():
    prices = [100.0, 120.0, 150.0]
    assert [price_score(p, prices) for p in prices] == [100.0, 60.0, 0.0]
    assert price_score(42.0, [42.0, 42.0]) == 100.0


@pytest.mark.parametrize("days, expected", [(3, 100.0), (7, 100.0), (18.5, 75.0), (30, 50.0), (90, 50.0)])
def test_delivery_score(days, expected):
    assert delivery_score(days) == pytest.approx(expected)


def test_score_vendor_quotes_ranks_best_first():
    quotes = [
        SimpleNamespace(id=1, vendor_id=11, unit_price=100.0, quality_rating=4.0,
                        lead_time_days=7, payment_terms_days=30),
        SimpleNamespace(id=2, vendor_id=12, unit_price=90.0, quality_rating=4.0,
                        lead_time_days=10, payment_terms_days=30),
    ]
    scores = score_vendor_quotes(quotes, RunOptions().weightages)

    assert [s["quote_id"] for s in scores] == [2, 1]
    assert [s["rank"] for s in scores] == [1, 2]
    best = scores[0]
    assert best["price"] == 100.0
    assert best["quality"] == 80.0
    assert best["payment"] == 50.0
    assert best["total"] == pytest.approx(92.52, abs=0.01)
    assert scores[1]["total"] == pytest.approx(33.5)


def test_price_line():
    assert price_line(100.0, 25.0) == {
        "unit_cost": 100.0,
        "freight_cost": 5.0,
        "handling_cost": 2.0,
        "landed_cost": 107.0,
        "margin_percent": 25.0,
        "selling_price": 133.75,
    }
