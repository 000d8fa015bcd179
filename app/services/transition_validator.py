"""
Transition Validator — decides legality without side effects.

A pure lookup over ``transition_table`` plus a registry of named
precondition evaluators.  Nothing in this module writes to the session, so
it is safe to call from "what can I do next" endpoints.

Check order (first failure wins):
    transition → role → justification → fields → precondition

Usage:
    from app.services.transition_validator import check_transition, list_legal_next

    verdict = check_transition(item, "TECH_REVIEW", role="SALES_EXECUTIVE")
    if not verdict["valid"]:
        print(verdict["check"], verdict["reason"])
"""

import logging

from flask import current_app, has_app_context
from sqlalchemy import func, select

from app.models import db
from app.models.commercial import Quote, RateAnalysis, TechnicalQualification, VendorQuote
from app.models.fulfillment import (
    GoodsReceipt,
    Invoice,
    Payment,
    PurchaseOrder,
    QcInspection,
    Shipment,
    StockLot,
    StockReservation,
)
from app.models.trade import Customer, OrderItem, Product
from app.services.permission import role_has_access
from app.services.transition_table import (
    TransitionDefinition,
    get_transition,
    transitions_from,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_MARGIN_PERCENT = 5.0


# ═════════════════════════════════════════════════════════════════════════════
# Precondition registry
# ═════════════════════════════════════════════════════════════════════════════

PRECONDITIONS: dict = {}


def register_precondition(key: str):
    """Register ``fn(item) -> (ok, reason)`` under *key*."""
    def decorator(fn):
        PRECONDITIONS[key] = fn
        return fn
    return decorator


def _ok():
    return True, None


def _fail(reason):
    return False, reason


# ── RFQ item ─────────────────────────────────────────────────────────────────

@register_precondition("PRODUCT_ACTIVE")
def _product_active(item):
    product = db.session.get(Product, item.product_id) if item.product_id else None
    if product is None:
        return _fail("Product not found")
    if not product.is_active:
        return _fail(f"Product {product.sku} is inactive")
    return _ok()


@register_precondition("QUANTITY_POSITIVE")
def _quantity_positive(item):
    if not item.quantity or item.quantity <= 0:
        return _fail("Quantity must be greater than zero")
    return _ok()


@register_precondition("QUANTITY_VALID")
def _quantity_valid(item):
    product = db.session.get(Product, item.product_id) if item.product_id else None
    minimum = (product.min_order_qty if product else None) or 0
    if (item.quantity or 0) < minimum:
        return _fail(f"Quantity {item.quantity} is below minimum order quantity {minimum}")
    return _ok()


@register_precondition("TARGET_PRICE_POSITIVE")
def _target_price_positive(item):
    if not item.target_price or item.target_price <= 0:
        return _fail("Target price must be greater than zero")
    return _ok()


def _latest_qualification(item):
    return (
        TechnicalQualification.query
        .filter_by(rfq_item_id=item.id)
        .order_by(TechnicalQualification.id.desc())
        .first()
    )


@register_precondition("SPECIFICATIONS_COMPLETE")
def _specifications_complete(item):
    tq = _latest_qualification(item)
    if tq is None:
        return _fail("No technical qualification recorded")
    if not tq.specifications_complete:
        return _fail("Technical specifications are incomplete")
    return _ok()


@register_precondition("COMPLIANCE_APPROVED")
def _compliance_approved(item):
    tq = db.session.get(TechnicalQualification, item.compliance_data_id) if item.compliance_data_id else None
    if tq is None or tq.rfq_item_id != item.id:
        return _fail("Compliance record not found")
    if not tq.compliance_cleared:
        return _fail("Compliance has not been cleared")
    return _ok()


@register_precondition("STOCK_AVAILABLE")
def _stock_available(item):
    product = db.session.get(Product, item.product_id) if item.product_id else None
    available = product.stock.available if product and product.stock else 0.0
    if available < (item.quantity or 0):
        return _fail(f"Only {available:g} available, {(item.quantity or 0):g} required")
    return _ok()


@register_precondition("HAS_VENDOR_QUOTES")
def _has_vendor_quotes(item):
    count = db.session.scalar(
        select(func.count(VendorQuote.id)).where(VendorQuote.rfq_item_id == item.id)
    )
    if not count:
        return _fail("No vendor quotes received")
    return _ok()


@register_precondition("VENDOR_QUOTE_SELECTED")
def _vendor_quote_selected(item):
    quote = db.session.get(VendorQuote, item.selected_vendor_quote_id) if item.selected_vendor_quote_id else None
    if quote is None or quote.rfq_item_id != item.id:
        return _fail("No vendor quote selected")
    if quote.status != "selected":
        return _fail(f"Vendor quote {quote.id} is {quote.status}, not selected")
    return _ok()


@register_precondition("COST_BREAKDOWN_COMPLETE")
def _cost_breakdown_complete(item):
    analysis = db.session.get(RateAnalysis, item.cost_breakdown_id) if item.cost_breakdown_id else None
    if analysis is None or analysis.rfq_item_id != item.id:
        return _fail("Rate analysis not found")
    if not analysis.unit_cost or analysis.unit_cost <= 0:
        return _fail("Rate analysis has no unit cost")
    return _ok()


@register_precondition("MARGIN_ACCEPTABLE")
def _margin_acceptable(item):
    minimum = DEFAULT_MIN_MARGIN_PERCENT
    if has_app_context():
        minimum = current_app.config.get("MIN_MARGIN_PERCENT", minimum)
    if item.margin_pct is None or item.margin_pct < minimum:
        return _fail(f"Margin {item.margin_pct}% is below the {minimum}% floor")
    return _ok()


@register_precondition("COMMERCIAL_TERMS_COMPLETE")
def _commercial_terms_complete(item):
    missing = [
        name for name in ("selling_price", "currency", "cost_breakdown_id")
        if getattr(item, name) in (None, "")
    ]
    if missing:
        return _fail(f"Commercial terms incomplete: {', '.join(missing)}")
    return _ok()


@register_precondition("QUOTE_ISSUED")
def _quote_issued(item):
    quote = db.session.get(Quote, item.quote_id) if item.quote_id else None
    if quote is None:
        return _fail("Quote not found")
    if quote.status not in ("issued", "sent"):
        return _fail(f"Quote {quote.number} is {quote.status}")
    return _ok()


@register_precondition("CUSTOMER_ACCEPTANCE_CONFIRMED")
def _customer_acceptance_confirmed(item):
    quote = db.session.get(Quote, item.quote_id) if item.quote_id else None
    if quote is None or quote.status != "accepted":
        return _fail("Customer acceptance not recorded")
    return _ok()


@register_precondition("ORDER_CREATED")
def _order_created(item):
    order_item = db.session.get(OrderItem, item.order_item_id) if item.order_item_id else None
    if order_item is None or order_item.rfq_item_id != item.id:
        return _fail("Order item not created for this RFQ line")
    return _ok()


# ── Order item ───────────────────────────────────────────────────────────────

def _customer_for(item):
    return db.session.get(Customer, item.order.customer_id)


@register_precondition("CREDIT_AVAILABLE")
def _credit_available(item):
    customer = _customer_for(item)
    if customer is None:
        return _fail("Customer not found")
    if customer.available_credit < item.line_total:
        return _fail(
            f"Available credit {customer.available_credit:.2f} is below line total {item.line_total:.2f}"
        )
    return _ok()


@register_precondition("CUSTOMER_NOT_BLOCKED")
def _customer_not_blocked(item):
    customer = _customer_for(item)
    if customer is None or customer.is_blocked:
        return _fail("Customer is blocked")
    return _ok()


@register_precondition("STOCK_FULLY_RESERVED")
def _stock_fully_reserved(item):
    reserved = db.session.scalar(
        select(func.coalesce(func.sum(StockReservation.quantity), 0.0)).where(
            StockReservation.order_item_id == item.id,
            StockReservation.status == "active",
        )
    ) or 0.0
    if reserved < item.quantity:
        return _fail(f"Reserved {reserved:g} of {item.quantity:g}")
    return _ok()


def _open_purchase_orders(item):
    return (
        PurchaseOrder.query
        .filter(PurchaseOrder.order_item_id == item.id, PurchaseOrder.status != "cancelled")
        .all()
    )


@register_precondition("PURCHASE_ORDER_RAISED")
def _purchase_order_raised(item):
    if not _open_purchase_orders(item):
        return _fail("No purchase order raised")
    return _ok()


@register_precondition("VENDOR_CONFIRMATION_RECEIVED")
def _vendor_confirmation_received(item):
    if not any(po.confirmed_at for po in _open_purchase_orders(item)):
        return _fail("Vendor has not confirmed the purchase order")
    return _ok()


@register_precondition("GRN_CREATED")
def _grn_created(item):
    if not GoodsReceipt.query.filter_by(order_item_id=item.id).first():
        return _fail("No goods receipt recorded")
    return _ok()


def _lots_for(item):
    return (
        StockLot.query
        .join(GoodsReceipt, StockLot.goods_receipt_id == GoodsReceipt.id)
        .filter(GoodsReceipt.order_item_id == item.id)
        .all()
    )


@register_precondition("QC_INSPECTION_COMPLETE")
def _qc_inspection_complete(item):
    lots = _lots_for(item)
    if not lots:
        return _fail("No received lots to inspect")
    pending = [lot.lot_number for lot in lots if lot.qc_status == "pending"]
    if pending:
        return _fail(f"Lots awaiting inspection: {', '.join(pending)}")
    return _ok()


@register_precondition("QC_STATUS_PASSED")
def _qc_status_passed(item):
    passed = QcInspection.query.filter_by(order_item_id=item.id, status="passed").first()
    if passed is None:
        return _fail("No lot passed inspection")
    return _ok()


def _shipment_for(item):
    shipments = Shipment.query.filter_by(order_id=item.order_id).order_by(Shipment.id.desc()).all()
    for shipment in shipments:
        if str(item.id) in (shipment.dispatched_quantity or {}):
            return shipment
    return None


@register_precondition("SHIPMENT_CREATED")
def _shipment_created(item):
    if _shipment_for(item) is None:
        return _fail("No shipment covers this order line")
    return _ok()


@register_precondition("DELIVERY_CONFIRMED")
def _delivery_confirmed(item):
    shipment = _shipment_for(item)
    if shipment is None or shipment.delivered_at is None:
        return _fail("Delivery not confirmed")
    return _ok()


@register_precondition("POD_UPLOADED")
def _pod_uploaded(item):
    shipment = _shipment_for(item)
    if shipment is None or not shipment.pod_reference:
        return _fail("Proof of delivery not uploaded")
    return _ok()


def _invoices_for(item):
    return Invoice.query.filter_by(order_id=item.order_id).all()


@register_precondition("INVOICE_GENERATED")
def _invoice_generated(item):
    if not _invoices_for(item):
        return _fail("No invoice generated")
    return _ok()


@register_precondition("PAYMENT_RECORDED")
def _payment_recorded(item):
    invoice_ids = [inv.id for inv in _invoices_for(item)]
    if not invoice_ids or not Payment.query.filter(Payment.invoice_id.in_(invoice_ids)).first():
        return _fail("No payment recorded")
    return _ok()


def _fully_paid(item) -> bool:
    invoices = _invoices_for(item)
    return bool(invoices) and all(inv.balance <= 0.005 for inv in invoices)


@register_precondition("PAYMENT_FULL")
def _payment_full(item):
    if not _fully_paid(item):
        return _fail("Invoice balance outstanding")
    return _ok()


@register_precondition("PAYMENT_NOT_FULL")
def _payment_not_full(item):
    if _fully_paid(item):
        return _fail("Invoice is fully paid")
    return _ok()


# ═════════════════════════════════════════════════════════════════════════════
# Validator contract
# ═════════════════════════════════════════════════════════════════════════════


def is_legal(entity_kind: str, from_state: str, to_state: str) -> bool:
    return get_transition(entity_kind, from_state, to_state) is not None


def _role_allowed(definition: TransitionDefinition, role: str | None) -> bool:
    if definition.is_automatic:
        return True
    if role not in definition.allowed_roles:
        return False
    return role_has_access(role, definition.entity_kind, "transition")


def can_actor_perform(entity_kind: str, from_state: str, to_state: str, role: str | None) -> bool:
    definition = get_transition(entity_kind, from_state, to_state)
    return definition is not None and _role_allowed(definition, role)


def list_legal_next(entity_kind: str, from_state: str, role: str | None) -> list[str]:
    return [d.to_state for d in transitions_from(entity_kind, from_state) if _role_allowed(d, role)]


def missing_fields(item, definition: TransitionDefinition) -> list[str]:
    return [
        name for name in definition.required_fields
        if getattr(item, name, None) is None or getattr(item, name) == ""
    ]


def failed_preconditions(item, definition: TransitionDefinition) -> list[tuple[str, str]]:
    failures = []
    for key in definition.preconditions:
        evaluator = PRECONDITIONS.get(key)
        if evaluator is None:
            failures.append((key, f"Unknown precondition {key}"))
            continue
        ok, reason = evaluator(item)
        if not ok:
            failures.append((key, reason or key))
    return failures


def check_transition(item, to_state: str, role: str | None, justification: str | None = None) -> dict:
    """
    Evaluate every gate for moving *item* to *to_state*.

    Returns:
        {"valid", "from", "to", "check", "reason", "missing_fields"}
        where ``check`` names the first gate that failed (None when valid).
    """
    kind = item.ENTITY_KIND
    result = {
        "valid": False,
        "from": item.state,
        "to": to_state,
        "check": None,
        "reason": None,
        "missing_fields": [],
    }

    definition = get_transition(kind, item.state, to_state)
    if definition is None:
        result.update(check="transition", reason=f"No {kind} transition {item.state} → {to_state}")
        return result

    if not _role_allowed(definition, role):
        result.update(
            check="role",
            reason=f"Role {role} may not move {kind} {item.state} → {to_state}",
        )
        return result

    if definition.requires_justification and not (justification or "").strip():
        result.update(check="justification", reason="A justification is required for this transition")
        return result

    missing = missing_fields(item, definition)
    if missing:
        result.update(
            check="fields",
            reason=f"Missing required fields: {', '.join(missing)}",
            missing_fields=missing,
        )
        return result

    failures = failed_preconditions(item, definition)
    if failures:
        key, reason = failures[0]
        result.update(check="precondition", reason=f"{key}: {reason}")
        result["failed_preconditions"] = [{"key": k, "reason": r} for k, r in failures]
        return result

    result.update(valid=True)
    return result
