"""
Trade Ops Core
Trade domain models — master data, document headers and workflow items.

Models:
    - Customer, Product, StockBalance, Vendor, VendorProduct: master data
    - Rfq, Order: document headers (pure containers, never carry state)
    - RfqItem, OrderItem: line items, the only entities with workflow state

State catalogue:
    RFQ_ITEM_STATES / ORDER_ITEM_STATES list every legal state per kind.
    TERMINAL_STATES maps kind → states after which the row is immutable.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso


# ── Constants ────────────────────────────────────────────────────────────────

RFQ_ITEM = "rfq_item"
ORDER_ITEM = "order_item"
ENTITY_KINDS = (RFQ_ITEM, ORDER_ITEM)

RFQ_ITEM_STATES = (
    "DRAFT",
    "RFQ_SUBMITTED",
    "SALES_REVIEW",
    "TECH_REVIEW",
    "TECH_APPROVED",
    "COMPLIANCE_REVIEW",
    "STOCK_CHECK",
    "SOURCING_ACTIVE",
    "VENDOR_QUOTES_RECEIVED",
    "RATE_FINALIZED",
    "MARGIN_APPROVAL",
    "PRICE_FROZEN",
    "QUOTE_SENT",
    "CUSTOMER_ACCEPTED",
    "CUSTOMER_REJECTED",
    "RFQ_CLOSED",
    "FORCE_CLOSED",
)

ORDER_ITEM_STATES = (
    "PR_CREATED",
    "PR_ACKNOWLEDGED",
    "CREDIT_CHECK",
    "CREDIT_HOLD",
    "STOCK_RESERVED",
    "PO_RELEASED",
    "VENDOR_CONFIRMED",
    "IN_PRODUCTION",
    "GOODS_RECEIVED",
    "QC_APPROVED",
    "QC_REJECTED",
    "READY_TO_DISPATCH",
    "DISPATCHED",
    "DELIVERED",
    "INVOICED",
    "PAYMENT_PARTIAL",
    "PAYMENT_CLOSED",
    "CLOSED",
    "CANCELLED",
    "FORCE_CLOSED",
)

INITIAL_STATES = {RFQ_ITEM: "DRAFT", ORDER_ITEM: "PR_CREATED"}

TERMINAL_STATES = {
    RFQ_ITEM: frozenset({"RFQ_CLOSED", "FORCE_CLOSED"}),
    ORDER_ITEM: frozenset({"CLOSED", "FORCE_CLOSED"}),
}

ALL_TERMINAL_STATES = frozenset().union(*TERMINAL_STATES.values())


def _now():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Master data
# ═════════════════════════════════════════════════════════════════════════════


class Customer(db.Model):
    """Buyer organisation with a credit line."""

    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    credit_limit = db.Column(db.Float, default=0.0, comment="Approved credit line")
    outstanding_balance = db.Column(db.Float, default=0.0, comment="Open receivables")
    is_blocked = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    @property
    def available_credit(self) -> float:
        return (self.credit_limit or 0.0) - (self.outstanding_balance or 0.0)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "email": self.email,
            "credit_limit": self.credit_limit,
            "outstanding_balance": self.outstanding_balance,
            "available_credit": self.available_credit,
            "is_blocked": self.is_blocked,
        }

    def __repr__(self):
        return f"<Customer {self.code}>"


class Product(db.Model):
    """Catalogue product."""

    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    unit_of_measure = db.Column(db.String(20), default="EA")
    standard_cost = db.Column(db.Float, nullable=True, comment="Cost used when no vendor sourcing is needed")
    list_price = db.Column(db.Float, nullable=True)
    min_order_qty = db.Column(db.Float, default=1.0)
    specifications = db.Column(db.JSON, default=dict, comment="Technical datasheet key/values")

    stock = db.relationship("StockBalance", uselist=False, back_populates="product")

    def to_dict(self):
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "is_active": self.is_active,
            "unit_of_measure": self.unit_of_measure,
            "standard_cost": self.standard_cost,
            "list_price": self.list_price,
            "min_order_qty": self.min_order_qty,
            "specifications": self.specifications or {},
        }

    def __repr__(self):
        return f"<Product {self.sku}>"


class StockBalance(db.Model):
    """On-hand and reserved quantity per product (single warehouse)."""

    __tablename__ = "stock_balances"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(
        db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), unique=True, nullable=False,
    )
    on_hand = db.Column(db.Float, default=0.0)
    reserved = db.Column(db.Float, default=0.0)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    product = db.relationship("Product", back_populates="stock")

    @property
    def available(self) -> float:
        return max((self.on_hand or 0.0) - (self.reserved or 0.0), 0.0)

    def to_dict(self):
        return {
            "product_id": self.product_id,
            "on_hand": self.on_hand,
            "reserved": self.reserved,
            "available": self.available,
        }


class Vendor(db.Model):
    """Supplier. Only approved vendors are eligible for sourcing and POs."""

    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    is_approved = db.Column(db.Boolean, default=False)
    quality_rating = db.Column(db.Float, default=3.0, comment="0–5 rating from past inspections")
    payment_terms_days = db.Column(db.Integer, default=30)
    email = db.Column(db.String(255), nullable=True)

    catalogue = db.relationship("VendorProduct", back_populates="vendor", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_approved": self.is_approved,
            "quality_rating": self.quality_rating,
            "payment_terms_days": self.payment_terms_days,
        }

    def __repr__(self):
        return f"<Vendor {self.code}>"


class VendorProduct(db.Model):
    """Vendor catalogue entry: what a vendor supplies, at what price."""

    __tablename__ = "vendor_products"
    __table_args__ = (
        db.UniqueConstraint("vendor_id", "product_id", name="uq_vendor_product"),
    )

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    lead_time_days = db.Column(db.Integer, default=14)

    vendor = db.relationship("Vendor", back_populates="catalogue")


# ═════════════════════════════════════════════════════════════════════════════
# Document headers
# ═════════════════════════════════════════════════════════════════════════════


class Rfq(db.Model):
    """Customer request-for-quotation header. Container only."""

    __tablename__ = "rfqs"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    reference = db.Column(db.String(100), default="", comment="Customer's own enquiry reference")
    requested_at = db.Column(db.DateTime(timezone=True), default=_now)
    created_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    items = db.relationship("RfqItem", back_populates="rfq", order_by="RfqItem.line_no")

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "number": self.number,
            "customer_id": self.customer_id,
            "reference": self.reference,
            "requested_at": iso(self.requested_at),
            "created_by": self.created_by,
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d


class Order(db.Model):
    """Sales order header. Container only."""

    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    rfq_id = db.Column(db.Integer, db.ForeignKey("rfqs.id"), nullable=True)
    reference = db.Column(db.String(100), default="")
    order_date = db.Column(db.DateTime(timezone=True), default=_now)
    created_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    items = db.relationship("OrderItem", back_populates="order", order_by="OrderItem.line_no")

    def to_dict(self, include_items=False):
        d = {
            "id": self.id,
            "number": self.number,
            "customer_id": self.customer_id,
            "rfq_id": self.rfq_id,
            "reference": self.reference,
            "order_date": iso(self.order_date),
        }
        if include_items:
            d["items"] = [i.to_dict() for i in self.items]
        return d


# ═════════════════════════════════════════════════════════════════════════════
# Workflow items
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowItemMixin(SoftDeleteMixin):
    """
    Columns shared by every stateful line item.

    ``state`` is written only by the transition executor. ``version`` is the
    optimistic-concurrency counter (mapped as ``version_id_col`` on each
    concrete class).
    """

    ENTITY_KIND = ""

    state = db.Column(db.String(40), nullable=False, index=True)
    state_entered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    owner_id = db.Column(db.String(150), nullable=True, comment="Current responsible actor")

    # SLA
    sla_due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sla_warning = db.Column(db.Boolean, default=False, nullable=False)
    sla_breached = db.Column(db.Boolean, default=False, nullable=False)

    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Audit columns
    created_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    updated_by = db.Column(db.String(150), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_now, onupdate=_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES[self.ENTITY_KIND]

    def _workflow_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_kind": self.ENTITY_KIND,
            "state": self.state,
            "state_entered_at": iso(self.state_entered_at),
            "owner_id": self.owner_id,
            "sla_due_at": iso(self.sla_due_at),
            "sla_warning": self.sla_warning,
            "sla_breached": self.sla_breached,
            "closed_at": iso(self.closed_at),
            "is_terminal": self.is_terminal,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_by": self.updated_by,
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }


class RfqItem(WorkflowItemMixin, db.Model):
    """RFQ line item — walks the quotation pipeline."""

    __tablename__ = "rfq_items"
    ENTITY_KIND = RFQ_ITEM

    id = db.Column(db.Integer, primary_key=True)
    rfq_id = db.Column(db.Integer, db.ForeignKey("rfqs.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no = db.Column(db.Integer, default=1)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    quantity = db.Column(db.Float, nullable=True)
    unit_of_measure = db.Column(db.String(20), nullable=True)

    # Commercial fields, filled in as the item advances
    target_price = db.Column(db.Float, nullable=True)
    currency = db.Column(db.String(3), nullable=True)
    compliance_data_id = db.Column(db.Integer, nullable=True, comment="TechnicalQualification carrying compliance")
    cost_breakdown_id = db.Column(db.Integer, nullable=True, comment="RateAnalysis id")
    selected_vendor_quote_id = db.Column(db.Integer, nullable=True)
    selling_price = db.Column(db.Float, nullable=True)
    margin_pct = db.Column(db.Float, nullable=True)
    quote_id = db.Column(db.Integer, nullable=True)
    terms_frozen_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Lineage: the order item this RFQ line became
    order_id = db.Column(db.Integer, nullable=True)
    order_item_id = db.Column(db.Integer, nullable=True)

    version = db.Column(db.Integer, nullable=False)

    rfq = db.relationship("Rfq", back_populates="items")
    product = db.relationship("Product")

    __mapper_args__ = {"version_id_col": version}

    def to_dict(self):
        d = self._workflow_dict()
        d.update({
            "rfq_id": self.rfq_id,
            "line_no": self.line_no,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_of_measure": self.unit_of_measure,
            "target_price": self.target_price,
            "currency": self.currency,
            "compliance_data_id": self.compliance_data_id,
            "cost_breakdown_id": self.cost_breakdown_id,
            "selected_vendor_quote_id": self.selected_vendor_quote_id,
            "selling_price": self.selling_price,
            "margin_pct": self.margin_pct,
            "quote_id": self.quote_id,
            "terms_frozen_at": iso(self.terms_frozen_at),
            "sent_at": iso(self.sent_at),
            "order_id": self.order_id,
            "order_item_id": self.order_item_id,
        })
        return d

    def __repr__(self):
        return f"<RfqItem {self.id} [{self.state}]>"


class OrderItem(WorkflowItemMixin, db.Model):
    """Order line item — walks credit, procurement, fulfilment and settlement."""

    __tablename__ = "order_items"
    ENTITY_KIND = ORDER_ITEM

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    line_no = db.Column(db.Integer, default=1)
    rfq_item_id = db.Column(db.Integer, db.ForeignKey("rfq_items.id"), nullable=True, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    unit_price = db.Column(db.Float, default=0.0)
    currency = db.Column(db.String(3), default="USD")
    discount_percent = db.Column(db.Float, default=0.0)
    tax_rate = db.Column(db.Float, default=0.0)

    version = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    __mapper_args__ = {"version_id_col": version}

    @property
    def net_amount(self) -> float:
        gross = (self.quantity or 0.0) * (self.unit_price or 0.0)
        return round(gross * (1 - (self.discount_percent or 0.0) / 100), 2)

    @property
    def tax_amount(self) -> float:
        return round(self.net_amount * (self.tax_rate or 0.0) / 100, 2)

    @property
    def line_total(self) -> float:
        return round(self.net_amount + self.tax_amount, 2)

    def to_dict(self):
        d = self._workflow_dict()
        d.update({
            "order_id": self.order_id,
            "line_no": self.line_no,
            "rfq_item_id": self.rfq_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "currency": self.currency,
            "discount_percent": self.discount_percent,
            "tax_rate": self.tax_rate,
            "line_total": self.line_total,
        })
        return d

    def __repr__(self):
        return f"<OrderItem {self.id} [{self.state}]>"


ITEM_MODELS = {RFQ_ITEM: RfqItem, ORDER_ITEM: OrderItem}
