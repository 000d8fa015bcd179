"""
Trade Ops Core
Fulfilment records produced after an order is placed.

Models:
    - StockReservation: quantity earmarked from stock for an order item
    - PurchaseRequisition / PurchaseOrder: procurement for a stock shortfall
    - GoodsReceipt / StockLot: inbound receipt, one lot per received batch
    - QcInspection / Nonconformance: per-lot inspection and its failure record
    - Shipment, Invoice, Payment: dispatch and settlement
"""

from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import iso


RESERVATION_STATUSES = {"active", "consumed", "released"}
PO_STATUSES = {"pending_approval", "released", "confirmed", "received", "cancelled"}
QC_STATUSES = {"pending", "passed", "failed"}
NCR_STATUSES = {"open", "closed"}
NCR_DISPOSITIONS = {"return_to_vendor", "scrap", "rework", "use_as_is"}
INVOICE_STATUSES = {"issued", "partially_paid", "paid"}


def _now():
    return datetime.now(timezone.utc)


class StockReservation(db.Model):
    __tablename__ = "stock_reservations"

    id = db.Column(db.Integer, primary_key=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    source = db.Column(db.String(20), default="stock", comment="stock | receipt")
    status = db.Column(db.String(20), default="active")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "order_item_id": self.order_item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "source": self.source,
            "status": self.status,
        }


class PurchaseRequisition(db.Model):
    __tablename__ = "purchase_requisitions"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), default="open", comment="open, converted")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)


class PurchaseOrder(db.Model):
    __tablename__ = "purchase_orders"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    requisition_id = db.Column(db.Integer, db.ForeignKey("purchase_requisitions.id"), nullable=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), default="pending_approval")
    approved_by = db.Column(db.String(150), nullable=True)
    expected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "number": self.number,
            "order_item_id": self.order_item_id,
            "vendor_id": self.vendor_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "status": self.status,
            "expected_at": iso(self.expected_at),
            "confirmed_at": iso(self.confirmed_at),
        }


class GoodsReceipt(db.Model):
    __tablename__ = "goods_receipts"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    received_quantity = db.Column(db.Float, nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), default=_now)

    lots = db.relationship("StockLot", back_populates="receipt", order_by="StockLot.id")


class StockLot(db.Model):
    __tablename__ = "stock_lots"

    id = db.Column(db.Integer, primary_key=True)
    lot_number = db.Column(db.String(40), unique=True, nullable=False)
    goods_receipt_id = db.Column(db.Integer, db.ForeignKey("goods_receipts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    qc_status = db.Column(db.String(20), default="pending", comment="pending, passed, failed")
    posted_to_stock = db.Column(db.Boolean, default=False)

    receipt = db.relationship("GoodsReceipt", back_populates="lots")


class QcInspection(db.Model):
    __tablename__ = "qc_inspections"

    id = db.Column(db.Integer, primary_key=True)
    lot_id = db.Column(db.Integer, db.ForeignKey("stock_lots.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, comment="passed | failed")
    quantity_inspected = db.Column(db.Float, nullable=False)
    quantity_passed = db.Column(db.Float, default=0.0)
    quantity_failed = db.Column(db.Float, default=0.0)
    inspected_by = db.Column(db.String(150), default="system")
    notes = db.Column(db.Text, default="")
    inspected_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "lot_id": self.lot_id,
            "status": self.status,
            "quantity_inspected": self.quantity_inspected,
            "quantity_passed": self.quantity_passed,
            "quantity_failed": self.quantity_failed,
        }


class Nonconformance(db.Model):
    """NCR raised for a lot that failed inspection."""

    __tablename__ = "nonconformances"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    inspection_id = db.Column(db.Integer, db.ForeignKey("qc_inspections.id"), nullable=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Float, default=0.0)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), default="open")
    disposition = db.Column(db.String(30), nullable=True)
    closed_by = db.Column(db.String(150), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "number": self.number,
            "inspection_id": self.inspection_id,
            "order_item_id": self.order_item_id,
            "quantity": self.quantity,
            "description": self.description,
            "status": self.status,
            "disposition": self.disposition,
            "closed_by": self.closed_by,
            "closed_at": iso(self.closed_at),
        }


class Shipment(db.Model):
    __tablename__ = "shipments"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(20), default="planned", comment="planned, dispatched, delivered")
    dispatched_quantity = db.Column(db.JSON, default=dict, comment="{order_item_id: qty}")
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    pod_reference = db.Column(db.String(100), nullable=True, comment="Proof-of-delivery document ref")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    subtotal = db.Column(db.Float, default=0.0)
    tax_amount = db.Column(db.Float, default=0.0)
    total_amount = db.Column(db.Float, default=0.0)
    amount_paid = db.Column(db.Float, default=0.0)
    status = db.Column(db.String(20), default="issued")
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    issued_at = db.Column(db.DateTime(timezone=True), default=_now)

    @property
    def balance(self) -> float:
        return round((self.total_amount or 0.0) - (self.amount_paid or 0.0), 2)

    def to_dict(self):
        return {
            "id": self.id,
            "number": self.number,
            "order_id": self.order_id,
            "subtotal": self.subtotal,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "amount_paid": self.amount_paid,
            "balance": self.balance,
            "status": self.status,
            "due_date": iso(self.due_date),
        }


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    method = db.Column(db.String(30), default="bank_transfer")
    reference = db.Column(db.String(100), default="")
    received_at = db.Column(db.DateTime(timezone=True), default=_now)
