"""
Trade Ops Core
Commercial records produced while an RFQ item is qualified, sourced and priced.

Models:
    - TechnicalQualification: spec review + compliance clearance per RFQ item
    - VendorRfq / VendorQuote: outbound enquiries and the quotes received
    - RateAnalysis: weighted vendor comparison (the item's cost breakdown)
    - SalesPricing: cost build-up, margin and selling price
    - Quote: customer quotation document
"""

from datetime import datetime, timezone

from app.models import db
from app.utils.helpers import iso


QUALIFICATION_STATUSES = {"pending", "approved", "rejected"}
VENDOR_QUOTE_STATUSES = {"received", "selected", "rejected"}
PRICING_STATUSES = {"draft", "approved", "rejected"}
QUOTE_STATUSES = {"draft", "issued", "sent", "accepted", "rejected"}


def _now():
    return datetime.now(timezone.utc)


class TechnicalQualification(db.Model):
    """Engineering + compliance review of one RFQ item."""

    __tablename__ = "technical_qualifications"

    id = db.Column(db.Integer, primary_key=True)
    rfq_item_id = db.Column(db.Integer, db.ForeignKey("rfq_items.id"), nullable=False, index=True)
    status = db.Column(db.String(20), default="pending", comment="pending, approved, rejected")
    specifications_complete = db.Column(db.Boolean, default=False)
    compliance_cleared = db.Column(db.Boolean, default=False)
    reviewed_by = db.Column(db.String(150), nullable=True)
    notes = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "rfq_item_id": self.rfq_item_id,
            "status": self.status,
            "specifications_complete": self.specifications_complete,
            "compliance_cleared": self.compliance_cleared,
            "reviewed_by": self.reviewed_by,
            "decided_at": iso(self.decided_at),
        }


class VendorRfq(db.Model):
    """Enquiry sent to one vendor for one RFQ item."""

    __tablename__ = "vendor_rfqs"

    id = db.Column(db.Integer, primary_key=True)
    rfq_item_id = db.Column(db.Integer, db.ForeignKey("rfq_items.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False)
    quantity = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), default="sent", comment="sent, quoted, expired")
    sent_at = db.Column(db.DateTime(timezone=True), default=_now)
    respond_by = db.Column(db.DateTime(timezone=True), nullable=True)


class VendorQuote(db.Model):
    """A vendor's response to a VendorRfq."""

    __tablename__ = "vendor_quotes"

    id = db.Column(db.Integer, primary_key=True)
    vendor_rfq_id = db.Column(db.Integer, db.ForeignKey("vendor_rfqs.id"), nullable=False)
    rfq_item_id = db.Column(db.Integer, db.ForeignKey("rfq_items.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False)
    unit_price = db.Column(db.Float, nullable=False)
    lead_time_days = db.Column(db.Integer, nullable=False)
    payment_terms_days = db.Column(db.Integer, default=30)
    quality_rating = db.Column(db.Float, default=3.0)
    total_score = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(20), default="received")
    received_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "unit_price": self.unit_price,
            "lead_time_days": self.lead_time_days,
            "payment_terms_days": self.payment_terms_days,
            "quality_rating": self.quality_rating,
            "total_score": self.total_score,
            "status": self.status,
        }


class RateAnalysis(db.Model):
    """Weighted vendor comparison; referenced by RfqItem.cost_breakdown_id."""

    __tablename__ = "rate_analyses"

    id = db.Column(db.Integer, primary_key=True)
    rfq_item_id = db.Column(db.Integer, db.ForeignKey("rfq_items.id"), nullable=False, index=True)
    selected_quote_id = db.Column(db.Integer, db.ForeignKey("vendor_quotes.id"), nullable=True)
    selected_vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=True)
    unit_cost = db.Column(db.Float, nullable=False)
    source = db.Column(db.String(20), default="vendor", comment="vendor | stock")
    weightages = db.Column(db.JSON, default=dict)
    scores = db.Column(db.JSON, default=list, comment="[{quote_id, vendor_id, price, quality, delivery, payment, total}]")
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "rfq_item_id": self.rfq_item_id,
            "selected_quote_id": self.selected_quote_id,
            "selected_vendor_id": self.selected_vendor_id,
            "unit_cost": self.unit_cost,
            "source": self.source,
            "weightages": self.weightages or {},
            "scores": self.scores or [],
        }


class SalesPricing(db.Model):
    """Cost build-up and selling price for one RFQ item."""

    __tablename__ = "sales_pricings"

    id = db.Column(db.Integer, primary_key=True)
    rfq_item_id = db.Column(db.Integer, db.ForeignKey("rfq_items.id"), nullable=False, index=True)
    unit_cost = db.Column(db.Float, nullable=False)
    freight_cost = db.Column(db.Float, default=0.0)
    handling_cost = db.Column(db.Float, default=0.0)
    landed_cost = db.Column(db.Float, nullable=False)
    margin_percent = db.Column(db.Float, nullable=False)
    selling_price = db.Column(db.Float, nullable=False)
    status = db.Column(db.String(20), default="draft", comment="draft, approved, rejected")
    approved_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "rfq_item_id": self.rfq_item_id,
            "unit_cost": self.unit_cost,
            "freight_cost": self.freight_cost,
            "handling_cost": self.handling_cost,
            "landed_cost": self.landed_cost,
            "margin_percent": self.margin_percent,
            "selling_price": self.selling_price,
            "status": self.status,
        }


class Quote(db.Model):
    """Customer quotation covering every line of one RFQ."""

    __tablename__ = "quotes"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(30), unique=True, nullable=False)
    rfq_id = db.Column(db.Integer, db.ForeignKey("rfqs.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False)
    status = db.Column(db.String(20), default="draft", comment="draft, issued, sent, accepted, rejected")
    subtotal = db.Column(db.Float, default=0.0)
    tax_amount = db.Column(db.Float, default=0.0)
    total_amount = db.Column(db.Float, default=0.0)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "number": self.number,
            "rfq_id": self.rfq_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "subtotal": self.subtotal,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "valid_until": iso(self.valid_until),
            "sent_at": iso(self.sent_at),
        }
