"""
Demo master data for local runs.

Seeds a small, self-consistent catalogue: two customers, four products
(two stocked, one partially stocked, one not stocked), approved and
unapproved vendors and their price lists.  Safe to run multiple times;
rows are matched on their business code / SKU.

Usage:
    flask seed-demo-data
"""

import logging

from app.models import db
from app.models.trade import Customer, Product, StockBalance, Vendor, VendorProduct

logger = logging.getLogger(__name__)


CUSTOMERS = [
    {"code": "CUST-ACME", "name": "Acme Process Industries", "email": "buyer@acme.example",
     "credit_limit": 500000.0},
    {"code": "CUST-NORD", "name": "Nordic Utilities", "email": "procurement@nordic.example",
     "credit_limit": 150000.0},
]

PRODUCTS = [
    {"sku": "VLV-BALL-2IN", "name": "Ball valve 2in SS316", "standard_cost": 120.0, "list_price": 180.0,
     "specifications": {"material": "SS316", "pressure_rating": "PN40", "size": "2in"}, "on_hand": 200.0},
    {"sku": "GSK-SPW-4IN", "name": "Spiral wound gasket 4in", "standard_cost": 14.5, "list_price": 22.0,
     "specifications": {"material": "SS316/graphite", "class": "300#", "size": "4in"}, "on_hand": 1000.0},
    {"sku": "PMP-CEN-50", "name": "Centrifugal pump 50m3/h", "standard_cost": 4200.0, "list_price": 5600.0,
     "specifications": {"flow": "50m3/h", "head": "40m", "motor": "11kW"}, "on_hand": 2.0},
    {"sku": "ACT-ELE-Q90", "name": "Electric quarter-turn actuator", "standard_cost": None, "list_price": None,
     "specifications": {"torque": "90Nm", "voltage": "24VDC"}, "on_hand": 0.0},
]

VENDORS = [
    {"code": "VEN-FLOWTEK", "name": "Flowtek Components", "is_approved": True, "quality_rating": 4.6,
     "payment_terms_days": 45, "email": "sales@flowtek.example"},
    {"code": "VEN-PUMPWORKS", "name": "Pumpworks GmbH", "is_approved": True, "quality_rating": 4.1,
     "payment_terms_days": 30, "email": "quotes@pumpworks.example"},
    {"code": "VEN-BUDGET", "name": "Budget Industrial Supply", "is_approved": True, "quality_rating": 3.2,
     "payment_terms_days": 15, "email": "rfq@budget.example"},
    {"code": "VEN-PENDING", "name": "Unvetted Trading Co", "is_approved": False, "quality_rating": 3.0,
     "payment_terms_days": 30},
]

# (vendor code, sku, unit price, lead time days)
CATALOGUE = [
    ("VEN-FLOWTEK", "VLV-BALL-2IN", 118.0, 10),
    ("VEN-FLOWTEK", "ACT-ELE-Q90", 640.0, 21),
    ("VEN-PUMPWORKS", "PMP-CEN-50", 4050.0, 35),
    ("VEN-PUMPWORKS", "ACT-ELE-Q90", 610.0, 28),
    ("VEN-BUDGET", "ACT-ELE-Q90", 560.0, 45),
    ("VEN-BUDGET", "PMP-CEN-50", 3900.0, 60),
    ("VEN-PENDING", "ACT-ELE-Q90", 400.0, 7),
]


def seed_demo_data() -> dict:
    """Insert missing demo rows; only flushes, the caller commits."""
    counts = {"customers": 0, "products": 0, "vendors": 0, "catalogue": 0}

    for row in CUSTOMERS:
        if not Customer.query.filter_by(code=row["code"]).first():
            db.session.add(Customer(**row))
            counts["customers"] += 1

    for row in PRODUCTS:
        row = dict(row)
        on_hand = row.pop("on_hand")
        if Product.query.filter_by(sku=row["sku"]).first():
            continue
        product = Product(**row)
        product.stock = StockBalance(on_hand=on_hand, reserved=0.0)
        db.session.add(product)
        counts["products"] += 1

    for row in VENDORS:
        if not Vendor.query.filter_by(code=row["code"]).first():
            db.session.add(Vendor(**row))
            counts["vendors"] += 1
    db.session.flush()

    for vendor_code, sku, price, lead in CATALOGUE:
        vendor = Vendor.query.filter_by(code=vendor_code).one()
        product = Product.query.filter_by(sku=sku).one()
        if VendorProduct.query.filter_by(vendor_id=vendor.id, product_id=product.id).first():
            continue
        db.session.add(VendorProduct(
            vendor_id=vendor.id, product_id=product.id, unit_price=price, lead_time_days=lead,
        ))
        counts["catalogue"] += 1

    db.session.flush()
    logger.info("Demo seed: %s", counts)
    return counts
