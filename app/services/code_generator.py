"""
Document Number Generator

Generates sequential, human-readable numbers for trade documents:
  - RFQs:                   RFQ-{seq}   (e.g. RFQ-00001)
  - Sales orders:           SO-{seq}
  - Customer quotes:        QT-{seq}
  - Purchase requisitions:  PR-{seq}
  - Purchase orders:        PO-{seq}
  - Goods receipts:         GRN-{seq}
  - Stock lots:             LOT-{seq}
  - Nonconformances:        NCR-{seq}
  - Shipments:              SHP-{seq}
  - Invoices:               INV-{seq}

Numbers are unique per document type: the next sequence is derived from
the row count and bumped until it no longer collides.
"""

from sqlalchemy import func, select

from app.models import db
from app.models.commercial import Quote
from app.models.fulfillment import (
    GoodsReceipt,
    Invoice,
    Nonconformance,
    PurchaseOrder,
    PurchaseRequisition,
    Shipment,
    StockLot,
)
from app.models.trade import Order, Rfq

_PREFIXES = {
    Rfq: ("RFQ", "number"),
    Order: ("SO", "number"),
    Quote: ("QT", "number"),
    PurchaseRequisition: ("PR", "number"),
    PurchaseOrder: ("PO", "number"),
    GoodsReceipt: ("GRN", "number"),
    StockLot: ("LOT", "lot_number"),
    Nonconformance: ("NCR", "number"),
    Shipment: ("SHP", "number"),
    Invoice: ("INV", "number"),
}


def next_number(model_class) -> str:
    """Next free number for *model_class*: {PREFIX}-{SEQ:05d}."""
    prefix, column_name = _PREFIXES[model_class]
    column = getattr(model_class, column_name)
    seq = (db.session.scalar(select(func.count(model_class.id))) or 0) + 1
    while True:
        code = f"{prefix}-{seq:05d}"
        taken = db.session.scalar(select(func.count()).select_from(model_class).where(column == code))
        if not taken:
            return code
        seq += 1
