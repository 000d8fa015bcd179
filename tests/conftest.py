"""
Shared pytest fixtures for the Trade Ops Core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - customer / make_product / make_vendor: master data factories
    - make_rfq_item / make_order_item: workflow items at any starting state
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.trade import (
    Customer,
    Order,
    OrderItem,
    Product,
    Rfq,
    RfqItem,
    StockBalance,
    Vendor,
    VendorProduct,
)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Master data ──────────────────────────────────────────────────────────


@pytest.fixture()
def customer():
    c = Customer(code="CUST-T1", name="Test Buyer", credit_limit=1_000_000.0, outstanding_balance=0.0)
    _db.session.add(c)
    _db.session.commit()
    return c


@pytest.fixture()
def make_product():
    """``make_product(sku, on_hand=0, standard_cost=100.0, **kw)`` → Product with a stock row."""
    def _make(sku="SKU-1", on_hand=0.0, standard_cost=100.0, **kw):
        kw.setdefault("name", f"Product {sku}")
        kw.setdefault("list_price", standard_cost * 1.5 if standard_cost else 150.0)
        product = Product(sku=sku, standard_cost=standard_cost, **kw)
        product.stock = StockBalance(on_hand=on_hand, reserved=0.0)
        _db.session.add(product)
        _db.session.commit()
        return product
    return _make


@pytest.fixture()
def make_vendor():
    """``make_vendor(code, {product: (price, lead_days)}, **kw)`` → approved Vendor."""
    def _make(code="VEN-1", catalogue=None, **kw):
        kw.setdefault("name", f"Vendor {code}")
        kw.setdefault("is_approved", True)
        kw.setdefault("quality_rating", 4.0)
        kw.setdefault("payment_terms_days", 30)
        vendor = Vendor(code=code, **kw)
        _db.session.add(vendor)
        _db.session.flush()
        for product, (price, lead) in (catalogue or {}).items():
            _db.session.add(VendorProduct(
                vendor_id=vendor.id, product_id=product.id, unit_price=price, lead_time_days=lead,
            ))
        _db.session.commit()
        return vendor
    return _make


# ── Workflow items (bypass the executor to set arbitrary starting states) ─


@pytest.fixture()
def make_rfq_item(customer, make_product):
    """``make_rfq_item(state="DRAFT", product=None, **fields)`` → RfqItem."""
    counter = {"n": 0}

    def _make(state="DRAFT", product=None, **fields):
        counter["n"] += 1
        product = product or make_product(sku=f"RFQ-SKU-{counter['n']}")
        rfq = Rfq(number=f"RFQ-T-{counter['n']:04d}", customer_id=customer.id)
        _db.session.add(rfq)
        _db.session.flush()
        fields.setdefault("quantity", 10.0)
        fields.setdefault("unit_of_measure", "EA")
        fields.setdefault("target_price", 150.0)
        fields.setdefault("currency", "USD")
        item = RfqItem(rfq_id=rfq.id, product_id=product.id, state=state, owner_id="u-sales", **fields)
        _db.session.add(item)
        _db.session.commit()
        return item
    return _make


@pytest.fixture()
def make_order_item(customer, make_product):
    """``make_order_item(state="PR_CREATED", product=None, **fields)`` → OrderItem."""
    counter = {"n": 0}

    def _make(state="PR_CREATED", product=None, **fields):
        counter["n"] += 1
        product = product or make_product(sku=f"ORD-SKU-{counter['n']}")
        order = Order(number=f"SO-T-{counter['n']:04d}", customer_id=customer.id)
        _db.session.add(order)
        _db.session.flush()
        fields.setdefault("quantity", 5.0)
        fields.setdefault("unit_price", 200.0)
        item = OrderItem(order_id=order.id, product_id=product.id, state=state, owner_id="u-purchase", **fields)
        _db.session.add(item)
        _db.session.commit()
        return item
    return _make
