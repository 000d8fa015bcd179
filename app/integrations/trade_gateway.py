"""
Stock and Vendor gateways used by the workflow orchestrator.

Every "external operation" a run performs (stock lookup, reservation,
goods receipt posting, vendor quote request, PO confirmation) goes through
one of these two classes, never through direct model writes in the
orchestrator phases.

  - InventoryGateway: warehouse stock (single warehouse, StockBalance rows)
  - VendorGateway:    eligible supplier lookup + quote / PO confirmation.
                      Uses the vendor portal REST API when VENDOR_PORTAL_URL
                      is configured, the local vendor catalogue otherwise.

Portal calls are retried (max 2 retries, 1 s → 4 s backoff) and always
return a GatewayResult; callers check ``.ok``.

Testability: pass a mock ``session`` to VendorGateway() or hand the
orchestrator a stub gateway object with the same methods.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any

import requests
from flask import current_app, has_app_context

from app.core.exceptions import ExternalOperationError
from app.models import db
from app.models.fulfillment import StockReservation
from app.models.trade import Product, StockBalance, Vendor, VendorProduct
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]
_DEFAULT_TIMEOUT = 30


class GatewayResult:
    """Structured return value from gateway calls.

    Attributes:
        ok:           True if the call succeeded.
        status_code:  HTTP status (None for catalogue lookups / network failure).
        data:         Result payload, else None.
        error:        Human-readable error message or None.
        duration_ms:  Round-trip latency in milliseconds.
    """

    def __init__(
        self,
        ok: bool,
        status_code: int | None,
        data: dict | None,
        error: str | None,
        duration_ms: int = 0,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "data": self.data,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Inventory
# ═════════════════════════════════════════════════════════════════════════════


class InventoryGateway:
    """Warehouse stock operations.  Flushes only; the caller commits."""

    def _balance(self, product_id: int) -> StockBalance:
        balance = StockBalance.query.filter_by(product_id=product_id).first()
        if balance is None:
            balance = StockBalance(product_id=product_id, on_hand=0.0, reserved=0.0)
            db.session.add(balance)
            db.session.flush()
        return balance

    def available(self, product_id: int) -> float:
        balance = StockBalance.query.filter_by(product_id=product_id).first()
        return balance.available if balance else 0.0

    def reserve(self, order_item, quantity: float, source: str = "stock") -> StockReservation:
        """Reserve *quantity* of the line's product.

        Raises:
            ExternalOperationError: not enough unreserved stock.
        """
        balance = self._balance(order_item.product_id)
        if quantity <= 0 or balance.available < quantity:
            raise ExternalOperationError(
                f"Cannot reserve {quantity:g} of product {order_item.product_id}: "
                f"{balance.available:g} available",
                details={"product_id": order_item.product_id, "requested": quantity,
                         "available": balance.available},
            )
        balance.reserved = (balance.reserved or 0.0) + quantity
        reservation = StockReservation(
            order_item_id=order_item.id,
            product_id=order_item.product_id,
            quantity=quantity,
            source=source,
        )
        db.session.add(reservation)
        db.session.flush()
        logger.info(
            "Reserved %s of product %s for order item %s", quantity, order_item.product_id, order_item.id,
            extra={"entity_type": "order_item", "entity_id": order_item.id, "event_type": "stock_reserved"},
        )
        return reservation

    def receive(self, product_id: int, quantity: float) -> StockBalance:
        """Post received (QC-passed) quantity to on-hand stock."""
        balance = self._balance(product_id)
        balance.on_hand = (balance.on_hand or 0.0) + quantity
        db.session.flush()
        return balance

    def consume(self, order_item) -> float:
        """Issue every active reservation of the line; returns quantity issued."""
        balance = self._balance(order_item.product_id)
        issued = 0.0
        for reservation in StockReservation.query.filter_by(order_item_id=order_item.id, status="active"):
            balance.on_hand = max((balance.on_hand or 0.0) - reservation.quantity, 0.0)
            balance.reserved = max((balance.reserved or 0.0) - reservation.quantity, 0.0)
            reservation.status = "consumed"
            issued += reservation.quantity
        db.session.flush()
        return issued


# ═════════════════════════════════════════════════════════════════════════════
# Vendors
# ═════════════════════════════════════════════════════════════════════════════


class VendorGateway:
    """Supplier operations.

    Usage:
        gateway = VendorGateway()
        for vendor in gateway.eligible_vendors(product_id):
            result = gateway.request_quote(vendor, product, quantity)
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        portal_url: str | None = None,
        timeout: int | None = None,
        sleep=time.sleep,
    ) -> None:
        self._session = session
        self._portal_url = portal_url
        self._timeout = timeout
        self._sleep = sleep

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @property
    def portal_url(self) -> str | None:
        if self._portal_url is None and has_app_context():
            return current_app.config.get("VENDOR_PORTAL_URL")
        return self._portal_url

    @property
    def timeout(self) -> int:
        if self._timeout is None and has_app_context():
            return current_app.config.get("VENDOR_PORTAL_TIMEOUT", _DEFAULT_TIMEOUT)
        return self._timeout or _DEFAULT_TIMEOUT

    # ── Portal dispatcher ────────────────────────────────────────────────────

    def _post(self, path: str, payload: dict) -> GatewayResult:
        url = f"{self.portal_url.rstrip('/')}{path}"
        last_error = "Unknown error"
        last_status = None
        for attempt in range(_RETRY_MAX + 1):
            t0 = time.perf_counter()
            try:
                resp = self.session.post(url, json=payload, timeout=self.timeout)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code
                if resp.ok:
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return GatewayResult(True, resp.status_code, data, None, duration_ms)
                last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"
            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
            except requests.RequestException as exc:
                last_error = str(exc)[:500]

            logger.warning(
                "Vendor portal call failed attempt=%d/%d url=%s error=%s",
                attempt + 1, _RETRY_MAX + 1, url, last_error,
            )
            if attempt < _RETRY_MAX:
                self._sleep(_RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)])

        return GatewayResult(False, last_status, None, last_error)

    # ── Operations ───────────────────────────────────────────────────────────

    def eligible_vendors(self, product_id: int) -> list[Vendor]:
        """Approved vendors carrying the product in their catalogue."""
        return (
            Vendor.query
            .join(VendorProduct, VendorProduct.vendor_id == Vendor.id)
            .filter(Vendor.is_approved.is_(True), VendorProduct.product_id == product_id)
            .order_by(Vendor.id)
            .all()
        )

    def request_quote(self, vendor: Vendor, product: Product, quantity: float) -> GatewayResult:
        if self.portal_url:
            return self._post("/quotes", {
                "vendor_code": vendor.code,
                "sku": product.sku,
                "quantity": quantity,
            })
        entry = vendor.catalogue.filter_by(product_id=product.id).first()
        if entry is None:
            return GatewayResult(False, None, None, f"{vendor.code} does not supply {product.sku}")
        return GatewayResult(True, None, {
            "unit_price": entry.unit_price,
            "lead_time_days": entry.lead_time_days,
            "payment_terms_days": vendor.payment_terms_days,
            "quality_rating": vendor.quality_rating,
        }, None)

    def confirm_purchase_order(self, purchase_order: Any) -> GatewayResult:
        vendor = db.session.get(Vendor, purchase_order.vendor_id)
        if self.portal_url:
            return self._post("/purchase-orders", {
                "vendor_code": vendor.code,
                "po_number": purchase_order.number,
                "quantity": purchase_order.quantity,
                "unit_price": purchase_order.unit_price,
            })
        entry = vendor.catalogue.filter_by(product_id=purchase_order.product_id).first()
        lead_days = entry.lead_time_days if entry else 14
        return GatewayResult(True, None, {
            "confirmed": True,
            "expected_at": (utcnow() + timedelta(days=lead_days)).isoformat(),
        }, None)
