"""
Transition Table — every legal state change per entity kind.

Authored as data, one row per legal edge, keyed by
``(entity_kind, from_state, to_state)``.  The validator is a lookup over
this table plus the named precondition registry; nothing here executes.

Emergency close is configured per entity kind (``EMERGENCY_CLOSE``) and
expanded into explicit rows at import time, so an emergency edge is as
visible to ``is_legal`` / ``list_legal_next`` as any authored edge.

Usage:
    from app.services.transition_table import get_transition, transitions_from

    definition = get_transition("rfq_item", "DRAFT", "RFQ_SUBMITTED")
    for d in transitions_from("order_item", "CREDIT_CHECK"):
        ...
"""

from dataclasses import dataclass, field
from enum import Enum

from app.models.trade import (
    ORDER_ITEM,
    ORDER_ITEM_STATES,
    RFQ_ITEM,
    RFQ_ITEM_STATES,
    TERMINAL_STATES,
)


class SideEffectKind(str, Enum):
    NOTIFY = "NOTIFY"
    START_SLA = "START_SLA"
    STOP_SLA = "STOP_SLA"
    CREATE = "CREATE"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class SideEffect:
    """One declared consequence of a transition.

    ``targets`` are roles (or ``CUSTOMER`` / ``OWNER``) for NOTIFY,
    ``duration`` is an SLA literal (``"24h"``) for START_SLA and ``handler``
    names a registered CREATE / UPDATE function.
    """

    kind: SideEffectKind
    targets: tuple[str, ...] = ()
    duration: str | None = None
    handler: str | None = None

    def describe(self) -> str:
        if self.kind == SideEffectKind.NOTIFY:
            return f"NOTIFY:{','.join(self.targets)}"
        if self.kind == SideEffectKind.START_SLA:
            return f"START_SLA:{self.duration}"
        if self.handler:
            return f"{self.kind.value}:{self.handler}"
        return self.kind.value


@dataclass(frozen=True)
class TransitionDefinition:
    entity_kind: str
    from_state: str
    to_state: str
    allowed_roles: tuple[str, ...] = ()
    required_fields: tuple[str, ...] = ()
    preconditions: tuple[str, ...] = ()
    side_effects: tuple[SideEffect, ...] = ()
    requires_justification: bool = False
    is_automatic: bool = False
    is_emergency: bool = False
    audit_reason: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.entity_kind, self.from_state, self.to_state)

    def to_dict(self) -> dict:
        return {
            "entity_kind": self.entity_kind,
            "from": self.from_state,
            "to": self.to_state,
            "allowed_roles": list(self.allowed_roles),
            "required_fields": list(self.required_fields),
            "preconditions": list(self.preconditions),
            "side_effects": [s.describe() for s in self.side_effects],
            "requires_justification": self.requires_justification,
            "is_automatic": self.is_automatic,
            "is_emergency": self.is_emergency,
            "audit_reason": self.audit_reason,
        }


@dataclass(frozen=True)
class EmergencyCloseRule:
    """Roles that may force-close an item; ``from_states`` None = any open state."""

    roles: tuple[str, ...]
    from_states: frozenset[str] | None = None
    to_state: str = "FORCE_CLOSED"


# ── Row builders ─────────────────────────────────────────────────────────────

def _notify(*targets):
    return SideEffect(SideEffectKind.NOTIFY, targets=tuple(targets))


def _sla(duration):
    return SideEffect(SideEffectKind.START_SLA, duration=duration)


_STOP_SLA = SideEffect(SideEffectKind.STOP_SLA)


def _create(handler):
    return SideEffect(SideEffectKind.CREATE, handler=handler)


def _update(handler):
    return SideEffect(SideEffectKind.UPDATE, handler=handler)


def _rfq(frm, to, roles=(), **kw):
    return TransitionDefinition(RFQ_ITEM, frm, to, allowed_roles=tuple(roles), **kw)


def _order(frm, to, roles=(), **kw):
    return TransitionDefinition(ORDER_ITEM, frm, to, allowed_roles=tuple(roles), **kw)


# ── Role groups ──────────────────────────────────────────────────────────────

SALES = ("SALES_EXECUTIVE", "SALES_MANAGER")
TECH = ("TECH_ENGINEER", "TECH_LEAD")
COMPLIANCE = ("COMPLIANCE_OFFICER", "COMPLIANCE_MANAGER")
WAREHOUSE = ("WAREHOUSE_EXECUTIVE", "WAREHOUSE_MANAGER")
SOURCING = ("SOURCING_ENGINEER", "PURCHASE_MANAGER")
SENIOR = ("DIRECTOR", "MD")
FINANCE = ("FINANCE_OFFICER", "FINANCE_MANAGER")
PURCHASE = ("PURCHASE_ENGINEER", "PURCHASE_MANAGER")
QC = ("QC_ENGINEER", "QC_MANAGER")
LOGISTICS = ("LOGISTICS_EXECUTIVE", "LOGISTICS_MANAGER")
BILLING = ("FINANCE_EXECUTIVE", "FINANCE_OFFICER")


# ═════════════════════════════════════════════════════════════════════════════
# RFQ item
# ═════════════════════════════════════════════════════════════════════════════

RFQ_TRANSITIONS = (
    _rfq("DRAFT", "RFQ_SUBMITTED", SALES,
         required_fields=("product_id", "quantity", "unit_of_measure"),
         preconditions=("PRODUCT_ACTIVE", "QUANTITY_POSITIVE", "QUANTITY_VALID"),
         side_effects=(_notify("SALES_MANAGER"), _sla("2h")),
         audit_reason="RFQ item submitted for review"),
    _rfq("RFQ_SUBMITTED", "SALES_REVIEW", is_automatic=True,
         side_effects=(_notify("SALES_EXECUTIVE"), _sla("4h")),
         audit_reason="Auto-assigned to sales review"),
    _rfq("SALES_REVIEW", "TECH_REVIEW", SALES,
         required_fields=("target_price", "currency"),
         preconditions=("TARGET_PRICE_POSITIVE",),
         side_effects=(_notify("TECH_ENGINEER"), _sla("24h")),
         audit_reason="Sales review complete, sent to technical review"),
    _rfq("SALES_REVIEW", "DRAFT", ("SALES_MANAGER",),
         requires_justification=True,
         audit_reason="Returned to draft by sales manager"),
    _rfq("TECH_REVIEW", "TECH_APPROVED", TECH,
         preconditions=("SPECIFICATIONS_COMPLETE",),
         side_effects=(_STOP_SLA,),
         audit_reason="Technical specifications approved"),
    _rfq("TECH_REVIEW", "SALES_REVIEW", TECH,
         requires_justification=True,
         audit_reason="Returned to sales for clarification"),
    _rfq("TECH_APPROVED", "COMPLIANCE_REVIEW", is_automatic=True,
         side_effects=(_notify("COMPLIANCE_OFFICER"), _sla("24h")),
         audit_reason="Auto-assigned to compliance review"),
    _rfq("COMPLIANCE_REVIEW", "STOCK_CHECK", COMPLIANCE,
         required_fields=("compliance_data_id",),
         preconditions=("COMPLIANCE_APPROVED",),
         side_effects=(_sla("12h"),),
         audit_reason="Compliance approved"),
    _rfq("COMPLIANCE_REVIEW", "TECH_REVIEW", COMPLIANCE,
         requires_justification=True,
         audit_reason="Compliance issue, returned to technical"),
    _rfq("STOCK_CHECK", "SOURCING_ACTIVE", WAREHOUSE,
         side_effects=(_notify("SOURCING_ENGINEER"), _sla("48h")),
         audit_reason="Insufficient stock, external sourcing started"),
    _rfq("STOCK_CHECK", "RATE_FINALIZED", WAREHOUSE,
         required_fields=("cost_breakdown_id",),
         preconditions=("STOCK_AVAILABLE",),
         audit_reason="Stock available, rate from standard cost"),
    _rfq("SOURCING_ACTIVE", "VENDOR_QUOTES_RECEIVED", SOURCING,
         preconditions=("HAS_VENDOR_QUOTES",),
         side_effects=(_sla("24h"),),
         audit_reason="Vendor quotes received"),
    _rfq("VENDOR_QUOTES_RECEIVED", "RATE_FINALIZED", SOURCING,
         required_fields=("selected_vendor_quote_id", "cost_breakdown_id"),
         preconditions=("VENDOR_QUOTE_SELECTED", "COST_BREAKDOWN_COMPLETE"),
         side_effects=(_sla("12h"),),
         audit_reason="Vendor selected, rate finalised"),
    _rfq("RATE_FINALIZED", "MARGIN_APPROVAL", is_automatic=True,
         side_effects=(_notify("DIRECTOR"), _sla("24h")),
         audit_reason="Sent for margin approval"),
    _rfq("MARGIN_APPROVAL", "PRICE_FROZEN", SENIOR,
         required_fields=("selling_price", "margin_pct"),
         preconditions=("MARGIN_ACCEPTABLE", "COMMERCIAL_TERMS_COMPLETE"),
         side_effects=(_STOP_SLA, _update("freeze_commercial_terms")),
         audit_reason="Margin approved, price frozen"),
    _rfq("MARGIN_APPROVAL", "RATE_FINALIZED", SENIOR,
         requires_justification=True,
         audit_reason="Margin rejected, rate to be revised"),
    _rfq("PRICE_FROZEN", "QUOTE_SENT", SALES,
         required_fields=("quote_id",),
         preconditions=("QUOTE_ISSUED",),
         side_effects=(_notify("CUSTOMER"), _update("mark_quote_sent"), _sla("168h")),
         audit_reason="Quote sent to customer"),
    _rfq("QUOTE_SENT", "CUSTOMER_ACCEPTED", SALES,
         preconditions=("CUSTOMER_ACCEPTANCE_CONFIRMED",),
         side_effects=(_STOP_SLA, _create("create_order")),
         audit_reason="Customer accepted quote"),
    _rfq("QUOTE_SENT", "CUSTOMER_REJECTED", SALES,
         requires_justification=True,
         side_effects=(_STOP_SLA,),
         audit_reason="Customer rejected quote"),
    _rfq("CUSTOMER_ACCEPTED", "RFQ_CLOSED", is_automatic=True,
         required_fields=("order_id", "order_item_id"),
         preconditions=("ORDER_CREATED",),
         audit_reason="Order created, RFQ closed"),
    _rfq("CUSTOMER_REJECTED", "RFQ_CLOSED", is_automatic=True,
         audit_reason="RFQ closed after rejection"),
    _rfq("DRAFT", "RFQ_CLOSED", SALES + ("DIRECTOR",),
         requires_justification=True,
         audit_reason="Draft RFQ cancelled"),
)


# ═════════════════════════════════════════════════════════════════════════════
# Order item
# ═════════════════════════════════════════════════════════════════════════════

ORDER_TRANSITIONS = (
    _order("PR_CREATED", "PR_ACKNOWLEDGED", PURCHASE,
           side_effects=(_sla("4h"),),
           audit_reason="Order line acknowledged by purchase"),
    _order("PR_ACKNOWLEDGED", "CREDIT_CHECK", is_automatic=True,
           side_effects=(_notify("FINANCE_OFFICER"), _sla("24h")),
           audit_reason="Sent for credit check"),
    _order("CREDIT_CHECK", "STOCK_RESERVED", FINANCE,
           preconditions=("CREDIT_AVAILABLE", "CUSTOMER_NOT_BLOCKED", "STOCK_FULLY_RESERVED"),
           side_effects=(_STOP_SLA,),
           audit_reason="Credit approved, fulfilled from stock"),
    _order("CREDIT_CHECK", "PO_RELEASED", FINANCE,
           preconditions=("CREDIT_AVAILABLE", "CUSTOMER_NOT_BLOCKED", "PURCHASE_ORDER_RAISED"),
           side_effects=(_notify("PURCHASE_MANAGER"), _sla("12h")),
           audit_reason="Credit approved, purchase order released"),
    _order("CREDIT_CHECK", "CREDIT_HOLD", FINANCE,
           requires_justification=True,
           side_effects=(_notify("FINANCE_MANAGER"),),
           audit_reason="Credit check failed"),
    _order("CREDIT_HOLD", "PO_RELEASED", ("FINANCE_MANAGER",) + SENIOR,
           preconditions=("PURCHASE_ORDER_RAISED",),
           requires_justification=True,
           audit_reason="Credit hold overridden"),
    _order("STOCK_RESERVED", "READY_TO_DISPATCH", is_automatic=True,
           side_effects=(_notify("LOGISTICS_EXECUTIVE"), _sla("48h")),
           audit_reason="Reserved stock ready for dispatch"),
    _order("PO_RELEASED", "VENDOR_CONFIRMED", PURCHASE,
           preconditions=("VENDOR_CONFIRMATION_RECEIVED",),
           side_effects=(_sla("48h"),),
           audit_reason="Vendor confirmed purchase order"),
    _order("VENDOR_CONFIRMED", "IN_PRODUCTION", PURCHASE,
           side_effects=(_sla("240h"),),
           audit_reason="Vendor production started"),
    _order("IN_PRODUCTION", "GOODS_RECEIVED", WAREHOUSE,
           preconditions=("GRN_CREATED",),
           side_effects=(_notify("QC_ENGINEER"), _sla("24h")),
           audit_reason="Goods received"),
    _order("GOODS_RECEIVED", "QC_APPROVED", QC,
           preconditions=("QC_INSPECTION_COMPLETE", "QC_STATUS_PASSED"),
           side_effects=(_STOP_SLA,),
           audit_reason="QC passed"),
    _order("GOODS_RECEIVED", "QC_REJECTED", QC,
           preconditions=("QC_INSPECTION_COMPLETE",),
           requires_justification=True,
           side_effects=(_notify("QC_MANAGER"), _create("raise_nonconformance")),
           audit_reason="QC failed"),
    _order("QC_REJECTED", "VENDOR_CONFIRMED", QC + ("PURCHASE_MANAGER",),
           requires_justification=True,
           audit_reason="Replacement requested from vendor"),
    _order("QC_APPROVED", "READY_TO_DISPATCH", is_automatic=True,
           side_effects=(_notify("LOGISTICS_EXECUTIVE"), _sla("48h")),
           audit_reason="Ready for dispatch"),
    _order("READY_TO_DISPATCH", "DISPATCHED", LOGISTICS,
           preconditions=("SHIPMENT_CREATED",),
           side_effects=(_sla("168h"),),
           audit_reason="Dispatched"),
    _order("DISPATCHED", "DELIVERED", LOGISTICS,
           preconditions=("DELIVERY_CONFIRMED", "POD_UPLOADED"),
           side_effects=(_notify("FINANCE_EXECUTIVE"), _sla("24h")),
           audit_reason="Delivered"),
    _order("DELIVERED", "INVOICED", BILLING,
           preconditions=("INVOICE_GENERATED",),
           side_effects=(_notify("CUSTOMER"), _sla("720h")),
           audit_reason="Invoiced"),
    _order("INVOICED", "PAYMENT_PARTIAL", BILLING,
           preconditions=("PAYMENT_RECORDED", "PAYMENT_NOT_FULL"),
           audit_reason="Partial payment received"),
    _order("INVOICED", "PAYMENT_CLOSED", BILLING,
           preconditions=("PAYMENT_RECORDED", "PAYMENT_FULL"),
           side_effects=(_STOP_SLA,),
           audit_reason="Full payment received"),
    _order("PAYMENT_PARTIAL", "PAYMENT_CLOSED", BILLING,
           preconditions=("PAYMENT_FULL",),
           side_effects=(_STOP_SLA,),
           audit_reason="Balance payment received"),
    _order("PAYMENT_CLOSED", "CLOSED", is_automatic=True,
           side_effects=(_notify("SALES_MANAGER"),),
           audit_reason="Order line closed"),
    _order("PR_CREATED", "CANCELLED", ("SALES_MANAGER", "DIRECTOR"),
           requires_justification=True,
           audit_reason="Order line cancelled"),
    _order("PO_RELEASED", "CANCELLED", ("PURCHASE_MANAGER", "DIRECTOR"),
           requires_justification=True,
           audit_reason="Order line cancelled after PO"),
    _order("CANCELLED", "FORCE_CLOSED", SENIOR,
           requires_justification=True,
           audit_reason="Cancelled order line closed"),
)


# ═════════════════════════════════════════════════════════════════════════════
# Emergency close, configured per entity kind
# ═════════════════════════════════════════════════════════════════════════════

EMERGENCY_CLOSE: dict[str, tuple[EmergencyCloseRule, ...]] = {
    ORDER_ITEM: (
        EmergencyCloseRule(roles=SENIOR),
    ),
    RFQ_ITEM: (
        EmergencyCloseRule(roles=SENIOR),
        EmergencyCloseRule(
            roles=("SALES_MANAGER",),
            from_states=frozenset({"DRAFT", "RFQ_SUBMITTED", "SALES_REVIEW"}),
        ),
    ),
}

STATES = {RFQ_ITEM: RFQ_ITEM_STATES, ORDER_ITEM: ORDER_ITEM_STATES}


def _expand_emergency(kind: str, authored: tuple[TransitionDefinition, ...]):
    """Merge authored rows with generated force-close rows for *kind*."""
    rows = {d.key: d for d in authored}
    terminal = TERMINAL_STATES[kind]
    for rule in EMERGENCY_CLOSE.get(kind, ()):
        for state in STATES[kind]:
            if state in terminal:
                continue
            if rule.from_states is not None and state not in rule.from_states:
                continue
            key = (kind, state, rule.to_state)
            existing = rows.get(key)
            roles = tuple(dict.fromkeys((existing.allowed_roles if existing else ()) + rule.roles))
            rows[key] = TransitionDefinition(
                kind, state, rule.to_state,
                allowed_roles=roles,
                side_effects=(_STOP_SLA, _notify(*SENIOR)),
                requires_justification=True,
                is_emergency=True,
                audit_reason="Emergency close",
            )
    return tuple(rows.values())


TRANSITIONS: tuple[TransitionDefinition, ...] = (
    _expand_emergency(RFQ_ITEM, RFQ_TRANSITIONS)
    + _expand_emergency(ORDER_ITEM, ORDER_TRANSITIONS)
)

_BY_KEY: dict[tuple[str, str, str], TransitionDefinition] = {d.key: d for d in TRANSITIONS}


# ── Lookups ──────────────────────────────────────────────────────────────────

def get_transition(entity_kind: str, from_state: str, to_state: str) -> TransitionDefinition | None:
    return _BY_KEY.get((entity_kind, from_state, to_state))


def transitions_from(entity_kind: str, from_state: str) -> list[TransitionDefinition]:
    return [d for d in TRANSITIONS if d.entity_kind == entity_kind and d.from_state == from_state]


def transitions_for(entity_kind: str) -> list[TransitionDefinition]:
    return [d for d in TRANSITIONS if d.entity_kind == entity_kind]


def is_terminal(entity_kind: str, state: str) -> bool:
    return state in TERMINAL_STATES[entity_kind]
