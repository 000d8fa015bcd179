"""
Transition Executor — applies one validated item transition.

Ordering inside ``execute``:
  1. Immutability guard (terminal items fail fast, nothing else runs)
  2. Optimistic version check (``expected_version``)
  3. Validator: edge → role → justification → fields → preconditions
  4. State write: state, state_entered_at, owner, SLA flags, closed_at
  5. SLA side effects (same transaction as the state write)
  6. NOTIFY / CREATE / UPDATE side effects, each in its own SAVEPOINT;
     a failure is logged and reported, never undoes the state change
  7. STATE_TRANSITION audit row
  8. Commit (unless the caller owns the transaction)

Usage:
    from app.services.transition_executor import Actor, execute

    result = execute("rfq_item", 42, "RFQ_SUBMITTED",
                     Actor("u-17", "SALES_EXECUTIVE"))
    result.side_effects   # [{"side_effect": "NOTIFY:SALES_MANAGER", "success": True, ...}]
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    AuthorizationError,
    ConcurrentModificationError,
    NotFoundError,
    PreconditionFailedError,
    TransitionValidationError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.commercial import Quote, SalesPricing
from app.models.fulfillment import Nonconformance, QcInspection
from app.models.immutability import assert_mutable
from app.models.trade import (
    INITIAL_STATES,
    ITEM_MODELS,
    ORDER_ITEM,
    TERMINAL_STATES,
    Order,
    OrderItem,
)
from app.services.code_generator import next_number
from app.services.notification import NotificationService
from app.services.transition_table import (
    SideEffect,
    SideEffectKind,
    TransitionDefinition,
    get_transition,
    transitions_from,
)
from app.services.transition_validator import (
    check_transition,
    failed_preconditions,
    missing_fields,
)
from app.utils.helpers import iso, parse_duration, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Who is asking: a user (or service principal) id and the role it acts in."""

    id: str
    role: str | None = None

    @classmethod
    def system(cls, label: str = "system") -> "Actor":
        return cls(label, "SYSTEM")


@dataclass
class TransitionResult:
    entity_kind: str
    item_id: int
    from_state: str
    to_state: str
    version: int
    state_entered_at: datetime
    side_effects: list = field(default_factory=list)
    audit_id: int | None = None

    @property
    def failed_side_effects(self) -> list:
        return [s for s in self.side_effects if not s["success"]]

    def to_dict(self) -> dict:
        d = asdict(self)
        d["state_entered_at"] = iso(self.state_entered_at)
        return d


@dataclass
class TransitionContext:
    """What a side-effect handler gets to know about the transition."""

    actor: Actor
    definition: TransitionDefinition
    from_state: str
    justification: str | None
    now: datetime


# ═════════════════════════════════════════════════════════════════════════════
# CREATE / UPDATE handler registry
# ═════════════════════════════════════════════════════════════════════════════

ITEM_HANDLERS: dict = {}


def register_handler(name: str):
    """Register ``fn(item, ctx) -> detail`` as a CREATE / UPDATE side effect."""
    def decorator(fn):
        ITEM_HANDLERS[name] = fn
        return fn
    return decorator


def create_order_line(rfq_item, actor_id: str, now: datetime | None = None) -> OrderItem:
    """
    Turn an accepted RFQ line into a line on the RFQ's sales order.

    Idempotent: returns the existing order item when the lineage pointer is
    already set.  Creates the order header on first use.
    """
    if rfq_item.order_item_id:
        existing = db.session.get(OrderItem, rfq_item.order_item_id)
        if existing is not None:
            return existing

    order = Order.query.filter_by(rfq_id=rfq_item.rfq_id).first()
    if order is None:
        order = Order(
            number=next_number(Order),
            customer_id=rfq_item.rfq.customer_id,
            rfq_id=rfq_item.rfq_id,
            reference=rfq_item.rfq.reference or "",
            created_by=actor_id,
        )
        db.session.add(order)
        db.session.flush()

    order_item = OrderItem(
        order_id=order.id,
        line_no=OrderItem.query.filter_by(order_id=order.id).count() + 1,
        rfq_item_id=rfq_item.id,
        product_id=rfq_item.product_id,
        quantity=rfq_item.quantity,
        unit_price=rfq_item.selling_price or 0.0,
        currency=rfq_item.currency or "USD",
        state=INITIAL_STATES[ORDER_ITEM],
        state_entered_at=now or utcnow(),
        owner_id=actor_id,
        created_by=actor_id,
    )
    db.session.add(order_item)
    db.session.flush()

    rfq_item.order_id = order.id
    rfq_item.order_item_id = order_item.id
    write_audit(
        table=OrderItem.__tablename__, record_id=order_item.id, action="CREATE",
        actor_id=actor_id, new_data=order_item.to_dict(),
        reason=f"Created from RFQ item {rfq_item.id}",
    )
    return order_item


@register_handler("create_order")
def _create_order(item, ctx: TransitionContext) -> str:
    order_item = create_order_line(item, ctx.actor.id, ctx.now)
    return f"order {order_item.order_id} line {order_item.line_no} (order item {order_item.id})"


@register_handler("freeze_commercial_terms")
def _freeze_commercial_terms(item, ctx: TransitionContext) -> str:
    item.terms_frozen_at = ctx.now
    pricing = (
        SalesPricing.query
        .filter_by(rfq_item_id=item.id)
        .order_by(SalesPricing.id.desc())
        .first()
    )
    if pricing is not None:
        pricing.status = "approved"
        pricing.approved_by = ctx.actor.id
    db.session.flush()
    return f"terms frozen at {item.selling_price} {item.currency}"


@register_handler("mark_quote_sent")
def _mark_quote_sent(item, ctx: TransitionContext) -> str:
    quote = db.session.get(Quote, item.quote_id)
    if quote is None:
        raise NotFoundError("Quote", item.quote_id)
    if quote.status != "sent":
        quote.status = "sent"
        quote.sent_at = ctx.now
    item.sent_at = ctx.now
    db.session.flush()
    return f"quote {quote.number} sent"


@register_handler("raise_nonconformance")
def _raise_nonconformance(item, ctx: TransitionContext) -> str:
    """Open an NCR for every failed inspection on the line that has none yet."""
    failed = QcInspection.query.filter_by(order_item_id=item.id, status="failed").all()
    covered = {
        n.inspection_id
        for n in Nonconformance.query.filter_by(order_item_id=item.id).all()
    }
    raised = []
    for inspection in failed:
        if inspection.id in covered:
            continue
        raised.append(Nonconformance(
            number=next_number(Nonconformance),
            inspection_id=inspection.id,
            order_item_id=item.id,
            product_id=item.product_id,
            quantity=inspection.quantity_failed or inspection.quantity_inspected,
            description=ctx.justification or inspection.notes or "QC rejection",
        ))
        db.session.add(raised[-1])
        db.session.flush()

    if not failed and not covered:
        raised.append(Nonconformance(
            number=next_number(Nonconformance),
            order_item_id=item.id,
            product_id=item.product_id,
            quantity=item.quantity,
            description=ctx.justification or "QC rejection",
        ))
        db.session.add(raised[-1])
        db.session.flush()

    if not raised:
        return "nonconformance already raised"
    return "raised " + ", ".join(n.number for n in raised)


# ═════════════════════════════════════════════════════════════════════════════
# Side-effect dispatch
# ═════════════════════════════════════════════════════════════════════════════


def _resolve_target(item, target: str) -> str:
    if target == "OWNER":
        return item.owner_id or "all"
    if target == "CUSTOMER":
        header = item.order if item.ENTITY_KIND == ORDER_ITEM else item.rfq
        return f"customer:{header.customer_id}"
    return target


def _run_notify(item, effect: SideEffect, ctx: TransitionContext) -> str:
    recipients = [_resolve_target(item, t) for t in effect.targets]
    payload = {
        "entity_kind": item.ENTITY_KIND,
        "item_id": item.id,
        "from_state": ctx.from_state,
        "to_state": item.state,
        "actor_id": ctx.actor.id,
    }
    for recipient in recipients:
        NotificationService.notify(
            recipient, "STATE_CHANGED", payload,
            title=f"{item.ENTITY_KIND} {item.id}: {ctx.from_state} → {item.state}",
            entity_type=item.ENTITY_KIND, entity_id=item.id,
        )
    return "notified " + ", ".join(recipients)


def _run_start_sla(item, effect: SideEffect, ctx: TransitionContext) -> str:
    item.sla_due_at = ctx.now + parse_duration(effect.duration)
    return f"due {iso(item.sla_due_at)}"


def _run_stop_sla(item, effect: SideEffect, ctx: TransitionContext) -> str:
    item.sla_due_at = None
    return "stopped"


def _run_registered(item, effect: SideEffect, ctx: TransitionContext) -> str:
    handler = ITEM_HANDLERS.get(effect.handler)
    if handler is None:
        raise KeyError(f"No side-effect handler registered as {effect.handler!r}")
    return handler(item, ctx)


SIDE_EFFECT_HANDLERS = {
    SideEffectKind.NOTIFY: _run_notify,
    SideEffectKind.START_SLA: _run_start_sla,
    SideEffectKind.STOP_SLA: _run_stop_sla,
    SideEffectKind.CREATE: _run_registered,
    SideEffectKind.UPDATE: _run_registered,
}

# Applied with the state write; everything else runs after it in a savepoint.
_IN_TRANSACTION = frozenset({SideEffectKind.START_SLA, SideEffectKind.STOP_SLA})


def _run_isolated(item, effect: SideEffect, ctx: TransitionContext) -> dict:
    try:
        with db.session.begin_nested():
            detail = SIDE_EFFECT_HANDLERS[effect.kind](item, effect, ctx)
        return {"side_effect": effect.describe(), "success": True, "detail": detail}
    except Exception as exc:
        logger.exception(
            "Side effect %s failed for %s %s", effect.describe(), item.ENTITY_KIND, item.id,
            extra={"entity_type": item.ENTITY_KIND, "entity_id": item.id,
                   "event_type": "side_effect_failed"},
        )
        return {"side_effect": effect.describe(), "success": False, "detail": str(exc)}


# ═════════════════════════════════════════════════════════════════════════════
# Execute
# ═════════════════════════════════════════════════════════════════════════════

_REJECTIONS = {
    "transition": TransitionValidationError,
    "justification": TransitionValidationError,
    "fields": TransitionValidationError,
    "role": AuthorizationError,
    "precondition": PreconditionFailedError,
}


def _load_item(entity_kind: str, item_id):
    model = ITEM_MODELS.get(entity_kind)
    if model is None:
        raise TransitionValidationError(
            f"Unknown entity kind {entity_kind!r}",
            details={"check": "transition", "entity_kind": entity_kind},
        )
    item = db.session.get(model, item_id)
    if item is None:
        raise NotFoundError(model.__name__, item_id)
    return item


def _snapshot(item) -> dict:
    return {
        "state": item.state,
        "state_entered_at": iso(item.state_entered_at),
        "owner_id": item.owner_id,
        "sla_due_at": iso(item.sla_due_at),
        "version": item.version,
    }


def execute(
    entity_kind: str,
    item_id,
    to_state: str,
    actor: Actor,
    justification: str | None = None,
    expected_version: int | None = None,
    commit: bool = True,
) -> TransitionResult:
    """
    Move one item to *to_state*.

    Raises:
        ImmutableItemError: item is already terminal (checked before anything else)
        ConcurrentModificationError: version moved under the caller
        TransitionValidationError / AuthorizationError / PreconditionFailedError:
            the validator rejected the move; nothing was written
    """
    item = _load_item(entity_kind, item_id)
    assert_mutable(item)

    if expected_version is not None and item.version != expected_version:
        raise ConcurrentModificationError(
            f"{entity_kind} {item_id} is at version {item.version}, expected {expected_version}",
            details={"entity_kind": entity_kind, "item_id": item_id,
                     "expected_version": expected_version, "actual_version": item.version},
        )

    if item.is_deleted:
        raise TransitionValidationError(
            f"{entity_kind} {item_id} is deleted",
            details={"check": "transition", "entity_kind": entity_kind, "item_id": item_id},
        )

    verdict = check_transition(item, to_state, actor.role, justification)
    if not verdict["valid"]:
        logger.warning(
            "Rejected %s %s: %s → %s by %s (%s)",
            entity_kind, item_id, item.state, to_state, actor.role, verdict["check"],
            extra={"entity_type": entity_kind, "entity_id": item_id, "event_type": "transition_rejected"},
        )
        details = {k: v for k, v in verdict.items() if k != "valid"}
        details.update(entity_kind=entity_kind, item_id=item_id, role=actor.role)
        raise _REJECTIONS[verdict["check"]](verdict["reason"], details=details)

    definition = get_transition(entity_kind, item.state, to_state)
    now = utcnow()
    from_state = item.state
    before = _snapshot(item)
    ctx = TransitionContext(actor, definition, from_state, justification, now)

    item.state = to_state
    item.state_entered_at = now
    item.owner_id = actor.id
    item.updated_by = actor.id
    item.updated_at = now
    item.sla_due_at = None
    item.sla_warning = False
    item.sla_breached = False
    if to_state in TERMINAL_STATES[entity_kind]:
        item.closed_at = now

    outcomes = {}
    for index, effect in enumerate(definition.side_effects):
        if effect.kind in _IN_TRANSACTION:
            detail = SIDE_EFFECT_HANDLERS[effect.kind](item, effect, ctx)
            outcomes[index] = {"side_effect": effect.describe(), "success": True, "detail": detail}

    try:
        db.session.flush()
    except StaleDataError as exc:
        db.session.rollback()
        raise ConcurrentModificationError(
            f"{entity_kind} {item_id} was modified concurrently; re-read and retry",
            details={"entity_kind": entity_kind, "item_id": item_id},
        ) from exc

    for index, effect in enumerate(definition.side_effects):
        if effect.kind not in _IN_TRANSACTION:
            outcomes[index] = _run_isolated(item, effect, ctx)
    side_effects = [outcomes[i] for i in sorted(outcomes)]

    after = _snapshot(item)
    after["side_effects"] = [s["side_effect"] for s in side_effects]
    after["emergency"] = definition.is_emergency
    audit = write_audit(
        table=item.__tablename__,
        record_id=item.id,
        action="STATE_TRANSITION",
        actor_id=actor.id,
        old_data=before,
        new_data=after,
        reason=justification or definition.audit_reason,
    )

    if commit:
        db.session.commit()

    logger.info(
        "Transition %s %s: %s → %s by %s (%s)",
        entity_kind, item_id, from_state, to_state, actor.id, actor.role,
        extra={"entity_type": entity_kind, "entity_id": item_id, "event_type": "state_transition"},
    )
    return TransitionResult(
        entity_kind=entity_kind,
        item_id=item.id,
        from_state=from_state,
        to_state=to_state,
        version=item.version,
        state_entered_at=now,
        side_effects=side_effects,
        audit_id=audit.id,
    )


def available_transitions(entity_kind: str, item_id, role: str | None) -> dict:
    """Every outgoing edge for the item, annotated with what still blocks it."""
    item = _load_item(entity_kind, item_id)
    options = []
    for definition in transitions_from(entity_kind, item.state):
        verdict = check_transition(item, definition.to_state, role, justification="-")
        role_ok = verdict["check"] != "role"
        missing = missing_fields(item, definition) if role_ok else []
        failures = failed_preconditions(item, definition) if role_ok and not missing else []
        options.append({
            "to_state": definition.to_state,
            "allowed_roles": list(definition.allowed_roles),
            "is_automatic": definition.is_automatic,
            "is_emergency": definition.is_emergency,
            "requires_justification": definition.requires_justification,
            "role_permitted": role_ok,
            "missing_fields": missing,
            "failed_preconditions": [{"key": k, "reason": r} for k, r in failures],
            "ready": role_ok and not missing and not failures,
        })
    return {
        "entity_kind": entity_kind,
        "item_id": item.id,
        "state": item.state,
        "version": item.version,
        "is_terminal": item.is_terminal,
        "transitions": options,
    }
