"""
SLA Monitor — periodic sweep over open workflow items.

For every non-terminal, non-deleted item with an ``sla_due_at``:

    now > sla_due_at                              → breach (once)
    now ≥ state_entered_at + threshold × window   → warning (once)

A breach sets ``sla_breached`` and notifies the escalation role for the
item's kind; a warning sets ``sla_warning`` and notifies the item's owner.
Both flags are cleared by the executor on the next transition, because the
SLA timer belongs to the state, not the item.

Each item is committed on its own: an item closed or changed by another
writer between the candidate query and its update is skipped, never turned
into a sweep failure.

Usage:
    monitor = SlaMonitor()
    monitor.sweep()              # {"checked": 12, "warned": 2, "breached": 1}

    monitor.start(app, interval=900)
    ...
    monitor.stop()
"""

import logging
import threading

from flask import current_app, has_app_context
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ImmutableItemError
from app.models import db
from app.models.audit import write_audit
from app.models.trade import ENTITY_KINDS, ITEM_MODELS, TERMINAL_STATES
from app.services.notification import NotificationService
from app.utils.helpers import as_utc, iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 0.8
DEFAULT_ESCALATION_ROLES = {"rfq_item": "SALES_MANAGER", "order_item": "PURCHASE_MANAGER"}
DEFAULT_ESCALATION_ROLE = "DIRECTOR"


class SlaMonitor:
    """Owned sweep lifecycle; one instance per app (``app.extensions["sla_monitor"]``)."""

    def __init__(self, notifier=None, clock=None, warning_threshold=None, escalation_roles=None):
        self.notifier = notifier or NotificationService
        self.clock = clock or utcnow
        self._warning_threshold = warning_threshold
        self._escalation_roles = escalation_roles
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def warning_threshold(self) -> float:
        if self._warning_threshold is not None:
            return self._warning_threshold
        if has_app_context():
            return float(current_app.config.get("SLA_WARNING_THRESHOLD", DEFAULT_WARNING_THRESHOLD))
        return DEFAULT_WARNING_THRESHOLD

    def escalation_role(self, entity_kind: str) -> str:
        roles = self._escalation_roles
        default = DEFAULT_ESCALATION_ROLE
        if roles is None and has_app_context():
            roles = current_app.config.get("SLA_ESCALATION_ROLES")
            default = current_app.config.get("SLA_DEFAULT_ESCALATION_ROLE", DEFAULT_ESCALATION_ROLE)
        return (roles or DEFAULT_ESCALATION_ROLES).get(entity_kind, default)

    # ── Evaluation ───────────────────────────────────────────────────────────

    def within_warning_window(self, item, now) -> bool:
        due = as_utc(item.sla_due_at)
        entered = as_utc(item.state_entered_at)
        if due is None or entered is None or due <= entered:
            return False
        return now >= entered + (due - entered) * self.warning_threshold

    def check_item(self, item, now=None) -> str | None:
        """
        Flag one item; returns ``"breached"``, ``"warned"`` or None.

        Only flushes: ``sweep`` commits.  Notifications are sent after the
        flag write has been flushed.
        """
        now = now or self.clock()
        due = as_utc(item.sla_due_at)
        if item.is_terminal or item.is_deleted or due is None:
            return None

        if now > due:
            if item.sla_breached:
                return None
            item.sla_breached = True
            db.session.flush()
            write_audit(
                table=item.__tablename__, record_id=item.id, action="SLA_BREACH",
                new_data={"state": item.state, "sla_due_at": iso(due)},
                reason=f"SLA breached in {item.state}",
            )
            role = self.escalation_role(item.ENTITY_KIND)
            self.notifier.send(
                role, "SLA_BREACHED",
                {"entity_kind": item.ENTITY_KIND, "item_id": item.id, "state": item.state,
                 "sla_due_at": iso(due)},
                title=f"SLA breached: {item.ENTITY_KIND} {item.id} in {item.state}",
                category="sla", severity="error",
                entity_type=item.ENTITY_KIND, entity_id=item.id,
            )
            logger.warning(
                "SLA breached for %s %s in %s", item.ENTITY_KIND, item.id, item.state,
                extra={"entity_type": item.ENTITY_KIND, "entity_id": item.id, "event_type": "sla_breach"},
            )
            return "breached"

        if self.within_warning_window(item, now) and not item.sla_warning:
            item.sla_warning = True
            db.session.flush()
            write_audit(
                table=item.__tablename__, record_id=item.id, action="SLA_WARNING",
                new_data={"state": item.state, "sla_due_at": iso(due)},
            )
            self.notifier.send(
                item.owner_id or "all", "SLA_WARNING",
                {"entity_kind": item.ENTITY_KIND, "item_id": item.id, "state": item.state,
                 "sla_due_at": iso(due)},
                title=f"SLA approaching: {item.ENTITY_KIND} {item.id} due {iso(due)}",
                category="sla", severity="warning",
                entity_type=item.ENTITY_KIND, entity_id=item.id,
            )
            return "warned"
        return None

    def _candidate_ids(self, kind):
        model = ITEM_MODELS[kind]
        rows = db.session.query(model.id).filter(
            model.sla_due_at.isnot(None),
            model.deleted_at.is_(None),
            model.state.notin_(TERMINAL_STATES[kind]),
        ).order_by(model.id).all()
        return [r[0] for r in rows]

    def sweep(self, scope=None, now=None) -> dict:
        """Check every open item of the given kinds (default: all)."""
        now = now or self.clock()
        kinds = [scope] if isinstance(scope, str) else list(scope or ENTITY_KINDS)
        counts = {"checked": 0, "warned": 0, "breached": 0}

        for kind in kinds:
            model = ITEM_MODELS[kind]
            for item_id in self._candidate_ids(kind):
                item = db.session.get(model, item_id, populate_existing=True)
                if item is None:
                    continue
                counts["checked"] += 1
                try:
                    outcome = self.check_item(item, now)
                    db.session.commit()
                except (StaleDataError, ImmutableItemError):
                    db.session.rollback()
                    logger.info("SLA sweep skipped %s %s: changed concurrently", kind, item_id)
                    continue
                if outcome:
                    counts[outcome] += 1

        logger.info(
            "SLA sweep: checked=%d warned=%d breached=%d",
            counts["checked"], counts["warned"], counts["breached"],
            extra={"event_type": "sla_sweep"},
        )
        return counts

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, app, interval=None):
        """Run ``sweep`` every *interval* seconds in a daemon thread."""
        if self.running:
            return
        interval = interval or app.config.get("SLA_SWEEP_INTERVAL_SECONDS", 900)
        self._stop.clear()

        def _loop():
            while not self._stop.wait(interval):
                with app.app_context():
                    try:
                        self.sweep()
                    except Exception:
                        logger.exception("SLA sweep failed")
                        db.session.rollback()

        self._thread = threading.Thread(target=_loop, name="sla-monitor", daemon=True)
        self._thread.start()
        logger.info("SLA monitor started (every %ss)", interval)

    def stop(self, timeout=5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
