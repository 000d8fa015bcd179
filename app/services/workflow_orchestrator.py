"""
Workflow Orchestrator — drives one business run end to end.

A run walks fixed phases in order:

    request_intake → internal_qualification → external_sourcing →
    pricing_approval → customer_quote → order_creation → stock_resolution →
    procurement → receipt_inspection → inventory_update → dispatch →
    invoicing → settlement → completion

Each phase receives a copy of the RunContext, moves items through the
transition executor or calls a gateway, and returns the updated copy.  A
phase that needs a human raises ``PhasePaused``; the run stops with status
``requires_action`` and the phase name, and ``resume`` picks it up later.
Phases already listed in ``completed_phases`` are skipped, and every record
a phase creates is guarded by an id check, so a resumed run never creates a
second quote, order or invoice.

Failure policy: a WorkflowError inside a phase rolls back that phase's
writes, is appended to the context's error ledger and ends the run as
``failed`` with the last completed phase.  Any other exception is logged
with its traceback and recorded as ``INTERNAL_ERROR``, so a run is never
left ``running``.  The orchestrator never retries on its own;
``max_retries`` / ``retry_delay_ms`` are reported for callers.

``resume`` claims the run with a conditional UPDATE (``requires_action`` or
``failed`` → ``running``); a second caller gets ``ConflictError``.

Usage:
    from app.services.workflow_orchestrator import WorkflowOrchestrator

    engine = WorkflowOrchestrator()
    result = engine.run(
        {"customer_id": 1, "items": [{"product_id": 7, "quantity": 10}]},
        {"auto_approve_quote": True, "auto_approve_po": True},
    )
    result.status          # "completed" | "requires_action" | "failed"
    result.summary()
"""

import copy
import logging
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import timedelta

from flask import current_app, has_app_context
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import (
    ConflictError,
    ExternalOperationError,
    NotFoundError,
    PreconditionFailedError,
    RunInputError,
    WorkflowError,
)
from app.integrations.trade_gateway import InventoryGateway, VendorGateway
from app.models import db
from app.models.audit import write_audit
from app.models.commercial import (
    Quote,
    RateAnalysis,
    SalesPricing,
    TechnicalQualification,
    VendorQuote,
    VendorRfq,
)
from app.models.fulfillment import (
    GoodsReceipt,
    Invoice,
    Nonconformance,
    Payment,
    PurchaseOrder,
    PurchaseRequisition,
    QcInspection,
    Shipment,
    StockLot,
)
from app.models.trade import Customer, OrderItem, Product, Rfq, RfqItem, VendorProduct
from app.models.workflow import ActivityLog, ApprovalRequest, WorkflowRun
from app.services import transition_executor
from app.services.code_generator import next_number
from app.services.notification import NotificationService
from app.services.transition_executor import Actor, create_order_line
from app.services.transition_table import (
    BILLING,
    SALES,
    SENIOR,
    SOURCING,
    TECH,
    get_transition,
)
from app.utils.helpers import iso, utcnow

logger = logging.getLogger(__name__)

PHASES = (
    "request_intake",
    "internal_qualification",
    "external_sourcing",
    "pricing_approval",
    "customer_quote",
    "order_creation",
    "stock_resolution",
    "procurement",
    "receipt_inspection",
    "inventory_update",
    "dispatch",
    "invoicing",
    "settlement",
    "completion",
)

FREIGHT_RATE = 0.05
HANDLING_RATE = 0.02
QUOTE_VALIDITY_DAYS = 30
DEFAULT_PAYMENT_TERMS_DAYS = 30
RESUMABLE_STATUSES = ("requires_action", "failed")

_RFQ_INTAKE_PATH = ("DRAFT", "RFQ_SUBMITTED", "SALES_REVIEW")
_ORDER_INTAKE_PATH = ("PR_CREATED", "PR_ACKNOWLEDGED", "CREDIT_CHECK")


# ═════════════════════════════════════════════════════════════════════════════
# Value types
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class RunOptions:
    auto_approve_technical_qualification: bool = False
    auto_approve_rate_analysis: bool = False
    auto_approve_pricing: bool = False
    auto_approve_quote: bool = False
    auto_approve_po: bool = False
    auto_generate_invoice: bool = True
    create_po_on_stock_shortfall: bool = True
    allow_partial_fulfillment: bool = True
    auto_pass_qc: bool = False
    block_dispatch_on_qc_fail: bool = True
    minimum_vendor_quotes: int = 2
    max_vendor_quote_wait_days: int = 7
    weightages: dict = field(default_factory=lambda: {
        "price": 60, "quality": 20, "delivery": 15, "payment": 5,
    })
    default_margin_percent: float = 25.0
    require_management_approval_above_margin: float = 30.0
    notify_on_each_step: bool = True
    max_retries: int = 3
    retry_delay_ms: int = 1000

    @classmethod
    def from_dict(cls, data: dict | None) -> "RunOptions":
        known = {f.name for f in fields(cls)}
        data = data or {}
        unknown = sorted(set(data) - known)
        if unknown:
            raise RunInputError(f"Unknown workflow options: {', '.join(unknown)}",
                                details={"unknown_options": unknown})
        opts = cls(**{k: v for k, v in data.items() if k in known})
        opts.weightages = {**cls().weightages, **(opts.weightages or {})}
        return opts

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RunContext:
    """Serialisable working set of one run.  Phases return updated copies."""

    customer_id: int | None = None
    items: list = field(default_factory=list)
    currency: str = "USD"
    reference: str = ""

    rfq_id: int | None = None
    rfq_item_ids: list = field(default_factory=list)
    technical_qualification_ids: list = field(default_factory=list)
    vendor_rfq_ids: list = field(default_factory=list)
    vendor_quote_ids: list = field(default_factory=list)
    rate_analysis_ids: list = field(default_factory=list)
    sales_pricing_ids: list = field(default_factory=list)
    quote_id: int | None = None
    order_id: int | None = None
    order_item_ids: list = field(default_factory=list)
    stock_check_results: list = field(default_factory=list)
    reservation_ids: list = field(default_factory=list)
    purchase_requisition_ids: list = field(default_factory=list)
    purchase_order_ids: list = field(default_factory=list)
    grn_ids: list = field(default_factory=list)
    lot_ids: list = field(default_factory=list)
    qc_results: list = field(default_factory=list)
    ncr_ids: list = field(default_factory=list)
    shipment_id: int | None = None
    invoice_id: int | None = None
    payment_ids: list = field(default_factory=list)
    approval_request_ids: list = field(default_factory=list)

    inspection_outcomes: dict = field(default_factory=dict)
    payment_amount: float | None = None

    subtotal: float | None = None
    tax_amount: float | None = None
    total_amount: float | None = None

    started_at: str | None = None
    completed_at: str | None = None
    completed_phases: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "RunContext":
        known = {f.name for f in fields(cls)}
        return cls(**{k: copy.deepcopy(v) for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)

    def copy(self) -> "RunContext":
        return RunContext.from_dict(self.to_dict())

    def add_error(self, step, code, message, details=None, retryable=False):
        self.errors.append({
            "step": step, "code": code, "message": message,
            "details": details or {}, "retryable": retryable,
            "timestamp": iso(utcnow()),
        })

    def add_warning(self, step, code, message, details=None):
        self.warnings.append({
            "step": step, "code": code, "message": message,
            "details": details or {}, "timestamp": iso(utcnow()),
        })

    def stock_result(self, order_item_id) -> dict | None:
        for entry in self.stock_check_results:
            if entry["order_item_id"] == order_item_id:
                return entry
        return None

    def outcome_for(self, product_id) -> str | None:
        value = self.inspection_outcomes.get(str(product_id), self.inspection_outcomes.get(product_id))
        if isinstance(value, bool):
            return "passed" if value else "failed"
        if isinstance(value, dict):
            value = value.get("status")
        value = str(value).lower() if value is not None else None
        return value if value in ("passed", "failed") else None

    @property
    def records(self) -> dict:
        return {
            "rfq_id": self.rfq_id,
            "rfq_item_ids": self.rfq_item_ids,
            "quote_id": self.quote_id,
            "order_id": self.order_id,
            "order_item_ids": self.order_item_ids,
            "reservation_ids": self.reservation_ids,
            "purchase_requisition_ids": self.purchase_requisition_ids,
            "purchase_order_ids": self.purchase_order_ids,
            "grn_ids": self.grn_ids,
            "ncr_ids": self.ncr_ids,
            "shipment_id": self.shipment_id,
            "invoice_id": self.invoice_id,
            "payment_ids": self.payment_ids,
        }


@dataclass
class RunResult:
    run_id: int
    status: str
    phase: str | None
    message: str
    context: RunContext
    last_completed_phase: str | None = None
    approval_request_id: int | None = None
    duration_ms: int = 0
    options: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def summary(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "phase": self.phase,
            "last_completed_phase": self.last_completed_phase,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "errors": self.context.errors,
            "warnings": self.context.warnings,
            "records": self.context.records,
            "totals": {
                "subtotal": self.context.subtotal,
                "tax_amount": self.context.tax_amount,
                "total_amount": self.context.total_amount,
            },
            "retry_policy": {
                "max_retries": self.options.get("max_retries"),
                "retry_delay_ms": self.options.get("retry_delay_ms"),
            },
        }

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "status": self.status,
            "phase": self.phase,
            "message": self.message,
            "last_completed_phase": self.last_completed_phase,
            "approval_request_id": self.approval_request_id,
            "context": self.context.to_dict(),
        }


class PhasePaused(Exception):
    """Raised by a phase that cannot continue without a human."""

    def __init__(self, phase, message, context, approval_request_id=None):
        super().__init__(message)
        self.phase = phase
        self.message = message
        self.context = context
        self.approval_request_id = approval_request_id


def _config(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def _positive_price(value):
    """Vendor portal prices arrive as JSON; anything but a positive number is no quote."""
    if isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price > 0 and price != float("inf") else None


# ═════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowOrchestrator:
    """Composes executor calls and gateway operations into one run.

    Holds no per-run state: independent runs may use the same instance.
    """

    def __init__(self, inventory=None, vendors=None, executor=None):
        self.inventory = inventory or InventoryGateway()
        self.vendors = vendors or VendorGateway()
        self.executor = executor or transition_executor.execute

    # ── Entry points ─────────────────────────────────────────────────────────

    def run(self, initial_context: dict, options: dict | None = None,
            initiated_by: str = "system") -> RunResult:
        """Start a new run.

        Raises:
            RunInputError: unusable initial context or options (no run is created).
        """
        opts = RunOptions.from_dict({**_config("WORKFLOW_DEFAULT_OPTIONS", {}), **(options or {})})
        ctx = RunContext.from_dict(initial_context)
        self._validate_input(ctx, opts)
        ctx.started_at = iso(utcnow())

        run = WorkflowRun(
            status="running",
            current_phase=PHASES[0],
            initiated_by=initiated_by,
            context=ctx.to_dict(),
            options=opts.to_dict(),
        )
        db.session.add(run)
        db.session.commit()
        logger.info("Workflow run %s started by %s", run.id, initiated_by,
                    extra={"run_id": run.id, "event_type": "run_started"})
        return self._drive(run, ctx, opts)

    def resume(self, run_id: int, options: dict | None = None, **updates) -> RunResult:
        """Continue a paused (or failed) run from its first incomplete phase.

        ``updates`` may carry ``inspection_outcomes`` (merged) and
        ``payment_amount``.

        Raises:
            NotFoundError: unknown run id.
            ConflictError: the run is already ``running`` elsewhere.
        """
        run = db.session.get(WorkflowRun, run_id)
        if run is None:
            raise NotFoundError("WorkflowRun", run_id)
        ctx = RunContext.from_dict(run.context)
        opts = RunOptions.from_dict({**(run.options or {}), **(options or {})})
        if run.status == "completed":
            return self._result(run, ctx, opts, 0)

        # Single owner: only one caller may flip a paused/failed run to running.
        claimed = db.session.execute(
            update(WorkflowRun)
            .where(WorkflowRun.id == run_id, WorkflowRun.status.in_(RESUMABLE_STATUSES))
            .values(status="running")
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            db.session.rollback()
            raise ConflictError("WorkflowRun", "status", run.status)
        db.session.commit()
        db.session.refresh(run)
        ctx = RunContext.from_dict(run.context)

        if updates.get("inspection_outcomes"):
            ctx.inspection_outcomes = {
                **ctx.inspection_outcomes,
                **{str(k): v for k, v in updates["inspection_outcomes"].items()},
            }
        if updates.get("payment_amount") is not None:
            ctx.payment_amount = float(updates["payment_amount"])
        run.options = opts.to_dict()
        return self._drive(run, ctx, opts)

    # ── Driver ───────────────────────────────────────────────────────────────

    def _drive(self, run: WorkflowRun, ctx: RunContext, opts: RunOptions) -> RunResult:
        t0 = time.perf_counter()
        run.attempts = (run.attempts or 0) + 1
        run.status = "running"
        db.session.commit()

        for phase in PHASES:
            if phase in ctx.completed_phases:
                continue
            run.current_phase = phase
            handler = getattr(self, f"_phase_{phase}")
            try:
                ctx = handler(run, ctx.copy(), opts)
            except PhasePaused as pause:
                return self._pause(run, pause, opts, t0)
            except (WorkflowError, NotFoundError, SQLAlchemyError) as exc:
                db.session.rollback()
                return self._fail(run, ctx, phase, exc, opts, t0)
            except Exception as exc:
                logger.exception("Unexpected error in phase %s of run %s", phase, run.id,
                                 extra={"run_id": run.id, "phase": phase})
                db.session.rollback()
                return self._fail(run, ctx, phase, exc, opts, t0)

            ctx.completed_phases.append(phase)
            run.last_completed_phase = phase
            run.context = ctx.to_dict()
            self._log(run, phase, f"Phase {phase} completed")
            if opts.notify_on_each_step:
                NotificationService.send(
                    run.initiated_by, "WORKFLOW_PHASE_COMPLETED",
                    {"run_id": run.id, "phase": phase},
                    category="workflow", entity_type="workflow_run", entity_id=run.id,
                )
            db.session.commit()

        ctx.completed_at = iso(utcnow())
        run.context = ctx.to_dict()
        run.status = "completed"
        run.current_phase = "completion"
        run.message = "Order workflow completed successfully"
        run.finished_at = utcnow()
        db.session.commit()
        logger.info("Workflow run %s completed", run.id,
                    extra={"run_id": run.id, "event_type": "run_completed"})
        return self._result(run, ctx, opts, t0)

    def _pause(self, run, pause: PhasePaused, opts, t0) -> RunResult:
        ctx = pause.context
        run.status = "requires_action"
        run.current_phase = pause.phase
        run.message = pause.message
        run.context = ctx.to_dict()
        self._log(run, pause.phase, f"Requires action: {pause.message}", level="warning")
        db.session.commit()
        logger.info("Workflow run %s paused at %s", run.id, pause.phase,
                    extra={"run_id": run.id, "event_type": "run_paused"})
        return self._result(run, ctx, opts, t0, approval_request_id=pause.approval_request_id)

    def _fail(self, run, ctx, phase, exc, opts, t0) -> RunResult:
        if isinstance(exc, WorkflowError):
            code, message, details, retryable = exc.code, exc.message, exc.details, exc.retryable
        elif isinstance(exc, NotFoundError):
            code, message, details, retryable = "VALIDATION", str(exc), {}, False
        elif isinstance(exc, SQLAlchemyError):
            code, message, details, retryable = "EXTERNAL_OPERATION_FAILED", str(exc), {}, True
        else:
            code, message, details, retryable = (
                "INTERNAL_ERROR", f"{type(exc).__name__}: {exc}", {"exception": type(exc).__name__}, False,
            )

        ctx.add_error(phase, code, message, details, retryable)
        run.status = "failed"
        run.current_phase = phase
        run.message = f"Workflow failed at phase {phase}: {message}"
        run.context = ctx.to_dict()
        run.finished_at = utcnow()
        self._log(run, phase, run.message, level="error", success=False)
        NotificationService.send(
            run.initiated_by, "WORKFLOW_FAILED",
            {"run_id": run.id, "phase": phase, "code": code, "message": message},
            category="workflow", severity="error", entity_type="workflow_run", entity_id=run.id,
        )
        db.session.commit()
        logger.warning("Workflow run %s failed at %s: %s %s", run.id, phase, code, message,
                       extra={"run_id": run.id, "event_type": "run_failed"})
        return self._result(run, ctx, opts, t0)

    def _result(self, run, ctx, opts, t0, approval_request_id=None) -> RunResult:
        return RunResult(
            run_id=run.id,
            status=run.status,
            phase=run.current_phase,
            message=run.message or "",
            context=ctx,
            last_completed_phase=run.last_completed_phase,
            approval_request_id=approval_request_id,
            duration_ms=int((time.perf_counter() - t0) * 1000) if t0 else 0,
            options=opts.to_dict(),
        )

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _validate_input(self, ctx: RunContext, opts: RunOptions):
        if ctx.customer_id is None or db.session.get(Customer, ctx.customer_id) is None:
            raise RunInputError("customer_id must reference an existing customer",
                                details={"customer_id": ctx.customer_id})
        if not ctx.items:
            raise RunInputError("At least one item is required")
        for index, line in enumerate(ctx.items):
            if not isinstance(line, dict) or db.session.get(Product, line.get("product_id")) is None:
                raise RunInputError(f"items[{index}].product_id must reference an existing product",
                                    details={"index": index})
        total = sum(opts.weightages.values())
        if total != 100:
            ctx.add_warning("request_intake", "WEIGHTAGE_SUM",
                            f"Vendor scoring weightages sum to {total}, not 100")

    def _log(self, run, phase, message, level="info", success=True):
        db.session.add(ActivityLog(run_id=run.id, phase=phase, message=message,
                                   level=level, success=success))
        db.session.flush()
        logger.log(
            logging.WARNING if level == "warning" else logging.ERROR if level == "error" else logging.INFO,
            "[run %s] %s: %s", run.id, phase, message,
            extra={"run_id": run.id, "event_type": "workflow_activity"},
        )

    def _principal(self, run, role) -> Actor:
        return Actor(f"workflow:{run.id}", role)

    def _move(self, run, ctx, item, to_state, actor=None, justification=None):
        """Execute one transition inside the phase's transaction."""
        if actor is None:
            definition = get_transition(item.ENTITY_KIND, item.state, to_state)
            role = "SYSTEM" if definition is None or definition.is_automatic else definition.allowed_roles[0]
            actor = self._principal(run, role)
        result = self.executor(item.ENTITY_KIND, item.id, to_state, actor,
                               justification=justification, commit=False)
        for failed in result.failed_side_effects:
            ctx.add_warning(run.current_phase, "SIDE_EFFECT_FAILED",
                            f"{failed['side_effect']} failed for {item.ENTITY_KIND} {item.id}: {failed['detail']}")
        return result

    def _walk(self, run, ctx, item, path, actors=None):
        """Advance *item* along consecutive states of *path*, skipping steps already taken."""
        actors = actors or {}
        for from_state, to_state in zip(path, path[1:]):
            if item.state == from_state:
                self._move(run, ctx, item, to_state, actors.get(to_state))

    def _gate(self, run, ctx, phase, auto, roles, *, entity_type, entity_id, message) -> Actor | None:
        """
        Pause point.

        Returns None when auto-approved, the deciding Actor once a human
        approved.  Raises PhasePaused while the request is pending and
        PreconditionFailedError when it was rejected.
        """
        if auto:
            return None
        request = (
            ApprovalRequest.query
            .filter_by(run_id=run.id, phase=phase, entity_type=entity_type, entity_id=entity_id)
            .order_by(ApprovalRequest.id.desc())
            .first()
        )
        if request is None:
            request = ApprovalRequest(
                run_id=run.id, phase=phase, entity_type=entity_type, entity_id=entity_id,
                required_roles=list(roles), message=message,
            )
            db.session.add(request)
            db.session.flush()
            ctx.approval_request_ids.append(request.id)
            NotificationService.broadcast(
                roles, "APPROVAL_REQUIRED",
                {"run_id": run.id, "phase": phase, "approval_request_id": request.id,
                 "entity_type": entity_type, "entity_id": entity_id},
                title=message, category="approval", severity="warning",
                entity_type=entity_type, entity_id=entity_id,
            )
        if request.status == "pending":
            raise PhasePaused(phase, message, ctx, request.id)
        if request.status == "rejected":
            raise PreconditionFailedError(
                f"{phase} approval rejected by {request.decided_by}: {request.comment or 'no comment'}",
                details={"approval_request_id": request.id, "phase": phase},
            )
        return Actor(request.decided_by, request.decided_role)

    def _rfq_items(self, ctx):
        return [db.session.get(RfqItem, i) for i in ctx.rfq_item_ids]

    def _order_items(self, ctx):
        return [db.session.get(OrderItem, i) for i in ctx.order_item_ids]

    def _needs_purchase(self, ctx) -> list:
        return [r for r in ctx.stock_check_results if r["needs_purchase"]]

    # ═════════════════════════════════════════════════════════════════════════
    # Phases
    # ═════════════════════════════════════════════════════════════════════════

    def _phase_request_intake(self, run, ctx, opts):
        if ctx.rfq_id is None:
            rfq = Rfq(number=next_number(Rfq), customer_id=ctx.customer_id,
                      reference=ctx.reference, created_by=run.initiated_by)
            db.session.add(rfq)
            db.session.flush()
            ctx.rfq_id = rfq.id
            for line_no, line in enumerate(ctx.items, start=1):
                product = db.session.get(Product, line["product_id"])
                item = RfqItem(
                    rfq_id=rfq.id,
                    line_no=line_no,
                    product_id=product.id,
                    quantity=line.get("quantity"),
                    unit_of_measure=line.get("unit_of_measure") or product.unit_of_measure,
                    target_price=(line.get("target_price") or line.get("unit_price")
                                  or product.list_price or product.standard_cost),
                    currency=ctx.currency,
                    state="DRAFT",
                    owner_id=run.initiated_by,
                    created_by=run.initiated_by,
                )
                db.session.add(item)
                db.session.flush()
                write_audit(table="rfq_items", record_id=item.id, action="CREATE",
                            actor_id=run.initiated_by, new_data=item.to_dict(),
                            reason=f"Workflow run {run.id} intake")
                ctx.rfq_item_ids.append(item.id)

        for item in self._rfq_items(ctx):
            self._walk(run, ctx, item, _RFQ_INTAKE_PATH)
        self._log(run, "request_intake", f"RFQ {ctx.rfq_id} received with {len(ctx.rfq_item_ids)} item(s)")
        return ctx

    def _phase_internal_qualification(self, run, ctx, opts):
        items = self._rfq_items(ctx)
        qualifications = {}
        for item in items:
            self._walk(run, ctx, item, ("SALES_REVIEW", "TECH_REVIEW"))
            tq = (TechnicalQualification.query.filter_by(rfq_item_id=item.id)
                  .order_by(TechnicalQualification.id.desc()).first())
            if tq is None:
                tq = TechnicalQualification(rfq_item_id=item.id)
                db.session.add(tq)
                db.session.flush()
                ctx.technical_qualification_ids.append(tq.id)
            qualifications[item.id] = tq

        approver = self._gate(
            run, ctx, "internal_qualification", opts.auto_approve_technical_qualification, TECH,
            entity_type="rfq", entity_id=ctx.rfq_id,
            message="Technical qualification awaiting approval",
        )
        reviewer = approver.id if approver else f"workflow:{run.id}"
        for item in items:
            tq = qualifications[item.id]
            if tq.status != "approved":
                tq.status = "approved"
                tq.specifications_complete = True
                tq.compliance_cleared = True
                tq.reviewed_by = reviewer
                tq.decided_at = utcnow()
                db.session.flush()
            self._walk(run, ctx, item, ("TECH_REVIEW", "TECH_APPROVED", "COMPLIANCE_REVIEW"),
                       actors={"TECH_APPROVED": approver})
            if item.state == "COMPLIANCE_REVIEW":
                item.compliance_data_id = tq.id
                self._move(run, ctx, item, "STOCK_CHECK")
        self._log(run, "internal_qualification", "Technical qualification and compliance cleared")
        return ctx

    def _phase_external_sourcing(self, run, ctx, opts):
        sourced = []
        for item in self._rfq_items(ctx):
            if item.state not in ("STOCK_CHECK", "SOURCING_ACTIVE", "VENDOR_QUOTES_RECEIVED"):
                continue
            product = db.session.get(Product, item.product_id)
            if item.state == "STOCK_CHECK":
                available = self.inventory.available(product.id)
                if available >= item.quantity and product.standard_cost:
                    analysis = RateAnalysis(rfq_item_id=item.id, unit_cost=product.standard_cost, source="stock")
                    db.session.add(analysis)
                    db.session.flush()
                    ctx.rate_analysis_ids.append(analysis.id)
                    item.cost_breakdown_id = analysis.id
                    self._move(run, ctx, item, "RATE_FINALIZED")
                    self._log(run, "external_sourcing", f"RFQ item {item.id} costed from stock")
                    continue
                self._move(run, ctx, item, "SOURCING_ACTIVE")

            if item.state == "SOURCING_ACTIVE":
                self._request_vendor_quotes(run, ctx, opts, item, product)
                self._move(run, ctx, item, "VENDOR_QUOTES_RECEIVED")

            if not item.cost_breakdown_id:
                self._score_vendor_quotes(ctx, opts, item)
            sourced.append(item)

        if not sourced:
            return ctx

        approver = self._gate(
            run, ctx, "external_sourcing", opts.auto_approve_rate_analysis, SOURCING,
            entity_type="rfq", entity_id=ctx.rfq_id,
            message="Rate analysis awaiting approval",
        )
        for item in sourced:
            self._walk(run, ctx, item, ("VENDOR_QUOTES_RECEIVED", "RATE_FINALIZED"),
                       actors={"RATE_FINALIZED": approver})
        self._log(run, "external_sourcing", f"Vendor sourcing finalised for {len(sourced)} item(s)")
        return ctx

    def _request_vendor_quotes(self, run, ctx, opts, item, product):
        if VendorQuote.query.filter_by(rfq_item_id=item.id).count():
            return
        vendors = self.vendors.eligible_vendors(product.id)
        if not vendors:
            raise ExternalOperationError("No approved suppliers found",
                                         details={"product_id": product.id, "rfq_item_id": item.id})
        if len(vendors) < opts.minimum_vendor_quotes:
            ctx.add_warning("external_sourcing", "FEW_VENDORS",
                            f"Only {len(vendors)} eligible vendor(s) for {product.sku}, "
                            f"{opts.minimum_vendor_quotes} wanted")

        respond_by = utcnow() + timedelta(days=opts.max_vendor_quote_wait_days)
        received = 0
        for vendor in vendors:
            vendor_rfq = VendorRfq(rfq_item_id=item.id, vendor_id=vendor.id,
                                   quantity=item.quantity, respond_by=respond_by)
            db.session.add(vendor_rfq)
            db.session.flush()
            ctx.vendor_rfq_ids.append(vendor_rfq.id)

            result = self.vendors.request_quote(vendor, product, item.quantity)
            if not result.ok:
                vendor_rfq.status = "expired"
                ctx.add_warning("external_sourcing", "VENDOR_NO_QUOTE",
                                f"{vendor.code} did not quote: {result.error}")
                continue
            data = result.data if isinstance(result.data, dict) else {}
            unit_price = _positive_price(data.get("unit_price"))
            if unit_price is None:
                vendor_rfq.status = "expired"
                ctx.add_warning("external_sourcing", "VENDOR_NO_QUOTE",
                                f"{vendor.code} returned no usable unit_price: {data.get('unit_price')!r}")
                continue
            quote = VendorQuote(
                vendor_rfq_id=vendor_rfq.id,
                rfq_item_id=item.id,
                vendor_id=vendor.id,
                unit_price=unit_price,
                lead_time_days=int(data.get("lead_time_days", 14)),
                payment_terms_days=int(data.get("payment_terms_days", vendor.payment_terms_days or 30)),
                quality_rating=float(data.get("quality_rating", vendor.quality_rating or 3.0)),
            )
            db.session.add(quote)
            vendor_rfq.status = "quoted"
            db.session.flush()
            ctx.vendor_quote_ids.append(quote.id)
            received += 1

        if not received:
            raise ExternalOperationError("No vendor quotes received",
                                         details={"product_id": product.id, "rfq_item_id": item.id})
        if received < opts.minimum_vendor_quotes:
            ctx.add_warning("external_sourcing", "FEW_QUOTES",
                            f"{received} quote(s) received for {product.sku}, "
                            f"{opts.minimum_vendor_quotes} wanted")

    def _score_vendor_quotes(self, ctx, opts, item):
        quotes = VendorQuote.query.filter_by(rfq_item_id=item.id).order_by(VendorQuote.id).all()
        scores = score_vendor_quotes(quotes, opts.weightages)
        best = scores[0]
        for quote in quotes:
            quote.total_score = next(s["total"] for s in scores if s["quote_id"] == quote.id)
            quote.status = "selected" if quote.id == best["quote_id"] else "rejected"
        selected = next(q for q in quotes if q.id == best["quote_id"])
        analysis = RateAnalysis(
            rfq_item_id=item.id,
            selected_quote_id=selected.id,
            selected_vendor_id=selected.vendor_id,
            unit_cost=selected.unit_price,
            source="vendor",
            weightages=dict(opts.weightages),
            scores=scores,
        )
        db.session.add(analysis)
        db.session.flush()
        ctx.rate_analysis_ids.append(analysis.id)
        item.selected_vendor_quote_id = selected.id
        item.cost_breakdown_id = analysis.id

    def _phase_pricing_approval(self, run, ctx, opts):
        items = self._rfq_items(ctx)
        needs_management = False
        for item in items:
            self._walk(run, ctx, item, ("RATE_FINALIZED", "MARGIN_APPROVAL"))
            if item.state != "MARGIN_APPROVAL":
                continue
            if not SalesPricing.query.filter_by(rfq_item_id=item.id).count():
                analysis = db.session.get(RateAnalysis, item.cost_breakdown_id)
                pricing = price_line(analysis.unit_cost, opts.default_margin_percent)
                record = SalesPricing(rfq_item_id=item.id, **pricing)
                db.session.add(record)
                db.session.flush()
                ctx.sales_pricing_ids.append(record.id)
                item.selling_price = pricing["selling_price"]
                item.margin_pct = pricing["margin_percent"]
            if (item.margin_pct or 0) > opts.require_management_approval_above_margin:
                needs_management = True

        if needs_management and opts.auto_approve_pricing:
            ctx.add_warning("pricing_approval", "MARGIN_ABOVE_THRESHOLD",
                            f"Margin above {opts.require_management_approval_above_margin}% "
                            f"needs management approval")
        approver = self._gate(
            run, ctx, "pricing_approval", opts.auto_approve_pricing and not needs_management, SENIOR,
            entity_type="rfq", entity_id=ctx.rfq_id,
            message="Sales pricing awaiting margin approval",
        )
        for item in items:
            self._walk(run, ctx, item, ("MARGIN_APPROVAL", "PRICE_FROZEN"),
                       actors={"PRICE_FROZEN": approver})
        self._log(run, "pricing_approval", "Sales pricing approved and frozen")
        return ctx

    def _phase_customer_quote(self, run, ctx, opts):
        items = self._rfq_items(ctx)
        if ctx.quote_id is None:
            subtotal = tax = 0.0
            for item, line in zip(items, ctx.items):
                net = item.quantity * item.selling_price * (1 - (line.get("discount_percent") or 0) / 100)
                subtotal += net
                tax += net * (line.get("tax_rate") or 0) / 100
            quote = Quote(
                number=next_number(Quote),
                rfq_id=ctx.rfq_id,
                customer_id=ctx.customer_id,
                status="issued",
                subtotal=round(subtotal, 2),
                tax_amount=round(tax, 2),
                total_amount=round(subtotal + tax, 2),
                valid_until=utcnow() + timedelta(days=QUOTE_VALIDITY_DAYS),
            )
            db.session.add(quote)
            db.session.flush()
            ctx.quote_id = quote.id
            ctx.subtotal, ctx.tax_amount, ctx.total_amount = quote.subtotal, quote.tax_amount, quote.total_amount
            for item in items:
                item.quote_id = quote.id

        for item in items:
            self._walk(run, ctx, item, ("PRICE_FROZEN", "QUOTE_SENT"))

        approver = self._gate(
            run, ctx, "customer_quote", opts.auto_approve_quote, SALES,
            entity_type="quote", entity_id=ctx.quote_id,
            message="Quote sent. Waiting for customer approval.",
        )
        quote = db.session.get(Quote, ctx.quote_id)
        if quote.status != "accepted":
            quote.status = "accepted"
            quote.responded_at = utcnow()
            db.session.flush()
        for item in items:
            self._walk(run, ctx, item, ("QUOTE_SENT", "CUSTOMER_ACCEPTED"),
                       actors={"CUSTOMER_ACCEPTED": approver})
        self._log(run, "customer_quote", f"Quote {quote.number} accepted by customer")
        return ctx

    def _phase_order_creation(self, run, ctx, opts):
        for item, line in zip(self._rfq_items(ctx), ctx.items):
            if item.state == "CUSTOMER_ACCEPTED" or item.order_item_id:
                order_item = create_order_line(item, f"workflow:{run.id}")
                if order_item.id not in ctx.order_item_ids:
                    order_item.discount_percent = line.get("discount_percent") or 0.0
                    order_item.tax_rate = line.get("tax_rate") or 0.0
                    db.session.flush()
                    ctx.order_item_ids.append(order_item.id)
                ctx.order_id = order_item.order_id
            self._walk(run, ctx, item, ("CUSTOMER_ACCEPTED", "RFQ_CLOSED"))

        order_items = self._order_items(ctx)
        for order_item in order_items:
            self._walk(run, ctx, order_item, _ORDER_INTAKE_PATH)
        ctx.subtotal = round(sum(i.net_amount for i in order_items), 2)
        ctx.tax_amount = round(sum(i.tax_amount for i in order_items), 2)
        ctx.total_amount = round(ctx.subtotal + ctx.tax_amount, 2)
        self._log(run, "order_creation", f"Sales order {ctx.order_id} created with {len(order_items)} line(s)")
        return ctx

    def _phase_stock_resolution(self, run, ctx, opts):
        for order_item in self._order_items(ctx):
            if order_item.state != "CREDIT_CHECK" or ctx.stock_result(order_item.id):
                continue
            required = order_item.quantity
            available = self.inventory.available(order_item.product_id)
            entry = {
                "order_item_id": order_item.id,
                "product_id": order_item.product_id,
                "required": required,
                "available": available,
                "reserved": 0.0,
                "shortfall": 0.0,
                "needs_purchase": False,
            }

            if available >= required:
                reservation = self.inventory.reserve(order_item, required)
                ctx.reservation_ids.append(reservation.id)
                entry["reserved"] = required
                self._walk(run, ctx, order_item, ("CREDIT_CHECK", "STOCK_RESERVED", "READY_TO_DISPATCH"))
            else:
                if available > 0 and opts.allow_partial_fulfillment:
                    reservation = self.inventory.reserve(order_item, available)
                    ctx.reservation_ids.append(reservation.id)
                    entry["reserved"] = available
                    ctx.add_warning("stock_resolution", "PARTIAL_STOCK",
                                    f"Order item {order_item.id}: {available:g} reserved, "
                                    f"{required - available:g} to procure")
                entry["shortfall"] = required - entry["reserved"]
                entry["needs_purchase"] = True
                if not opts.create_po_on_stock_shortfall:
                    raise ExternalOperationError(
                        f"Insufficient stock for order item {order_item.id} "
                        f"({available:g} of {required:g}) and purchase on shortfall is disabled",
                        details=entry,
                    )
            ctx.stock_check_results.append(entry)
            self._log(run, "stock_resolution",
                      f"Order item {order_item.id}: required {required:g}, available {available:g}")
        return ctx

    def _phase_procurement(self, run, ctx, opts):
        pending = self._needs_purchase(ctx)
        if not pending:
            self._log(run, "procurement", "Skipped: all lines fulfilled from stock")
            return ctx

        orders = []
        for entry in pending:
            order_item = db.session.get(OrderItem, entry["order_item_id"])
            po = PurchaseOrder.query.filter(
                PurchaseOrder.order_item_id == order_item.id, PurchaseOrder.status != "cancelled",
            ).first()
            if po is None:
                requisition = PurchaseRequisition(
                    number=next_number(PurchaseRequisition), order_item_id=order_item.id,
                    product_id=order_item.product_id, quantity=entry["shortfall"],
                )
                db.session.add(requisition)
                db.session.flush()
                ctx.purchase_requisition_ids.append(requisition.id)

                vendor_id, unit_price = self._supplier_for(order_item)
                po = PurchaseOrder(
                    number=next_number(PurchaseOrder), requisition_id=requisition.id,
                    order_item_id=order_item.id, vendor_id=vendor_id,
                    product_id=order_item.product_id, quantity=entry["shortfall"],
                    unit_price=unit_price,
                )
                db.session.add(po)
                requisition.status = "converted"
                db.session.flush()
                ctx.purchase_order_ids.append(po.id)
            orders.append((order_item, po))

        approver = self._gate(
            run, ctx, "procurement", opts.auto_approve_po, ("PURCHASE_MANAGER",) + SENIOR,
            entity_type="order", entity_id=ctx.order_id,
            message="Purchase order awaiting approval",
        )
        for order_item, po in orders:
            if po.status == "pending_approval":
                po.status = "released"
                po.approved_by = approver.id if approver else f"workflow:{run.id}"
                db.session.flush()
            self._move_if(run, ctx, order_item, "CREDIT_CHECK", "PO_RELEASED")
            if po.confirmed_at is None:
                result = self.vendors.confirm_purchase_order(po)
                if not result.ok:
                    raise ExternalOperationError(
                        f"Vendor did not confirm {po.number}: {result.error}",
                        details={"purchase_order_id": po.id},
                    )
                po.status = "confirmed"
                po.confirmed_at = utcnow()
                po.expected_at = utcnow() + timedelta(days=self._lead_days(po))
                db.session.flush()
            self._walk(run, ctx, order_item, ("PO_RELEASED", "VENDOR_CONFIRMED", "IN_PRODUCTION"))
        self._log(run, "procurement", f"{len(orders)} purchase order(s) released and confirmed")
        return ctx

    def _move_if(self, run, ctx, item, from_state, to_state, actor=None, justification=None):
        if item.state == from_state:
            self._move(run, ctx, item, to_state, actor, justification)

    def _supplier_for(self, order_item):
        """Vendor and price for a PO: the RFQ's selected quote, else the cheapest catalogue entry."""
        rfq_item = db.session.get(RfqItem, order_item.rfq_item_id) if order_item.rfq_item_id else None
        if rfq_item is not None and rfq_item.selected_vendor_quote_id:
            quote = db.session.get(VendorQuote, rfq_item.selected_vendor_quote_id)
            return quote.vendor_id, quote.unit_price
        vendors = self.vendors.eligible_vendors(order_item.product_id)
        if not vendors:
            raise ExternalOperationError("No approved suppliers found",
                                         details={"product_id": order_item.product_id})
        entries = [
            e for v in vendors
            for e in [v.catalogue.filter_by(product_id=order_item.product_id).first()]
            if e is not None
        ]
        best = min(entries, key=lambda e: e.unit_price)
        return best.vendor_id, best.unit_price

    def _lead_days(self, po) -> int:
        entry = VendorProduct.query.filter_by(vendor_id=po.vendor_id, product_id=po.product_id).first()
        return entry.lead_time_days if entry else 14

    def _phase_receipt_inspection(self, run, ctx, opts):
        if not self._needs_purchase(ctx):
            self._log(run, "receipt_inspection", "Skipped: nothing was procured")
            return ctx

        awaiting = []
        for po_id in ctx.purchase_order_ids:
            po = db.session.get(PurchaseOrder, po_id)
            order_item = db.session.get(OrderItem, po.order_item_id)
            receipt = GoodsReceipt.query.filter_by(purchase_order_id=po.id).first()
            if receipt is None:
                receipt = GoodsReceipt(number=next_number(GoodsReceipt), purchase_order_id=po.id,
                                       order_item_id=order_item.id, received_quantity=po.quantity)
                db.session.add(receipt)
                db.session.flush()
                lot = StockLot(lot_number=next_number(StockLot), receipt=receipt,
                               product_id=po.product_id, quantity=po.quantity)
                db.session.add(lot)
                po.status = "received"
                db.session.flush()
                ctx.grn_ids.append(receipt.id)
                ctx.lot_ids.append(lot.id)
            self._move_if(run, ctx, order_item, "IN_PRODUCTION", "GOODS_RECEIVED")

            for lot in receipt.lots:
                if lot.qc_status != "pending":
                    continue
                outcome = "passed" if opts.auto_pass_qc else ctx.outcome_for(lot.product_id)
                if outcome is None:
                    awaiting.append(lot.lot_number)
                    continue
                self._inspect(run, ctx, order_item, lot, outcome)

        if awaiting:
            raise PhasePaused("receipt_inspection",
                              f"Inspection outcome required for lot(s) {', '.join(awaiting)}", ctx)

        for order_item in self._order_items(ctx):
            if order_item.state != "GOODS_RECEIVED":
                continue
            results = [r for r in ctx.qc_results if r["order_item_id"] == order_item.id]
            if any(r["status"] == "passed" for r in results):
                self._move(run, ctx, order_item, "QC_APPROVED")
            else:
                self._move(run, ctx, order_item, "QC_REJECTED",
                           justification="All received lots failed inspection")
        return ctx

    def _inspect(self, run, ctx, order_item, lot, outcome):
        passed = outcome == "passed"
        inspection = QcInspection(
            lot_id=lot.id, order_item_id=order_item.id, status=outcome,
            quantity_inspected=lot.quantity,
            quantity_passed=lot.quantity if passed else 0.0,
            quantity_failed=0.0 if passed else lot.quantity,
            inspected_by=f"workflow:{run.id}",
        )
        db.session.add(inspection)
        lot.qc_status = outcome
        db.session.flush()
        ctx.qc_results.append({
            "order_item_id": order_item.id,
            "product_id": lot.product_id,
            "lot_id": lot.id,
            "inspection_id": inspection.id,
            "status": outcome,
            "quantity_inspected": lot.quantity,
            "quantity_passed": inspection.quantity_passed,
            "quantity_failed": inspection.quantity_failed,
        })
        if not passed:
            ncr = Nonconformance(
                number=next_number(Nonconformance), inspection_id=inspection.id,
                order_item_id=order_item.id, product_id=lot.product_id,
                quantity=lot.quantity, description=f"Lot {lot.lot_number} failed inspection",
            )
            db.session.add(ncr)
            db.session.flush()
            ctx.ncr_ids.append(ncr.id)
            ctx.add_warning("receipt_inspection", "QC_FAILED",
                            f"Lot {lot.lot_number} failed inspection; {ncr.number} raised")
        self._log(run, "receipt_inspection", f"Lot {lot.lot_number} {outcome}")

    def _phase_inventory_update(self, run, ctx, opts):
        excluded = 0.0
        for lot_id in ctx.lot_ids:
            lot = db.session.get(StockLot, lot_id)
            if lot.qc_status == "failed":
                excluded += lot.quantity
                continue
            if lot.qc_status != "passed" or lot.posted_to_stock:
                continue
            order_item = db.session.get(OrderItem, lot.receipt.order_item_id)
            self.inventory.receive(lot.product_id, lot.quantity)
            reservation = self.inventory.reserve(order_item, lot.quantity, source="receipt")
            ctx.reservation_ids.append(reservation.id)
            lot.posted_to_stock = True
            db.session.flush()

        if excluded:
            ctx.add_warning("inventory_update", "QC_EXCLUDED",
                            f"{excluded:g} failed unit(s) excluded from stock")
        for order_item in self._order_items(ctx):
            self._walk(run, ctx, order_item, ("QC_APPROVED", "READY_TO_DISPATCH"))
        self._log(run, "inventory_update", "Passed quantity posted to stock")
        return ctx

    def _phase_dispatch(self, run, ctx, opts):
        order_items = self._order_items(ctx)
        if opts.block_dispatch_on_qc_fail:
            open_ncrs = Nonconformance.query.filter(
                Nonconformance.order_item_id.in_([i.id for i in order_items]),
                Nonconformance.status == "open",
            ).count()
            if open_ncrs:
                raise PhasePaused(
                    "dispatch",
                    f"Dispatch blocked: {open_ncrs} open nonconformance(s) need a disposition", ctx,
                )

        ready = [i for i in order_items if i.state == "READY_TO_DISPATCH"]
        in_flight = [i for i in order_items if i.state in ("DISPATCHED", "DELIVERED")]
        for item in order_items:
            if item.state == "QC_REJECTED":
                ctx.add_warning("dispatch", "LINE_NOT_DISPATCHED",
                                f"Order item {item.id} rejected at QC and awaits replacement")
        if not ready and not in_flight:
            rejected = [i.id for i in order_items if i.state == "QC_REJECTED"]
            if opts.block_dispatch_on_qc_fail or len(rejected) != len(order_items):
                raise PreconditionFailedError("No order lines are ready for dispatch",
                                              details={"order_id": ctx.order_id})
            self._log(run, "dispatch", "Nothing dispatched: every line rejected at QC", level="warning")
            return ctx

        if ctx.shipment_id is None:
            dispatched = {}
            for item in ready:
                issued = self.inventory.consume(item)
                dispatched[str(item.id)] = issued
                if issued < item.quantity:
                    ctx.add_warning("dispatch", "PARTIAL_DISPATCH",
                                    f"Order item {item.id}: {issued:g} of {item.quantity:g} dispatched")
            shipment = Shipment(number=next_number(Shipment), order_id=ctx.order_id,
                                status="dispatched", dispatched_quantity=dispatched,
                                dispatched_at=utcnow())
            db.session.add(shipment)
            db.session.flush()
            ctx.shipment_id = shipment.id

        shipment = db.session.get(Shipment, ctx.shipment_id)
        for item in ready:
            self._move_if(run, ctx, item, "READY_TO_DISPATCH", "DISPATCHED")
        if shipment.delivered_at is None:
            shipment.status = "delivered"
            shipment.delivered_at = utcnow()
            shipment.pod_reference = f"POD-{shipment.number}"
            db.session.flush()
        for item in order_items:
            self._move_if(run, ctx, item, "DISPATCHED", "DELIVERED")
        self._log(run, "dispatch", f"Shipment {shipment.number} dispatched and delivered")
        return ctx

    def _phase_invoicing(self, run, ctx, opts):
        delivered = [i for i in self._order_items(ctx) if i.state == "DELIVERED"]
        if ctx.invoice_id is None and ctx.shipment_id is None:
            ctx.add_warning("invoicing", "NOTHING_TO_INVOICE", "No shipment was made; no invoice issued")
            return ctx
        if ctx.invoice_id is None:
            approver = self._gate(
                run, ctx, "invoicing", opts.auto_generate_invoice, BILLING,
                entity_type="order", entity_id=ctx.order_id,
                message="Invoice generation awaiting approval",
            )
            shipment = db.session.get(Shipment, ctx.shipment_id)
            shipped = shipment.dispatched_quantity or {}
            subtotal = tax = 0.0
            for item in delivered:
                quantity = shipped.get(str(item.id), item.quantity)
                net = quantity * item.unit_price * (1 - (item.discount_percent or 0) / 100)
                subtotal += net
                tax += net * (item.tax_rate or 0) / 100
            invoice = Invoice(
                number=next_number(Invoice), order_id=ctx.order_id, customer_id=ctx.customer_id,
                subtotal=round(subtotal, 2), tax_amount=round(tax, 2),
                total_amount=round(subtotal + tax, 2),
                due_date=utcnow() + timedelta(days=_config("CUSTOMER_PAYMENT_TERMS_DAYS",
                                                           DEFAULT_PAYMENT_TERMS_DAYS)),
            )
            db.session.add(invoice)
            customer = db.session.get(Customer, ctx.customer_id)
            customer.outstanding_balance = (customer.outstanding_balance or 0.0) + invoice.total_amount
            db.session.flush()
            ctx.invoice_id = invoice.id
            ctx.subtotal, ctx.tax_amount, ctx.total_amount = invoice.subtotal, invoice.tax_amount, invoice.total_amount
        else:
            approver = None

        for item in delivered:
            self._move(run, ctx, item, "INVOICED", actor=approver)
        self._log(run, "invoicing", f"Invoice {ctx.invoice_id} issued")
        return ctx

    def _phase_settlement(self, run, ctx, opts):
        if ctx.invoice_id is None:
            return ctx
        invoice = db.session.get(Invoice, ctx.invoice_id)
        amount = ctx.payment_amount if ctx.payment_amount is not None else invoice.balance
        if amount > 0 and invoice.balance > 0:
            amount = min(amount, invoice.balance)
            payment = Payment(invoice_id=invoice.id, amount=amount,
                              reference=f"{invoice.number}-{len(ctx.payment_ids) + 1}")
            db.session.add(payment)
            invoice.amount_paid = (invoice.amount_paid or 0.0) + amount
            invoice.status = "paid" if invoice.balance <= 0.005 else "partially_paid"
            customer = db.session.get(Customer, ctx.customer_id)
            customer.outstanding_balance = max((customer.outstanding_balance or 0.0) - amount, 0.0)
            db.session.flush()
            ctx.payment_ids.append(payment.id)
        ctx.payment_amount = None

        fully_paid = invoice.balance <= 0.005
        for item in self._order_items(ctx):
            if item.state == "INVOICED":
                self._move(run, ctx, item, "PAYMENT_CLOSED" if fully_paid else "PAYMENT_PARTIAL")
            elif item.state == "PAYMENT_PARTIAL" and fully_paid:
                self._move(run, ctx, item, "PAYMENT_CLOSED")

        if not fully_paid:
            raise PhasePaused("settlement",
                              f"Partial payment received; {invoice.balance:.2f} outstanding on {invoice.number}",
                              ctx)
        self._log(run, "settlement", f"Invoice {invoice.number} settled")
        return ctx

    def _phase_completion(self, run, ctx, opts):
        for item in self._order_items(ctx):
            self._walk(run, ctx, item, ("PAYMENT_CLOSED", "CLOSED"))
            if not item.is_terminal:
                ctx.add_warning("completion", "LINE_OPEN",
                                f"Order item {item.id} remains open in {item.state}")
        return ctx


# ═════════════════════════════════════════════════════════════════════════════
# Scoring & pricing
# ═════════════════════════════════════════════════════════════════════════════


def delivery_score(lead_time_days: float) -> float:
    """100 at ≤7 days, 50 at ≥30 days, linear between."""
    if lead_time_days <= 7:
        return 100.0
    if lead_time_days >= 30:
        return 50.0
    return 100.0 - ((lead_time_days - 7) / (30 - 7)) * 50.0


def price_score(price: float, prices: list[float]) -> float:
    """Cheapest quote scores 100, dearest 0, linear between."""
    low, high = min(prices), max(prices)
    if high == low:
        return 100.0
    return 100.0 - ((price - low) / (high - low)) * 100.0


def score_vendor_quotes(quotes, weightages: dict) -> list[dict]:
    """Weighted score per quote, best first."""
    prices = [q.unit_price for q in quotes]
    scores = []
    for q in quotes:
        parts = {
            "price": price_score(q.unit_price, prices),
            "quality": min(max((q.quality_rating or 0.0) / 5.0, 0.0), 1.0) * 100.0,
            "delivery": delivery_score(q.lead_time_days),
            "payment": min((q.payment_terms_days or 0) / 60.0, 1.0) * 100.0,
        }
        total = sum(parts[k] * weightages.get(k, 0) / 100.0 for k in parts)
        scores.append({"quote_id": q.id, "vendor_id": q.vendor_id, **parts, "total": round(total, 2)})
    scores.sort(key=lambda s: (-s["total"], s["quote_id"]))
    for rank, s in enumerate(scores, start=1):
        s["rank"] = rank
    return scores


def price_line(unit_cost: float, margin_percent: float) -> dict:
    """Landed cost (cost + 5% freight + 2% handling) marked up by *margin_percent*."""
    freight = unit_cost * FREIGHT_RATE
    handling = unit_cost * HANDLING_RATE
    landed = unit_cost + freight + handling
    return {
        "unit_cost": round(unit_cost, 2),
        "freight_cost": round(freight, 2),
        "handling_cost": round(handling, 2),
        "landed_cost": round(landed, 2),
        "margin_percent": margin_percent,
        "selling_price": round(landed * (1 + margin_percent / 100), 2),
    }
