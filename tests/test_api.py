"""
HTTP API tests: health, item transitions, workflow runs, approvals, SLA,
notifications and scheduled jobs.

Error responses share one JSON shape: ``{"error", "code", "details"?}``,
plus ``retryable`` for workflow errors.
"""

from datetime import timedelta

from app.models import db
from app.models.notification import Notification
from app.models.workflow import WorkflowRun
from app.services.scheduler_service import SchedulerService
from app.utils.helpers import utcnow

AUTO = {
    "auto_approve_technical_qualification": True,
    "auto_approve_rate_analysis": True,
    "auto_approve_pricing": True,
    "auto_approve_quote": True,
    "auto_approve_po": True,
}


# ── Health ───────────────────────────────────────────────────────────────


def test_health(client):
    assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
    live = client.get("/api/v1/health/live")
    assert live.status_code == 200
    checks = live.get_json()["checks"]
    assert checks["database"]["status"] == "ok"
    assert "sla_sweep" in checks["scheduler"]["registered_jobs"]
    assert checks["workflow"]["runs_requiring_action"] == 0
    assert checks["workflow"]["sla_breached"] == {"rfq_item": 0, "order_item": 0}


def test_non_json_write_is_rejected(client):
    res = client.post("/api/v1/sla/sweep", data="scope=rfq_item",
                      content_type="application/x-www-form-urlencoded")
    assert res.status_code == 415
    body = res.get_json()
    assert body["code"] == "ERR_VALIDATION_INVALID"
    assert body["error"] == "Content-Type must be application/json"

    plain = client.post("/api/v1/workflow/execute", data="{}", content_type="text/plain")
    assert plain.status_code == 415

    # bodiless writes need no content type
    assert client.post("/api/v1/jobs/nope/run").status_code == 404


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nope")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nope"


# ── Transition table & items ─────────────────────────────────────────────


def test_transition_table_listing(client):
    res = client.get("/api/v1/transitions/order_item?emergency=false")
    body = res.get_json()
    assert res.status_code == 200
    assert body["total"] == len(body["transitions"])
    assert not any(t["is_emergency"] for t in body["transitions"])

    bad = client.get("/api/v1/transitions/invoice")
    assert bad.status_code == 400
    assert bad.get_json()["code"] == "ERR_VALIDATION_INVALID"


def test_transition_endpoint_moves_item(client, make_rfq_item):
    item = make_rfq_item()

    res = client.post(
        f"/api/v1/items/rfq_item/{item.id}/transition",
        json={"to_state": "rfq_submitted", "expected_version": 1},
        headers={"X-User": "u-17", "X-Role": "sales_executive"},
    )

    assert res.status_code == 200
    body = res.get_json()
    assert body["from_state"] == "DRAFT"
    assert body["to_state"] == "RFQ_SUBMITTED"
    assert body["version"] == 2

    detail = client.get(f"/api/v1/items/rfq_item/{item.id}").get_json()
    assert detail["state"] == "RFQ_SUBMITTED"
    assert detail["owner_id"] == "u-17"

    audit = client.get(f"/api/v1/items/rfq_item/{item.id}/audit").get_json()
    assert audit["total"] == 1
    assert audit["items"][0]["action"] == "STATE_TRANSITION"


def test_transition_errors_use_taxonomy(client, make_rfq_item, make_order_item):
    item = make_rfq_item()
    url = f"/api/v1/items/rfq_item/{item.id}/transition"

    missing = client.post(url, json={})
    assert missing.status_code == 400
    assert missing.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    forbidden = client.post(url, json={"to_state": "RFQ_SUBMITTED", "role": "QC_ENGINEER"})
    assert forbidden.status_code == 403
    body = forbidden.get_json()
    assert body["code"] == "AUTHORIZATION"
    assert body["retryable"] is False
    assert body["details"]["check"] == "role"

    stale = client.post(url, json={"to_state": "RFQ_SUBMITTED", "role": "SALES_EXECUTIVE",
                                   "expected_version": 7})
    assert stale.status_code == 409
    assert stale.get_json()["code"] == "CONCURRENT_MODIFICATION"
    assert stale.get_json()["retryable"] is True

    closed = make_order_item(state="CLOSED")
    res = client.post(f"/api/v1/items/order_item/{closed.id}/transition",
                      json={"to_state": "INVOICED", "role": "DIRECTOR"})
    assert res.status_code == 409
    assert res.get_json()["code"] == "IMMUTABLE_ITEM"

    gone = client.post("/api/v1/items/rfq_item/4242/transition",
                       json={"to_state": "RFQ_SUBMITTED", "role": "SALES_EXECUTIVE"})
    assert gone.status_code == 404
    assert gone.get_json()["code"] == "ERR_NOT_FOUND"


def test_available_transitions_endpoint(client, make_order_item):
    item = make_order_item(state="CREDIT_CHECK")
    res = client.get(f"/api/v1/items/order_item/{item.id}/transitions?role=finance_officer")
    body = res.get_json()
    assert body["state"] == "CREDIT_CHECK"
    targets = {t["to_state"]: t for t in body["transitions"]}
    assert targets["CREDIT_HOLD"]["role_permitted"] is True
    assert targets["CREDIT_HOLD"]["requires_justification"] is True
    assert targets["FORCE_CLOSED"]["role_permitted"] is False


# ── Workflow ─────────────────────────────────────────────────────────────


def test_execute_workflow_completed(client, customer, make_product):
    product = make_product(sku="API-1", on_hand=10.0)
    res = client.post("/api/v1/workflow/execute", json={
        "initial_context": {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
        "options": AUTO,
        "actor_id": "u-sales",
        "role": "SALES_EXECUTIVE",
    })

    assert res.status_code == 201
    body = res.get_json()
    assert body["result"]["success"] is True
    assert body["summary"]["status"] == "completed"
    assert body["summary"]["records"]["invoice_id"] is not None
    assert body["summary"]["retry_policy"] == {"max_retries": 3, "retry_delay_ms": 1000}

    runs = client.get("/api/v1/workflow/runs?status=completed").get_json()
    assert runs["total"] == 1
    run_id = body["result"]["run_id"]
    detail = client.get(f"/api/v1/workflow/runs/{run_id}?activity=true").get_json()
    assert detail["status"] == "completed"
    assert detail["activity"]


def test_execute_requires_role_and_context(client, customer):
    assert client.post("/api/v1/workflow/execute", json={}).status_code == 400

    res = client.post("/api/v1/workflow/execute", json={
        "initial_context": {"customer_id": customer.id, "items": []},
        "role": "QC_ENGINEER",
    })
    assert res.status_code == 403

    res = client.post("/api/v1/workflow/execute", json={
        "initial_context": {"customer_id": customer.id, "items": []},
        "options": {"not_an_option": True},
        "role": "SALES_MANAGER",
    })
    assert res.status_code == 422
    assert res.get_json()["code"] == "VALIDATION"


def test_pause_decide_resume_over_http(client, customer, make_product):
    product = make_product(sku="API-2", on_hand=10.0)
    res = client.post("/api/v1/workflow/execute", json={
        "initial_context": {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
        "options": {**AUTO, "auto_approve_po": False, "auto_approve_quote": False},
        "role": "SALES_MANAGER",
    })
    assert res.status_code == 202
    run_id = res.get_json()["result"]["run_id"]
    approval_id = res.get_json()["result"]["approval_request_id"]

    pending = client.get(f"/api/v1/workflow/approvals?run_id={run_id}").get_json()
    assert [a["id"] for a in pending] == [approval_id]

    denied = client.post(f"/api/v1/workflow/approvals/{approval_id}/decide",
                         json={"decision": "approved", "role": "TECH_LEAD"})
    assert denied.status_code == 403

    ok = client.post(f"/api/v1/workflow/approvals/{approval_id}/decide",
                     json={"decision": "APPROVED", "actor_id": "u-mgr", "role": "SALES_MANAGER"})
    assert ok.status_code == 200
    assert ok.get_json()["status"] == "approved"

    again = client.post(f"/api/v1/workflow/approvals/{approval_id}/decide",
                        json={"decision": "rejected", "role": "SALES_MANAGER"})
    assert again.status_code == 409
    assert again.get_json()["code"] == "ERR_CONFLICT_STATE"

    resumed = client.post(f"/api/v1/workflow/runs/{run_id}/resume", json={"role": "SALES_MANAGER"})
    assert resumed.status_code == 200
    assert resumed.get_json()["summary"]["status"] == "completed"


def test_resume_of_running_run_is_a_conflict(client, customer, make_product):
    product = make_product(sku="API-3", on_hand=10.0)
    res = client.post("/api/v1/workflow/execute", json={
        "initial_context": {"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": 1}]},
        "options": {**AUTO, "auto_approve_quote": False},
        "role": "SALES_MANAGER",
    })
    run_id = res.get_json()["result"]["run_id"]
    run = db.session.get(WorkflowRun, run_id)
    run.status = "running"
    db.session.commit()

    again = client.post(f"/api/v1/workflow/runs/{run_id}/resume", json={"role": "SALES_MANAGER"})

    assert again.status_code == 409
    body = again.get_json()
    assert body["code"] == "ERR_CONFLICT_STATE"
    assert body["details"] == {"resource": "WorkflowRun", "field": "status", "value": "running"}


def test_resume_validates_payload(client):
    assert client.post("/api/v1/workflow/runs/999/resume", json={}).status_code == 404


def test_disposition_endpoint_validates(client):
    res = client.post("/api/v1/workflow/nonconformances/1/disposition", json={})
    assert res.status_code == 400
    res = client.post("/api/v1/workflow/nonconformances/1/disposition",
                      json={"disposition": "scrap", "role": "QC_MANAGER"})
    assert res.status_code == 404


# ── SLA ──────────────────────────────────────────────────────────────────


def test_sla_sweep_and_flagged_items(client, make_rfq_item):
    now = utcnow()
    item = make_rfq_item(state="SALES_REVIEW", state_entered_at=now - timedelta(hours=5),
                         sla_due_at=now - timedelta(hours=1))

    res = client.post("/api/v1/sla/sweep", json={"scope": ["rfq_item"]})
    assert res.get_json() == {"checked": 1, "warned": 0, "breached": 1}

    flagged = client.get("/api/v1/sla/items?flag=breached").get_json()
    assert [i["id"] for i in flagged["items"]] == [item.id]

    assert client.post("/api/v1/sla/sweep", json={"scope": "invoice"}).status_code == 400
    assert client.get("/api/v1/sla/items?flag=late").status_code == 400


# ── Notifications ────────────────────────────────────────────────────────


def test_notification_inbox(client):
    db.session.add_all([
        Notification(recipient="u-1", title="one", event_code="STATE_CHANGED"),
        Notification(recipient="u-1", title="two", event_code="SLA_WARNING"),
        Notification(recipient="all", title="broadcast", event_code="STATE_CHANGED"),
        Notification(recipient="u-2", title="other", event_code="STATE_CHANGED"),
    ])
    db.session.commit()

    inbox = client.get("/api/v1/notifications?recipient=u-1").get_json()
    assert inbox["total"] == 3

    only_sla = client.get("/api/v1/notifications?recipient=u-1&event_code=SLA_WARNING").get_json()
    assert [n["title"] for n in only_sla["items"]] == ["two"]

    first = next(n["id"] for n in inbox["items"] if n["recipient"] == "u-1")
    assert client.patch(f"/api/v1/notifications/{first}/read").get_json()["is_read"] is True
    assert client.patch("/api/v1/notifications/9999/read").status_code == 404

    marked = client.post("/api/v1/notifications/mark-all-read", json={"recipient": "u-1"}).get_json()
    assert marked["recipient"] == "u-1"
    unread = client.get("/api/v1/notifications?recipient=u-1&unread_only=true").get_json()
    assert [n["recipient"] for n in unread["items"]] == ["all"]


# ── Jobs ─────────────────────────────────────────────────────────────────


def test_jobs_endpoints(client):
    SchedulerService.ensure_jobs_registered()

    jobs = client.get("/api/v1/jobs").get_json()
    names = {j["job_name"] for j in jobs["jobs"]}
    assert {"sla_sweep", "stalled_run_report"} <= names

    run = client.post("/api/v1/jobs/sla_sweep/run")
    assert run.status_code == 200
    assert run.get_json()["status"] == "success"
    assert run.get_json()["result"] == {"checked": 0, "warned": 0, "breached": 0}

    assert client.post("/api/v1/jobs/nope/run").status_code == 404

    toggled = client.patch("/api/v1/jobs/sla_sweep/toggle", json={"enabled": False}).get_json()
    assert toggled["is_enabled"] is False
    assert client.post("/api/v1/jobs/sla_sweep/run").get_json()["status"] == "skipped"
    assert client.patch("/api/v1/jobs/sla_sweep/toggle", json={}).status_code == 400
