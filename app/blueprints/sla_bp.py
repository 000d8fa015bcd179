"""
SLA Monitor Blueprint.

Routes:
  POST   /sla/sweep      – run one sweep now  {scope?: "rfq_item" | "order_item" | [...]}
  GET    /sla/items      – open items carrying a warning or breach flag (?kind=&flag=)
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.models.trade import ENTITY_KINDS, ITEM_MODELS
from app.services.sla_monitor import SlaMonitor
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

sla_bp = Blueprint("sla_bp", __name__, url_prefix="/api/v1/sla")

_FLAGS = ("warning", "breached")


def _monitor() -> SlaMonitor:
    return current_app.extensions.get("sla_monitor") or SlaMonitor()


@sla_bp.route("/sweep", methods=["POST"])
def sweep():
    data = request.get_json(silent=True) or {}
    scope = data.get("scope")
    kinds = [scope] if isinstance(scope, str) else scope
    if kinds is not None:
        unknown = [k for k in kinds if k not in ITEM_MODELS]
        if unknown:
            return api_error(
                E.VALIDATION_INVALID, f"Unknown entity kind(s): {unknown}",
                details={"allowed": list(ENTITY_KINDS)},
            )
    counts = _monitor().sweep(scope=kinds)
    return jsonify(counts)


@sla_bp.route("/items", methods=["GET"])
def flagged_items():
    kind = request.args.get("kind")
    if kind and kind not in ITEM_MODELS:
        return api_error(E.VALIDATION_INVALID, f"Unknown entity kind '{kind}'")
    flag = request.args.get("flag")
    if flag and flag not in _FLAGS:
        return api_error(E.VALIDATION_INVALID, f"flag must be one of {list(_FLAGS)}")

    rows = []
    for k in ([kind] if kind else ENTITY_KINDS):
        model = ITEM_MODELS[k]
        q = model.query_active()
        if flag == "warning":
            q = q.filter(model.sla_warning.is_(True))
        elif flag == "breached":
            q = q.filter(model.sla_breached.is_(True))
        else:
            q = q.filter(model.sla_warning.is_(True) | model.sla_breached.is_(True))
        rows.extend(item.to_dict() for item in q.order_by(model.id))
    return jsonify({"items": rows, "total": len(rows)})
