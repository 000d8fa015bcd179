"""
Item State Machine Blueprint.

Routes:
  GET    /transitions/<kind>                   – the authored transition table
  GET    /items/<kind>/<iid>                   – one item
  GET    /items/<kind>/<iid>/transitions       – legal next states (?role=)
  POST   /items/<kind>/<iid>/transition        – move the item
  GET    /items/<kind>/<iid>/audit             – audit trail for the item

``kind`` is ``rfq_item`` or ``order_item``.
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import current_actor, paginate_args
from app.models.audit import AuditLog
from app.models.trade import ENTITY_KINDS, ITEM_MODELS
from app.services.transition_executor import available_transitions, execute
from app.services.transition_table import transitions_for
from app.utils.errors import E, api_error
from app.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

transition_bp = Blueprint("transition_bp", __name__, url_prefix="/api/v1")


def _unknown_kind(kind):
    return api_error(
        E.VALIDATION_INVALID,
        f"Unknown entity kind '{kind}'",
        details={"allowed": list(ENTITY_KINDS)},
    )


@transition_bp.route("/transitions/<kind>", methods=["GET"])
def list_definitions(kind):
    if kind not in ITEM_MODELS:
        return _unknown_kind(kind)
    include_emergency = request.args.get("emergency", "true") != "false"
    rows = [
        d.to_dict() for d in transitions_for(kind)
        if include_emergency or not d.is_emergency
    ]
    return jsonify({"entity_kind": kind, "transitions": rows, "total": len(rows)})


@transition_bp.route("/items/<kind>/<int:iid>", methods=["GET"])
def get_item(kind, iid):
    model = ITEM_MODELS.get(kind)
    if model is None:
        return _unknown_kind(kind)
    item, err = get_or_404(model, iid)
    if err:
        return err
    return jsonify(item.to_dict())


@transition_bp.route("/items/<kind>/<int:iid>/transitions", methods=["GET"])
def next_transitions(kind, iid):
    if kind not in ITEM_MODELS:
        return _unknown_kind(kind)
    role = request.args.get("role") or request.headers.get("X-Role")
    return jsonify(available_transitions(kind, iid, role.upper() if role else None))


@transition_bp.route("/items/<kind>/<int:iid>/transition", methods=["POST"])
def transition_item(kind, iid):
    """Move an item.

    Body: { to_state, justification?, expected_version?, actor_id?, role? }
    """
    data = request.get_json(silent=True) or {}
    to_state = (data.get("to_state") or "").strip().upper()
    if not to_state:
        return api_error(E.VALIDATION_REQUIRED, "to_state is required")
    expected_version = data.get("expected_version")
    if expected_version is not None:
        try:
            expected_version = int(expected_version)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "expected_version must be an integer")

    result = execute(
        kind,
        iid,
        to_state,
        current_actor(data),
        justification=data.get("justification"),
        expected_version=expected_version,
    )
    return jsonify(result.to_dict())


@transition_bp.route("/items/<kind>/<int:iid>/audit", methods=["GET"])
def item_audit(kind, iid):
    model = ITEM_MODELS.get(kind)
    if model is None:
        return _unknown_kind(kind)
    _item, err = get_or_404(model, iid)
    if err:
        return err
    limit, offset = paginate_args()
    q = AuditLog.query.filter_by(table_name=model.__tablename__, record_id=str(iid))
    total = q.count()
    rows = q.order_by(AuditLog.id.asc()).limit(limit).offset(offset).all()
    return jsonify({"items": [r.to_dict() for r in rows], "total": total})
