"""
Trade Ops Core
Blueprint helpers shared by every API module.
"""

from flask import request

from app.services.transition_executor import Actor


def current_actor(data: dict | None = None) -> Actor:
    """Best-effort caller identity (no auth enforcement).

    The body's ``actor_id`` / ``role`` win over the ``X-User`` / ``X-Role``
    headers.
    """
    data = data or {}
    actor_id = (
        data.get("actor_id")
        or request.headers.get("X-User", "")
        or request.headers.get("X-Forwarded-User", "")
        or "anonymous"
    )
    role = data.get("role") or request.headers.get("X-Role") or None
    return Actor(str(actor_id), role.upper() if role else None)


def paginate_args(default_limit=50, max_limit=500):
    """Read ``limit`` / ``offset`` query params, clamped."""
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset
