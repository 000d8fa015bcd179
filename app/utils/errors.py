"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, workflow_error, E

    return api_error(E.NOT_FOUND, "RfqItem not found")
    return api_error(E.VALIDATION_REQUIRED, "role is required")
    return workflow_error(exc)          # any app.core.exceptions.WorkflowError
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for request-level errors raised in blueprints
     • bare taxonomy names for state-machine / orchestration failures
       (they match ``WorkflowError.code``)
    """

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Workflow taxonomy
    VALIDATION = "VALIDATION"
    AUTHORIZATION = "AUTHORIZATION"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    IMMUTABLE_ITEM = "IMMUTABLE_ITEM"
    EXTERNAL_OPERATION_FAILED = "EXTERNAL_OPERATION_FAILED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.VALIDATION: 422,
    E.AUTHORIZATION: 403,
    E.PRECONDITION_FAILED: 409,
    E.IMMUTABLE_ITEM: 409,
    E.EXTERNAL_OPERATION_FAILED: 502,
    E.CONCURRENT_MODIFICATION: 409,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (failed check, missing fields, ids).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def workflow_error(exc):
    """``api_error`` for a WorkflowError, keeping its retryable flag."""
    response, status = api_error(exc.code, exc.message, status=exc.http_status, details=exc.details)
    body = response.get_json()
    body["retryable"] = exc.retryable
    return jsonify(body), status
