"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.  The orchestrator records
``WorkflowError`` instances in a run's error ledger instead of letting them
escape.

Usage:
    from app.core.exceptions import NotFoundError, AuthorizationError

    raise NotFoundError(resource="RfqItem", resource_id=42)
    raise AuthorizationError("Role SALES_EXECUTIVE may not ...", details={"role": "..."})

Taxonomy (``WorkflowError.code``):
    VALIDATION                  bad/missing input fields, unknown edge
    AUTHORIZATION               role not permitted
    PRECONDITION_FAILED         named business rule not satisfied
    IMMUTABLE_ITEM              mutation of a closed item (never retried)
    EXTERNAL_OPERATION_FAILED   stock / vendor / logistics call failed
    CONCURRENT_MODIFICATION     stale version (retry with fresh state)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "RfqItem").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when request input is well-formed but unusable.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation conflicts with the current record state.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} conflicts with current state")


# ═════════════════════════════════════════════════════════════════════════════
# Workflow taxonomy
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowError(Exception):
    """Base for every structured state-machine / orchestration failure.

    Attributes:
        code: Taxonomy code (see module docstring).
        message: Human-readable reason, surfaced verbatim to callers.
        details: Structured payload (failed check, missing fields, ids).
        retryable: Whether a caller may retry after re-reading state.
        http_status: Status used by blueprint error handlers.
    """

    code = "WORKFLOW_ERROR"
    retryable = False
    http_status = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class TransitionValidationError(WorkflowError):
    """Unknown edge, missing required fields or missing justification."""

    code = "VALIDATION"
    http_status = 422


class RunInputError(WorkflowError):
    """The initial context of a workflow run is unusable."""

    code = "VALIDATION"
    http_status = 422


class AuthorizationError(WorkflowError):
    code = "AUTHORIZATION"
    http_status = 403


class PreconditionFailedError(WorkflowError):
    code = "PRECONDITION_FAILED"
    http_status = 409


class ImmutableItemError(WorkflowError):
    """The item is in a terminal state; nothing may change it."""

    code = "IMMUTABLE_ITEM"
    http_status = 409

    def __init__(self, entity_kind: str, item_id, state: str) -> None:
        self.entity_kind = entity_kind
        self.item_id = item_id
        self.state = state
        super().__init__(
            f"{entity_kind} {item_id} is closed (state={state}) and cannot be modified",
            details={"entity_kind": entity_kind, "item_id": item_id, "state": state},
        )


class ExternalOperationError(WorkflowError):
    code = "EXTERNAL_OPERATION_FAILED"
    retryable = True
    http_status = 502


class ConcurrentModificationError(WorkflowError):
    """The row changed since it was read; re-read and retry."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True
    http_status = 409
