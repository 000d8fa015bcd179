"""Shared utility functions used by models, services and blueprints.

get_or_404:      tuple-return lookup for blueprints (ERR_NOT_FOUND, no abort)
utcnow / as_utc: timezone handling (SQLite hands back naive datetimes)
iso:             datetime → ISO string or None for to_dict() payloads
parse_duration:  "2h" / "3d" / "90m" → timedelta for SLA side effects
"""
import logging
import re
from datetime import datetime, timedelta, timezone

from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([mhd])\s*$", re.IGNORECASE)
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, api_error(E.NOT_FOUND, ...))

        obj, err = get_or_404(RfqItem, item_id)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, api_error(E.NOT_FOUND, f"{label} {pk} not found")
    return obj, None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def iso(value) -> str | None:
    return value.isoformat() if value else None


def parse_duration(value: str) -> timedelta:
    """Parse an SLA duration literal.

    Supports minutes (``90m``), hours (``2h``) and days (``3d``).

    Raises:
        ValueError: for anything else.
    """
    match = _DURATION_RE.match(str(value or ""))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit.lower()]: float(amount)})
