"""Nonconformance (NCR) disposition.

An open NCR blocks dispatch of its run while ``block_dispatch_on_qc_fail``
is set; closing it with a disposition lets a resumed run ship the lines
that passed.
"""

import logging

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.fulfillment import NCR_DISPOSITIONS, Nonconformance
from app.services.permission import check_access
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def close_nonconformance(ncr_id: int, disposition: str, actor, comment: str = "") -> Nonconformance:
    ncr = db.session.get(Nonconformance, ncr_id)
    if ncr is None:
        raise NotFoundError("Nonconformance", ncr_id)
    check_access(actor.role, "nonconformance", "disposition")
    if disposition not in NCR_DISPOSITIONS:
        raise ValidationError(f"disposition must be one of {sorted(NCR_DISPOSITIONS)}",
                              details={"disposition": disposition})
    if ncr.status != "open":
        raise ConflictError("Nonconformance", "status", ncr.status)

    ncr.status = "closed"
    ncr.disposition = disposition
    ncr.closed_by = actor.id
    ncr.closed_at = utcnow()
    write_audit(
        table=Nonconformance.__tablename__, record_id=ncr.id, action="UPDATE",
        actor_id=actor.id, old_data={"status": "open"},
        new_data={"status": "closed", "disposition": disposition},
        reason=comment or None,
    )
    db.session.commit()
    logger.info("NCR %s closed as %s by %s", ncr.number, disposition, actor.id,
                extra={"entity_type": "nonconformance", "entity_id": ncr.id,
                       "event_type": "ncr_closed"})
    return ncr
