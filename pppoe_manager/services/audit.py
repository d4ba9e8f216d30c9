from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..domain import AdjustmentType, utcnow_naive
from ..extensions import db
from ..models import ExpiryAdjustment, LogEntry

log = logging.getLogger("pppoe.audit")


def log_action(
    action: str,
    details: str = "",
    *,
    router_id: Optional[int] = None,
    pppoe_user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> LogEntry:
    """
    Stage one audit row in the current session.

    The caller commits it together with the state change it describes.
    """
    row = LogEntry(
        action=action,
        router_id=router_id,
        pppoe_user_id=pppoe_user_id,
        details=details or None,
        created_at=now or utcnow_naive(),
    )
    db.session.add(row)
    return row


def log_action_now(action: str, details: str = "", **kwargs) -> None:
    """Best-effort audit outside a unit of work. Never raises."""
    try:
        log_action(action, details, **kwargs)
        db.session.commit()
    except Exception:
        db.session.rollback()
        log.exception("Audit write failed | action=%s", action)


def record_expiry_adjustment(
    user,
    previous: Optional[datetime],
    new: Optional[datetime],
    adjustment_type: AdjustmentType,
    now: Optional[datetime] = None,
) -> ExpiryAdjustment:
    row = ExpiryAdjustment(
        pppoe_user=user,
        previous_expiry=previous,
        new_expiry=new,
        type=adjustment_type,
        created_at=now or utcnow_naive(),
    )
    db.session.add(row)
    return row
