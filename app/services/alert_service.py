# app/services/alert_service.py
"""
Shared alert creation service.
Used by the parking engine whenever an operator must look at something:
unresponsive gates, rejected entries/exits, failed payment requests,
payments that arrived for an already settled session.
Extend here to add push notifications, SMS, email, etc.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session
from app.models.alert import Alert
from app.utils.logger import get_operator_logger
from app.utils.timeutils import utcnow

logger = get_operator_logger()

GATE_UNRESPONSIVE = "gate_unresponsive"
ENTRY_REJECTED = "entry_rejected"
EXIT_REJECTED = "exit_rejected"
PAYMENT_REQUEST_FAILED = "payment_request_failed"
PAYMENT_CONFLICT = "payment_conflict"
INVARIANT_VIOLATION = "invariant_violation"


async def create_alert(db: Session, alert_type: str, description: str, gate: Optional[str] = None,
                       plate: Optional[str] = None, session_id: Optional[int] = None) -> Alert:
    """Create and persist an alert record. Always commits immediately."""
    alert = Alert(alert_type=alert_type, gate=gate, plate=plate, session_id=session_id,
                  description=description, is_resolved=0, triggered_at=utcnow())
    db.add(alert)
    db.commit()
    logger.warning(f"[ALERT][{alert_type.upper()}] {description}")
    # Extend here: push notification, SMS, email, etc.
    return alert


def resolve_alert(db: Session, alert_id: int, resolved_at: Optional[datetime] = None) -> Optional[Alert]:
    alert = db.get(Alert, alert_id)
    if alert is None:
        return None
    if not alert.is_resolved:
        alert.is_resolved = 1
        alert.resolved_at = resolved_at or utcnow()
        db.commit()
        db.refresh(alert)
    return alert
