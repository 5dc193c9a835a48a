# app/routers/alerts.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.alert import Alert
from app.schemas.alert import AlertOut
from app.services.alert_service import resolve_alert
from app.services.vehicle_service import normalize_plate
from typing import Optional

router = APIRouter()

@router.get("/alerts", response_model=list[AlertOut], summary="All alerts — filterable by type")
def get_all_alerts(
    alert_type: Optional[str] = None,
    is_resolved: Optional[int] = None,
    plate: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db)
):
    """Combined alerts endpoint. Filter by alert_type, plate or is_resolved."""
    q = db.query(Alert)
    if alert_type:
        q = q.filter(Alert.alert_type == alert_type)
    if plate:
        q = q.filter(Alert.plate == normalize_plate(plate))
    if is_resolved is not None:
        q = q.filter(Alert.is_resolved == is_resolved)
    return q.order_by(Alert.triggered_at.desc()).limit(limit).all()


@router.post("/alerts/{alert_id}/resolve", response_model=AlertOut, summary="Mark an alert handled")
def resolve(alert_id: int, db: Session = Depends(get_db)):
    alert = resolve_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert
